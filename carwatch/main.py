from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from carwatch.api.routes import router as api_router
from carwatch.config import Settings, get_settings
from carwatch.context import AppContext, build_context
from carwatch.errors import VehicleNotFoundError
from carwatch.utils import logger


def create_app(settings: Settings = None, context: AppContext = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or build_context(settings or get_settings())
        app.state.context = ctx
        # tables are created on startup; migrations are not used
        ctx.database.create_all()
        if ctx.settings.SCHEDULER_ENABLED:
            ctx.scheduler.start()
        logger.info("carwatch started")
        try:
            yield
        finally:
            ctx.close()
            logger.info("carwatch stopped")

    app = FastAPI(title="carwatch", lifespan=lifespan)
    app.include_router(api_router)

    @app.exception_handler(VehicleNotFoundError)
    async def vehicle_not_found(request: Request, exc: VehicleNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    return app


app = create_app()
