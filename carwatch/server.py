"""Server entrypoint: ``python -m carwatch.server``."""
import os

import uvicorn

from carwatch.config import _bool


def main():
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    workers = int(os.environ.get("WORKERS", "1"))
    reload = _bool(os.environ.get("RELOAD", "0"))
    if reload and workers > 1:
        workers = 1
    log_level = os.environ.get("LOG_LEVEL", "info").lower()
    uvicorn.run("carwatch.main:app", host=host, port=port, workers=workers, reload=reload, log_level=log_level)


if __name__ == "__main__":
    main()
