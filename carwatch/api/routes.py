# carwatch/api/routes.py
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session
from .. import crud, schemas
from ..context import AppContext
from ..db import get_db
from ..errors import MergeError, VehicleNotFoundError
from ..fingerprint import calculate_freshness, normalize_vin
from ..merging import merge_vehicles
from ..models import User
from ..utils import logger

router = APIRouter()


def get_context(request: Request) -> AppContext:
    return request.app.state.context

def get_session(ctx: AppContext = Depends(get_context)):
    yield from get_db(ctx.database)

def current_user(x_user_id: str = Header(...), db: Session = Depends(get_session)) -> User:
    # identity is established upstream by the auth layer
    user = crud.get_user(db, x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user

def _vehicle_out(vehicle) -> schemas.VehicleOut:
    out = schemas.VehicleOut.model_validate(vehicle)
    out.freshness = calculate_freshness(vehicle.last_checked_at)
    return out

def _vehicle_detail(db, vehicle, user, **limits) -> schemas.VehicleDetailOut:
    history = crud.get_vehicle_history(db, vehicle.id, **limits)
    entry = crud.get_watch_entry(db, user.id, vehicle.id)
    return schemas.VehicleDetailOut(
        **_vehicle_out(vehicle).model_dump(),
        snapshots=[schemas.SnapshotOut.model_validate(s) for s in history["snapshots"]],
        price_changes=[schemas.PriceChangeOut.model_validate(c) for c in history["price_changes"]],
        status_changes=[schemas.StatusChangeOut.model_validate(c) for c in history["status_changes"]],
        is_watching=entry is not None,
        watch_entry=schemas.WatchlistOut.model_validate(entry) if entry else None,
    )

def _page(result, page: int, page_size: int, items):
    return {
        "items": items,
        "total": result["total"],
        "page": page,
        "pageSize": page_size,
        "hasMore": page * page_size < result["total"],
    }

@router.get("/health")
def health():
    return {"status": "ok"}

# --- snapshots ------------------------------------------------------------

@router.post("/snapshots", response_model=schemas.IngestOut, status_code=201)
def submit_snapshot(payload: schemas.SnapshotIn, user: User = Depends(current_user),
                    ctx: AppContext = Depends(get_context)):
    result = ctx.pipeline.process_snapshot(user.id, payload.to_payload())
    return schemas.IngestOut(
        vehicle=_vehicle_out(result.vehicle),
        snapshot=schemas.SnapshotOut.model_validate(result.snapshot),
        is_new_vehicle=result.is_new_vehicle,
    )

@router.get("/snapshots/vehicle/{vehicle_id}")
def vehicle_snapshots(vehicle_id: str, page: int = Query(1, ge=1), page_size: int = Query(50, ge=1, le=200),
                      user: User = Depends(current_user), db: Session = Depends(get_session)):
    res = crud.list_snapshots(db, vehicle_id, skip=(page - 1) * page_size, limit=page_size)
    items = [schemas.SnapshotOut.model_validate(s).model_dump(by_alias=True, mode="json") for s in res["items"]]
    return _page(res, page, page_size, items)

# --- vehicles -------------------------------------------------------------

@router.get("/vehicles")
def vehicles(
    q: str | None = Query(None),
    make: str | None = Query(None),
    model: str | None = Query(None),
    min_year: int | None = Query(None),
    max_year: int | None = Query(None),
    min_price: int | None = Query(None),
    max_price: int | None = Query(None),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user: User = Depends(current_user),
    db: Session = Depends(get_session),
):
    filters = {
        "q": q,
        "make": make,
        "model": model,
        "min_year": min_year,
        "max_year": max_year,
        "min_price": min_price,
        "max_price": max_price,
        "status": status,
    }
    res = crud.list_vehicles(db, skip=(page - 1) * page_size, limit=page_size, filters=filters)
    items = [_vehicle_out(v).model_dump(by_alias=True, mode="json") for v in res["items"]]
    return _page(res, page, page_size, items)

@router.get("/vehicles/vin/{vin}", response_model=schemas.VehicleDetailOut)
def get_vehicle_by_vin(vin: str, user: User = Depends(current_user), db: Session = Depends(get_session)):
    normalized = normalize_vin(vin)
    if not normalized:
        raise HTTPException(status_code=400, detail="VIN must be exactly 17 characters")
    vehicle = crud.find_by_vin(db, normalized)
    if not vehicle:
        raise HTTPException(status_code=404, detail="No vehicle found with this VIN")
    return _vehicle_detail(db, vehicle, user, snapshots=10, price_changes=10, status_changes=10)

@router.get("/vehicles/{vehicle_id}", response_model=schemas.VehicleDetailOut)
def get_vehicle(vehicle_id: str, user: User = Depends(current_user), db: Session = Depends(get_session)):
    vehicle = crud.get_vehicle(db, vehicle_id)
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return _vehicle_detail(db, vehicle, user)

@router.get("/check-url")
def check_url(url: str = Query(..., min_length=1), user: User = Depends(current_user),
              db: Session = Depends(get_session)):
    """Lets the extension ask whether a listing page is already tracked."""
    vehicle = crud.find_by_url(db, url)
    if not vehicle:
        return {"found": False, "isWatching": False}
    entry = crud.get_watch_entry(db, user.id, vehicle.id)
    return {
        "found": True,
        "isWatching": entry is not None,
        "vehicle": _vehicle_out(vehicle).model_dump(by_alias=True, mode="json"),
    }

# --- watchlist ------------------------------------------------------------

@router.get("/watchlist")
def watchlist(page: int = Query(1, ge=1), page_size: int = Query(20, ge=1, le=100),
              user: User = Depends(current_user), db: Session = Depends(get_session)):
    res = crud.list_watchlist(db, user.id, skip=(page - 1) * page_size, limit=page_size)
    items = [schemas.WatchlistOut.model_validate(e).model_dump(by_alias=True, mode="json") for e in res["items"]]
    return _page(res, page, page_size, items)

@router.post("/watchlist", response_model=schemas.WatchlistOut, status_code=201)
def add_to_watchlist(payload: schemas.WatchlistCreate, user: User = Depends(current_user),
                     db: Session = Depends(get_session)):
    entry = crud.add_watch(db, user.id, payload.vehicle_id, payload.model_dump(exclude_unset=True))
    if not entry:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    db.commit()
    return entry

@router.patch("/watchlist/{vehicle_id}", response_model=schemas.WatchlistOut)
def update_watch(vehicle_id: str, payload: schemas.WatchPreferences, user: User = Depends(current_user),
                 db: Session = Depends(get_session)):
    entry = crud.update_watch(db, user.id, vehicle_id, payload.model_dump(exclude_unset=True))
    if not entry:
        raise HTTPException(status_code=404, detail="Not watching this vehicle")
    db.commit()
    return entry

@router.delete("/watchlist/{vehicle_id}")
def remove_from_watchlist(vehicle_id: str, user: User = Depends(current_user), db: Session = Depends(get_session)):
    ok = crud.delete_watch(db, user.id, vehicle_id)
    if not ok:
        raise HTTPException(status_code=404, detail="Not watching this vehicle")
    db.commit()
    return {"status": "deleted"}

# --- notifications --------------------------------------------------------

@router.get("/notifications")
def notifications(page: int = Query(1, ge=1), page_size: int = Query(20, ge=1, le=100),
                  unread_only: bool = Query(False), user: User = Depends(current_user),
                  db: Session = Depends(get_session)):
    res = crud.list_notifications(db, user.id, skip=(page - 1) * page_size, limit=page_size, unread_only=unread_only)
    items = [schemas.NotificationOut.model_validate(n).model_dump(by_alias=True, mode="json") for n in res["items"]]
    return _page(res, page, page_size, items)

@router.get("/notifications/unread-count")
def notifications_unread_count(user: User = Depends(current_user), db: Session = Depends(get_session)):
    return {"count": crud.unread_count(db, user.id)}

@router.patch("/notifications/{notification_id}/read")
def read_notification(notification_id: str, user: User = Depends(current_user), db: Session = Depends(get_session)):
    crud.mark_read(db, notification_id, user.id)
    db.commit()
    return {"status": "ok"}

@router.post("/notifications/read-all")
def read_all_notifications(user: User = Depends(current_user), db: Session = Depends(get_session)):
    updated = crud.mark_all_read(db, user.id)
    db.commit()
    return {"status": "ok", "updated": updated}

# --- operations -----------------------------------------------------------

@router.post("/admin/vehicles/{primary_id}/merge")
def merge(primary_id: str, payload: schemas.MergeIn, user: User = Depends(current_user),
          ctx: AppContext = Depends(get_context)):
    try:
        result = merge_vehicles(ctx.database, primary_id, payload.duplicate_id)
    except VehicleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MergeError as e:
        logger.exception("Merge failed: %s", e)
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "primaryId": result.primary_id,
        "duplicateId": result.duplicate_id,
        "moved": result.moved,
        "watchersMoved": result.watchers_moved,
        "watchersCollapsed": result.watchers_collapsed,
    }

@router.post("/admin/head-checks")
def trigger_head_checks(user: User = Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.scheduler.trigger_now()

@router.get("/admin/scheduler")
def scheduler_status(user: User = Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.scheduler.get_status()
