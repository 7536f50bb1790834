# carwatch/crud.py
"""Store queries: vehicle resolution, history, watchlist and notification helpers."""
from sqlalchemy import and_, func
from sqlalchemy.orm import Session
from typing import Dict, Any, Optional

from .models import (
    Vehicle, VehicleUrl, Snapshot, PriceChange, StatusChange, WatchlistEntry,
    Notification, User, ListingStatus, HeadCheck,
)
from .fingerprint import VIN_LENGTH
from .utils import get_logger, utcnow

logger = get_logger("carwatch.crud")

PREFERENCE_FIELDS = (
    "notes", "notify_price_drop", "notify_price_rise", "notify_status_change",
    "notify_relist", "price_drop_threshold", "target_price",
)

# --- vehicle resolution ---------------------------------------------------

def find_by_vin(db: Session, vin: Optional[str]):
    if not vin or len(vin) != VIN_LENGTH:
        return None
    return db.query(Vehicle).filter(Vehicle.vin == vin).first()

def find_by_url(db: Session, url: str):
    return (
        db.query(Vehicle)
        .join(VehicleUrl, VehicleUrl.vehicle_id == Vehicle.id)
        .filter(VehicleUrl.url == url)
        .order_by(Vehicle.updated_at.desc(), Vehicle.id)
        .first()
    )

def find_vinless_by_url(db: Session, url: str, exclude_id: str):
    return (
        db.query(Vehicle)
        .join(VehicleUrl, VehicleUrl.vehicle_id == Vehicle.id)
        .filter(VehicleUrl.url == url, Vehicle.vin.is_(None), Vehicle.id != exclude_id)
        .order_by(Vehicle.updated_at.desc(), Vehicle.id)
        .first()
    )

def find_by_fingerprint(db: Session, fingerprint: str, vin: Optional[str] = None):
    q = db.query(Vehicle).filter(Vehicle.fingerprint == fingerprint)
    if vin:
        # a different VIN means a different car, however similar the specs
        q = q.filter((Vehicle.vin.is_(None)) | (Vehicle.vin == vin))
    candidates = q.order_by(Vehicle.updated_at.desc(), Vehicle.id).limit(2).all()
    if len(candidates) > 1:
        logger.warning("Fingerprint %s matches several vehicles, using %s", fingerprint, candidates[0].id)
    return candidates[0] if candidates else None

def find_vehicle(db: Session, vin: Optional[str], fingerprint: str, url: str):
    """Resolve a snapshot to an existing vehicle: VIN, then URL, then fingerprint."""
    vehicle = find_by_vin(db, vin)
    if vehicle:
        return vehicle
    vehicle = find_by_url(db, url)
    if vehicle:
        return vehicle
    vehicle = find_by_fingerprint(db, fingerprint, vin)
    if vehicle:
        logger.info("Matched %s to vehicle %s by fingerprint", url, vehicle.id)
    return vehicle

def lock_vehicle(db: Session, vehicle_id: str):
    """Re-read a vehicle under a row lock (no-op lock on SQLite)."""
    return (
        db.query(Vehicle)
        .populate_existing()
        .with_for_update()
        .filter(Vehicle.id == vehicle_id)
        .one_or_none()
    )

# --- vehicles -------------------------------------------------------------

def get_vehicle(db: Session, vehicle_id: str):
    return db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()

def get_vehicle_history(db: Session, vehicle_id: str, snapshots=100, price_changes=50, status_changes=20):
    return {
        "snapshots": db.query(Snapshot).filter(Snapshot.vehicle_id == vehicle_id)
            .order_by(Snapshot.captured_at.desc()).limit(snapshots).all(),
        "price_changes": db.query(PriceChange).filter(PriceChange.vehicle_id == vehicle_id)
            .order_by(PriceChange.detected_at.desc()).limit(price_changes).all(),
        "status_changes": db.query(StatusChange).filter(StatusChange.vehicle_id == vehicle_id)
            .order_by(StatusChange.detected_at.desc()).limit(status_changes).all(),
    }

def list_vehicles(db: Session, skip: int = 0, limit: int = 20, filters: Dict = None):
    q = db.query(Vehicle)
    if filters:
        conds = []
        if filters.get("q"):
            term = f"%{filters['q']}%"
            conds.append(Vehicle.make.ilike(term) | Vehicle.model.ilike(term) | Vehicle.vin.ilike(term))
        if filters.get("make"):
            conds.append(Vehicle.make.ilike(f"%{filters['make']}%"))
        if filters.get("model"):
            conds.append(Vehicle.model.ilike(f"%{filters['model']}%"))
        if filters.get("min_year") is not None:
            conds.append(Vehicle.year >= filters["min_year"])
        if filters.get("max_year") is not None:
            conds.append(Vehicle.year <= filters["max_year"])
        if filters.get("min_price") is not None:
            conds.append(Vehicle.current_price >= filters["min_price"])
        if filters.get("max_price") is not None:
            conds.append(Vehicle.current_price <= filters["max_price"])
        if filters.get("status"):
            conds.append(Vehicle.current_status == filters["status"])
        if conds:
            q = q.filter(and_(*conds))
    total = q.count()
    items = q.order_by(Vehicle.updated_at.desc()).offset(skip).limit(limit).all()
    return {"total": total, "items": items}

def list_snapshots(db: Session, vehicle_id: str, skip: int = 0, limit: int = 50):
    q = db.query(Snapshot).filter(Snapshot.vehicle_id == vehicle_id)
    total = q.count()
    items = q.order_by(Snapshot.captured_at.desc()).offset(skip).limit(limit).all()
    return {"total": total, "items": items}

def select_stale_vehicles(db: Session, cutoff, limit: int):
    """Active vehicles neither observed nor HEAD-checked since ``cutoff``, oldest first."""
    # a live HEAD check leaves the vehicle untouched; anything checked inside the window waits its turn
    checked = (
        db.query(HeadCheck.id)
        .filter(HeadCheck.vehicle_id == Vehicle.id, HeadCheck.executed_at >= cutoff)
        .exists()
    )
    return (
        db.query(Vehicle)
        .filter(Vehicle.current_status == ListingStatus.ACTIVE.value, Vehicle.last_checked_at < cutoff, ~checked)
        .order_by(Vehicle.last_checked_at, Vehicle.id)
        .limit(limit)
        .all()
    )

# --- users ----------------------------------------------------------------

def get_user(db: Session, user_id: str):
    return db.query(User).filter(User.id == user_id).first()

def upsert_user(db: Session, user_id: str, email: Optional[str] = None, name: Optional[str] = None,
                email_notifications: bool = True):
    user = get_user(db, user_id)
    if user is None:
        user = User(id=user_id)
        db.add(user)
    user.email = email
    user.name = name
    user.email_notifications = email_notifications
    db.flush()
    return user

# --- watchlist ------------------------------------------------------------

def get_watch_entry(db: Session, user_id: str, vehicle_id: str):
    return (
        db.query(WatchlistEntry)
        .filter(WatchlistEntry.user_id == user_id, WatchlistEntry.vehicle_id == vehicle_id)
        .first()
    )

def list_watchlist(db: Session, user_id: str, skip: int = 0, limit: int = 20):
    q = db.query(WatchlistEntry).filter(WatchlistEntry.user_id == user_id)
    total = q.count()
    items = q.order_by(WatchlistEntry.added_at.desc()).offset(skip).limit(limit).all()
    return {"total": total, "items": items}

def list_watchers(db: Session, vehicle_id: str, exclude_user_id: Optional[str] = None):
    q = db.query(WatchlistEntry).filter(WatchlistEntry.vehicle_id == vehicle_id)
    if exclude_user_id is not None:
        q = q.filter(WatchlistEntry.user_id != exclude_user_id)
    return q.order_by(WatchlistEntry.added_at, WatchlistEntry.id).all()

def add_watch(db: Session, user_id: str, vehicle_id: str, prefs: Dict[str, Any] = None):
    vehicle = get_vehicle(db, vehicle_id)
    if vehicle is None:
        return None
    entry = get_watch_entry(db, user_id, vehicle_id)
    if entry is None:
        entry = WatchlistEntry(user_id=user_id, vehicle_id=vehicle_id, price_when_added=vehicle.current_price)
        db.add(entry)
    _apply_preferences(entry, prefs or {})
    db.flush()
    return entry

def update_watch(db: Session, user_id: str, vehicle_id: str, prefs: Dict[str, Any]):
    entry = get_watch_entry(db, user_id, vehicle_id)
    if not entry:
        return None
    _apply_preferences(entry, prefs)
    db.flush()
    return entry

def delete_watch(db: Session, user_id: str, vehicle_id: str):
    entry = get_watch_entry(db, user_id, vehicle_id)
    if not entry:
        return False
    db.delete(entry)
    db.flush()
    return True

def _apply_preferences(entry: WatchlistEntry, prefs: Dict[str, Any]):
    for k, v in prefs.items():
        if k not in PREFERENCE_FIELDS:
            continue
        if k.startswith("notify_") and v is None:
            continue
        setattr(entry, k, v)

# --- notifications --------------------------------------------------------

def list_notifications(db: Session, user_id: str, skip: int = 0, limit: int = 20, unread_only: bool = False):
    q = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        q = q.filter(Notification.read_at.is_(None))
    total = q.count()
    items = q.order_by(Notification.created_at.desc()).offset(skip).limit(limit).all()
    return {"total": total, "items": items}

def unread_count(db: Session, user_id: str) -> int:
    return (
        db.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .scalar()
    )

def mark_read(db: Session, notification_id: str, user_id: str) -> int:
    # already-read notifications keep their original read time
    return (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id,
                Notification.read_at.is_(None))
        .update({Notification.read_at: utcnow()}, synchronize_session=False)
    )

def mark_all_read(db: Session, user_id: str) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .update({Notification.read_at: utcnow()}, synchronize_session=False)
    )

def mark_sent(db: Session, notification_id: str, sent_at=None) -> int:
    return (
        db.query(Notification)
        .filter(Notification.id == notification_id)
        .update({Notification.sent_at: sent_at or utcnow()}, synchronize_session=False)
    )
