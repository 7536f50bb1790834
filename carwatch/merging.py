# carwatch/merging.py
"""Consolidate a duplicate vehicle into its primary record."""
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import Database
from .errors import MergeError, VehicleNotFoundError
from .ingest import MERGE_POLICIES, Policy, add_source_url
from .models import (
    Vehicle, VehicleUrl, Snapshot, PriceChange, StatusChange, WatchlistEntry, Notification, HeadCheck,
)
from .utils import get_logger

logger = get_logger("carwatch.merging")

# history rows simply follow the vehicle
_HISTORY = (Snapshot, PriceChange, StatusChange, Notification, HeadCheck)

# specs the primary may be missing and the duplicate may know
_FILLABLE = tuple(f for f, (p, _) in MERGE_POLICIES.items() if p is Policy.OVERWRITE_IF_PRESENT)


@dataclass
class MergeResult:
    primary_id: str
    duplicate_id: str
    moved: dict
    watchers_moved: int
    watchers_collapsed: int


def merge_into(db: Session, primary: Vehicle, duplicate: Vehicle) -> MergeResult:
    """Move everything from ``duplicate`` onto ``primary`` and delete it.

    Works inside the caller's transaction; nothing is committed here.
    """
    if primary.id == duplicate.id:
        raise MergeError("Cannot merge a vehicle into itself")

    moved = {}
    for model in _HISTORY:
        moved[model.__tablename__] = (
            db.query(model)
            .filter(model.vehicle_id == duplicate.id)
            .update({model.vehicle_id: primary.id}, synchronize_session=False)
        )

    primary_watchers = {
        user_id for (user_id,) in
        db.query(WatchlistEntry.user_id).filter(WatchlistEntry.vehicle_id == primary.id)
    }
    watchers_moved = watchers_collapsed = 0
    for entry in db.query(WatchlistEntry).filter(WatchlistEntry.vehicle_id == duplicate.id).all():
        if entry.user_id in primary_watchers:
            db.delete(entry)
            watchers_collapsed += 1
        else:
            entry.vehicle_id = primary.id
            watchers_moved += 1
    db.flush()

    for url in duplicate.source_urls:
        add_source_url(primary, url)
    primary.sources = list(dict.fromkeys((primary.sources or []) + (duplicate.sources or [])))
    primary.photo_urls = list(dict.fromkeys((primary.photo_urls or []) + (duplicate.photo_urls or [])))
    for field in _FILLABLE:
        if getattr(primary, field) is None and getattr(duplicate, field) is not None:
            setattr(primary, field, getattr(duplicate, field))
    lows = [p for p in (primary.lowest_price, duplicate.lowest_price) if p is not None]
    highs = [p for p in (primary.highest_price, duplicate.highest_price) if p is not None]
    primary.lowest_price = min(lows) if lows else None
    primary.highest_price = max(highs) if highs else None
    primary.price_drop_count = (primary.price_drop_count or 0) + (duplicate.price_drop_count or 0)
    vin = duplicate.vin

    db.query(VehicleUrl).filter(VehicleUrl.vehicle_id == duplicate.id).delete(synchronize_session=False)
    db.expire(duplicate)
    db.delete(duplicate)
    db.flush()
    if primary.vin is None and vin:
        # the unique constraint only frees the VIN once the duplicate row is gone
        primary.vin = vin
        db.flush()

    logger.info(
        "Merged vehicle %s into %s (%s, watchers moved=%d collapsed=%d)",
        duplicate.id, primary.id, moved, watchers_moved, watchers_collapsed,
    )
    return MergeResult(primary.id, duplicate.id, moved, watchers_moved, watchers_collapsed)


def _lock_pair(db: Session, primary_id: str, duplicate_id: str):
    rows = (
        db.query(Vehicle)
        .populate_existing()
        .with_for_update()
        .filter(Vehicle.id.in_([primary_id, duplicate_id]))
        .order_by(Vehicle.id)
        .all()
    )
    by_id = {v.id: v for v in rows}
    return by_id.get(primary_id), by_id.get(duplicate_id)


def merge_vehicles(database: Database, primary_id: str, duplicate_id: str) -> MergeResult:
    """Atomically merge ``duplicate_id`` into ``primary_id``.

    Either every row moves and the duplicate is deleted, or nothing changes.
    """
    if primary_id == duplicate_id:
        raise MergeError("Cannot merge a vehicle into itself")
    try:
        with database.session_scope() as db:
            primary, duplicate = _lock_pair(db, primary_id, duplicate_id)
            if primary is None:
                raise VehicleNotFoundError(primary_id)
            if duplicate is None:
                raise VehicleNotFoundError(duplicate_id)
            return merge_into(db, primary, duplicate)
    except SQLAlchemyError as e:
        logger.error("Merge of %s into %s rolled back: %s", duplicate_id, primary_id, e)
        raise MergeError(f"Merge of {duplicate_id} into {primary_id} failed") from e
