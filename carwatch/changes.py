# carwatch/changes.py
"""Detect and record price/status transitions on a vehicle."""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from .models import Vehicle, PriceChange, StatusChange, TriggerSource
from .utils import get_logger, format_money, utcnow

logger = get_logger("carwatch.changes")

PRICE_CHANGE = "price_change"
STATUS_CHANGE = "status_change"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change record, as handed to fan-out and the realtime channel."""
    kind: str
    change_id: str
    vehicle_id: str
    previous_value: Union[int, str]
    new_value: Union[int, str]
    detected_at: datetime
    triggered_by_user_id: Optional[str] = None
    change_amount: Optional[int] = None
    change_percent: Optional[float] = None

    @property
    def is_price(self) -> bool:
        return self.kind == PRICE_CHANGE


def price_delta(previous: int, new: int):
    amount = new - previous
    percent = (amount * 100 / previous) if previous else 0.0
    return amount, percent


def record_price_change(db: Session, vehicle: Vehicle, previous: int, new: int,
                        user_id: Optional[str], trigger: TriggerSource) -> ChangeEvent:
    amount, percent = price_delta(previous, new)
    change = PriceChange(
        vehicle_id=vehicle.id,
        detected_at=utcnow(),
        previous_price=previous,
        new_price=new,
        change_amount=amount,
        change_percent=percent,
        triggered_by=trigger.value,
        triggered_by_user_id=user_id,
    )
    db.add(change)
    if amount < 0:
        vehicle.price_drop_count = (vehicle.price_drop_count or 0) + 1
    db.flush()
    logger.info(
        "Price change for vehicle %s: %s -> %s (%+.1f%%)",
        vehicle.id, format_money(previous), format_money(new), percent,
    )
    return ChangeEvent(
        kind=PRICE_CHANGE, change_id=change.id, vehicle_id=vehicle.id,
        previous_value=previous, new_value=new, detected_at=change.detected_at,
        triggered_by_user_id=user_id, change_amount=amount, change_percent=percent,
    )


def record_status_change(db: Session, vehicle: Vehicle, previous: str, new: str,
                         user_id: Optional[str], trigger: TriggerSource) -> ChangeEvent:
    change = StatusChange(
        vehicle_id=vehicle.id,
        detected_at=utcnow(),
        previous_status=previous,
        new_status=new,
        triggered_by=trigger.value,
        triggered_by_user_id=user_id,
    )
    db.add(change)
    db.flush()
    logger.info("Status change for vehicle %s: %s -> %s", vehicle.id, previous, new)
    return ChangeEvent(
        kind=STATUS_CHANGE, change_id=change.id, vehicle_id=vehicle.id,
        previous_value=previous, new_value=new, detected_at=change.detected_at,
        triggered_by_user_id=user_id,
    )


def detect_changes(db: Session, vehicle: Vehicle, previous_price: Optional[int], previous_status: Optional[str],
                   is_new_vehicle: bool, user_id: Optional[str],
                   trigger: TriggerSource = TriggerSource.EXTENSION_REFRESH) -> List[ChangeEvent]:
    """Compare the pre-merge state with the vehicle's merged state.

    A first sighting is a baseline and never yields events.
    """
    if is_new_vehicle:
        return []
    events = []
    new_price = vehicle.current_price
    if new_price is not None and previous_price is not None and new_price != previous_price:
        events.append(record_price_change(db, vehicle, previous_price, new_price, user_id, trigger))

    new_status = (vehicle.current_status or "").lower()
    old_status = (previous_status or "unknown").lower()
    if new_status != old_status:
        events.append(record_status_change(db, vehicle, old_status, new_status, user_id, trigger))
    return events
