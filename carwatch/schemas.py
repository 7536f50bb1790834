# carwatch/schemas.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Any
from datetime import datetime

from .utils import to_minor_units


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnapshotFields(CamelModel):
    url: str = Field(..., min_length=1)
    source: str
    vin: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    mileage: Optional[int] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    body_style: Optional[str] = None
    transmission: Optional[str] = None
    drivetrain: Optional[str] = None
    fuel_type: Optional[str] = None
    engine: Optional[str] = None
    seller_name: Optional[str] = None
    seller_type: Optional[str] = None
    seller_location: Optional[str] = None
    seller_phone: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    status: Optional[str] = None


class SnapshotPayload(SnapshotFields):
    """Normalized snapshot as the engine consumes it. ``price`` is in minor units."""
    price: Optional[int] = None


class SnapshotIn(SnapshotFields):
    """Snapshot as submitted by extractors; ``price`` is in major units (dollars)."""
    price: Optional[float] = None

    def to_payload(self) -> SnapshotPayload:
        data = self.model_dump(exclude={"price"})
        return SnapshotPayload(price=to_minor_units(self.price), **data)


class VehicleOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
    id: str
    vin: Optional[str] = None
    fingerprint: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    body_style: Optional[str] = None
    transmission: Optional[str] = None
    drivetrain: Optional[str] = None
    fuel_type: Optional[str] = None
    engine: Optional[str] = None
    seller_name: Optional[str] = None
    seller_type: Optional[str] = None
    seller_location: Optional[str] = None
    current_price: Optional[int] = None
    current_mileage: Optional[int] = None
    current_status: str
    lowest_price: Optional[int] = None
    highest_price: Optional[int] = None
    price_drop_count: int = 0
    sources: List[str] = []
    source_urls: List[str] = []
    primary_photo_url: Optional[str] = None
    photo_urls: List[str] = []
    last_checked_at: Optional[datetime] = None
    freshness: Optional[str] = None


class SnapshotOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
    id: str
    vehicle_id: str
    captured_by_id: str
    captured_at: datetime
    price: Optional[int] = None
    mileage: Optional[int] = None
    status: str
    source: str
    source_url: str


class PriceChangeOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
    id: str
    detected_at: datetime
    previous_price: int
    new_price: int
    change_amount: int
    change_percent: float
    triggered_by: str
    triggered_by_user_id: Optional[str] = None


class StatusChangeOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
    id: str
    detected_at: datetime
    previous_status: str
    new_status: str
    triggered_by: str
    triggered_by_user_id: Optional[str] = None


class IngestOut(CamelModel):
    vehicle: VehicleOut
    snapshot: SnapshotOut
    is_new_vehicle: bool


class WatchPreferences(CamelModel):
    notes: Optional[str] = None
    notify_price_drop: Optional[bool] = None
    notify_price_rise: Optional[bool] = None
    notify_status_change: Optional[bool] = None
    notify_relist: Optional[bool] = None
    price_drop_threshold: Optional[int] = Field(None, ge=0)
    target_price: Optional[int] = Field(None, ge=0)


class WatchlistCreate(WatchPreferences):
    vehicle_id: str


class WatchlistOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
    id: str
    vehicle_id: str
    added_at: Optional[datetime] = None
    price_when_added: Optional[int] = None
    notes: Optional[str] = None
    notify_price_drop: bool
    notify_price_rise: bool
    notify_status_change: bool
    notify_relist: bool
    price_drop_threshold: Optional[int] = None
    target_price: Optional[int] = None
    last_notified_at: Optional[datetime] = None


class VehicleDetailOut(VehicleOut):
    snapshots: List[SnapshotOut] = []
    price_changes: List[PriceChangeOut] = []
    status_changes: List[StatusChangeOut] = []
    is_watching: bool = False
    watch_entry: Optional[WatchlistOut] = None


class NotificationOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
    id: str
    vehicle_id: str
    type: str
    title: str
    body: str
    channel: str
    price_change_id: Optional[str] = None
    status_change_id: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class Page(CamelModel):
    items: List[Any]
    total: int
    page: int
    page_size: int
    has_more: bool


class MergeIn(CamelModel):
    duplicate_id: str
