# carwatch/models.py
"""SQLAlchemy ORM models for persisted entities.

Enumerated columns are stored as lower-case strings so the same schema works
on PostgreSQL and SQLite.
"""
import enum
import uuid
from sqlalchemy import (
    Column, Integer, BigInteger, Float, Text, String, Boolean, DateTime, ForeignKey,
    UniqueConstraint, Index, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from .db import Base
from .utils import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")

SYSTEM_USER_ID = "system"


def _uuid():
    return str(uuid.uuid4())


class ListingStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    REMOVED = "removed"
    RELISTED = "relisted"
    UNKNOWN = "unknown"


class ListingSource(str, enum.Enum):
    CARS_COM = "cars_com"
    AUTOTRADER = "autotrader"
    CARGURUS = "cargurus"
    CRAIGSLIST = "craigslist"
    FACEBOOK = "facebook"
    CARFAX = "carfax"
    CARVANA = "carvana"
    VROOM = "vroom"
    DEALER_SITE = "dealer_site"
    UNKNOWN = "unknown"


class TriggerSource(str, enum.Enum):
    EXTENSION_REFRESH = "extension_refresh"
    HEAD_CHECK = "head_check"


class NotificationType(str, enum.Enum):
    PRICE_DROP = "price_drop"
    PRICE_RISE = "price_rise"
    TARGET_PRICE_HIT = "target_price_hit"
    STATUS_CHANGE = "status_change"
    RELIST_DETECTED = "relist_detected"


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    IN_APP = "in_app"


class User(Base):
    """Read-only projection of the external user store."""
    __tablename__ = "users"
    id = Column(String(64), primary_key=True, default=_uuid)
    email = Column(Text)
    name = Column(Text)
    email_notifications = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(String(36), primary_key=True, default=_uuid)

    vin = Column(String(17), unique=True, nullable=True)
    fingerprint = Column(Text, index=True)

    year = Column(Integer)
    make = Column(Text)
    model = Column(Text)
    trim = Column(Text)
    exterior_color = Column(Text)
    interior_color = Column(Text)
    body_style = Column(Text)
    transmission = Column(Text)
    drivetrain = Column(Text)
    fuel_type = Column(Text)
    engine = Column(Text)

    seller_name = Column(Text)
    seller_type = Column(Text, default="unknown")
    seller_location = Column(Text)
    seller_phone = Column(Text)

    # prices are integer minor units (cents)
    current_price = Column(BigInteger)
    current_mileage = Column(Integer)
    current_status = Column(Text, nullable=False, default=ListingStatus.ACTIVE.value, index=True)
    lowest_price = Column(BigInteger)
    highest_price = Column(BigInteger)
    price_drop_count = Column(Integer, nullable=False, default=0)

    sources = Column(JSONType, nullable=False, default=list)
    primary_photo_url = Column(Text)
    photo_urls = Column(JSONType, nullable=False, default=list)

    last_checked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False)

    urls = relationship("VehicleUrl", back_populates="vehicle", cascade="all, delete-orphan",
                        order_by="VehicleUrl.id")

    __mapper_args__ = {"version_id_col": version}

    @property
    def source_urls(self):
        return [u.url for u in self.urls]

    @property
    def display_name(self):
        parts = [str(p) for p in (self.year, self.make, self.model) if p]
        return " ".join(parts) or "Your watched vehicle"


class VehicleUrl(Base):
    """Listing URLs a vehicle has been observed at; append-only."""
    __tablename__ = "vehicle_urls"
    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    url = Column(Text, nullable=False)
    added_at = Column(DateTime(timezone=True), default=utcnow)

    vehicle = relationship("Vehicle", back_populates="urls")

    __table_args__ = (UniqueConstraint("vehicle_id", "url", name="uq_vehicle_urls_vehicle_url"),)


class Snapshot(Base):
    __tablename__ = "snapshots"
    id = Column(String(36), primary_key=True, default=_uuid)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    captured_by_id = Column(String(64), nullable=False, index=True)
    captured_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    price = Column(BigInteger)
    mileage = Column(Integer)
    status = Column(Text, nullable=False)
    source = Column(Text, nullable=False)
    source_url = Column(Text, nullable=False)
    raw_data = Column(JSONType)


class PriceChange(Base):
    __tablename__ = "price_changes"
    id = Column(String(36), primary_key=True, default=_uuid)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    previous_price = Column(BigInteger, nullable=False)
    new_price = Column(BigInteger, nullable=False)
    change_amount = Column(BigInteger, nullable=False)
    change_percent = Column(Float, nullable=False)
    triggered_by = Column(Text, nullable=False, default=TriggerSource.EXTENSION_REFRESH.value)
    triggered_by_user_id = Column(String(64))


class StatusChange(Base):
    __tablename__ = "status_changes"
    id = Column(String(36), primary_key=True, default=_uuid)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    previous_status = Column(Text, nullable=False)
    new_status = Column(Text, nullable=False)
    triggered_by = Column(Text, nullable=False, default=TriggerSource.EXTENSION_REFRESH.value)
    triggered_by_user_id = Column(String(64))


class WatchlistEntry(Base):
    __tablename__ = "watchlist_entries"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    added_at = Column(DateTime(timezone=True), default=utcnow)
    price_when_added = Column(BigInteger)
    notes = Column(Text)

    notify_price_drop = Column(Boolean, nullable=False, default=True)
    notify_price_rise = Column(Boolean, nullable=False, default=False)
    notify_status_change = Column(Boolean, nullable=False, default=True)
    notify_relist = Column(Boolean, nullable=False, default=True)
    price_drop_threshold = Column(BigInteger)
    target_price = Column(BigInteger)

    last_notified_at = Column(DateTime(timezone=True))

    user = relationship("User")
    vehicle = relationship("Vehicle")

    __table_args__ = (UniqueConstraint("user_id", "vehicle_id", name="uq_watchlist_user_vehicle"),)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    price_change_id = Column(String(36), ForeignKey("price_changes.id"))
    status_change_id = Column(String(36), ForeignKey("status_changes.id"))
    channel = Column(Text, nullable=False, default=NotificationChannel.IN_APP.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))


class HeadCheck(Base):
    """Result of one liveness probe against a listing URL."""
    __tablename__ = "head_checks"
    id = Column(String(36), primary_key=True, default=_uuid)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    url = Column(Text, nullable=False)
    scheduled_at = Column(DateTime(timezone=True))
    executed_at = Column(DateTime(timezone=True), default=utcnow)
    http_status = Column(Integer, nullable=False, default=0)
    is_alive = Column(Boolean, nullable=False, default=False)
    redirect_url = Column(Text)
    attempts = Column(Integer, nullable=False, default=1)


Index("idx_vehicle_urls_url", VehicleUrl.url)
Index("idx_vehicles_status_checked", Vehicle.current_status, Vehicle.last_checked_at)
Index("idx_notifications_user_read", Notification.user_id, Notification.read_at)
