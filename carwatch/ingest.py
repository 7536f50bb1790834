# carwatch/ingest.py
"""Fold a normalized snapshot into its canonical vehicle.

Each vehicle attribute has exactly one merge policy, listed in ``MERGE_POLICIES``.
The table is applied field by field; nothing inspects the payload's shape.
"""
import enum
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .fingerprint import generate_fingerprint, normalize_source, normalize_status
from .models import Vehicle, VehicleUrl, Snapshot
from .schemas import SnapshotPayload
from .utils import get_logger, utcnow

logger = get_logger("carwatch.ingest")


class Policy(enum.Enum):
    OVERWRITE_IF_PRESENT = "overwrite_if_present"
    FILL_IF_NULL = "fill_if_null"
    ALWAYS_OVERWRITE = "always_overwrite"
    MIN = "monotonic_min"
    MAX = "monotonic_max"
    APPEND_IF_ABSENT = "append_if_absent"


# vehicle attribute -> (policy, observation key)
MERGE_POLICIES = {
    "vin": (Policy.FILL_IF_NULL, "vin"),
    "year": (Policy.OVERWRITE_IF_PRESENT, "year"),
    "make": (Policy.OVERWRITE_IF_PRESENT, "make"),
    "model": (Policy.OVERWRITE_IF_PRESENT, "model"),
    "trim": (Policy.OVERWRITE_IF_PRESENT, "trim"),
    "exterior_color": (Policy.OVERWRITE_IF_PRESENT, "exterior_color"),
    "interior_color": (Policy.OVERWRITE_IF_PRESENT, "interior_color"),
    "body_style": (Policy.OVERWRITE_IF_PRESENT, "body_style"),
    "transmission": (Policy.OVERWRITE_IF_PRESENT, "transmission"),
    "drivetrain": (Policy.OVERWRITE_IF_PRESENT, "drivetrain"),
    "fuel_type": (Policy.OVERWRITE_IF_PRESENT, "fuel_type"),
    "engine": (Policy.OVERWRITE_IF_PRESENT, "engine"),
    "seller_name": (Policy.OVERWRITE_IF_PRESENT, "seller_name"),
    "seller_type": (Policy.OVERWRITE_IF_PRESENT, "seller_type"),
    "seller_location": (Policy.OVERWRITE_IF_PRESENT, "seller_location"),
    "seller_phone": (Policy.OVERWRITE_IF_PRESENT, "seller_phone"),
    "current_price": (Policy.OVERWRITE_IF_PRESENT, "price"),
    "current_mileage": (Policy.OVERWRITE_IF_PRESENT, "mileage"),
    "primary_photo_url": (Policy.OVERWRITE_IF_PRESENT, "primary_photo_url"),
    "current_status": (Policy.ALWAYS_OVERWRITE, "status"),
    "last_checked_at": (Policy.ALWAYS_OVERWRITE, "observed_at"),
    "lowest_price": (Policy.MIN, "price"),
    "highest_price": (Policy.MAX, "price"),
    "sources": (Policy.APPEND_IF_ABSENT, "source"),
    "photo_urls": (Policy.APPEND_IF_ABSENT, "photo_urls"),
}


@dataclass
class Observation:
    """A snapshot payload after normalization, keyed by vehicle vocabulary."""
    url: str
    source: str
    status: str
    observed_at: object
    vin: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    price: Optional[int] = None
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
    photo_urls: tuple = ()
    primary_photo_url: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return generate_fingerprint(
            year=self.year, make=self.make, model=self.model, trim=self.trim,
            mileage=self.mileage, price=self.price, seller_location=self.seller_location,
        )


def observe(payload: SnapshotPayload, vin: Optional[str], observed_at=None) -> Observation:
    photos = tuple(dict.fromkeys(p for p in payload.photo_urls if p))
    return Observation(
        url=payload.url,
        source=normalize_source(payload.source),
        status=normalize_status(payload.status),
        observed_at=observed_at or utcnow(),
        vin=vin,
        year=payload.year,
        make=payload.make,
        model=payload.model,
        trim=payload.trim,
        price=payload.price,
        mileage=payload.mileage,
        exterior_color=payload.exterior_color,
        interior_color=payload.interior_color,
        body_style=payload.body_style,
        transmission=payload.transmission,
        drivetrain=payload.drivetrain,
        fuel_type=payload.fuel_type,
        engine=payload.engine,
        seller_name=payload.seller_name,
        seller_type=payload.seller_type.lower() if payload.seller_type else None,
        seller_location=payload.seller_location,
        seller_phone=payload.seller_phone,
        photo_urls=photos,
        primary_photo_url=photos[0] if photos else None,
    )


def _merged_value(policy: Policy, current, observed, max_items: Optional[int] = None):
    if policy is Policy.ALWAYS_OVERWRITE:
        return observed
    if policy is Policy.OVERWRITE_IF_PRESENT:
        return current if observed is None else observed
    if policy is Policy.FILL_IF_NULL:
        return observed if current is None else current
    if policy is Policy.MIN:
        if observed is None:
            return current
        return observed if current is None else min(current, observed)
    if policy is Policy.MAX:
        if observed is None:
            return current
        return observed if current is None else max(current, observed)
    if policy is Policy.APPEND_IF_ABSENT:
        merged = list(current or [])
        incoming = observed if isinstance(observed, (list, tuple)) else [observed]
        for item in incoming:
            if item is not None and item not in merged:
                merged.append(item)
        if max_items is not None:
            merged = merged[:max_items]
        return merged
    raise ValueError(f"Unknown merge policy {policy}")


def apply_observation(vehicle: Vehicle, obs: Observation, max_photo_urls: Optional[int] = None):
    """Apply the merge policy table to ``vehicle`` in place."""
    for field, (policy, key) in MERGE_POLICIES.items():
        current = getattr(vehicle, field)
        observed = getattr(obs, key)
        limit = max_photo_urls if field == "photo_urls" else None
        merged = _merged_value(policy, current, observed, limit)
        # JSON columns only notice reassignment, never in-place mutation
        if merged != current:
            setattr(vehicle, field, merged)
    add_source_url(vehicle, obs.url)
    vehicle.fingerprint = generate_fingerprint(
        year=vehicle.year, make=vehicle.make, model=vehicle.model, trim=vehicle.trim,
        mileage=vehicle.current_mileage, price=vehicle.current_price,
        seller_location=vehicle.seller_location,
    )


def add_source_url(vehicle: Vehicle, url: str):
    if url and url not in vehicle.source_urls:
        vehicle.urls.append(VehicleUrl(url=url))


def create_vehicle(db: Session, obs: Observation, max_photo_urls: Optional[int] = None) -> Vehicle:
    vehicle = Vehicle(
        sources=[],
        photo_urls=[],
        price_drop_count=0,
        seller_type="unknown",
    )
    apply_observation(vehicle, obs, max_photo_urls)
    db.add(vehicle)
    db.flush()
    logger.info("Created vehicle %s (VIN: %s)", vehicle.id, vehicle.vin)
    return vehicle


def record_snapshot(db: Session, vehicle: Vehicle, user_id: str, obs: Observation,
                    payload: SnapshotPayload) -> Snapshot:
    snapshot = Snapshot(
        vehicle_id=vehicle.id,
        captured_by_id=user_id,
        captured_at=obs.observed_at,
        price=obs.price,
        mileage=obs.mileage,
        status=obs.status,
        source=obs.source,
        source_url=obs.url,
        raw_data=payload.model_dump(mode="json", by_alias=True),
    )
    db.add(snapshot)
    db.flush()
    return snapshot
