# carwatch/fingerprint.py
"""Pure identity helpers: fuzzy fingerprints, VIN/source/status normalization, freshness."""
import math
import re
from datetime import datetime, timedelta
from typing import Optional

from .models import ListingSource, ListingStatus
from .utils import as_utc, utcnow

FINGERPRINT_DELIMITER = "|"
MILEAGE_BUCKET = 1000
PRICE_BUCKET = 500  # minor units
LOCATION_WIDTH = 10

VIN_LENGTH = 17

_SOURCE_ALIASES = {
    "cars.com": ListingSource.CARS_COM,
    "cars_com": ListingSource.CARS_COM,
    "autotrader": ListingSource.AUTOTRADER,
    "cargurus": ListingSource.CARGURUS,
    "craigslist": ListingSource.CRAIGSLIST,
    "facebook": ListingSource.FACEBOOK,
    "carfax": ListingSource.CARFAX,
    "carvana": ListingSource.CARVANA,
    "vroom": ListingSource.VROOM,
    "dealer_site": ListingSource.DEALER_SITE,
}

FRESH_WITHIN = timedelta(days=1)
RECENT_WITHIN = timedelta(days=6)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _squash(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", value.lower())


def generate_fingerprint(year=None, make=None, model=None, trim=None, mileage=None,
                         price=None, seller_location=None) -> str:
    """Build the lossy identity key used when no VIN is available.

    Similar cars from the same seller area can collide; that is accepted in
    exchange for matching VIN-less listings across marketplaces.
    """
    parts = [
        str(year) if year is not None else "XXXX",
        _squash(make) if make else "unknown",
        _squash(model) if model else "unknown",
        _squash(trim) if trim else "",
        f"{_round_half_up(mileage / MILEAGE_BUCKET)}k" if mileage is not None else "XXXk",
        str(_round_half_up(price / PRICE_BUCKET) * PRICE_BUCKET) if price is not None else "XXXXX",
        re.sub(r"[^a-z0-9]", "", (seller_location or "").lower())[:LOCATION_WIDTH],
    ]
    return FINGERPRINT_DELIMITER.join(parts)


def normalize_vin(vin: Optional[str]) -> Optional[str]:
    if not vin:
        return None
    cleaned = re.sub(r"[^A-Z0-9]", "", vin.upper())
    return cleaned if len(cleaned) == VIN_LENGTH else None


def normalize_source(source: Optional[str]) -> str:
    if not source:
        return ListingSource.UNKNOWN.value
    return _SOURCE_ALIASES.get(source.strip().lower(), ListingSource.UNKNOWN).value


def normalize_status(status: Optional[str]) -> str:
    # a listing page being viewed is live unless the adapter says otherwise
    if status is None or not str(status).strip():
        return ListingStatus.ACTIVE.value
    try:
        return ListingStatus(str(status).strip().lower()).value
    except ValueError:
        return ListingStatus.UNKNOWN.value


def calculate_freshness(last_checked_at: datetime, now: Optional[datetime] = None) -> str:
    now = as_utc(now) if now else utcnow()
    age = now - as_utc(last_checked_at)
    if age < FRESH_WITHIN:
        return "fresh"
    if age < RECENT_WITHIN:
        return "recent"
    return "stale"
