# tests/test_fingerprint.py
from datetime import datetime, timedelta, timezone

from carwatch.fingerprint import (
    calculate_freshness, generate_fingerprint, normalize_source, normalize_status, normalize_vin,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_fingerprint_format():
    fp = generate_fingerprint(
        year=2020, make="Honda", model="Accord", trim="EX", mileage=30000,
        price=2_000_000, seller_location="Austin, TX",
    )
    assert fp == "2020|honda|accord|ex|30k|2000000|austintx"

def test_fingerprint_is_deterministic_and_ignores_case_and_spacing():
    a = generate_fingerprint(2019, "Land Rover", "Range Rover", None, 45210, 3_499_900, "Denver")
    b = generate_fingerprint(2019, "LAND ROVER", "range  rover", None, 45210, 3_499_900, "Denver")
    assert a == b

def test_fingerprint_buckets_round_half_up():
    fp = generate_fingerprint(year=2018, make="Ford", model="F-150", mileage=30500, price=1250)
    parts = fp.split("|")
    assert parts[4] == "31k"
    assert parts[5] == "1500"

def test_fingerprint_placeholders_for_missing_fields():
    assert generate_fingerprint() == "XXXX|unknown|unknown||XXXk|XXXXX|"

def test_fingerprint_truncates_location():
    fp = generate_fingerprint(2021, "Tesla", "Model 3", seller_location="San Francisco, CA")
    assert fp.split("|")[-1] == "sanfrancis"

def test_normalize_vin():
    assert normalize_vin(" 1hgcm82633a004352 ") == "1HGCM82633A004352"
    assert normalize_vin("1HGCM") is None
    assert normalize_vin("") is None
    assert normalize_vin(None) is None

def test_normalize_source():
    assert normalize_source("Cars.com") == "cars_com"
    assert normalize_source("autotrader") == "autotrader"
    assert normalize_source("ebay") == "unknown"
    assert normalize_source(None) == "unknown"

def test_normalize_status():
    assert normalize_status(None) == "active"
    assert normalize_status("SOLD") == "sold"
    assert normalize_status("on hold") == "unknown"

def test_freshness_boundaries():
    assert calculate_freshness(NOW - timedelta(hours=23), now=NOW) == "fresh"
    assert calculate_freshness(NOW - timedelta(days=1), now=NOW) == "recent"
    assert calculate_freshness(NOW - timedelta(days=5, hours=23), now=NOW) == "recent"
    assert calculate_freshness(NOW - timedelta(days=6), now=NOW) == "stale"
    assert calculate_freshness(NOW - timedelta(days=30), now=NOW) == "stale"

def test_freshness_treats_naive_timestamps_as_utc():
    naive = (NOW - timedelta(hours=2)).replace(tzinfo=None)
    assert calculate_freshness(naive, now=NOW) == "fresh"
