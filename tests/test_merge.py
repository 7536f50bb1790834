# tests/test_merge.py
import pytest
from sqlalchemy.exc import SQLAlchemyError

from helpers import VIN, count, load, snapshot, watch_entry
from carwatch import merging
from carwatch.errors import MergeError, VehicleNotFoundError
from carwatch.merging import merge_vehicles
from carwatch.models import PriceChange, Snapshot, Vehicle, WatchlistEntry

DUP_URL = "https://www.facebook.com/marketplace/item/42"


@pytest.fixture
def pair(pipeline, make_user, watch):
    make_user("both")
    make_user("dup-only")
    primary = pipeline.process_snapshot("scout", snapshot(vin=None, exterior_color=None)).vehicle.id
    duplicate = pipeline.process_snapshot(
        "scout", snapshot(url=DUP_URL, source="facebook", make="Honda", model="Accord Hybrid",
                          price=21000, exterior_color="Grey"),
    ).vehicle.id
    pipeline.process_snapshot("scout", snapshot(url=DUP_URL, source="facebook", model="Accord Hybrid", price=19500))
    watch("both", primary)
    watch("both", duplicate)
    watch("dup-only", duplicate, target_price=15000)
    return primary, duplicate


def test_merge_moves_everything_onto_primary(database, pair):
    primary, duplicate = pair
    assert count(database, Vehicle) == 2

    result = merge_vehicles(database, primary, duplicate)

    assert result.watchers_moved == 1
    assert result.watchers_collapsed == 1
    assert result.moved["snapshots"] == 2
    assert result.moved["price_changes"] == 1
    assert load(database, Vehicle, duplicate) is None
    assert count(database, Vehicle) == 1
    with database.session_scope() as db:
        assert db.query(Snapshot).filter(Snapshot.vehicle_id == primary).count() == 3
        assert db.query(PriceChange).filter(PriceChange.vehicle_id == primary).count() == 1
        assert db.query(WatchlistEntry).filter(WatchlistEntry.vehicle_id == primary).count() == 2

    v = load(database, Vehicle, primary)
    assert v.vin == VIN
    assert v.exterior_color == "Grey"
    assert v.model == "Accord"
    assert v.lowest_price == 19500
    assert v.highest_price == 21000
    assert v.price_drop_count == 1
    assert set(v.sources) == {"cars_com", "facebook"}
    assert DUP_URL in v.source_urls
    assert watch_entry(database, "dup-only", primary).target_price == 15000

def test_second_merge_fails_cleanly(database, pair):
    primary, duplicate = pair
    merge_vehicles(database, primary, duplicate)

    with pytest.raises(VehicleNotFoundError):
        merge_vehicles(database, primary, duplicate)
    assert count(database, Vehicle) == 1
    assert count(database, Snapshot) == 3

def test_merge_into_self_is_rejected(database, pair):
    primary, _ = pair
    with pytest.raises(MergeError):
        merge_vehicles(database, primary, primary)

def test_merge_missing_primary(database, pair):
    _, duplicate = pair
    with pytest.raises(VehicleNotFoundError):
        merge_vehicles(database, "no-such-vehicle", duplicate)
    assert load(database, Vehicle, duplicate) is not None

def test_failed_merge_leaves_both_vehicles_untouched(database, pair, monkeypatch):
    primary, duplicate = pair

    def broken(vehicle, url):
        raise SQLAlchemyError("boom")

    # fails after history and watchers were already moved
    monkeypatch.setattr(merging, "add_source_url", broken)
    with pytest.raises(MergeError):
        merge_vehicles(database, primary, duplicate)

    assert count(database, Vehicle) == 2
    with database.session_scope() as db:
        assert db.query(Snapshot).filter(Snapshot.vehicle_id == duplicate).count() == 2
        assert db.query(PriceChange).filter(PriceChange.vehicle_id == duplicate).count() == 1
        assert db.query(WatchlistEntry).filter(WatchlistEntry.vehicle_id == duplicate).count() == 2
        assert db.query(WatchlistEntry).filter(WatchlistEntry.vehicle_id == primary).count() == 1
    assert DUP_URL not in load(database, Vehicle, primary).source_urls
