# tests/test_crud.py
from carwatch import crud
from carwatch.fingerprint import generate_fingerprint
from carwatch.models import Notification, Vehicle, VehicleUrl

VIN = "1HGCM82633A004352"


def _vehicle(db, url, vin=None, **specs):
    v = Vehicle(vin=vin, sources=["cars_com"], photo_urls=[], **specs)
    v.fingerprint = generate_fingerprint(
        year=v.year, make=v.make, model=v.model, trim=v.trim,
        mileage=v.current_mileage, price=v.current_price, seller_location=v.seller_location,
    )
    v.urls.append(VehicleUrl(url=url))
    db.add(v)
    db.flush()
    return v

def test_find_vehicle_prefers_vin(database):
    with database.session_scope() as db:
        by_vin = _vehicle(db, "https://a.example/1", vin=VIN, year=2020, make="Honda")
        _vehicle(db, "https://a.example/2", year=2020, make="Honda")
        found = crud.find_vehicle(db, VIN, "nothing", "https://a.example/2")
        assert found.id == by_vin.id

def test_find_vehicle_falls_back_to_url_then_fingerprint(database):
    with database.session_scope() as db:
        v = _vehicle(db, "https://a.example/1", year=2020, make="Honda", model="Civic",
                     current_price=1_500_000, current_mileage=40000)
        assert crud.find_vehicle(db, None, "nothing", "https://a.example/1").id == v.id
        assert crud.find_vehicle(db, None, v.fingerprint, "https://b.example/9").id == v.id
        assert crud.find_vehicle(db, None, "nothing", "https://b.example/9") is None

def test_fingerprint_match_skips_conflicting_vin(database):
    with database.session_scope() as db:
        v = _vehicle(db, "https://a.example/1", vin=VIN, year=2020, make="Honda", model="Civic")
        assert crud.find_by_fingerprint(db, v.fingerprint, vin="2T1BURHE0JC000001") is None
        assert crud.find_by_fingerprint(db, v.fingerprint, vin=VIN).id == v.id

def test_find_by_vin_rejects_partial_vin(database):
    with database.session_scope() as db:
        _vehicle(db, "https://a.example/1", vin=VIN)
        assert crud.find_by_vin(db, VIN[:10]) is None

def test_list_vehicles_filters(database):
    with database.session_scope() as db:
        _vehicle(db, "https://a.example/1", year=2018, make="Honda", model="Civic", current_price=1_200_000)
        _vehicle(db, "https://a.example/2", year=2021, make="Toyota", model="Camry", current_price=2_500_000)
        res = crud.list_vehicles(db, filters={"make": "toy"})
        assert res["total"] == 1
        assert res["items"][0].make == "Toyota"
        res = crud.list_vehicles(db, filters={"max_price": 1_500_000, "min_year": 2015})
        assert [v.model for v in res["items"]] == ["Civic"]

def test_watchlist_preferences_ignore_null_flags(database, make_user):
    make_user("u1")
    with database.session_scope() as db:
        v = _vehicle(db, "https://a.example/1", current_price=1_000_000)
        entry = crud.add_watch(db, "u1", v.id, {"target_price": 900_000})
        assert entry.price_when_added == 1_000_000
        crud.update_watch(db, "u1", v.id, {"notify_price_drop": None, "notify_price_rise": True})
        assert entry.notify_price_drop is True
        assert entry.notify_price_rise is True
        assert crud.add_watch(db, "u1", "missing", {}) is None

def test_mark_read_keeps_first_read_time(database, make_user):
    make_user("u1")
    with database.session_scope() as db:
        v = _vehicle(db, "https://a.example/1")
        n = Notification(user_id="u1", vehicle_id=v.id, type="price_drop", title="t", body="b", channel="in_app")
        db.add(n)
        db.flush()
        assert crud.unread_count(db, "u1") == 1
        assert crud.mark_read(db, n.id, "u1") == 1
        assert crud.mark_read(db, n.id, "u1") == 0
        assert crud.mark_read(db, n.id, "someone-else") == 0
        assert crud.unread_count(db, "u1") == 0
