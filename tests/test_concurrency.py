# tests/test_concurrency.py
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from helpers import FakeEmailSender, FakeProbe, RecordingPublisher, count, make_settings, snapshot
from carwatch import crud
from carwatch.context import build_context
from carwatch.db import Database
from carwatch.locks import KeyedLock, acquire_advisory, advisory_key
from carwatch.models import PriceChange, Snapshot, Vehicle


@pytest.fixture
def file_ctx(tmp_path):
    settings = make_settings(DATABASE_URL=f"sqlite:///{tmp_path / 'race.db'}")
    database = Database(settings.DATABASE_URL)
    database.create_all()
    context = build_context(settings, database=database, email_sender=FakeEmailSender(),
                            publisher=RecordingPublisher(), probe=FakeProbe())
    yield context
    context.close()


def test_concurrent_first_sightings_create_one_vehicle(file_ctx):
    workers = 8
    barrier = threading.Barrier(workers)

    def submit(i):
        barrier.wait()
        return file_ctx.pipeline.process_snapshot(f"user-{i}", snapshot()).vehicle.id

    with ThreadPoolExecutor(max_workers=workers) as pool:
        ids = list(pool.map(submit, range(workers)))

    assert len(set(ids)) == 1
    assert count(file_ctx.database, Vehicle) == 1
    assert count(file_ctx.database, Snapshot) == workers


def test_concurrent_price_updates_through_different_urls(file_ctx):
    database = file_ctx.database
    vid = file_ctx.pipeline.process_snapshot("seed", snapshot(vin=None, price=20000)).vehicle.id
    workers = 8
    barrier = threading.Barrier(workers)

    def submit(i):
        # same car, same fingerprint bucket, each seen on its own listing page
        payload = snapshot(vin=None, url=f"https://www.cargurus.com/l/{i}", source="cargurus", price=20010 + i * 10)
        barrier.wait()
        return file_ctx.pipeline.process_snapshot(f"user-{i}", payload).vehicle.id

    with ThreadPoolExecutor(max_workers=workers) as pool:
        ids = list(pool.map(submit, range(workers)))

    assert set(ids) == {vid}
    assert count(database, Vehicle) == 1
    assert count(database, Snapshot) == workers + 1
    with database.session_scope() as db:
        vehicle = db.get(Vehicle, vid)
        changes = {c.previous_price: c.new_price for c in db.query(PriceChange)}
        assert db.query(PriceChange).count() == workers
        # every change starts where the previous one ended
        price = 20000
        for _ in range(workers):
            price = changes[price]
        assert price == vehicle.current_price
        assert len(vehicle.source_urls) == workers + 1

def test_lost_race_on_vin_is_retried_as_update(pipeline, database, monkeypatch):
    existing = pipeline.process_snapshot("u1", snapshot(price=20000)).vehicle.id
    real_find = crud.find_vehicle
    calls = []

    def stale_find(db, vin, fingerprint, url):
        # first lookup misses, as if the other writer had not committed yet
        calls.append(vin)
        if len(calls) == 1:
            return None
        return real_find(db, vin, fingerprint, url)

    monkeypatch.setattr(crud, "find_vehicle", stale_find)
    result = pipeline.process_snapshot("u2", snapshot(price=18000))

    assert len(calls) == 2
    assert not result.is_new_vehicle
    assert result.vehicle.id == existing
    assert count(database, Vehicle) == 1
    assert len(result.events) == 1

def test_keyed_lock_releases_keys():
    locks = KeyedLock()
    with locks.hold("b", "a", None):
        assert len(locks) == 2
    assert len(locks) == 0

def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    inside = []
    overlap = []

    def work(_):
        with locks.hold("VIN"):
            inside.append(1)
            if len(inside) > 1:
                overlap.append(1)
            threading.Event().wait(0.01)
            inside.pop()

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(work, range(8)))
    assert overlap == []

def test_advisory_key_is_stable_signed_64_bit():
    key = advisory_key("1HGCM82633A004352")
    assert key == advisory_key("1HGCM82633A004352")
    assert -(2 ** 63) <= key < 2 ** 63
    assert key != advisory_key("https://example.com/listing")

def test_advisory_lock_is_skipped_off_postgres(database):
    with database.session_scope() as db:
        acquire_advisory(db, "1HGCM82633A004352")
