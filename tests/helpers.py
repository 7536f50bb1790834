# tests/helpers.py
"""Fakes and builders shared by the test modules."""
from carwatch import crud
from carwatch.config import Settings
from carwatch.errors import DeliveryError
from carwatch.liveness import ProbeResult
from carwatch.models import Vehicle, WatchlistEntry
from carwatch.schemas import SnapshotPayload

VIN = "1HGCM82633A004352"
URL = "https://www.cars.com/vehicledetail/abc123/"


class FakeEmailSender:
    def __init__(self):
        self.sent = []
        self.fail = False

    @property
    def configured(self):
        return True

    def send(self, to, subject, body):
        if self.fail:
            raise DeliveryError("smtp down")
        self.sent.append((to, subject, body))


class RecordingPublisher:
    def __init__(self):
        self.events = []
        self.fail = False

    def publish(self, event):
        if self.fail:
            raise ConnectionError("webhook unreachable")
        self.events.append(event)
        return True


class FakeProbe:
    def __init__(self):
        self.results = {}
        self.calls = []

    def check(self, vehicle_id, url):
        self.calls.append((vehicle_id, url))
        return self.results.get(url, ProbeResult(200, True, None, 1))


def make_settings(**overrides):
    values = dict(
        DATABASE_URL="sqlite://",
        SCHEDULER_ENABLED=False,
        NOTIFY_WORKERS=1,
        INGEST_RETRY_DELAY_SECONDS=0,
        HEAD_CHECK_CONCURRENCY=1,
        HEAD_CHECK_BACKOFF_SECONDS=0,
        REALTIME_WEBHOOK_URL="",
        FRONTEND_URL="http://localhost:3000",
    )
    values.update(overrides)
    return Settings(**values)


def snapshot(**overrides):
    data = dict(
        url=URL,
        source="cars.com",
        vin=VIN,
        year=2020,
        make="Honda",
        model="Accord",
        trim="EX",
        price=20000,
        mileage=30000,
        seller_location="Austin, TX",
        photo_urls=["https://img.example.com/1.jpg"],
    )
    data.update(overrides)
    return SnapshotPayload(**data)


def count(database, model):
    with database.session_scope() as db:
        return db.query(model).count()


def load(database, model, id_):
    with database.session_scope() as db:
        obj = db.get(model, id_)
        if obj is not None and isinstance(obj, Vehicle):
            obj.source_urls  # load the collection before the session closes
        return obj


def watch_entry(database, user_id, vehicle_id) -> WatchlistEntry:
    with database.session_scope() as db:
        return crud.get_watch_entry(db, user_id, vehicle_id)
