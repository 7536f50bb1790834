# tests/conftest.py
import pytest

from carwatch import crud
from carwatch.context import build_context
from carwatch.db import Database
from helpers import FakeEmailSender, FakeProbe, RecordingPublisher, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def database(settings):
    db = Database(settings.DATABASE_URL)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def ctx(settings, database):
    context = build_context(
        settings,
        database=database,
        email_sender=FakeEmailSender(),
        publisher=RecordingPublisher(),
        probe=FakeProbe(),
    )
    yield context
    context.close()


@pytest.fixture
def pipeline(ctx):
    return ctx.pipeline


@pytest.fixture
def make_user(database):
    def _make(user_id, email=None, email_notifications=True):
        with database.session_scope() as db:
            crud.upsert_user(db, user_id, email=email, name=user_id, email_notifications=email_notifications)
        return user_id
    return _make


@pytest.fixture
def watch(database):
    def _watch(user_id, vehicle_id, **prefs):
        with database.session_scope() as db:
            entry = crud.add_watch(db, user_id, vehicle_id, prefs)
            return entry.id
    return _watch
