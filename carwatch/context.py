# carwatch/context.py
"""Process-wide wiring. Everything is built once here and passed explicitly."""
from dataclasses import dataclass

from .config import Settings
from .db import Database
from .delivery import EmailSender, RealtimePublisher
from .liveness import LivenessProbe
from .notifications import NotificationDispatcher
from .scheduler import HeadCheckScheduler
from .services import SnapshotPipeline


@dataclass
class AppContext:
    settings: Settings
    database: Database
    email_sender: EmailSender
    publisher: RealtimePublisher
    dispatcher: NotificationDispatcher
    pipeline: SnapshotPipeline
    probe: LivenessProbe
    scheduler: HeadCheckScheduler

    def close(self):
        self.scheduler.shutdown()
        self.dispatcher.shutdown()
        self.database.dispose()


def build_context(settings: Settings, database: Database = None, email_sender: EmailSender = None,
                  publisher: RealtimePublisher = None, probe: LivenessProbe = None) -> AppContext:
    database = database or Database.from_settings(settings)
    email_sender = email_sender or EmailSender.from_settings(settings)
    publisher = publisher or RealtimePublisher.from_settings(settings)
    probe = probe or LivenessProbe.from_settings(settings)
    dispatcher = NotificationDispatcher.from_settings(settings, database, email_sender)
    pipeline = SnapshotPipeline.from_settings(settings, database, dispatcher, publisher)
    scheduler = HeadCheckScheduler.from_settings(settings, database, pipeline, probe)
    return AppContext(settings, database, email_sender, publisher, dispatcher, pipeline, probe, scheduler)
