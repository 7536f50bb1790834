# carwatch/config.py
"""Runtime configuration.

Values come from the environment (a local ``.env`` is loaded first). Every
setting can be overridden by keyword when constructing ``Settings``, which is
how tests and one-off scripts point the engine at a different store.
"""
import os
from functools import lru_cache
from dotenv import load_dotenv

load_dotenv()


def _bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def normalize_database_url(url):
    # SQLAlchemy 2.x doesn't accept 'postgres://'
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


class Settings:
    """Application settings loaded from environment variables with defaults."""

    PROJECT_NAME = "carwatch"
    PROJECT_VERSION = "0.1.0"

    def __init__(self, **overrides):
        env = os.getenv
        self.DATABASE_URL = normalize_database_url(env("POSTGRES_URL"))
        self.DB_POOL_SIZE = int(env("DB_POOL_SIZE", 5))
        self.DB_MAX_OVERFLOW = int(env("DB_MAX_OVERFLOW", 10))
        self.LOG_LEVEL = env("LOG_LEVEL", "INFO").upper()

        # staleness reconciliation
        self.SCHEDULER_ENABLED = _bool(env("SCHEDULER_ENABLED", "1"))
        self.STALE_AFTER_DAYS = int(env("STALE_AFTER_DAYS", 7))
        self.HEAD_CHECK_BATCH_SIZE = int(env("HEAD_CHECK_BATCH_SIZE", 100))
        self.HEAD_CHECK_CONCURRENCY = int(env("HEAD_CHECK_CONCURRENCY", 5))
        self.HEAD_CHECK_ATTEMPTS = int(env("HEAD_CHECK_ATTEMPTS", 3))
        self.HEAD_CHECK_BACKOFF_SECONDS = float(env("HEAD_CHECK_BACKOFF_SECONDS", 5))
        self.HEAD_CHECK_TIMEOUT_SECONDS = float(env("HEAD_CHECK_TIMEOUT_SECONDS", 10))
        self.HEAD_CHECK_HOUR = int(env("HEAD_CHECK_HOUR", 3))
        self.HEAD_CHECK_USER_AGENT = env("HEAD_CHECK_USER_AGENT", "Mozilla/5.0 (compatible; CarwatchBot/1.0)")

        # notification delivery
        self.SMTP_HOST = env("SMTP_HOST", "")
        self.SMTP_PORT = int(env("SMTP_PORT", 587))
        self.SMTP_USER = env("SMTP_USER", "")
        self.SMTP_PASS = env("SMTP_PASS", "")
        self.SMTP_TIMEOUT_SECONDS = float(env("SMTP_TIMEOUT_SECONDS", 10))
        self.EMAIL_FROM = env("EMAIL_FROM", "noreply@carwatch.app")
        self.FRONTEND_URL = env("FRONTEND_URL", "http://localhost:3000")
        self.NOTIFY_WORKERS = int(env("NOTIFY_WORKERS", 4))

        # realtime side channel
        self.REALTIME_WEBHOOK_URL = env("REALTIME_WEBHOOK_URL", "")
        self.REALTIME_TIMEOUT_SECONDS = float(env("REALTIME_TIMEOUT_SECONDS", 3))

        # ingestion
        self.INGEST_MAX_ATTEMPTS = int(env("INGEST_MAX_ATTEMPTS", 3))
        self.INGEST_RETRY_DELAY_SECONDS = float(env("INGEST_RETRY_DELAY_SECONDS", 0.05))
        self.AUTO_MERGE_ON_VIN = _bool(env("AUTO_MERGE_ON_VIN", "1"))
        self.MAX_PHOTO_URLS = int(env("MAX_PHOTO_URLS", 50))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting {key}")
            setattr(self, key, value)
        self.DATABASE_URL = normalize_database_url(self.DATABASE_URL)

    @property
    def email_enabled(self) -> bool:
        return bool(self.SMTP_HOST)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
