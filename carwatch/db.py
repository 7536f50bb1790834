# carwatch/db.py
"""Database engine and session utilities.

The engine and session factory are owned by a ``Database`` object built once at
startup and handed to every component that talks to the store.
"""
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from .config import normalize_database_url

Base = declarative_base()


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class Database:
    def __init__(self, url, pool_size=5, max_overflow=10, echo=False):
        if not url:
            raise RuntimeError("POSTGRES_URL not set")
        url = normalize_database_url(url)
        self.url = url

        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
            if _is_memory_sqlite(url):
                # one shared connection, otherwise every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(url, echo=echo, **kwargs)
            event.listen(self.engine, "connect", _sqlite_pragmas)
        else:
            # tuned pool settings for cloud DB
            self.engine = create_engine(
                url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.DATABASE_URL, pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self):
        import carwatch.models  # noqa: F401 ensure models are imported so tables are known
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session_scope(self):
        """Commit on success, roll back on any error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def get_db(database: Database):
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()
