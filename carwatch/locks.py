# carwatch/locks.py
"""Per-key serialization around resolve-then-create.

Inside one process a keyed ``threading.Lock`` serializes submissions for the
same VIN or URL. On PostgreSQL a transaction-scoped advisory lock extends
that across processes; it is released when the transaction ends.
"""
import hashlib
import threading
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.orm import Session


def advisory_key(key: str) -> int:
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class KeyedLock:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, *keys):
        # sorted acquisition order keeps two multi-key holders from deadlocking
        ordered = sorted({k for k in keys if k})
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def _checkout(self, key):
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
            return slot[0]

    def _release(self, key):
        with self._guard:
            slot = self._locks[key]
            slot[0].release()
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)


def acquire_advisory(db: Session, *keys):
    if db.get_bind().dialect.name != "postgresql":
        return
    for key in sorted({k for k in keys if k}):
        db.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": advisory_key(key)})
