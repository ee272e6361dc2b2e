"""Per-key mutual exclusion for schema mutations.

Every structural change to an object type runs while holding the lock for
``object:<shortName>``; field mutations hold ``field:<shortName>``. Keys are
always acquired in sorted order so callers holding several keys cannot
deadlock each other, and unrelated object types never contend.

The in-process locks cover threads of one worker. When a session is passed
to ``hold`` the keys are also taken as PostgreSQL advisory locks so that
separate worker processes serialize on the same keys.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterable, Iterator, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from metaobjects.services.errors import SchemaLockTimeoutError

logger = logging.getLogger(__name__)


def object_lock_key(short_name: str) -> str:
    return f"object:{short_name}"


def field_lock_key(short_name: str) -> str:
    return f"field:{short_name}"


def _key_label(key: str) -> str:
    return key.split(":", 1)[1]


def acquire_advisory_locks(
    connection: Connection, keys: Iterable[str], *, timeout: Optional[float] = None
) -> None:
    """Take transaction-scoped advisory locks on PostgreSQL.

    The locks are released by the database when the surrounding transaction
    commits or rolls back, so they serialize schema changes across worker
    processes. Other dialects are left alone; SQLite already serializes writers.
    """
    if connection.dialect.name != "postgresql":
        return
    ordered = sorted(set(keys))
    if not ordered:
        return
    if timeout is not None:
        connection.execute(text(f"SET LOCAL lock_timeout = {max(int(timeout * 1000), 1)}"))
    key = ordered[0]
    try:
        for key in ordered:
            connection.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})
    except DBAPIError as exc:
        logger.warning("Timed out waiting for database schema lock %s", key)
        raise SchemaLockTimeoutError(
            f"Another schema change is in progress for '{_key_label(key)}'"
        ) from exc
    if timeout is not None:
        connection.execute(text("SET LOCAL lock_timeout = DEFAULT"))


@dataclass
class _KeyedLock:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class SchemaLockRegistry:
    """Hands out one lock per key and forgets keys nobody is waiting on."""

    def __init__(self, *, default_timeout: Optional[float] = None) -> None:
        self._guard = Lock()
        self._locks: dict[str, _KeyedLock] = {}
        self._default_timeout = default_timeout

    def _checkout(self, key: str) -> _KeyedLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyedLock()
                self._locks[key] = entry
            entry.holders += 1
            return entry

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry.holders -= 1
            if entry.holders <= 0:
                del self._locks[key]

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)

    @contextmanager
    def hold(
        self,
        keys: Iterable[str],
        *,
        timeout: Optional[float] = None,
        session: Optional[Session] = None,
    ) -> Iterator[None]:
        """Hold every key for the duration of the block.

        With a ``session`` the same keys are also taken as database advisory
        locks inside the session's transaction, and the session is rolled back
        if the block fails.
        """
        ordered = sorted(set(keys))
        limit = self._default_timeout if timeout is None else timeout
        deadline = None if limit is None else time.monotonic() + limit
        acquired: list[tuple[str, _KeyedLock]] = []

        try:
            for key in ordered:
                entry = self._checkout(key)
                if deadline is None:
                    entry.lock.acquire()
                else:
                    remaining = max(deadline - time.monotonic(), 0.0)
                    if not entry.lock.acquire(timeout=remaining):
                        self._checkin(key)
                        logger.warning("Timed out waiting for schema lock %s", key)
                        raise SchemaLockTimeoutError(
                            f"Another schema change is in progress for '{_key_label(key)}'"
                        )
                acquired.append((key, entry))
            if session is None:
                yield
            else:
                try:
                    remaining = None if deadline is None else max(deadline - time.monotonic(), 0.001)
                    acquire_advisory_locks(session.connection(), ordered, timeout=remaining)
                    yield
                except Exception:
                    session.rollback()
                    raise
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key)


_schema_locks: SchemaLockRegistry | None = None
_schema_locks_guard = Lock()


def get_schema_locks() -> SchemaLockRegistry:
    global _schema_locks
    with _schema_locks_guard:
        if _schema_locks is None:
            from metaobjects.config import get_settings

            _schema_locks = SchemaLockRegistry(
                default_timeout=get_settings().schema_lock_timeout_seconds
            )
        return _schema_locks


__all__ = [
    "SchemaLockRegistry",
    "acquire_advisory_locks",
    "field_lock_key",
    "get_schema_locks",
    "object_lock_key",
]
