"""
Expiring update lock shared between processes.

Only one update of a unit may run at a time, even when requests arrive
through different processes (a CLI run and a scheduled job, for example).
The lock is a named row in a shared store with an expiry, so a process
that dies mid-update cannot block updates forever.

SQLite Schema:
    CREATE TABLE update_locks (
        name TEXT PRIMARY KEY,   -- lock name, one per unit
        holder TEXT NOT NULL,    -- session id of the holder
        actor TEXT,              -- user or process that started the session
        acquired_at REAL,        -- Unix timestamp
        expires_at REAL          -- Unix timestamp
    );

Acquisition deletes an expired row and inserts the new one inside a single
``BEGIN IMMEDIATE`` transaction; the primary key makes the insert fail when
another holder got there first. A running session keeps its lock alive
with ``refresh``, which only moves the expiry of a row it still owns.
"""

from __future__ import annotations

import sqlite3
import time
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from safe_update.config import AppConfig
from safe_update.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOCK_TTL = 600


@dataclass(frozen=True)
class LockInfo:
    """Current holder of a lock.

    Attributes:
        name: Lock name.
        holder: Identity of the holder (session id).
        actor: User or process that took the lock, if recorded.
        acquired_at: Unix timestamp of acquisition.
        expires_at: Unix timestamp after which the lock is void.
    """

    name: str
    holder: str
    acquired_at: float
    expires_at: float
    actor: str | None = None

    @property
    def started_at(self) -> str:
        """Acquisition time as an ISO 8601 UTC string."""
        return datetime.fromtimestamp(self.acquired_at, UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "holder": self.holder,
            "actor": self.actor,
            "started_at": self.started_at,
            "expires_at": datetime.fromtimestamp(self.expires_at, UTC).isoformat(),
        }


class LockStore(ABC):
    """
    Named locks with atomic set-if-absent and expiry.

    Implementations must be safe across processes: an in-process lock
    does not prevent a second process from updating the same unit.
    """

    @abstractmethod
    def acquire(
        self,
        name: str,
        holder: str,
        ttl_seconds: float,
        actor: str | None = None,
    ) -> bool:
        """
        Take the lock if it is free or expired.

        Returns:
            True if ``holder`` now holds the lock, False if someone else does.
        """

    @abstractmethod
    def refresh(self, name: str, holder: str, ttl_seconds: float) -> bool:
        """
        Push the expiry of a held lock to ``ttl_seconds`` from now.

        Returns:
            True if ``holder`` still held the lock, False if it was lost.
        """

    @abstractmethod
    def release(self, name: str, holder: str) -> bool:
        """
        Release the lock if ``holder`` holds it.

        Returns:
            True if a lock row was removed.
        """

    @abstractmethod
    def get(self, name: str) -> LockInfo | None:
        """Return the live holder of ``name``, or None if free or expired."""


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS update_locks (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    actor TEXT,
    acquired_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
"""


class SQLiteLockStore(LockStore):
    """
    LockStore backed by a SQLite database file.

    Each operation opens its own connection, so one store file can be shared
    by any number of processes.

    Example:
        >>> store = SQLiteLockStore("/var/lib/safe-update/locks.db")
        >>> store.acquire("update:unit", "session-1", ttl_seconds=600)
        True
        >>> store.acquire("update:unit", "session-2", ttl_seconds=600)
        False
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialized = False

    @classmethod
    def from_config(cls, config: AppConfig) -> SQLiteLockStore:
        """Create a lock store from application configuration."""
        return cls(config.paths.lock_db)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection in autocommit mode.

        Transactions are opened explicitly with BEGIN IMMEDIATE.
        """
        if not self._initialized:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            if not self._initialized:
                conn.executescript(SCHEMA_SQL)
                self._initialized = True
            yield conn
        finally:
            conn.close()

    def acquire(
        self,
        name: str,
        holder: str,
        ttl_seconds: float = DEFAULT_LOCK_TTL,
        actor: str | None = None,
    ) -> bool:
        now = time.time()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM update_locks WHERE name = ? AND expires_at <= ?",
                    (name, now),
                )
                conn.execute(
                    "INSERT INTO update_locks (name, holder, actor, acquired_at, expires_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (name, holder, actor, now, now + ttl_seconds),
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                logger.debug("Lock already held", extra={"lock": name, "requested_by": holder})
                return False
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

        logger.debug(
            "Lock acquired",
            extra={"lock": name, "holder": holder, "actor": actor, "ttl_seconds": ttl_seconds},
        )
        return True

    def refresh(self, name: str, holder: str, ttl_seconds: float = DEFAULT_LOCK_TTL) -> bool:
        now = time.time()
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE update_locks SET expires_at = ? "
                "WHERE name = ? AND holder = ? AND expires_at > ?",
                (now + ttl_seconds, name, holder, now),
            )
            refreshed = cursor.rowcount > 0

        if not refreshed:
            logger.warning("Lock no longer held", extra={"lock": name, "holder": holder})
        return refreshed

    def release(self, name: str, holder: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM update_locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
            released = cursor.rowcount > 0

        if released:
            logger.debug("Lock released", extra={"lock": name, "holder": holder})
        else:
            logger.warning(
                "Lock was not held by releasing session",
                extra={"lock": name, "holder": holder},
            )
        return released

    def get(self, name: str) -> LockInfo | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT name, holder, actor, acquired_at, expires_at FROM update_locks "
                "WHERE name = ? AND expires_at > ?",
                (name, time.time()),
            ).fetchone()

        if row is None:
            return None
        return LockInfo(
            name=row["name"],
            holder=row["holder"],
            actor=row["actor"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )


def lock_name_for(unit_name: str) -> str:
    """Lock name guarding updates of ``unit_name``."""
    return f"update:{unit_name}"
