"""Container Registry — SQLite-backed record of managed sandbox containers.

Tracks every container berth created, keyed by derived container name, so
repeat calls can reuse a container and the pruner knows what it owns.

The registry is a cache of ownership, not of running state: the Docker
runtime stays authoritative about what actually exists. Reads therefore
fail soft. A missing database reads as empty and a corrupt one is logged,
moved aside and replaced with a fresh one. A locked or unopenable database
is never treated as corrupt: reads log and return empty, writes raise.

Each update is a single committed SQLite transaction, so a concurrent
reader sees either the old or the new document, never a torn one. Writes
from this process are serialized with an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

import aiosqlite
from pydantic import ValidationError

from berth.models import RegistryEntry, RegistryOperation, RegistrySnapshot, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS containers (
    name TEXT PRIMARY KEY,
    session_key TEXT NOT NULL,
    scope TEXT NOT NULL,
    created_at TEXT NOT NULL,
    image TEXT,
    last_used_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_containers_session ON containers(session_key);
"""

# Primary result codes that mean the file itself is damaged. Anything else
# (locked, busy, cannot open) is transient and must not trigger a reset.
_CORRUPTION_CODES = frozenset({sqlite3.SQLITE_CORRUPT, sqlite3.SQLITE_NOTADB})


def is_corruption_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    return code is not None and (code & 0xFF) in _CORRUPTION_CODES


class ContainerRegistry:
    """SQLite-backed container registry with async access."""

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout  # seconds to wait on a lock held by another connection
        self._db: aiosqlite.Connection | None = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Connection ───────────────────────────────────────────────────────

    async def _open(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.db_path, timeout=self.timeout)
        db.row_factory = aiosqlite.Row
        try:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA)
            await db.commit()
        except Exception:
            await db.close()
            raise
        return db

    async def _get_db(self) -> aiosqlite.Connection:
        async with self._connect_lock:
            if self._db is None:
                try:
                    self._db = await self._open()
                except sqlite3.DatabaseError as exc:
                    if not is_corruption_error(exc):
                        raise
                    logger.warning("Container registry %s is corrupt, starting fresh", self.db_path)
                    self._quarantine()
                    self._db = await self._open()
                logger.debug("Container registry opened: %s", self.db_path)
            return self._db

    def _quarantine(self) -> None:
        """Move a corrupt database (and its WAL sidecars) out of the way."""
        stamp = utc_now().strftime("%Y%m%dT%H%M%S")
        for suffix in ("", "-wal", "-shm"):
            path = self.db_path.with_name(self.db_path.name + suffix)
            if path.exists():
                target = path.with_name(f"{path.name}.corrupt-{stamp}")
                path.replace(target)
                logger.info("Moved corrupt registry file %s -> %s", path, target)

    async def _reset(self) -> None:
        async with self._connect_lock:
            if self._db is not None:
                try:
                    await self._db.close()
                except sqlite3.Error as exc:
                    logger.debug("Ignoring close error on broken registry: %s", exc)
                self._db = None
            self._quarantine()

    async def _rollback(self) -> None:
        if self._db is None:
            return
        try:
            await self._db.rollback()
        except sqlite3.Error as exc:
            logger.debug("Rollback after failed registry write failed: %s", exc)

    # ── Operations ───────────────────────────────────────────────────────

    async def read_registry(self) -> RegistrySnapshot:
        """Load all entries. Never raises; an unusable database reads as empty."""
        try:
            db = await self._get_db()
            cursor = await db.execute("SELECT * FROM containers ORDER BY created_at, name")
            rows = await cursor.fetchall()
        except (sqlite3.DatabaseError, OSError) as exc:
            logger.warning("Failed to read container registry %s: %s", self.db_path, exc)
            return RegistrySnapshot()

        entries: list[RegistryEntry] = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except (ValidationError, ValueError) as exc:
                logger.warning("Skipping malformed registry row %r: %s", row["name"], exc)
        return RegistrySnapshot(entries=entries)

    async def get_entry(self, name: str) -> RegistryEntry | None:
        return (await self.read_registry()).find(name)

    async def update_registry(
        self,
        entry: RegistryEntry,
        operation: RegistryOperation = RegistryOperation.UPSERT,
    ) -> None:
        """Upsert or remove one entry in a single committed transaction.

        A corrupt database is quarantined and the write retried once on a
        fresh one.

        Raises:
            sqlite3.OperationalError: The database is locked by another
                connection past ``timeout`` or cannot be opened. Nothing is
                moved aside.
        """
        async with self._write_lock:
            try:
                await self._apply(entry, operation)
            except sqlite3.DatabaseError as exc:
                if not is_corruption_error(exc):
                    await self._rollback()
                    raise
                logger.warning(
                    "Container registry %s is corrupt during %s, recreating",
                    self.db_path,
                    operation.value,
                )
                await self._reset()
                await self._apply(entry, operation)

    async def _apply(self, entry: RegistryEntry, operation: RegistryOperation) -> None:
        db = await self._get_db()
        if operation == RegistryOperation.REMOVE:
            await db.execute("DELETE FROM containers WHERE name = ?", (entry.name,))
            await db.commit()
            logger.info("Registry: removed %s", entry.name)
            return

        await db.execute(
            """INSERT INTO containers
               (name, session_key, scope, created_at, image, last_used_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                   session_key = excluded.session_key,
                   scope = excluded.scope,
                   created_at = excluded.created_at,
                   image = excluded.image,
                   last_used_at = excluded.last_used_at""",
            (
                entry.name,
                entry.session_key,
                entry.scope.value,
                entry.created_at.isoformat(),
                entry.image,
                entry.last_used_at.isoformat() if entry.last_used_at else None,
            ),
        )
        await db.commit()
        logger.debug("Registry: upserted %s (session=%s)", entry.name, entry.session_key)

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> RegistryEntry:
        return RegistryEntry(
            name=row["name"],
            session_key=row["session_key"],
            scope=row["scope"],
            created_at=datetime.fromisoformat(row["created_at"]),
            image=row["image"],
            last_used_at=(
                datetime.fromisoformat(row["last_used_at"]) if row["last_used_at"] else None
            ),
        )
