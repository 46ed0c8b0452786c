"""
SQLite store for gas-meter counters.

This module owns the one connection to the application's database file and
exposes typed CRUD and aggregate queries over the Counter entity.

Connection lifecycle:
    Closed -> Open     first operation (lazy) or reopen()
    Open   -> Closed   close()
    A failed open raises StoreOpenError and leaves the store Closed.

Invariants:
    - One connection handle per store, guarded by one asyncio.Lock
    - Every operation opens the store lazily before acting
    - counter_id uniqueness is checked in Python, case-insensitively,
      never through SQLite collation
    - reset_all_checks() is a single transaction
    - Values returned to callers are detached copies

How to change safely:
    - Schema changes must keep old files readable (add columns only)
    - Anything touching the file directly must go through detached()

Table schema:
    gas_counters:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - counter_id TEXT (indexed, optional)
        - customer_name, street_name, notes, state TEXT (optional)
        - latitude, longitude REAL
        - gps_accuracy REAL (optional)
        - is_checked INTEGER (0/1)
        - last_checked_date TEXT (ISO-8601, optional)
        - created_date, modified_date TEXT (ISO-8601)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ..config import StorageConfig
from ..errors import GasCounterError
from .models import Counter
from .paths import PathResolver

logger = logging.getLogger(__name__)

_COLUMNS = (
    "counter_id",
    "customer_name",
    "street_name",
    "latitude",
    "longitude",
    "gps_accuracy",
    "state",
    "notes",
    "is_checked",
    "last_checked_date",
    "created_date",
    "modified_date",
)


class StoreOpenError(GasCounterError):
    """Database could not be opened (unreadable path, corrupt file)."""

    def __init__(self, message: str, path: Path) -> None:
        super().__init__(message)
        self.path = path


@dataclass
class CycleStats:
    """Progress of the current inspection cycle.

    Attributes:
        total: Number of counters
        checked: Counters marked checked
        by_state: Counter count per state label (None for no state)
    """

    total: int
    checked: int
    by_state: dict[str | None, int] = field(default_factory=dict)

    @property
    def unchecked(self) -> int:
        return self.total - self.checked

    @property
    def is_complete(self) -> bool:
        """All counters checked; the cycle can be reset."""
        return self.total > 0 and self.checked == self.total


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class CounterStore:
    """Single point of access to the counters database.

    Thread safety:
        Designed for one asyncio event loop. All connection use and all
        open/close transitions happen under one asyncio.Lock, so CRUD calls
        and snapshot file operations never interleave.

    Example:
        >>> store = CounterStore("/data/gascounters.db3")
        >>> counter_id = await store.save(Counter.new(41.71, 44.79, counter_id="A-17"))
        >>> await store.count()
        1
        >>> await store.close()
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, busy_timeout_ms: int = 5000) -> None:
        """Initialize the store. Nothing is opened until the first operation.

        Args:
            db_path: Path of the SQLite database file
            busy_timeout_ms: SQLite busy timeout
        """
        self._db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: StorageConfig,
        resolver: PathResolver | None = None,
    ) -> CounterStore:
        """Create a store at the resolved canonical path."""
        resolver = resolver or PathResolver.from_config(config)
        return cls(resolver.resolve(), busy_timeout_ms=config.busy_timeout_ms)

    @property
    def path(self) -> Path:
        """Database file path; available without opening the store."""
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # -------- Connection lifecycle --------

    def _open(self) -> sqlite3.Connection:
        """Return the open connection, opening it if needed. Caller holds the lock."""
        if self._conn is not None:
            return self._conn

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self._db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (sqlite3.Error, OSError) as e:
            raise StoreOpenError(f"Cannot open database {self._db_path}: {e}", self._db_path) from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            self._create_schema(conn)
        except sqlite3.Error as e:
            conn.close()
            raise StoreOpenError(f"Cannot open database {self._db_path}: {e}", self._db_path) from e

        self._conn = conn
        logger.info("Opened database", extra={"db_path": str(self._db_path)})
        return conn

    def _close(self) -> None:
        """Release the connection. Caller holds the lock."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.close()
        logger.info("Closed database", extra={"db_path": str(self._db_path)})

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS gas_counters (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                counter_id TEXT,
                customer_name TEXT,
                street_name TEXT,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                gps_accuracy REAL,
                state TEXT,
                notes TEXT,
                is_checked INTEGER NOT NULL DEFAULT 0,
                last_checked_date TEXT,
                created_date TEXT NOT NULL,
                modified_date TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_gas_counters_counter_id
                ON gas_counters(counter_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, datetime('now'));
        """)

    async def close(self) -> None:
        """Close the connection. Safe to call when already closed."""
        async with self._lock:
            self._close()

    async def reopen(self) -> None:
        """Close and reopen the connection, then prove it with a read.

        Raises:
            StoreOpenError: If the database cannot be opened
        """
        async with self._lock:
            self._close()
            conn = self._open()
            try:
                conn.execute("SELECT COUNT(*) FROM gas_counters").fetchone()
            except sqlite3.Error as e:
                self._close()
                raise StoreOpenError(
                    f"Database unreadable after reopen {self._db_path}: {e}", self._db_path
                ) from e

    @asynccontextmanager
    async def detached(self) -> AsyncIterator[Path]:
        """Close the store and hold its lock while the file is handled directly.

        No store operation can run (and reopen the file) until the block
        exits. The store is left closed; the next operation reopens it.

        Yields:
            Path of the database file
        """
        async with self._lock:
            self._close()
            yield self._db_path

    # -------- Row mapping --------

    @staticmethod
    def _to_params(counter: Counter) -> tuple[Any, ...]:
        return (
            counter.counter_id,
            counter.customer_name,
            counter.street_name,
            counter.latitude,
            counter.longitude,
            counter.gps_accuracy,
            counter.state,
            counter.notes,
            int(counter.is_checked),
            _format_dt(counter.last_checked_date),
            _format_dt(counter.created_date),
            _format_dt(counter.modified_date),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Counter:
        return Counter(
            id=row["id"],
            counter_id=row["counter_id"],
            customer_name=row["customer_name"],
            street_name=row["street_name"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            gps_accuracy=row["gps_accuracy"],
            state=row["state"],
            notes=row["notes"],
            is_checked=bool(row["is_checked"]),
            last_checked_date=_parse_dt(row["last_checked_date"]),
            created_date=_parse_dt(row["created_date"]),
            modified_date=_parse_dt(row["modified_date"]),
        )

    # -------- Queries --------

    async def get_all(self) -> list[Counter]:
        """Get every counter in storage (id) order."""
        async with self._lock:
            conn = self._open()
            cursor = conn.execute("SELECT * FROM gas_counters ORDER BY id")
            return [self._from_row(row) for row in cursor.fetchall()]

    async def get_by_id(self, id: int) -> Counter | None:
        """Get a counter by surrogate id.

        Returns:
            Counter or None if not found
        """
        async with self._lock:
            conn = self._open()
            cursor = conn.execute("SELECT * FROM gas_counters WHERE id = ?", (id,))
            row = cursor.fetchone()
            return self._from_row(row) if row else None

    async def search_by_id(self, substring: str) -> list[Counter]:
        """Find counters whose counter_id contains substring.

        Matching is case-sensitive. An empty substring matches every
        counter that has a counter_id.
        """
        async with self._lock:
            conn = self._open()
            cursor = conn.execute(
                """
                SELECT * FROM gas_counters
                WHERE counter_id IS NOT NULL AND instr(counter_id, ?) > 0
                ORDER BY id
                """,
                (substring,),
            )
            return [self._from_row(row) for row in cursor.fetchall()]

    async def is_id_unique(self, candidate: str | None, exclude_id: int = 0) -> bool:
        """Check that no other counter uses candidate as its counter_id.

        Comparison is case-insensitive and done in Python; SQLite's NOCASE
        collation only folds ASCII.

        Args:
            candidate: Proposed counter_id
            exclude_id: Id of the counter being edited (0 for a new one)

        Returns:
            True when candidate is blank or not used by another counter
        """
        if candidate is None or not candidate.strip():
            return True

        needle = candidate.strip().casefold()
        async with self._lock:
            conn = self._open()
            cursor = conn.execute(
                "SELECT id, counter_id FROM gas_counters WHERE counter_id IS NOT NULL"
            )
            rows = cursor.fetchall()

        return not any(
            row["id"] != exclude_id and row["counter_id"].casefold() == needle for row in rows
        )

    # -------- Writes --------

    async def save(self, counter: Counter) -> int:
        """Insert a new counter or update an existing one.

        The counter is normalized and its modified_date is set to now, on the
        object passed in. On insert the assigned id is written back to it.
        created_date is never changed by a save.

        Args:
            counter: Counter to persist

        Returns:
            Id of the saved counter
        """
        async with self._lock:
            conn = self._open()
            counter.normalize()
            counter.modified_date = datetime.now()
            params = self._to_params(counter)

            if counter.id:
                assignments = ", ".join(f"{name} = ?" for name in _COLUMNS if name != "created_date")
                update_params = tuple(
                    value for name, value in zip(_COLUMNS, params) if name != "created_date"
                )
                cursor = conn.execute(
                    f"UPDATE gas_counters SET {assignments} WHERE id = ?",
                    (*update_params, counter.id),
                )
                if cursor.rowcount == 0:
                    logger.warning("Update matched no counter", extra={"id": counter.id})
            else:
                placeholders = ", ".join("?" for _ in _COLUMNS)
                cursor = conn.execute(
                    f"INSERT INTO gas_counters ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    params,
                )
                counter.id = cursor.lastrowid

        logger.debug(
            "Saved counter",
            extra={"id": counter.id, "counter_id": counter.counter_id},
        )
        return counter.id

    async def delete(self, counter: Counter) -> int:
        """Delete a counter.

        Returns:
            Number of rows deleted (0 or 1)
        """
        async with self._lock:
            conn = self._open()
            cursor = conn.execute("DELETE FROM gas_counters WHERE id = ?", (counter.id,))
            deleted = cursor.rowcount

        logger.debug("Deleted counter", extra={"id": counter.id, "deleted": deleted})
        return deleted

    async def reset_all_checks(self) -> int:
        """Start a new inspection cycle: uncheck every counter.

        All rows are written back in one transaction; on error nothing is
        changed.

        Returns:
            Number of rows updated
        """
        async with self._lock:
            conn = self._open()
            counters = [
                self._from_row(row)
                for row in conn.execute("SELECT * FROM gas_counters").fetchall()
            ]
            now = datetime.now()
            for counter in counters:
                counter.is_checked = False
                counter.last_checked_date = None
                counter.modified_date = now

            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.executemany(
                    """
                    UPDATE gas_counters
                    SET is_checked = ?, last_checked_date = ?, modified_date = ?
                    WHERE id = ?
                    """,
                    [
                        (
                            int(c.is_checked),
                            _format_dt(c.last_checked_date),
                            _format_dt(c.modified_date),
                            c.id,
                        )
                        for c in counters
                    ],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        updated = cursor.rowcount if counters else 0
        logger.info("Reset all checks", extra={"updated": updated})
        return updated

    # -------- Aggregates --------

    async def count(self) -> int:
        async with self._lock:
            conn = self._open()
            return conn.execute("SELECT COUNT(*) FROM gas_counters").fetchone()[0]

    async def count_checked(self) -> int:
        async with self._lock:
            conn = self._open()
            return conn.execute(
                "SELECT COUNT(*) FROM gas_counters WHERE is_checked = 1"
            ).fetchone()[0]

    async def count_by_state(self, state: str | None) -> int:
        """Count counters with the given state (None counts unset states)."""
        async with self._lock:
            conn = self._open()
            return conn.execute(
                "SELECT COUNT(*) FROM gas_counters WHERE state IS ?", (state,)
            ).fetchone()[0]

    async def get_stats(self) -> CycleStats:
        """Get inspection-cycle statistics in one consistent read."""
        async with self._lock:
            conn = self._open()
            row = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(is_checked), 0) FROM gas_counters"
            ).fetchone()
            by_state = {
                r[0]: r[1]
                for r in conn.execute(
                    "SELECT state, COUNT(*) FROM gas_counters GROUP BY state"
                ).fetchall()
            }
            return CycleStats(total=row[0], checked=row[1], by_state=by_state)
