"""
File-level snapshots of the GasCounter database.

The SnapshotManager copies the live SQLite file into a backup directory,
keeps only the newest few copies, and restores a chosen copy back into
place. The store is closed (and locked) for the whole window in which the
file is read or replaced, then reopened.

Snapshot format:
    <app-data>/Backups/gascounters_backup_<YYYYMMDD_HHMMSS>.db3

Invariants:
    - The store is closed before the file is touched and reopened on every
      exit path, success or failure
    - A failed restore leaves the live file as it was before the call
    - Retention never fails a snapshot; each deletion is independent
    - Snapshot names sort by time, so name-descending is newest-first

Known residual risk:
    - If the safety copy of the live file cannot be written, restore aborts
      before touching the live file. If the safety copy cannot be copied
      back after a failed restore, it is left on disk and logged.

How to change safely:
    - Keep close -> copy -> reopen strictly ordered
    - Never rename the snapshot pattern; old backups must stay listable
    - Test rollback by injecting a failure into _copy_file
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..config import SnapshotConfig
from ..store.counter_store import CounterStore

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "gascounters_backup_"
SNAPSHOT_SUFFIX = ".db3"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
SNAPSHOT_PATTERN = re.compile(r"^gascounters_backup_\d{8}_\d{6}\.db3$")


def snapshot_name(when: datetime) -> str:
    """Build the snapshot file name for a timestamp (second resolution)."""
    return f"{SNAPSHOT_PREFIX}{when.strftime(TIMESTAMP_FORMAT)}{SNAPSHOT_SUFFIX}"


@dataclass
class SnapshotInfo:
    """Information about a snapshot file.

    Attributes:
        name: File name inside the backup directory
        path: Absolute path of the file
        created_at: When the snapshot was written
        size_bytes: File size in bytes
    """

    name: str
    path: Path
    created_at: datetime
    size_bytes: int


class SnapshotManager:
    """Creates, lists, retires and restores database snapshots.

    Every public coroutine returns a plain result instead of raising:
    failures are logged and reported as False (or None/empty).

    Attributes:
        store: CounterStore whose file is snapshotted
        backup_dir: Directory holding snapshot files
        keep_count: Snapshots kept by retention

    Example:
        >>> manager = SnapshotManager(store, app_data_dir / "Backups")
        >>> await manager.create_snapshot()
        True
        >>> names = await manager.list_snapshots()
        >>> await manager.restore_snapshot(names[0])
        True
    """

    def __init__(
        self,
        store: CounterStore,
        backup_dir: Path | str,
        keep_count: int = 7,
        settle_delay_ms: int = 100,
        interval_seconds: int = 24 * 3600,
        verify_before_restore: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the snapshot manager.

        Args:
            store: CounterStore instance
            backup_dir: Directory for snapshot files (created on first use)
            keep_count: Number of newest snapshots to keep
            settle_delay_ms: Wait after closing the store before copying
            interval_seconds: Periodic loop cadence and backup-due age
            verify_before_restore: Integrity-check a snapshot before restoring it
            clock: Source of the current time (for snapshot names)
        """
        self.store = store
        self.backup_dir = Path(backup_dir).absolute()
        self.keep_count = keep_count
        self.settle_delay_ms = settle_delay_ms
        self.interval_seconds = interval_seconds
        self.verify_before_restore = verify_before_restore
        self._clock = clock

        self._running = False
        self._stop_event = asyncio.Event()
        self._snapshot_count = 0
        self._restore_count = 0
        self._failure_count = 0

    @classmethod
    def from_config(
        cls,
        store: CounterStore,
        config: SnapshotConfig,
        app_data_dir: Path | str,
    ) -> SnapshotManager:
        """Create a manager with its backup directory under app data."""
        return cls(
            store,
            Path(app_data_dir) / config.backup_dir_name,
            keep_count=config.keep_count,
            settle_delay_ms=config.settle_delay_ms,
            interval_seconds=config.interval_seconds,
            verify_before_restore=config.verify_before_restore,
        )

    # -------- Create --------

    async def create_snapshot(self) -> bool:
        """Copy the live database into a new timestamped snapshot.

        Returns:
            True if a snapshot was written
        """
        try:
            async with self.store.detached() as db_path:
                if not db_path.exists():
                    logger.warning(
                        "Database file missing, no snapshot taken",
                        extra={"db_path": str(db_path)},
                    )
                    destination = None
                else:
                    await asyncio.sleep(self.settle_delay_ms / 1000)
                    self.backup_dir.mkdir(parents=True, exist_ok=True)
                    destination = self.backup_dir / snapshot_name(self._clock())
                    await self._run_blocking(self._copy_file, db_path, destination)

            if destination is None:
                await self.store.reopen()
                self._failure_count += 1
                return False

            try:
                await self.apply_retention()
            except Exception as e:
                logger.warning(f"Retention after snapshot failed: {e}", exc_info=True)
            await self.store.reopen()

        except Exception as e:
            self._failure_count += 1
            logger.error(f"Snapshot failed: {e}", exc_info=True)
            await self._reopen_quietly()
            return False

        self._snapshot_count += 1
        logger.info(
            "Created snapshot",
            extra={"snapshot": destination.name, "backup_dir": str(self.backup_dir)},
        )
        return True

    async def backup_if_due(self, max_age: timedelta | None = None) -> bool:
        """Create a snapshot if none exists or the newest is too old.

        Args:
            max_age: Age at which a new snapshot is due (default interval_seconds)

        Returns:
            True if a snapshot was created
        """
        if max_age is None:
            max_age = timedelta(seconds=self.interval_seconds)

        last = await self.last_snapshot_time()
        if last is not None and self._clock() - last < max_age:
            return False
        return await self.create_snapshot()

    # -------- List / inspect --------

    async def list_snapshots(self) -> list[str]:
        """List snapshot names, newest first (name descending)."""
        paths = await self._run_blocking(self._snapshot_paths)
        return sorted((p.name for p in paths), reverse=True)

    async def list_snapshot_details(self) -> list[SnapshotInfo]:
        """List snapshots with size and creation time, newest first."""
        return await self._run_blocking(self._snapshot_details)

    async def last_snapshot_time(self) -> datetime | None:
        """Creation time of the newest snapshot, or None if there are none."""
        details = await self.list_snapshot_details()
        return details[0].created_at if details else None

    def _snapshot_paths(self) -> list[Path]:
        """Snapshot files in the backup directory; unreadable entries are skipped."""
        try:
            if not self.backup_dir.is_dir():
                return []
            entries = list(self.backup_dir.iterdir())
        except OSError as e:
            logger.warning(f"Could not read backup directory {self.backup_dir}: {e}")
            return []
        return [p for p in entries if SNAPSHOT_PATTERN.match(p.name) and self._is_file(p)]

    def _is_file(self, path: Path) -> bool:
        try:
            return path.is_file()
        except OSError as e:
            logger.warning(f"Could not inspect {path}: {e}")
            return False

    def _snapshot_details(self) -> list[SnapshotInfo]:
        """Snapshots ordered by file time, newest first (name breaks ties)."""
        details = []
        for path in self._snapshot_paths():
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not inspect {path}: {e}")
                continue
            details.append(
                SnapshotInfo(
                    name=path.name,
                    path=path,
                    created_at=datetime.fromtimestamp(stat.st_mtime),
                    size_bytes=stat.st_size,
                )
            )
        return sorted(details, key=lambda s: (s.created_at, s.name), reverse=True)

    # -------- Retention --------

    async def apply_retention(self, keep_count: int | None = None) -> int:
        """Delete all but the newest keep_count snapshots.

        Each deletion is best-effort; a file that cannot be removed is
        logged and skipped.

        Returns:
            Number of snapshots deleted
        """
        keep = self.keep_count if keep_count is None else keep_count
        return await self._run_blocking(self._retain, keep)

    def _retain(self, keep_count: int) -> int:
        deleted = 0
        for info in self._snapshot_details()[keep_count:]:
            if self._discard(info.path):
                deleted += 1
        if deleted:
            logger.info(
                "Removed old snapshots",
                extra={"deleted": deleted, "keep_count": keep_count},
            )
        return deleted

    # -------- Restore --------

    async def restore_snapshot(self, name: str) -> bool:
        """Replace the live database with the named snapshot.

        The current file is copied to a temporary sibling first. If
        overwriting fails, that copy is put back, so the live database
        is unchanged.

        Args:
            name: Snapshot file name as returned by list_snapshots()

        Returns:
            True if the snapshot is now the live database
        """
        snapshot_path = self.backup_dir / name
        if Path(name).name != name or not snapshot_path.is_file():
            logger.warning("Snapshot not found", extra={"snapshot": name})
            return False

        if self.verify_before_restore:
            try:
                verified = await self._run_blocking(self._verify_snapshot, snapshot_path)
            except Exception as e:
                logger.error(f"Snapshot verification failed: {e}", exc_info=True)
                verified = False
            if not verified:
                self._failure_count += 1
                return False

        try:
            async with self.store.detached() as db_path:
                restored = await self._replace_live_file(snapshot_path, db_path)

            if restored:
                await self.store.reopen()
            else:
                await self._reopen_quietly()

        except Exception as e:
            logger.error(f"Restore failed: {e}", exc_info=True)
            restored = False
            await self._reopen_quietly()

        if not restored:
            self._failure_count += 1
            return False

        self._restore_count += 1
        logger.info("Restored snapshot", extra={"snapshot": name})
        return True

    async def _replace_live_file(self, snapshot_path: Path, db_path: Path) -> bool:
        """Overwrite db_path with the snapshot, rolling back on failure.

        Caller holds the store detached. A failure writing the safety copy
        propagates before the live file is touched.
        """
        temp_path = db_path.with_name(db_path.name + ".temp")
        had_live = db_path.exists()
        if had_live:
            try:
                await self._run_blocking(self._copy_file, db_path, temp_path)
            except Exception:
                self._discard(temp_path)
                raise

        try:
            await asyncio.sleep(self.settle_delay_ms / 1000)
            await self._run_blocking(self._copy_file, snapshot_path, db_path)
        except Exception as e:
            logger.error(
                f"Overwriting database with snapshot failed, rolling back: {e}",
                exc_info=True,
                extra={"snapshot": snapshot_path.name},
            )
            await self._run_blocking(self._rollback, temp_path, db_path, had_live)
            return False

        self._discard(temp_path)
        return True

    def _rollback(self, temp_path: Path, db_path: Path, had_live: bool) -> bool:
        """Put the pre-restore database back in place."""
        if not had_live:
            # There was no database before; remove whatever was half-written
            return self._discard(db_path)

        try:
            self._copy_file(temp_path, db_path)
        except OSError as e:
            logger.critical(
                f"Rollback failed, previous database kept at {temp_path}: {e}",
                extra={"temp_path": str(temp_path), "db_path": str(db_path)},
            )
            return False

        self._discard(temp_path)
        logger.info("Rolled back database", extra={"db_path": str(db_path)})
        return True

    def _verify_snapshot(self, path: Path) -> bool:
        """Check that path is an intact counters database."""
        try:
            conn = sqlite3.connect(f"{path.as_uri()}?mode=ro", uri=True)
            try:
                result = conn.execute("PRAGMA integrity_check").fetchone()[0]
                has_table = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'gas_counters'"
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Snapshot {path.name} is not a readable database: {e}")
            return False

        if result != "ok" or not has_table:
            logger.warning(
                "Snapshot failed integrity check",
                extra={"snapshot": path.name, "integrity": result, "has_table": bool(has_table)},
            )
            return False
        return True

    # -------- Periodic loop --------

    async def start(self) -> None:
        """Run backup_if_due() every interval_seconds until stopped."""
        if self._running:
            logger.warning("Snapshot loop already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info(
            "Starting snapshot loop",
            extra={"interval_seconds": self.interval_seconds, "backup_dir": str(self.backup_dir)},
        )

        try:
            while self._running:
                await self.backup_if_due()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Snapshot loop cancelled")
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the snapshot loop."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping snapshot loop")

    @property
    def stats(self) -> dict[str, Any]:
        """Get snapshot statistics."""
        return {
            "running": self._running,
            "snapshot_count": self._snapshot_count,
            "restore_count": self._restore_count,
            "failure_count": self._failure_count,
        }

    # -------- Helpers --------

    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.get_event_loop().run_in_executor(None, func, *args)

    def _copy_file(self, source: Path, destination: Path) -> None:
        """Copy source over destination."""
        shutil.copyfile(source, destination)

    def _discard(self, path: Path) -> bool:
        """Delete path, logging instead of raising."""
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete {path}: {e}")
            return False
        return True

    async def _reopen_quietly(self) -> bool:
        """Reopen the store after a failure, logging instead of raising."""
        try:
            await self.store.reopen()
        except Exception as e:
            logger.error(f"Reopening database after failure also failed: {e}", exc_info=True)
            return False
        return True
