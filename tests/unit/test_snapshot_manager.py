"""
Unit tests for the SnapshotManager.

Tests cover:
- Snapshot creation and naming
- Listing and ordering
- Retention (best-effort deletion)
- Restore argument checks and verification
- Periodic loop and statistics
"""

import asyncio
import os
import sqlite3
import time
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from gascounter.config import SnapshotConfig
from gascounter.snapshot import SnapshotManager, snapshot_name
from gascounter.store.counter_store import CounterStore
from gascounter.store.models import Counter


@pytest.fixture
def store(tmp_path):
    return CounterStore(tmp_path / "data" / "gascounters.db3")


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "app_data" / "Backups"


@pytest.fixture
def manager(store, backup_dir):
    return SnapshotManager(store, backup_dir, settle_delay_ms=0)


def _make_old_snapshots(backup_dir: Path, count: int) -> list[str]:
    """Write count fake snapshots, one day apart, oldest first."""
    backup_dir.mkdir(parents=True, exist_ok=True)
    base = datetime(2024, 1, 1, 8, 0, 0)
    names = []
    for i in range(count):
        when = base + timedelta(days=i)
        name = snapshot_name(when)
        path = backup_dir / name
        path.write_bytes(b"old snapshot")
        stamp = time.mktime(when.timetuple())
        os.utime(path, (stamp, stamp))
        names.append(name)
    return names


class TestSnapshotName:
    """Tests for snapshot file naming."""

    def test_format(self):
        assert snapshot_name(datetime(2024, 5, 1, 9, 3, 7)) == "gascounters_backup_20240501_090307.db3"

    def test_names_sort_by_time(self):
        earlier = snapshot_name(datetime(2024, 5, 1, 23, 59, 59))
        later = snapshot_name(datetime(2024, 5, 2, 0, 0, 0))
        assert sorted([later, earlier]) == [earlier, later]


class TestCreateSnapshot:
    """Tests for create_snapshot."""

    @pytest.mark.asyncio
    async def test_creates_copy_of_live_database(self, store, backup_dir):
        """A snapshot is a byte copy of the closed database file."""
        manager = SnapshotManager(
            store, backup_dir, settle_delay_ms=0, clock=lambda: datetime(2024, 5, 1, 12, 0, 0)
        )
        await store.save(Counter.new(41.0, 44.0, counter_id="GA-1"))

        assert await manager.create_snapshot() is True

        snapshot = backup_dir / "gascounters_backup_20240501_120000.db3"
        assert snapshot.is_file()
        assert snapshot.read_bytes() == store.path.read_bytes()
        assert store.is_open is True
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_missing_database_returns_false(self, manager, store, backup_dir):
        """Without a database file nothing is written; the store is reopened."""
        assert not store.path.exists()

        assert await manager.create_snapshot() is False

        assert store.is_open is True
        assert await manager.list_snapshots() == []
        assert manager.stats["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_copy_failure_returns_false_and_reopens(self, manager, store, monkeypatch):
        await store.save(Counter.new(41.0, 44.0))

        def failing_copy(source, destination):
            raise OSError("Read-only file system")

        monkeypatch.setattr(manager, "_copy_file", failing_copy)

        assert await manager.create_snapshot() is False
        assert store.is_open is True
        assert await store.count() == 1
        assert manager.stats["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_applies_retention(self, store, backup_dir):
        """After writing, only the newest keep_count snapshots remain."""
        old = _make_old_snapshots(backup_dir, 10)
        manager = SnapshotManager(store, backup_dir, settle_delay_ms=0)
        await store.save(Counter.new(41.0, 44.0))

        assert await manager.create_snapshot() is True

        names = await manager.list_snapshots()
        assert len(names) == 7
        assert names[0] not in old
        assert set(old[-6:]) <= set(names)
        assert not set(old[:4]) & set(names)

    @pytest.mark.asyncio
    async def test_store_usable_during_next_operation(self, manager, store):
        await store.save(Counter.new(41.0, 44.0))
        await manager.create_snapshot()

        await store.save(Counter.new(42.0, 45.0))
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_unreadable_old_snapshot_does_not_fail(self, store, backup_dir, monkeypatch):
        """An old snapshot that cannot be inspected is skipped by retention."""
        old = _make_old_snapshots(backup_dir, 10)
        stuck = old[0]
        manager = SnapshotManager(
            store, backup_dir, settle_delay_ms=0, clock=lambda: datetime(2025, 6, 1, 12, 0, 0)
        )
        await store.save(Counter.new(41.0, 44.0))
        original_stat = Path.stat

        def stat(self, *args, **kwargs):
            if self.name == stuck:
                raise PermissionError("denied")
            return original_stat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", stat)

        assert await manager.create_snapshot() is True

        assert manager.stats["snapshot_count"] == 1
        assert manager.stats["failure_count"] == 0
        assert store.is_open is True
        assert os.path.exists(backup_dir / stuck)
        assert "gascounters_backup_20250601_120000.db3" in await manager.list_snapshots()

    @pytest.mark.asyncio
    async def test_retention_error_does_not_fail(self, manager, store, monkeypatch):
        await store.save(Counter.new(41.0, 44.0))

        def broken_retain(keep_count):
            raise RuntimeError("retention broke")

        monkeypatch.setattr(manager, "_retain", broken_retain)

        assert await manager.create_snapshot() is True
        assert manager.stats["failure_count"] == 0
        assert len(await manager.list_snapshots()) == 1
        assert store.is_open is True


class TestListSnapshots:
    """Tests for listing snapshots."""

    @pytest.mark.asyncio
    async def test_missing_directory_is_empty(self, manager):
        assert await manager.list_snapshots() == []
        assert await manager.list_snapshot_details() == []
        assert await manager.last_snapshot_time() is None

    @pytest.mark.asyncio
    async def test_empty_directory(self, manager, backup_dir):
        backup_dir.mkdir(parents=True)
        assert await manager.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_newest_first_and_ignores_other_files(self, manager, backup_dir):
        names = _make_old_snapshots(backup_dir, 3)
        (backup_dir / "notes.txt").write_text("not a snapshot")
        (backup_dir / "gascounters_backup_latest.db3").write_bytes(b"x")
        (backup_dir / "gascounters.db3.temp").write_bytes(b"x")

        assert await manager.list_snapshots() == list(reversed(names))

    @pytest.mark.asyncio
    async def test_details(self, manager, backup_dir):
        names = _make_old_snapshots(backup_dir, 2)

        details = await manager.list_snapshot_details()

        assert [d.name for d in details] == [names[1], names[0]]
        assert details[0].created_at == datetime(2024, 1, 2, 8, 0, 0)
        assert details[0].size_bytes == len(b"old snapshot")
        assert details[0].path == backup_dir / names[1]
        assert await manager.last_snapshot_time() == datetime(2024, 1, 2, 8, 0, 0)


class TestRetention:
    """Tests for apply_retention."""

    @pytest.mark.asyncio
    async def test_keeps_newest(self, manager, backup_dir):
        names = _make_old_snapshots(backup_dir, 10)

        deleted = await manager.apply_retention()

        assert deleted == 3
        assert await manager.list_snapshots() == list(reversed(names[3:]))

    @pytest.mark.asyncio
    async def test_fewer_than_keep_count(self, manager, backup_dir):
        _make_old_snapshots(backup_dir, 3)

        assert await manager.apply_retention() == 0
        assert len(await manager.list_snapshots()) == 3

    @pytest.mark.asyncio
    async def test_explicit_keep_count(self, manager, backup_dir):
        names = _make_old_snapshots(backup_dir, 4)

        assert await manager.apply_retention(keep_count=1) == 3
        assert await manager.list_snapshots() == [names[-1]]

    @pytest.mark.asyncio
    async def test_deletion_failure_is_skipped(self, manager, backup_dir, monkeypatch):
        """A file that cannot be deleted does not stop the others."""
        names = _make_old_snapshots(backup_dir, 10)
        stuck = names[0]
        original_unlink = Path.unlink

        def unlink(self, missing_ok=False):
            if self.name == stuck:
                raise PermissionError("file in use")
            return original_unlink(self, missing_ok=missing_ok)

        monkeypatch.setattr(Path, "unlink", unlink)

        deleted = await manager.apply_retention()

        assert deleted == 2
        remaining = await manager.list_snapshots()
        assert stuck in remaining
        assert names[1] not in remaining
        assert names[2] not in remaining


class TestRestoreChecks:
    """Tests for restore_snapshot argument handling and verification."""

    @pytest.mark.asyncio
    async def test_unknown_name(self, manager, store):
        await store.save(Counter.new(41.0, 44.0))

        assert await manager.restore_snapshot("gascounters_backup_20240101_000000.db3") is False
        assert await store.count() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../gascounters.db3", "sub/file.db3", ""])
    async def test_rejects_non_plain_names(self, manager, store, backup_dir, name):
        backup_dir.mkdir(parents=True)
        await store.save(Counter.new(41.0, 44.0))

        assert await manager.restore_snapshot(name) is False
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_rejected(self, manager, store, backup_dir):
        """Verification refuses a file that is not a database; live data is untouched."""
        await store.save(Counter.new(41.0, 44.0))
        name = _make_old_snapshots(backup_dir, 1)[0]
        (backup_dir / name).write_bytes(b"garbage" * 1000)
        before = store.path.read_bytes()

        assert await manager.restore_snapshot(name) is False

        assert store.path.read_bytes() == before
        assert store.is_open is True
        assert manager.stats["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_without_counters_table_is_rejected(self, manager, store, backup_dir):
        await store.save(Counter.new(41.0, 44.0))
        backup_dir.mkdir(parents=True)
        name = snapshot_name(datetime(2024, 1, 1))
        conn = sqlite3.connect(backup_dir / name)
        conn.execute("CREATE TABLE unrelated (x INTEGER)")
        conn.commit()
        conn.close()

        assert await manager.restore_snapshot(name) is False
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_from_config(self, store, tmp_path):
        config = SnapshotConfig(keep_count=3, settle_delay_ms=0, verify_before_restore=False)

        manager = SnapshotManager.from_config(store, config, tmp_path)

        assert manager.backup_dir == tmp_path / "Backups"
        assert manager.keep_count == 3
        assert manager.verify_before_restore is False

    @pytest.mark.asyncio
    async def test_relative_backup_dir(self, store, tmp_path, monkeypatch):
        """A relative backup directory is anchored when the manager is built."""
        monkeypatch.chdir(tmp_path)
        manager = SnapshotManager(store, "Backups", settle_delay_ms=0)
        await store.save(Counter.new(41.0, 44.0))

        assert manager.backup_dir == tmp_path / "Backups"
        assert await manager.create_snapshot() is True

        name = (await manager.list_snapshots())[0]
        await store.save(Counter.new(42.0, 45.0))

        assert await manager.restore_snapshot(name) is True
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_verification_error_returns_false(self, manager, store, backup_dir, monkeypatch):
        await store.save(Counter.new(41.0, 44.0))
        name = _make_old_snapshots(backup_dir, 1)[0]

        def broken_verify(path):
            raise ValueError("cannot open snapshot")

        monkeypatch.setattr(manager, "_verify_snapshot", broken_verify)

        assert await manager.restore_snapshot(name) is False
        assert manager.stats["failure_count"] == 1
        assert store.is_open is True
        assert await store.count() == 1


class TestBackupIfDue:
    """Tests for backup_if_due."""

    @pytest.mark.asyncio
    async def test_first_backup_is_due(self, manager, store):
        await store.save(Counter.new(41.0, 44.0))

        assert await manager.backup_if_due() is True
        assert len(await manager.list_snapshots()) == 1

    @pytest.mark.asyncio
    async def test_recent_backup_is_not_due(self, manager, store):
        await store.save(Counter.new(41.0, 44.0))
        await manager.create_snapshot()

        assert await manager.backup_if_due() is False
        assert len(await manager.list_snapshots()) == 1

    @pytest.mark.asyncio
    async def test_old_backup_is_due(self, manager, store, backup_dir):
        _make_old_snapshots(backup_dir, 1)
        await store.save(Counter.new(41.0, 44.0))

        assert await manager.backup_if_due(max_age=timedelta(days=1)) is True
        assert len(await manager.list_snapshots()) == 2

    @pytest.mark.asyncio
    async def test_due_check_uses_manager_clock(self, store, backup_dir):
        """Age is measured against the injected clock, not the wall clock."""
        manager = SnapshotManager(
            store,
            backup_dir,
            settle_delay_ms=0,
            clock=lambda: datetime.now() + timedelta(days=2),
        )
        await store.save(Counter.new(41.0, 44.0))
        await manager.create_snapshot()

        assert await manager.backup_if_due(max_age=timedelta(days=1)) is True
        assert manager.stats["snapshot_count"] == 2


class TestSnapshotLoop:
    """Tests for the periodic loop and stats."""

    @pytest.mark.asyncio
    async def test_initial_stats(self, manager):
        assert manager.stats == {
            "running": False,
            "snapshot_count": 0,
            "restore_count": 0,
            "failure_count": 0,
        }

    @pytest.mark.asyncio
    async def test_loop_backs_up_and_stops(self, store, backup_dir):
        manager = SnapshotManager(store, backup_dir, settle_delay_ms=0, interval_seconds=3600)
        await store.save(Counter.new(41.0, 44.0))

        task = asyncio.create_task(manager.start())
        for _ in range(100):
            if manager.stats["snapshot_count"] == 1:
                break
            await asyncio.sleep(0.01)

        assert manager.stats["running"] is True
        assert manager.stats["snapshot_count"] == 1

        await manager.stop()
        await asyncio.wait_for(task, timeout=2)

        assert manager.stats["running"] is False
        assert store.is_open is True

    @pytest.mark.asyncio
    async def test_loop_cancellation(self, store, backup_dir):
        manager = SnapshotManager(store, backup_dir, settle_delay_ms=0, interval_seconds=3600)

        task = asyncio.create_task(manager.start())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert manager.stats["running"] is False
