"""
Snapshot module for GasCounter.

This module handles file-level copies of the database for:
- Daily automatic backups (and on-demand ones)
- Keeping only the newest few copies
- Restoring a chosen copy with rollback on failure

Invariants:
    - Snapshots are taken while the store is closed
    - The store is reopened after every snapshot or restore attempt
"""

from .snapshot_manager import SnapshotInfo, SnapshotManager, snapshot_name

__all__ = ["SnapshotManager", "SnapshotInfo", "snapshot_name"]
