"""
GasCounter - local persistence and snapshot core for gas-meter field inventory.

Field staff record physical gas-meter installations (coordinates, customer,
street, status) and re-check them in periodic inspection cycles. This
package is the part of the application that owns the data:

- PathResolver picks one durable location for the SQLite file
- CounterStore owns the single connection to that file
- SnapshotManager copies, retires and restores the file on disk

Architecture:
    ┌──────────────┐      ┌──────────────┐      ┌──────────────────┐
    │  UI / pages  │─────▶│ CounterStore │─────▶│ gascounters.db3  │
    └──────┬───────┘      └──────▲───────┘      └────────▲─────────┘
           │                     │ close/reopen          │ copy
           │              ┌──────┴──────────┐            │
           └─────────────▶│ SnapshotManager │────────────┘
                          └─────────────────┘
                                   │
                                   ▼
                          <app-data>/Backups/

Invariants:
    - Exactly one database file is authoritative per run
    - The store is usable after every snapshot or restore attempt
    - Snapshots are whole-file copies taken while the store is closed

How to change safely:
    - Never delete the legacy database during migration
    - Keep the snapshot naming pattern sortable by name
    - Run the integration suite after touching the close/reopen sequence
"""

from ._version import __version__

__all__ = ["__version__"]
