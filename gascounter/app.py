"""
GasCounter application wiring.

Builds the core components in dependency order and owns their lifecycle:
- PathResolver (canonical database path, legacy migration)
- CounterStore (the single database connection)
- SnapshotManager (backups, retention, restore, periodic loop)

The UI layer creates one GasCounterServices at startup and passes the
store and snapshot manager to its pages.

Invariants:
    - Exactly one CounterStore per process, shared by every caller
    - The snapshot loop is stopped before the store is closed
    - Logging is configured once, before any component logs

How to change safely:
    - Add new components with their own config section
    - Keep aclose() idempotent; the UI may call it on every suspend
"""

from __future__ import annotations

import asyncio
import logging

import json_log_formatter

from .config import AppConfig
from .snapshot import SnapshotManager
from .store import CounterStore, PathResolver

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Application configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class GasCounterServices:
    """Composition root for the persistence core.

    Attributes:
        config: Application configuration
        resolver: Path resolver used for the store
        store: The shared CounterStore
        snapshots: SnapshotManager for the store

    Example:
        >>> async with GasCounterServices.create() as services:
        ...     await services.snapshots.backup_if_due()
        ...     total = await services.store.count()
    """

    def __init__(
        self,
        config: AppConfig,
        resolver: PathResolver,
        store: CounterStore,
        snapshots: SnapshotManager,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.store = store
        self.snapshots = snapshots
        self._snapshot_task: asyncio.Task[None] | None = None

    @classmethod
    def create(
        cls,
        config: AppConfig | None = None,
        resolver: PathResolver | None = None,
        configure_logging: bool = False,
    ) -> GasCounterServices:
        """Build all components.

        Args:
            config: Configuration (loaded from env if not provided)
            resolver: Path resolver (platform directories if not provided)
            configure_logging: Install the root log handler

        Returns:
            Wired services; the store is not opened yet
        """
        config = config or AppConfig.from_env()
        config.validate()
        if configure_logging:
            setup_logging(config)
        config.log_config()

        resolver = resolver or PathResolver.from_config(config.storage)
        store = CounterStore.from_config(config.storage, resolver)
        snapshots = SnapshotManager.from_config(store, config.snapshot, resolver.app_data_dir)

        logger.info(
            "Services created",
            extra={"db_path": str(store.path), "backup_dir": str(snapshots.backup_dir)},
        )
        return cls(config, resolver, store, snapshots)

    def start_background(self) -> asyncio.Task[None]:
        """Start the periodic snapshot loop as a task (idempotent)."""
        if self._snapshot_task is None or self._snapshot_task.done():
            self._snapshot_task = asyncio.create_task(self.snapshots.start())
        return self._snapshot_task

    async def aclose(self) -> None:
        """Stop the snapshot loop and close the store."""
        task, self._snapshot_task = self._snapshot_task, None
        if task is not None:
            await self.snapshots.stop()
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Snapshot loop did not stop in time, cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.store.close()

    async def __aenter__(self) -> GasCounterServices:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
