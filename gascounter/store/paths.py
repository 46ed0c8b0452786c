"""
Database path resolution for GasCounter.

Picks the single canonical location of the SQLite file for this run:

1. A permission-durable external directory when the platform offers one
   (Android shared Downloads, which survives clearing app data)
2. Otherwise the private application-data directory

The legacy location (private app data) is copied once into the chosen
directory when the new location has no database yet.

Invariants:
    - resolve() never raises; it always returns a usable path
    - The legacy database is copied, never moved or deleted
    - Migration only runs when the target file does not exist yet

How to change safely:
    - Keep the legacy path stable; old installs depend on it
    - Test with both a missing and an unwritable durable directory
"""

from __future__ import annotations

import functools
import logging
import os
import shutil
from collections.abc import Callable
from pathlib import Path

import platformdirs
from platformdirs.android import Android

from ..config import StorageConfig

logger = logging.getLogger(__name__)

DirectoryProvider = Callable[[], "Path | str | None"]


def android_durable_dir(app_name: str) -> Path | None:
    """Return the shared Downloads folder for the app on Android, else None."""
    if not issubclass(platformdirs.PlatformDirs, Android):
        return None
    downloads = platformdirs.user_downloads_dir()
    if not downloads:
        return None
    return Path(downloads) / app_name


class PathResolver:
    """Resolves and migrates the canonical database path.

    The resolver is a pure function of the two directory sources it is
    given plus filesystem state, so tests inject temporary directories.

    Attributes:
        app_data_dir: Private application-data directory (also the legacy location)
        db_filename: Database file name

    Example:
        >>> resolver = PathResolver.from_config(StorageConfig())
        >>> db_path = resolver.resolve()
    """

    def __init__(
        self,
        app_data_dir: Path | str | None = None,
        durable_dir_provider: DirectoryProvider | None = None,
        db_filename: str = "gascounters.db3",
        app_name: str = "GasCounterApp",
    ) -> None:
        """Initialize the resolver.

        Args:
            app_data_dir: Private app-data directory (platform default if omitted)
            durable_dir_provider: Callable returning the durable directory or None
            db_filename: Database file name
            app_name: Application directory name for platform defaults
        """
        if app_data_dir is None:
            app_data_dir = platformdirs.user_data_dir(app_name, appauthor=False)
        if durable_dir_provider is None:
            durable_dir_provider = functools.partial(android_durable_dir, app_name)

        self.app_data_dir = Path(app_data_dir)
        self.db_filename = db_filename
        self._durable_dir_provider = durable_dir_provider

    @classmethod
    def from_config(cls, config: StorageConfig) -> PathResolver:
        """Build a resolver using platform directories."""
        return cls(db_filename=config.db_filename, app_name=config.app_name)

    @property
    def legacy_path(self) -> Path:
        """Location used by earlier releases."""
        return self.app_data_dir / self.db_filename

    def resolve(self) -> Path:
        """Return the canonical database path.

        Returns:
            Absolute path of the database file (which may not exist yet)
        """
        try:
            directory = self._choose_directory()
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / self.db_filename
        except Exception as e:
            logger.warning(
                f"Failed to initialize database directory, falling back to app data: {e}"
            )
            path = self._fallback_path()

        self._migrate_legacy(path)
        logger.debug("Resolved database path", extra={"db_path": str(path)})
        return path.absolute()

    def _choose_directory(self) -> Path:
        """Pick the durable directory when usable, else app data."""
        durable = self._durable_dir_provider()
        if durable:
            durable = Path(durable)
            if self._is_usable(durable):
                return durable
            logger.info(
                "Durable storage directory not accessible",
                extra={"directory": str(durable)},
            )
        return self.app_data_dir

    def _is_usable(self, directory: Path) -> bool:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(directory, os.W_OK)

    def _fallback_path(self) -> Path:
        """Deterministic app-data path used when resolution fails."""
        try:
            self.app_data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create app data directory {self.app_data_dir}: {e}")
        return self.app_data_dir / self.db_filename

    def _migrate_legacy(self, path: Path) -> bool:
        """Copy the legacy database to path if needed.

        Best-effort: failures are logged and resolution continues with the
        (possibly empty) new path.

        Returns:
            True if a copy was made
        """
        legacy = self.legacy_path
        copying = False
        try:
            if path.absolute() == legacy.absolute():
                return False
            if not legacy.exists() or path.exists():
                return False
            copying = True
            shutil.copyfile(legacy, path)
        except OSError as e:
            logger.warning(
                f"Legacy database migration failed: {e}",
                extra={"legacy_path": str(legacy), "db_path": str(path)},
            )
            if copying:
                # A half-written copy would block every later migration attempt
                self._discard_partial(path)
            return False

        logger.info(
            "Migrated legacy database",
            extra={"legacy_path": str(legacy), "db_path": str(path)},
        )
        return True

    def _discard_partial(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial migration copy {path}: {e}")
            return False
        return True
