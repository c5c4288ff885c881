"""Versioned migrations and their tracking.

Migrations are Python modules in the migrations directory, one per version.
The version is the filename without extension, with ``_`` standing in for
``.`` (``1_0_1.py`` is version ``1.0.1``). Each module defines::

    def migrate(environment):  # or: async def migrate(environment)
        ...

where ``environment`` is the ``contentful_management`` environment resource.

Versions are ordered as plain strings; there is no numeric or semver
parsing, so ``10`` sorts before ``2``. Zero-pad versions that need numeric
order.

CRASH CONSISTENCY:
The version tracking entry is updated and published after every single
migration, before the next one starts. An interrupted run leaves at most one
migration applied but unrecorded, and the next run resumes after the last
recorded version.
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import re
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from types import ModuleType
from typing import Any

from .config import Config
from .remote import RemoteEnvironment, RemoteStore, VersionRecord, with_retries

logger = logging.getLogger(__name__)

MIGRATION_EXTENSION = ".py"
MIGRATION_FILENAME_PATTERN = re.compile(r"^\d+(_\d+)*\.py$")
MIGRATION_ENTRYPOINT = "migrate"

# Migration modules are source files; refuse anything unreasonably large
MAX_MIGRATION_FILE_SIZE_BYTES = 1024 * 1024


class MigrationError(Exception):
    """Raised when migrations cannot be discovered, tracked or applied."""

    def __init__(self, message: str, version: str | None = None) -> None:
        super().__init__(message)
        self.version = version


# =============================================================================
# Filenames and Versions
# =============================================================================


def filename_to_version(filename: str) -> str:
    """Convert a migration filename to its version.

    Examples:
        >>> filename_to_version("1.py")
        '1'
        >>> filename_to_version("1_0_1.py")
        '1.0.1'
    """
    if filename.endswith(MIGRATION_EXTENSION):
        filename = filename[: -len(MIGRATION_EXTENSION)]
    return filename.replace("_", ".")


def version_to_filename(version: str) -> str:
    """Convert a version to its migration filename.

    Examples:
        >>> version_to_filename("1.0.1")
        '1_0_1.py'
    """
    return f"{version.replace('.', '_')}{MIGRATION_EXTENSION}"


def is_migration_filename(filename: str) -> bool:
    """Check whether a filename follows the migration naming convention."""
    return MIGRATION_FILENAME_PATTERN.match(filename) is not None


@dataclass(frozen=True)
class Migration:
    """A local migration script."""

    version: str
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


def discover_migrations(directory: Path) -> list[Migration]:
    """List the migrations in a directory, in application order.

    Files not following the naming convention are ignored.

    Raises:
        MigrationError: If the directory does not exist.
    """
    if not directory.is_dir():
        raise MigrationError(f"Migrations directory not found: {directory}")

    migrations = [
        Migration(version=filename_to_version(path.name), path=path)
        for path in directory.iterdir()
        if path.is_file() and is_migration_filename(path.name)
    ]
    migrations.sort(key=lambda m: m.version)
    return migrations


def pending_migrations(migrations: list[Migration], last_applied: str | None) -> list[Migration]:
    """Select the migrations strictly after the last applied version.

    Args:
        migrations: Available migrations (any order).
        last_applied: Version stored remotely, or None when nothing was applied.

    Returns:
        Migrations to apply, in order.
    """
    ordered = sorted(migrations, key=lambda m: m.version)
    if last_applied is None:
        return ordered

    if all(m.version != last_applied for m in ordered):
        logger.warning(
            f"Version {last_applied} is not matching with any known migration",
            extra={"last_applied": last_applied},
        )
    return [m for m in ordered if m.version > last_applied]


def load_migration(migration: Migration) -> Any:
    """Import a migration module and return its ``migrate`` callable.

    Raises:
        MigrationError: If the file cannot be imported or lacks ``migrate``.
    """
    path = migration.path
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise MigrationError(f"Cannot read migration {path}: {e}", migration.version) from e
    if file_size > MAX_MIGRATION_FILE_SIZE_BYTES:
        raise MigrationError(
            f"Migration {path.name} exceeds {MAX_MIGRATION_FILE_SIZE_BYTES} bytes",
            migration.version,
        )

    module_name = f"_contentful_ci_migration_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise MigrationError(f"Cannot load migration {path.name}", migration.version)

    module: ModuleType = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise MigrationError(
            f"Migration script {path.name} failed to load: {e}", migration.version
        ) from e

    migrate = getattr(module, MIGRATION_ENTRYPOINT, None)
    if not callable(migrate):
        raise MigrationError(
            f"Migration script {path.name} does not define {MIGRATION_ENTRYPOINT}()",
            migration.version,
        )
    return migrate


async def run_migration(migration: Migration, environment: RemoteEnvironment) -> None:
    """Execute one migration against an environment.

    Synchronous ``migrate`` functions run in the default executor.

    Raises:
        MigrationError: If loading or running the script fails.
    """
    migrate = load_migration(migration)
    try:
        if inspect.iscoroutinefunction(migrate):
            await migrate(environment.resource)
        else:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, partial(migrate, environment.resource))
    except Exception as e:
        raise MigrationError(
            f"Migration script {migration.filename} failed: {e}", migration.version
        ) from e


# =============================================================================
# Version Tracker
# =============================================================================


class VersionTracker:
    """Applies pending migrations and records progress on the environment."""

    def __init__(self, store: RemoteStore, config: Config) -> None:
        self._store = store
        self._config = config

    async def _with_retries(self, operation: Any, description: str) -> Any:
        return await with_retries(
            operation,
            max_attempts=self._config.max_attempts,
            delay_seconds=self._config.retry_delay_seconds,
            description=description,
        )

    async def read_version_record(
        self, environment: RemoteEnvironment, locale: str
    ) -> VersionRecord | None:
        """Fetch the version tracking entry of an environment.

        Returns:
            The record, or None when the environment has no tracking entry.

        Raises:
            MigrationError: If more than one tracking entry exists.
        """
        content_type = self._config.version_content_type
        records = await self._with_retries(
            lambda: self._store.get_version_records(
                environment, content_type, self._config.version_field, locale
            ),
            f"Read '{content_type}' entries",
        )
        if len(records) > 1:
            raise MigrationError(f'There should only be one entry of type "{content_type}"')
        return records[0] if records else None

    async def apply_pending(
        self, environment: RemoteEnvironment, migrations_dir: Path
    ) -> list[str]:
        """Apply every migration newer than the recorded version, in order.

        Args:
            environment: Ready environment to migrate.
            migrations_dir: Directory holding the migration scripts.

        Returns:
            Versions applied by this call, in order.

        Raises:
            MigrationError: On the first failing migration; later ones are skipped.
            TransientRemoteError: If reading or writing the record keeps failing.
        """
        logger.debug("Read all the available migrations from the file system")
        available = discover_migrations(migrations_dir)

        locale = await self._with_retries(
            lambda: self._store.default_locale(environment), "Read default locale"
        )

        logger.debug("Find current version of the contentful space")
        record = await self.read_version_record(environment, locale)
        last_applied = record.version if record else None
        logger.info(
            f"Current version: {last_applied or 'none'}",
            extra={"environment_id": environment.environment_id, "version": last_applied},
        )

        logger.debug("Evaluate which migrations to run")
        to_run = pending_migrations(available, last_applied)
        if not to_run:
            logger.info("No migrations to run")
            return []

        logger.debug("Run migrations and update version entry")
        applied: list[str] = []
        for migration in to_run:
            start_time = time.monotonic()
            logger.debug(f"Running {migration.path}")
            await run_migration(migration, environment)
            logger.info(
                f"Migration script {migration.filename} succeeded",
                extra={
                    "version": migration.version,
                    "duration_seconds": round(time.monotonic() - start_time, 2),
                },
            )

            current = record
            record = await self._with_retries(
                lambda: self._store.write_version(
                    environment,
                    current,
                    self._config.version_content_type,
                    self._config.version_field,
                    locale,
                    migration.version,
                ),
                f"Update version entry to {migration.version}",
            )
            applied.append(migration.version)
            logger.info(f"Updated version entry to {migration.version}")

        return applied
