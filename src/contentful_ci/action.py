"""Run orchestration.

One run per CI trigger, strictly sequential:

    classify event -> provision environment -> apply migrations -> alias / cleanup

Fatal failures (configuration, provisioning, migrations, exhausted retries)
stop the run and are reported on the result. Alias and cleanup failures are
recorded but leave the run successful.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .aliases import AliasError, AliasManager, CleanupError
from .branches import EnvironmentIntent, GitHubEvent, classify, resolve_intent
from .config import Config, ConfigurationError
from .migrations import MigrationError, VersionTracker
from .provisioner import EnvironmentProvisioner, ProvisionError
from .remote import RemoteError, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of a single run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    intent: EnvironmentIntent | None = None
    environment_url: str | None = None
    applied_versions: list[str] = field(default_factory=list)
    alias_updated: bool = False
    deleted_environments: list[str] = field(default_factory=list)
    error: Exception | None = None
    alias_error: AliasError | None = None
    cleanup_error: CleanupError | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the run succeeded. Post-migration step failures do not count."""
        return self.error is None

    @property
    def environment_id(self) -> str | None:
        return self.intent.environment_id if self.intent else None


def write_outputs(output_path: Path, outputs: dict[str, str]) -> None:
    """Append step outputs in the ``name=value`` format of ``GITHUB_OUTPUT``."""
    with output_path.open("a", encoding="utf-8") as handle:
        for name, value in outputs.items():
            handle.write(f"{name}={value}\n")


async def run_action(
    config: Config,
    store: RemoteStore,
    event: GitHubEvent,
    *,
    now: datetime | None = None,
) -> RunResult:
    """Execute one run for the triggering event.

    Args:
        config: Validated run configuration.
        store: Remote store for the configured space.
        event: Parsed workflow event payload.
        now: Instant used for time tokens in naming patterns.

    Returns:
        RunResult describing what happened. Never raises for expected failures.
    """
    result = RunResult()

    try:
        branch_names = classify(config.event_name, event)
        intent = resolve_intent(branch_names, config, now=now)
        result.intent = intent

        environment = await EnvironmentProvisioner(store, config).provision(intent)
        result.environment_url = f"{config.environments_url}/{intent.environment_id}"

        tracker = VersionTracker(store, config)
        result.applied_versions = await tracker.apply_pending(
            environment, config.migrations_dir
        )

        aliases = AliasManager(store, config)
        logger.debug("Checking if we need to update master alias")
        try:
            result.alias_updated = await aliases.promote(environment, intent)
        except AliasError as e:
            logger.error(str(e))
            result.alias_error = e

        try:
            result.deleted_environments = await aliases.cleanup(intent)
        except CleanupError as e:
            logger.error(str(e))
            result.cleanup_error = e

        if config.output_path is not None:
            write_outputs(
                config.output_path,
                {
                    "environment_url": result.environment_url or "",
                    "environment_name": intent.environment_id,
                },
            )

    except (ConfigurationError, ProvisionError, MigrationError) as e:
        result.error = e
    except RemoteError as e:
        # Includes TransientRemoteError once its attempts are exhausted
        result.error = e
    except OSError as e:
        logger.exception("Unexpected I/O error during run")
        result.error = e

    result.end_time = datetime.now(UTC)
    _log_result(result)
    return result


def _log_result(result: RunResult) -> None:
    """Log run result with structured data."""
    extra: dict[str, Any] = {
        "environment_id": result.environment_id,
        "environment_type": (
            result.intent.environment_type.value if result.intent is not None else None
        ),
        "duration_seconds": result.duration_seconds,
        "applied_versions": result.applied_versions,
        "alias_updated": result.alias_updated,
        "deleted_environments": result.deleted_environments,
    }

    if result.error is not None:
        extra["error"] = str(result.error)
        extra["error_type"] = type(result.error).__name__
        logger.error("Run failed", extra=extra)
    elif result.alias_error is not None or result.cleanup_error is not None:
        logger.warning("Run completed with post-migration errors", extra=extra)
    else:
        logger.info("All done", extra=extra)
