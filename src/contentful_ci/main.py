"""Main entry point for the Contentful CI migration action.

Runs once per workflow trigger: reads the action inputs and event payload,
provisions the environment for the branch, applies pending migrations and
exits non-zero when a fatal step fails.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime

from .action import RunResult, run_action
from .branches import load_event
from .config import Config, ConfigurationError
from .remote import ContentfulStore

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from the HTTP stack
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def report_failure(message: str) -> None:
    """Surface a fatal error as a workflow annotation when running in Actions."""
    if os.environ.get("GITHUB_ACTIONS") == "true":
        # Workflow commands are single-line; encode newlines as the runner expects
        encoded = message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")
        sys.stdout.write(f"::error::{encoded}\n")
        sys.stdout.flush()


async def execute(config: Config, logger: logging.Logger) -> int:
    """Run the action for a loaded configuration.

    Returns:
        Exit code (0 for success, 1 for a fatal failure).
    """
    if config.event_path is None:
        logger.error("GITHUB_EVENT_PATH is not set")
        report_failure("GITHUB_EVENT_PATH is not set")
        return 1

    try:
        event = load_event(config.event_path)
    except ConfigurationError as e:
        logger.error("Event payload error", extra={"error": str(e)})
        report_failure(str(e))
        return 1

    logger.info(
        "Starting Contentful migration run",
        extra={
            "space_id": config.space_id,
            "event_name": config.event_name,
            "migrations_dir": str(config.migrations_dir),
        },
    )

    store = ContentfulStore.connect(config.management_api_key, config.space_id)

    try:
        result: RunResult = await run_action(config, store, event)
    except Exception as e:
        logger.exception("Run failed unexpectedly", extra={"error": str(e)})
        report_failure(str(e))
        return 1

    if not result.success:
        report_failure(str(result.error))
        return 1
    return 0


async def main() -> int:
    """Run the action from the GitHub Actions environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging(verbose=os.environ.get("LOG_LEVEL", "").lower() == "verbose")
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        report_failure(str(e))
        return 1

    return await execute(config, logger)


def run() -> None:
    """Entry point for the action."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
