"""Configuration management with validation.

Configuration is read once at process entry from the GitHub Actions inputs
(``INPUT_<NAME>`` environment variables) and passed explicitly to every
component. Nothing below the entry point reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_MIGRATIONS_DIR = "migrations"
DEFAULT_MASTER_PATTERN = "master-[YYYY]-[MM]-[DD]-[mm][ss]"
DEFAULT_FEATURE_PATTERN = "GH-[branch]"
DEFAULT_VERSION_CONTENT_TYPE = "versionTracking"
DEFAULT_VERSION_FIELD = "version"
DEFAULT_DELETE_FEATURE = False
DEFAULT_SET_ALIAS = False
DEFAULT_GRANT_API_KEY_ACCESS = True

# Alias served to production consumers
CONTENTFUL_ALIAS = "master"

# Readiness polling against the eventually consistent environments API
DEFAULT_MAX_ATTEMPTS = 10
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 100
DEFAULT_RETRY_DELAY_SECONDS = 3.0

DEFAULT_EVENT_NAME = "push"

# Contentful identifiers: content type ids and field ids
VALID_IDENTIFIER_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_\-.]{0,63}$"


def _input_name(name: str) -> str:
    """Map an action input name to its environment variable."""
    return f"INPUT_{name.replace(' ', '_').upper()}"


def get_input(name: str, default: str) -> str:
    """Read an action input, falling back when unset or blank."""
    value = os.environ.get(_input_name(name), "").strip()
    return value or default


def boolean_or(value: str, fallback: bool) -> bool:
    """Parse a boolean input; anything but "true"/"false" yields the fallback."""
    match value.strip().lower():
        case "true":
            return True
        case "false":
            return False
        case _:
            return fallback


@dataclass(frozen=True)
class Config:
    """Run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    management_api_key: str
    space_id: str

    # Migrations
    migrations_dir: Path = field(default_factory=lambda: Path(DEFAULT_MIGRATIONS_DIR))
    version_content_type: str = DEFAULT_VERSION_CONTENT_TYPE
    version_field: str = DEFAULT_VERSION_FIELD

    # Naming
    master_pattern: str = DEFAULT_MASTER_PATTERN
    feature_pattern: str = DEFAULT_FEATURE_PATTERN

    # Post-migration behaviour
    delete_feature: bool = DEFAULT_DELETE_FEATURE
    set_alias: bool = DEFAULT_SET_ALIAS
    grant_api_key_access: bool = DEFAULT_GRANT_API_KEY_ACCESS

    # Timing
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS

    # CI context
    event_name: str = DEFAULT_EVENT_NAME
    event_path: Path | None = None
    output_path: Path | None = None
    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.management_api_key:
            errors.append("management_api_key is required")
        if not self.space_id:
            errors.append("space_id is required")

        if not self.master_pattern:
            errors.append("master_pattern must not be empty")
        if not self.feature_pattern:
            errors.append("feature_pattern must not be empty")

        if not re.match(VALID_IDENTIFIER_PATTERN, self.version_content_type):
            errors.append(f"version_content_type is not a valid id: {self.version_content_type}")
        if not re.match(VALID_IDENTIFIER_PATTERN, self.version_field):
            errors.append(f"version_field is not a valid id: {self.version_field}")

        if not (MIN_MAX_ATTEMPTS <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
            )
        if self.retry_delay_seconds < 0:
            errors.append("retry_delay must not be negative")

        if not self.migrations_dir.is_dir():
            errors.append(f"Migrations directory does not exist: {self.migrations_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def environments_url(self) -> str:
        """Web app URL of the space's environments."""
        return f"https://app.contentful.com/spaces/{self.space_id}/environments"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from the GitHub Actions environment.

        Action inputs:
            management_api_key: Content management API token (required)
            space_id: Target Contentful space (required)
            migrations_dir: Migrations path relative to GITHUB_WORKSPACE
            master_pattern / feature_pattern: Environment naming patterns
            version_content_type / version_field: Version tracking entry
            delete_feature: Delete superseded feature environments
            set_alias: Point the master alias at new production environments
            grant_api_key_access: Link new environments to the space API keys
            max_attempts: Readiness polling attempts (default: 10)
            retry_delay: Seconds between attempts (default: 3)

        CI context:
            GITHUB_WORKSPACE, GITHUB_EVENT_NAME, GITHUB_EVENT_PATH,
            GITHUB_OUTPUT, LOG_LEVEL ("verbose" enables debug logs)
        """

        def get_int(name: str, default: int) -> int:
            value = get_input(name, "")
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{name} must be an integer: {value}") from e

        def get_float(name: str, default: float) -> float:
            value = get_input(name, "")
            if not value:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{name} must be a number: {value}") from e

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        workspace = Path(os.environ.get("GITHUB_WORKSPACE") or Path.cwd())

        return cls(
            management_api_key=get_input("management_api_key", ""),
            space_id=get_input("space_id", ""),
            migrations_dir=workspace / get_input("migrations_dir", DEFAULT_MIGRATIONS_DIR),
            version_content_type=get_input("version_content_type", DEFAULT_VERSION_CONTENT_TYPE),
            version_field=get_input("version_field", DEFAULT_VERSION_FIELD),
            master_pattern=get_input("master_pattern", DEFAULT_MASTER_PATTERN),
            feature_pattern=get_input("feature_pattern", DEFAULT_FEATURE_PATTERN),
            delete_feature=boolean_or(get_input("delete_feature", ""), DEFAULT_DELETE_FEATURE),
            set_alias=boolean_or(get_input("set_alias", ""), DEFAULT_SET_ALIAS),
            grant_api_key_access=boolean_or(
                get_input("grant_api_key_access", ""), DEFAULT_GRANT_API_KEY_ACCESS
            ),
            max_attempts=get_int("max_attempts", DEFAULT_MAX_ATTEMPTS),
            retry_delay_seconds=get_float("retry_delay", DEFAULT_RETRY_DELAY_SECONDS),
            event_name=os.environ.get("GITHUB_EVENT_NAME") or DEFAULT_EVENT_NAME,
            event_path=get_path("GITHUB_EVENT_PATH"),
            output_path=get_path("GITHUB_OUTPUT"),
            verbose=os.environ.get("LOG_LEVEL", "").lower() == "verbose",
        )
