"""Branch event classification.

Turns the GitHub event that triggered the workflow into the branch names
involved and, from those, the environment this run works on.

ENVIRONMENT TYPE RULES:
- A direct push to the default branch is production-grade and gets a fresh
  environment named from the master pattern.
- Anything else, including every pull request (even one targeting the
  default branch), gets a feature environment named from the feature pattern.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .config import CONTENTFUL_ALIAS, Config, ConfigurationError
from .naming import (
    Token,
    branch_to_environment_name,
    has_token,
    resolve_pattern,
    validate_environment_id,
)

logger = logging.getLogger(__name__)

# Events comparing a head branch against a base branch
COMPARE_EVENTS: frozenset[str] = frozenset({"pull_request", "pull_request_target"})

_REF_PREFIX_PATTERN = re.compile(r"^refs/(heads|tags)/")

# Refuse to read absurd payloads
MAX_EVENT_FILE_SIZE_BYTES = 25 * 1024 * 1024


# =============================================================================
# Event Payload Models
# =============================================================================


class RepositoryInfo(BaseModel):
    """Repository metadata carried by every event."""

    model_config = {"extra": "ignore"}

    default_branch: str = Field(min_length=1)


class PullRequestRef(BaseModel):
    """Head or base side of a pull request."""

    model_config = {"extra": "ignore"}

    ref: str = Field(min_length=1)


class PullRequestInfo(BaseModel):
    """The parts of a pull request payload used for classification."""

    model_config = {"extra": "ignore"}

    head: PullRequestRef
    base: PullRequestRef
    merged: bool | None = False


class GitHubEvent(BaseModel):
    """Workflow event payload (``GITHUB_EVENT_PATH``)."""

    model_config = {"extra": "ignore"}

    repository: RepositoryInfo
    ref: str | None = None
    pull_request: PullRequestInfo | None = None


def load_event(event_path: Path) -> GitHubEvent:
    """Load and validate the event payload written by the runner.

    Raises:
        ConfigurationError: If the payload is missing, unreadable or invalid.
    """
    if not event_path.is_file():
        raise ConfigurationError(f"Event payload not found: {event_path}")

    try:
        file_size = event_path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Cannot stat event payload {event_path}: {e}") from e
    if file_size > MAX_EVENT_FILE_SIZE_BYTES:
        raise ConfigurationError(f"Event payload too large: {file_size} bytes")

    try:
        data = json.loads(event_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read event payload {event_path}: {e}") from e

    try:
        return GitHubEvent.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid event payload: {e}") from e


# =============================================================================
# Classification
# =============================================================================


class EnvironmentType(str, Enum):
    """Lifecycle intent of the environment a run provisions."""

    PRODUCTION = CONTENTFUL_ALIAS
    FEATURE = "feature"


@dataclass(frozen=True)
class BranchNames:
    """Branches involved in the triggering event.

    ``head_ref`` is only set for compare events (pull requests); otherwise the
    event targets ``base_ref`` directly.
    """

    head_ref: str | None
    base_ref: str
    default_branch: str
    merged: bool = False

    @property
    def is_compare(self) -> bool:
        return self.head_ref is not None


@dataclass(frozen=True)
class EnvironmentNames:
    """Branch names converted to environment-safe names."""

    base: str
    head: str | None


@dataclass(frozen=True)
class EnvironmentIntent:
    """Which environment this run provisions and why."""

    environment_type: EnvironmentType
    environment_id: str
    environment_names: EnvironmentNames
    branch_names: BranchNames

    @property
    def branch_name(self) -> str:
        """Branch the environment belongs to."""
        return self.branch_names.head_ref or self.branch_names.base_ref


def classify(event_name: str, event: GitHubEvent) -> BranchNames:
    """Extract branch names from an event.

    Raises:
        ConfigurationError: If the payload lacks the refs its event type needs.
    """
    default_branch = event.repository.default_branch
    logger.debug(f'Getting branch names for "{event_name}"')

    if event_name in COMPARE_EVENTS:
        if event.pull_request is None:
            raise ConfigurationError(f"'{event_name}' event without pull_request payload")
        return BranchNames(
            head_ref=event.pull_request.head.ref,
            base_ref=event.pull_request.base.ref,
            default_branch=default_branch,
            merged=bool(event.pull_request.merged),
        )

    if not event.ref:
        raise ConfigurationError(f"'{event_name}' event without ref")
    return BranchNames(
        head_ref=None,
        base_ref=_REF_PREFIX_PATTERN.sub("", event.ref),
        default_branch=default_branch,
    )


def environment_type_for(branch_names: BranchNames) -> EnvironmentType:
    """Decide between a production and a feature environment."""
    environment_type = (
        EnvironmentType.PRODUCTION
        if branch_names.base_ref == branch_names.default_branch
        else EnvironmentType.FEATURE
    )
    # Compare events are provisional, whatever they target
    if branch_names.is_compare:
        environment_type = EnvironmentType.FEATURE
    return environment_type


def resolve_intent(
    branch_names: BranchNames,
    config: Config,
    *,
    now: datetime | None = None,
) -> EnvironmentIntent:
    """Derive the environment id and type for a run.

    Raises:
        ConfigurationError: If the pattern needs a branch that is missing or
            resolves to an invalid environment id.
    """
    environment_names = EnvironmentNames(
        base=branch_to_environment_name(branch_names.base_ref),
        head=(
            branch_to_environment_name(branch_names.head_ref)
            if branch_names.head_ref is not None
            else None
        ),
    )

    logger.debug(
        f"MASTER_PATTERN: {config.master_pattern} | FEATURE_PATTERN: {config.feature_pattern}"
    )

    environment_type = environment_type_for(branch_names)
    logger.debug(f"Environment type: {environment_type.value}")

    if environment_type is EnvironmentType.PRODUCTION:
        pattern = config.master_pattern
        branch_name = branch_names.base_ref
    else:
        pattern = config.feature_pattern
        branch_name = branch_names.head_ref or branch_names.base_ref

    if has_token(pattern, Token.branch) and not branch_name:
        raise ConfigurationError(f"Pattern '{pattern}' requires a branch name")

    environment_id = validate_environment_id(
        resolve_pattern(pattern, branch_name, now=now), pattern
    )
    logger.debug(f'Environment id: "{environment_id}"')

    return EnvironmentIntent(
        environment_type=environment_type,
        environment_id=environment_id,
        environment_names=environment_names,
        branch_names=branch_names,
    )
