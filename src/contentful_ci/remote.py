"""Contentful management API access.

Wraps the blocking ``contentful_management`` client so the rest of the
package deals in environment ids and a small error taxonomy:

- RemoteNotFoundError: expected absence, callers treat it as a normal branch
- TransientRemoteError: rate limiting, 5xx, network or propagation lag
- AlreadyExistsError: create on an id that is already taken
- RemoteError: everything else (auth, validation); never retried

SDK calls run in the default executor so the event loop only ever waits
cooperatively on remote round trips and poll delays.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, TypeVar

import requests
from contentful_management import Client
from contentful_management.errors import HTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses worth retrying
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})
CONFLICT_STATUS_CODES: frozenset[int] = frozenset({409})

ENVIRONMENT_STATUS_READY = "ready"
ENVIRONMENT_STATUS_FAILED = "failed"
ENVIRONMENT_STATUS_QUEUED = "queued"

MANAGEMENT_API_URL = "https://api.contentful.com"
MANAGEMENT_CONTENT_TYPE = "application/vnd.contentful.management.v1+json"
REQUEST_TIMEOUT_SECONDS = 30


# =============================================================================
# Errors
# =============================================================================


class RemoteError(Exception):
    """Raised when a Contentful API call fails permanently."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFoundError(RemoteError):
    """Raised when the requested resource does not exist."""

    pass


class TransientRemoteError(RemoteError):
    """Raised for failures that may succeed when retried."""

    pass


class AlreadyExistsError(RemoteError):
    """Raised when creating a resource whose id is already taken."""

    pass


def translate_error(error: Exception, description: str) -> RemoteError:
    """Map an SDK or transport exception to the remote error taxonomy."""
    if isinstance(error, (HTTPError, requests.HTTPError)):
        status_code = getattr(error.response, "status_code", None)
        message = f"{description} failed ({status_code}): {error}"
        if status_code == 404:
            return RemoteNotFoundError(message, status_code)
        if status_code in TRANSIENT_STATUS_CODES:
            return TransientRemoteError(message, status_code)
        if status_code in CONFLICT_STATUS_CODES:
            return AlreadyExistsError(message, status_code)
        return RemoteError(message, status_code)
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return TransientRemoteError(f"{description} failed: {error}")
    return RemoteError(f"{description} failed: {error}")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    delay_seconds: float,
    description: str,
) -> T:
    """Run an operation, retrying transient failures with a fixed delay.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        max_attempts: Total number of calls before giving up.
        delay_seconds: Pause between attempts.
        description: Human-readable operation name for logging.

    Returns:
        The operation's result.

    Raises:
        TransientRemoteError: The last failure once all attempts are spent.
        RemoteError: Any non-transient failure, immediately.
    """
    last_error: TransientRemoteError | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except TransientRemoteError as e:
            last_error = e
            if attempt < max_attempts:
                logger.warning(
                    f"{description} failed, retrying",
                    extra={
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": delay_seconds,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(delay_seconds)

    assert last_error is not None, "Retry loop completed without setting last_error"
    logger.error(
        f"{description} failed after {max_attempts} attempts",
        extra={"error": str(last_error)},
    )
    raise last_error


# =============================================================================
# Resources
# =============================================================================


@dataclass(frozen=True)
class RemoteEnvironment:
    """Handle to a provisioned environment."""

    environment_id: str
    status: str | None
    resource: Any = None

    @property
    def is_ready(self) -> bool:
        return self.status == ENVIRONMENT_STATUS_READY

    @property
    def has_failed(self) -> bool:
        return self.status == ENVIRONMENT_STATUS_FAILED


@dataclass(frozen=True)
class VersionRecord:
    """The entry holding the last successfully applied migration version."""

    entry_id: str
    version: str | None
    resource: Any = None


def _environment_status(environment: Any) -> str | None:
    """Read ``sys.status`` whether the SDK hydrated it as a link or a dict."""
    status = environment.sys.get("status")
    if status is None:
        return None
    if isinstance(status, dict):
        return status.get("sys", {}).get("id")
    return getattr(status, "id", None)


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _environment_link(environment_id: str) -> dict[str, Any]:
    return {"sys": {"type": "Link", "linkType": "Environment", "id": environment_id}}


def _link_id(link: Any) -> str | None:
    if isinstance(link, dict):
        return link.get("sys", {}).get("id")
    return getattr(link, "id", None)


def _link_json(link: Any) -> dict[str, Any]:
    if isinstance(link, dict):
        return link
    return link.to_json()


# =============================================================================
# Store
# =============================================================================


class RemoteStore:
    """Abstract interface to the environments, entries and aliases of a space.

    Implementations:
    - ContentfulStore: Uses the Content Management API
    - MockContentfulStore (tests): In-memory state with failure injection
    """

    async def create_environment(self, environment_id: str) -> RemoteEnvironment:
        raise NotImplementedError

    async def get_environment(self, environment_id: str) -> RemoteEnvironment:
        raise NotImplementedError

    async def find_environment(self, environment_id: str) -> RemoteEnvironment | None:
        """Fetch an environment, returning None when it does not exist."""
        try:
            return await self.get_environment(environment_id)
        except RemoteNotFoundError:
            return None

    async def delete_environment(self, environment_id: str) -> None:
        raise NotImplementedError

    async def list_environment_ids(self) -> list[str]:
        raise NotImplementedError

    async def default_locale(self, environment: RemoteEnvironment) -> str:
        raise NotImplementedError

    async def get_version_records(
        self,
        environment: RemoteEnvironment,
        content_type: str,
        field_id: str,
        locale: str,
    ) -> list[VersionRecord]:
        raise NotImplementedError

    async def write_version(
        self,
        environment: RemoteEnvironment,
        record: VersionRecord | None,
        content_type: str,
        field_id: str,
        locale: str,
        version: str,
    ) -> VersionRecord:
        raise NotImplementedError

    async def set_alias_target(self, alias_id: str, environment_id: str) -> None:
        raise NotImplementedError

    async def grant_api_key_access(self, environment_id: str) -> int:
        raise NotImplementedError


class ContentfulStore(RemoteStore):
    """Environment, entry and alias operations for one space."""

    def __init__(
        self, client: Client, space_id: str, session: requests.Session | None = None
    ) -> None:
        self._client = client
        self._space_id = space_id
        # The SDK has no environment alias resource, aliases go over plain HTTP
        self._session = session or requests.Session()

    @classmethod
    def connect(cls, management_api_key: str, space_id: str) -> ContentfulStore:
        """Create a store backed by a management API client."""
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {management_api_key}",
                "Content-Type": MANAGEMENT_CONTENT_TYPE,
            }
        )
        return cls(Client(management_api_key), space_id, session)

    @property
    def space_id(self) -> str:
        return self._space_id

    async def _call(self, description: str, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except (HTTPError, requests.RequestException) as e:
            raise translate_error(e, description) from e
        except RemoteError:
            raise
        except Exception as e:
            # Unexpected SDK behaviour is a permanent failure of this call
            raise RemoteError(f"{description} failed: {e!r}") from e

    def _environments(self) -> Any:
        return self._client.environments(self._space_id)

    def _wrap(self, environment: Any) -> RemoteEnvironment:
        return RemoteEnvironment(
            environment_id=environment.id,
            status=_environment_status(environment),
            resource=environment,
        )

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    async def create_environment(self, environment_id: str) -> RemoteEnvironment:
        """Create an environment with a fixed id.

        Raises:
            AlreadyExistsError: If the id is already taken.
        """

        def create() -> Any:
            return self._environments().create(environment_id, {"name": environment_id})

        return self._wrap(await self._call(f"Create environment '{environment_id}'", create))

    async def get_environment(self, environment_id: str) -> RemoteEnvironment:
        """Fetch an environment.

        Raises:
            RemoteNotFoundError: If it does not exist.
        """
        environment = await self._call(
            f"Get environment '{environment_id}'", self._environments().find, environment_id
        )
        return self._wrap(environment)

    async def delete_environment(self, environment_id: str) -> None:
        """Delete an environment.

        Raises:
            RemoteNotFoundError: If it does not exist.
        """
        await self._call(
            f"Delete environment '{environment_id}'", self._environments().delete, environment_id
        )

    async def list_environment_ids(self) -> list[str]:
        """List the ids of every environment in the space."""

        def list_ids() -> list[str]:
            return [environment.id for environment in self._environments().all()]

        return await self._call("List environments", list_ids)

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    async def default_locale(self, environment: RemoteEnvironment) -> str:
        """Code of the environment's default locale."""

        def find_default() -> str:
            for locale in environment.resource.locales().all():
                if locale.default:
                    return locale.code
            raise RemoteError(f"Environment '{environment.environment_id}' has no default locale")

        return await self._call(
            f"Get locales of '{environment.environment_id}'", find_default
        )

    async def get_version_records(
        self,
        environment: RemoteEnvironment,
        content_type: str,
        field_id: str,
        locale: str,
    ) -> list[VersionRecord]:
        """Entries of the version tracking content type with their version."""

        def query() -> list[VersionRecord]:
            entries = environment.resource.entries().all({"content_type": content_type})
            records = []
            for entry in entries:
                fields = entry.fields(locale)
                version = fields.get(field_id, fields.get(_snake_case(field_id)))
                records.append(
                    VersionRecord(
                        entry_id=entry.id,
                        version=str(version) if version is not None else None,
                        resource=entry,
                    )
                )
            return records

        return await self._call(
            f"Get '{content_type}' entries of '{environment.environment_id}'", query
        )

    async def write_version(
        self,
        environment: RemoteEnvironment,
        record: VersionRecord | None,
        content_type: str,
        field_id: str,
        locale: str,
        version: str,
    ) -> VersionRecord:
        """Store a version on the tracking entry and publish it.

        Creates the entry when the environment has none yet. An existing
        entry keeps its other fields and locales.
        """

        def write() -> Any:
            if record is None:
                entry = environment.resource.entries().create(
                    None,
                    {"content_type_id": content_type, "fields": {field_id: {locale: version}}},
                )
            else:
                entry = record.resource
                # An update replaces the whole fields map
                fields: dict[str, dict[str, Any]] = {
                    name: dict(values)
                    for name, values in entry.to_json().get("fields", {}).items()
                }
                fields.setdefault(field_id, {})[locale] = version
                entry.update({"fields": fields})
            entry.publish()
            return entry

        entry = await self._call(
            f"Write version {version} to '{environment.environment_id}'", write
        )
        return VersionRecord(entry_id=entry.id, version=version, resource=entry)

    # -------------------------------------------------------------------------
    # Aliases and API keys
    # -------------------------------------------------------------------------

    async def set_alias_target(self, alias_id: str, environment_id: str) -> None:
        """Point an environment alias at another environment.

        The update carries the alias version just read, so a concurrent
        change fails with a conflict instead of being overwritten.
        """
        url = f"{MANAGEMENT_API_URL}/spaces/{self._space_id}/environment_aliases/{alias_id}"

        def update_alias() -> None:
            response = self._session.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
            response.raise_for_status()
            version = response.json()["sys"]["version"]
            response = self._session.put(
                url,
                json={"environment": _environment_link(environment_id)},
                headers={"X-Contentful-Version": str(version)},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()

        await self._call(f"Update alias '{alias_id}'", update_alias)

    async def grant_api_key_access(self, environment_id: str) -> int:
        """Link an environment to every delivery API key of the space.

        Returns:
            Number of keys updated.
        """

        def grant() -> int:
            updated = 0
            for key in self._client.api_keys(self._space_id).all():
                links = [_link_json(link) for link in (key.environments or [])]
                if any(_link_id(link) == environment_id for link in links):
                    continue
                links.append(_environment_link(environment_id))
                key.update({"environments": links})
                updated += 1
            return updated

        return await self._call(f"Grant API keys access to '{environment_id}'", grant)
