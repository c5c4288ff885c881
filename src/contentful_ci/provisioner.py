"""Environment provisioning.

STATE MACHINE:
    Requested -> (ExistingFound -> Deleted) -> Created -> Ready | Failed

- Production intents create their environment directly. An id that already
  exists is reused instead of failing the run.
- Feature intents recycle: an existing environment with the same id is
  deleted first (best-effort) so migrations start from a clean copy. An id
  that still exists at create time fails the run.
- Creation is attempted exactly once per call. The attempts are spent on
  readiness polling, since new environments are copied asynchronously and
  are not usable until their status reaches ``ready``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from .branches import EnvironmentIntent, EnvironmentType
from .config import Config
from .remote import (
    AlreadyExistsError,
    RemoteEnvironment,
    RemoteError,
    RemoteNotFoundError,
    RemoteStore,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)


class ProvisionError(Exception):
    """Raised when an environment cannot be provisioned or never becomes ready."""

    def __init__(self, message: str, environment_id: str) -> None:
        super().__init__(message)
        self.environment_id = environment_id


class ProvisionState(str, Enum):
    """Provisioning progress of a single environment."""

    REQUESTED = "requested"
    EXISTING_FOUND = "existing_found"
    DELETED = "deleted"
    CREATED = "created"
    READY = "ready"
    FAILED = "failed"


class EnvironmentProvisioner:
    """Creates, recycles and waits for the environment of a run."""

    def __init__(self, store: RemoteStore, config: Config) -> None:
        self._store = store
        self._config = config
        self._state = ProvisionState.REQUESTED

    @property
    def state(self) -> ProvisionState:
        """Current provisioning state."""
        return self._state

    def _transition(self, state: ProvisionState, environment_id: str) -> None:
        logger.debug(
            f"Environment '{environment_id}': {self._state.value} -> {state.value}",
            extra={"environment_id": environment_id, "state": state.value},
        )
        self._state = state

    async def provision(self, intent: EnvironmentIntent) -> RemoteEnvironment:
        """Provision the environment described by an intent and wait until ready.

        Args:
            intent: Resolved environment id and type.

        Returns:
            The ready environment.

        Raises:
            ProvisionError: If creation fails or readiness is never reached.
        """
        environment_id = intent.environment_id
        self._state = ProvisionState.REQUESTED

        if intent.environment_type is EnvironmentType.FEATURE:
            await self._flush_existing(environment_id)

        await self._create(environment_id, intent.environment_type)
        environment = await self._wait_until_ready(environment_id)

        if self._config.grant_api_key_access:
            await self._grant_api_key_access(environment_id)

        return environment

    async def _flush_existing(self, environment_id: str) -> None:
        """Delete a previous environment with the same id, if any."""
        logger.info(f'Checking for existing versions of environment: "{environment_id}"')

        try:
            existing = await self._store.find_environment(environment_id)
        except RemoteError as e:
            logger.warning(
                f'Could not look up environment "{environment_id}", assuming it does not exist',
                extra={"environment_id": environment_id, "error": str(e)},
            )
            return

        if existing is None:
            logger.info(f'Environment not found: "{environment_id}"')
            return

        self._transition(ProvisionState.EXISTING_FOUND, environment_id)
        try:
            await self._store.delete_environment(environment_id)
        except RemoteNotFoundError:
            logger.info(f'Environment already gone: "{environment_id}"')
            return
        except RemoteError as e:
            logger.warning(
                f'Could not delete environment "{environment_id}"',
                extra={"environment_id": environment_id, "error": str(e)},
            )
            return

        self._transition(ProvisionState.DELETED, environment_id)
        logger.info(f'Environment deleted: "{environment_id}"')

    async def _create(self, environment_id: str, environment_type: EnvironmentType) -> None:
        logger.info(f"Creating environment {environment_id}")
        try:
            await self._store.create_environment(environment_id)
        except AlreadyExistsError as e:
            if environment_type is not EnvironmentType.PRODUCTION:
                # A feature environment must start from a fresh copy
                self._transition(ProvisionState.FAILED, environment_id)
                raise ProvisionError(
                    f"Environment '{environment_id}' still exists after recycling: {e}",
                    environment_id,
                ) from e
            logger.info(
                f'Environment "{environment_id}" already exists, reusing it',
                extra={"environment_id": environment_id},
            )
        except RemoteError as e:
            self._transition(ProvisionState.FAILED, environment_id)
            raise ProvisionError(
                f"Failed to create environment '{environment_id}': {e}", environment_id
            ) from e
        self._transition(ProvisionState.CREATED, environment_id)

    async def _wait_until_ready(self, environment_id: str) -> RemoteEnvironment:
        """Poll the environment status until it is ready.

        Raises:
            ProvisionError: If processing fails or the attempts run out.
        """
        max_attempts = self._config.max_attempts
        delay = self._config.retry_delay_seconds
        start_time = time.monotonic()

        logger.info("Waiting for environment processing...")

        for attempt in range(1, max_attempts + 1):
            try:
                environment = await self._store.get_environment(environment_id)
            except (RemoteNotFoundError, TransientRemoteError) as e:
                # Not visible yet, or the API is briefly unavailable
                logger.debug(
                    f"Environment '{environment_id}' not available yet",
                    extra={"attempt": attempt, "error": str(e)},
                )
            except RemoteError as e:
                self._transition(ProvisionState.FAILED, environment_id)
                raise ProvisionError(
                    f"Failed to read environment '{environment_id}': {e}", environment_id
                ) from e
            else:
                if environment.is_ready:
                    self._transition(ProvisionState.READY, environment_id)
                    logger.info(
                        f'Successfully processed new environment: "{environment_id}"',
                        extra={
                            "attempts": attempt,
                            "duration_seconds": round(time.monotonic() - start_time, 1),
                        },
                    )
                    return environment
                if environment.has_failed:
                    self._transition(ProvisionState.FAILED, environment_id)
                    raise ProvisionError(
                        f"Environment '{environment_id}' processing failed", environment_id
                    )

            if attempt < max_attempts:
                await asyncio.sleep(delay)

        self._transition(ProvisionState.FAILED, environment_id)
        raise ProvisionError(
            f"Environment '{environment_id}' not ready after {max_attempts} attempts",
            environment_id,
        )

    async def _grant_api_key_access(self, environment_id: str) -> None:
        """Allow the space's delivery keys to read the new environment."""
        logger.debug("Update API Keys to allow access to new environment")
        try:
            updated = await self._store.grant_api_key_access(environment_id)
        except RemoteError as e:
            logger.warning(
                f"Could not grant API keys access to '{environment_id}'",
                extra={"environment_id": environment_id, "error": str(e)},
            )
            return
        logger.info(
            f"Granted {updated} API key(s) access to '{environment_id}'",
            extra={"environment_id": environment_id, "api_keys_updated": updated},
        )
