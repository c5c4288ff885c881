"""Post-migration alias promotion and feature environment cleanup.

Both steps are best-effort: once migrations succeeded, a failure here is
reported but does not fail the run.
"""

from __future__ import annotations

import logging

from .branches import EnvironmentIntent, EnvironmentType
from .config import CONTENTFUL_ALIAS, Config
from .naming import pattern_matcher
from .remote import RemoteEnvironment, RemoteError, RemoteNotFoundError, RemoteStore

logger = logging.getLogger(__name__)


class AliasError(Exception):
    """Raised when the production alias cannot be repointed."""

    pass


class CleanupError(Exception):
    """Raised when superseded feature environments cannot be deleted."""

    def __init__(self, message: str, failed_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.failed_ids = failed_ids


class AliasManager:
    """Promotes production environments and retires feature environments."""

    def __init__(self, store: RemoteStore, config: Config) -> None:
        self._store = store
        self._config = config

    def should_promote(self, intent: EnvironmentIntent) -> bool:
        return (
            intent.environment_type is EnvironmentType.PRODUCTION and self._config.set_alias
        )

    def should_cleanup(self, intent: EnvironmentIntent) -> bool:
        return intent.environment_type is EnvironmentType.FEATURE and self._config.delete_feature

    async def promote(self, environment: RemoteEnvironment, intent: EnvironmentIntent) -> bool:
        """Point the production alias at a freshly migrated environment.

        Returns:
            True if the alias was updated, False if promotion does not apply.

        Raises:
            AliasError: If the alias update fails.
        """
        if not self.should_promote(intent):
            logger.debug("Running on feature branch")
            logger.debug("No alias changes required")
            return False

        logger.info(f"Running on {CONTENTFUL_ALIAS}.")
        logger.info(f"Updating {CONTENTFUL_ALIAS} alias.")
        try:
            await self._store.set_alias_target(CONTENTFUL_ALIAS, environment.environment_id)
        except RemoteError as e:
            raise AliasError(
                f"Failed to point alias '{CONTENTFUL_ALIAS}' at "
                f"'{environment.environment_id}': {e}"
            ) from e

        logger.info(
            f"alias {CONTENTFUL_ALIAS} updated.",
            extra={"alias": CONTENTFUL_ALIAS, "environment_id": environment.environment_id},
        )
        return True

    def superseded_ids(self, intent: EnvironmentIntent, environment_ids: list[str]) -> list[str]:
        """Pick the environments a feature run makes obsolete.

        These are environments produced by the feature pattern for the same
        branch at other times. When a pull request into the default branch has
        been merged, the branch is finished and its current environment is
        retired as well.
        """
        branch_names = intent.branch_names
        matcher = pattern_matcher(self._config.feature_pattern, intent.branch_name)
        merged_into_default = (
            branch_names.merged and branch_names.base_ref == branch_names.default_branch
        )
        return sorted(
            environment_id
            for environment_id in environment_ids
            if matcher.match(environment_id)
            and (merged_into_default or environment_id != intent.environment_id)
        )

    async def cleanup(self, intent: EnvironmentIntent) -> list[str]:
        """Delete feature environments superseded by this run.

        Returns:
            Ids of the deleted environments.

        Raises:
            CleanupError: If listing fails or any deletion fails.
        """
        if not self.should_cleanup(intent):
            return []

        try:
            environment_ids = await self._store.list_environment_ids()
        except RemoteError as e:
            raise CleanupError(f"Cannot list environments: {e}") from e

        deleted: list[str] = []
        failed: list[str] = []
        for environment_id in self.superseded_ids(intent, environment_ids):
            logger.info(f"Delete the environment: {environment_id}")
            try:
                await self._store.delete_environment(environment_id)
            except RemoteNotFoundError:
                logger.info(f'Environment already gone: "{environment_id}"')
                continue
            except RemoteError as e:
                logger.error(
                    "Cannot delete the environment",
                    extra={"environment_id": environment_id, "error": str(e)},
                )
                failed.append(environment_id)
                continue
            deleted.append(environment_id)
            logger.info(f"Deleted the environment: {environment_id}")

        if failed:
            raise CleanupError(
                f"Failed to delete environments: {', '.join(failed)}", tuple(failed)
            )
        return deleted
