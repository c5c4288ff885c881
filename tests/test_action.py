"""Integration tests for a full run against the mock Contentful space."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from contentful_ci.action import RunResult, run_action, write_outputs
from contentful_ci.aliases import AliasError
from contentful_ci.branches import GitHubEvent
from contentful_ci.config import Config, ConfigurationError
from contentful_ci.migrations import MigrationError
from contentful_ci.provisioner import ProvisionError
from contentful_ci.remote import RemoteError, TransientRemoteError
from contentful_mock import MockContentfulStore

NOW = datetime(2024, 3, 7, 9, 5, 2, tzinfo=UTC)

MIGRATION = """
def migrate(environment):
    environment.content_types.append({version!r})
"""


def push_event(branch: str) -> GitHubEvent:
    return GitHubEvent.model_validate(
        {"ref": f"refs/heads/{branch}", "repository": {"default_branch": "main"}}
    )


def pull_request_event(head: str, base: str = "main", merged: bool = False) -> GitHubEvent:
    return GitHubEvent.model_validate(
        {
            "repository": {"default_branch": "main"},
            "pull_request": {"head": {"ref": head}, "base": {"ref": base}, "merged": merged},
        }
    )


@pytest.fixture
def migrations(migrations_dir: Path) -> Path:
    for version in ["1", "1.0.1", "2"]:
        path = migrations_dir / f"{version.replace('.', '_')}.py"
        path.write_text(MIGRATION.format(version=version))
    return migrations_dir


def make_config(migrations_dir: Path, tmp_path: Path, **overrides: object) -> Config:
    values: dict[str, object] = {
        "management_api_key": "CFPAT-test",
        "space_id": "space123",
        "migrations_dir": migrations_dir,
        "set_alias": True,
        "delete_feature": True,
        "retry_delay_seconds": 0,
        "max_attempts": 3,
        "output_path": tmp_path / "github_output",
    }
    values.update(overrides)
    return Config(**values)  # type: ignore[arg-type]


def read_outputs(path: Path) -> dict[str, str]:
    return dict(line.split("=", 1) for line in path.read_text().splitlines())


class TestProductionRun:
    """Tests for pushes to the default branch."""

    @pytest.mark.asyncio
    async def test_creates_migrates_and_promotes(
        self, migrations: Path, tmp_path: Path
    ) -> None:
        store = MockContentfulStore(reads_until_ready=2)
        store.add_environment("master-2024-03-01-0000", versions=["1"])
        store.aliases["master"] = "master-2024-03-01-0000"
        config = make_config(migrations, tmp_path)

        result = await run_action(config, store, push_event("main"), now=NOW)

        assert result.success
        assert result.environment_id == "master-2024-03-07-0502"
        assert result.applied_versions == ["1", "1.0.1", "2"]
        assert result.alias_updated is True
        assert result.deleted_environments == []
        assert store.aliases["master"] == "master-2024-03-07-0502"
        # The previous production environment is left for rollback
        assert "master-2024-03-01-0000" in store.environments

        outputs = read_outputs(config.output_path)
        assert outputs == {
            "environment_url": (
                "https://app.contentful.com/spaces/space123/environments/"
                "master-2024-03-07-0502"
            ),
            "environment_name": "master-2024-03-07-0502",
        }

    @pytest.mark.asyncio
    async def test_alias_updated_after_migrations(
        self, migrations: Path, tmp_path: Path
    ) -> None:
        store = MockContentfulStore()
        store.aliases["master"] = "master-old"

        await run_action(make_config(migrations, tmp_path), store, push_event("main"), now=NOW)

        operations = [operation for operation, _ in store.calls]
        last_write = len(operations) - 1 - operations[::-1].index("write_version")
        assert operations.index("set_alias_target") > last_write

    @pytest.mark.asyncio
    async def test_alias_failure_keeps_success(self, migrations: Path, tmp_path: Path) -> None:
        """Test that alias errors after successful migrations do not fail the run."""
        store = MockContentfulStore()

        result = await run_action(
            make_config(migrations, tmp_path), store, push_event("main"), now=NOW
        )

        assert result.success
        assert isinstance(result.alias_error, AliasError)
        assert result.applied_versions == ["1", "1.0.1", "2"]


class TestFeatureRun:
    """Tests for pull requests and pushes to other branches."""

    @pytest.mark.asyncio
    async def test_pull_request_recycles_environment(
        self, migrations: Path, tmp_path: Path
    ) -> None:
        store = MockContentfulStore()
        old = store.add_environment("GH-feature-x", versions=["2"])
        store.aliases["master"] = "master-old"

        result = await run_action(
            make_config(migrations, tmp_path, event_name="pull_request"),
            store,
            pull_request_event("feature/x"),
            now=NOW,
        )

        assert result.success
        assert result.environment_id == "GH-feature-x"
        assert result.applied_versions == ["1", "1.0.1", "2"]
        assert store.environments["GH-feature-x"] is not old
        assert result.alias_updated is False
        assert store.aliases["master"] == "master-old"

    @pytest.mark.asyncio
    async def test_cleans_up_earlier_environments(
        self, migrations: Path, tmp_path: Path
    ) -> None:
        store = MockContentfulStore()
        store.add_environment("GH-feature-x-0301")
        store.add_environment("GH-feature-y-0301")
        config = make_config(
            migrations,
            tmp_path,
            event_name="pull_request",
            feature_pattern="GH-[branch]-[MM][DD]",
        )

        result = await run_action(config, store, pull_request_event("feature/x"), now=NOW)

        assert result.success
        assert result.environment_id == "GH-feature-x-0307"
        assert result.deleted_environments == ["GH-feature-x-0301"]
        assert set(store.environments) == {"GH-feature-x-0307", "GH-feature-y-0301"}

    @pytest.mark.asyncio
    async def test_merged_pull_request_retires_branch(
        self, migrations: Path, tmp_path: Path
    ) -> None:
        """Test that a merge into the default branch deletes the branch environments."""
        store = MockContentfulStore()
        store.add_environment("GH-feature-x-0301")
        config = make_config(
            migrations,
            tmp_path,
            event_name="pull_request",
            feature_pattern="GH-[branch]-[MM][DD]",
        )

        result = await run_action(
            config, store, pull_request_event("feature/x", merged=True), now=NOW
        )

        assert result.success
        assert result.environment_id == "GH-feature-x-0307"
        assert result.applied_versions == ["1", "1.0.1", "2"]
        assert result.deleted_environments == ["GH-feature-x-0301", "GH-feature-x-0307"]
        assert store.environments == {}

    @pytest.mark.asyncio
    async def test_push_to_other_branch(self, migrations: Path, tmp_path: Path) -> None:
        store = MockContentfulStore()

        result = await run_action(
            make_config(migrations, tmp_path), store, push_event("develop"), now=NOW
        )

        assert result.success
        assert result.environment_id == "GH-develop"


class TestFailedRun:
    """Tests for fatal failures."""

    @pytest.mark.asyncio
    async def test_migration_failure(self, migrations: Path, tmp_path: Path) -> None:
        (migrations / "1_0_1.py").write_text(
            "def migrate(environment):\n    raise RuntimeError('bad field')\n"
        )
        store = MockContentfulStore()
        store.aliases["master"] = "master-old"
        config = make_config(migrations, tmp_path)

        result = await run_action(config, store, push_event("main"), now=NOW)

        assert not result.success
        assert isinstance(result.error, MigrationError)
        assert result.applied_versions == []
        assert store.aliases["master"] == "master-old"
        assert store.environments["master-2024-03-07-0502"].content_types == ["1"]
        assert not config.output_path.exists()

    @pytest.mark.asyncio
    async def test_provision_failure(self, migrations: Path, tmp_path: Path) -> None:
        store = MockContentfulStore(reads_until_ready=10)

        result = await run_action(
            make_config(migrations, tmp_path), store, push_event("main"), now=NOW
        )

        assert isinstance(result.error, ProvisionError)
        assert store.calls_of("write_version") == []

    @pytest.mark.asyncio
    async def test_invalid_environment_id(self, migrations: Path, tmp_path: Path) -> None:
        store = MockContentfulStore()
        config = make_config(migrations, tmp_path, feature_pattern="GH [branch]")

        result = await run_action(config, store, push_event("develop"), now=NOW)

        assert isinstance(result.error, ConfigurationError)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, migrations: Path, tmp_path: Path) -> None:
        store = MockContentfulStore()
        store.fail("default_locale", TransientRemoteError("rate limited", 429), times=3)

        result = await run_action(
            make_config(migrations, tmp_path), store, push_event("main"), now=NOW
        )

        assert isinstance(result.error, RemoteError)
        assert result.end_time is not None


class TestOutputs:
    def test_write_outputs_appends(self, tmp_path: Path) -> None:
        path = tmp_path / "github_output"
        path.write_text("previous=1\n")

        write_outputs(path, {"environment_name": "GH-x"})

        assert path.read_text() == "previous=1\nenvironment_name=GH-x\n"

    def test_duration(self) -> None:
        result = RunResult(start_time=NOW)

        assert result.duration_seconds == 0.0
        result.end_time = datetime(2024, 3, 7, 9, 5, 12, tzinfo=UTC)
        assert result.duration_seconds == 10.0
