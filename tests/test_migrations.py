"""Tests for migration discovery and version tracking."""

from pathlib import Path

import pytest

from contentful_ci.config import Config
from contentful_ci.migrations import (
    Migration,
    MigrationError,
    VersionTracker,
    discover_migrations,
    filename_to_version,
    is_migration_filename,
    load_migration,
    pending_migrations,
    version_to_filename,
)
from contentful_ci.remote import RemoteEnvironment, TransientRemoteError
from contentful_mock import MockContentfulStore

RECORDING_MIGRATION = """
def migrate(environment):
    environment.content_types.append({version!r})
"""

ASYNC_MIGRATION = """
async def migrate(environment):
    environment.content_types.append({version!r})
"""

FAILING_MIGRATION = """
def migrate(environment):
    raise RuntimeError("field already exists")
"""


def write_migration(directory: Path, version: str, source: str = RECORDING_MIGRATION) -> Path:
    path = directory / version_to_filename(version)
    path.write_text(source.format(version=version))
    return path


def make_migrations(versions: list[str]) -> list[Migration]:
    return [Migration(version=v, path=Path(version_to_filename(v))) for v in versions]


@pytest.fixture
def config(migrations_dir: Path) -> Config:
    return Config(
        management_api_key="CFPAT-test",
        space_id="space123",
        migrations_dir=migrations_dir,
        max_attempts=3,
        retry_delay_seconds=0,
    )


def environment_of(store: MockContentfulStore, environment_id: str) -> RemoteEnvironment:
    state = store.environments[environment_id]
    return RemoteEnvironment(environment_id=environment_id, status=state.status, resource=state)


class TestFilenames:
    """Tests for the filename/version convention."""

    @pytest.mark.parametrize(
        "filename,version",
        [("1.py", "1"), ("1_0_1.py", "1.0.1"), ("20240307_1.py", "20240307.1")],
    )
    def test_filename_to_version(self, filename: str, version: str) -> None:
        assert filename_to_version(filename) == version
        assert version_to_filename(version) == filename

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("1.py", True),
            ("1_0_1.py", True),
            ("README.md", False),
            ("helpers.py", False),
            ("__init__.py", False),
            ("1.js", False),
        ],
    )
    def test_is_migration_filename(self, filename: str, expected: bool) -> None:
        assert is_migration_filename(filename) is expected


class TestDiscovery:
    """Tests for listing local migrations."""

    def test_sorted_by_version(self, migrations_dir: Path) -> None:
        for version in ["2", "1.0.1", "1"]:
            write_migration(migrations_dir, version)
        (migrations_dir / "README.md").write_text("docs")
        (migrations_dir / "helpers.py").write_text("")

        migrations = discover_migrations(migrations_dir)

        assert [m.version for m in migrations] == ["1", "1.0.1", "2"]
        assert migrations[1].filename == "1_0_1.py"

    def test_string_ordering(self, migrations_dir: Path) -> None:
        """Test that versions order as strings, not numbers."""
        for version in ["2", "10"]:
            write_migration(migrations_dir, version)

        assert [m.version for m in discover_migrations(migrations_dir)] == ["10", "2"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(MigrationError):
            discover_migrations(tmp_path / "nope")

    def test_empty_directory(self, migrations_dir: Path) -> None:
        assert discover_migrations(migrations_dir) == []


class TestPending:
    """Tests for selecting migrations after the recorded version."""

    def test_nothing_applied(self) -> None:
        migrations = make_migrations(["1", "1.0.1", "2"])

        assert [m.version for m in pending_migrations(migrations, None)] == ["1", "1.0.1", "2"]

    def test_after_last_applied(self) -> None:
        migrations = make_migrations(["2", "1", "1.0.1"])

        assert [m.version for m in pending_migrations(migrations, "1")] == ["1.0.1", "2"]

    def test_up_to_date(self) -> None:
        assert pending_migrations(make_migrations(["1", "2"]), "2") == []

    def test_unknown_last_applied(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that an unknown recorded version still selects newer migrations."""
        migrations = make_migrations(["1", "3"])

        pending = pending_migrations(migrations, "2")

        assert [m.version for m in pending] == ["3"]
        assert "not matching with any known migration" in caplog.text


class TestLoadMigration:
    def test_missing_entrypoint(self, migrations_dir: Path) -> None:
        path = migrations_dir / "1.py"
        path.write_text("VALUE = 1\n")

        with pytest.raises(MigrationError) as exc_info:
            load_migration(Migration(version="1", path=path))

        assert "does not define migrate()" in str(exc_info.value)

    def test_syntax_error(self, migrations_dir: Path) -> None:
        path = migrations_dir / "1.py"
        path.write_text("def migrate(:\n")

        with pytest.raises(MigrationError) as exc_info:
            load_migration(Migration(version="1", path=path))

        assert exc_info.value.version == "1"


class TestVersionTracker:
    """Tests for applying migrations and recording progress."""

    @pytest.mark.asyncio
    async def test_applies_all_on_fresh_environment(
        self, config: Config, migrations_dir: Path
    ) -> None:
        for version in ["1", "2"]:
            write_migration(migrations_dir, version)
        store = MockContentfulStore()
        state = store.add_environment("GH-x")

        applied = await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert applied == ["1", "2"]
        assert state.content_types == ["1", "2"]
        assert state.versions("versionTracking", "version") == ["2"]

    @pytest.mark.asyncio
    async def test_applies_after_recorded_version(
        self, config: Config, migrations_dir: Path
    ) -> None:
        """Test that progress is recorded after every migration."""
        for version in ["1", "1.0.1", "2"]:
            write_migration(migrations_dir, version)
        store = MockContentfulStore()
        state = store.add_environment("GH-x", versions=["1"])

        applied = await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert applied == ["1.0.1", "2"]
        assert state.content_types == ["1.0.1", "2"]
        assert store.calls_of("write_version") == ["1.0.1", "2"]
        assert state.versions("versionTracking", "version") == ["2"]

    @pytest.mark.asyncio
    async def test_record_written_before_next_migration(
        self, config: Config, migrations_dir: Path
    ) -> None:
        write_migration(migrations_dir, "1")
        write_migration(migrations_dir, "1.0.1")
        write_migration(
            migrations_dir,
            "2",
            "def migrate(environment):\n"
            "    assert environment.versions('versionTracking', 'version') == ['1.0.1']\n",
        )
        store = MockContentfulStore()
        store.add_environment("GH-x", versions=["1"])

        applied = await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert applied == ["1.0.1", "2"]

    @pytest.mark.asyncio
    async def test_async_migration(self, config: Config, migrations_dir: Path) -> None:
        write_migration(migrations_dir, "1", ASYNC_MIGRATION)
        store = MockContentfulStore()
        state = store.add_environment("GH-x")

        await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert state.content_types == ["1"]

    @pytest.mark.asyncio
    async def test_up_to_date(self, config: Config, migrations_dir: Path) -> None:
        write_migration(migrations_dir, "1")
        store = MockContentfulStore()
        store.add_environment("GH-x", versions=["1"])

        applied = await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert applied == []
        assert store.calls_of("write_version") == []

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining(self, config: Config, migrations_dir: Path) -> None:
        """Test that a failing migration stops the run with earlier progress recorded."""
        write_migration(migrations_dir, "1")
        write_migration(migrations_dir, "2", FAILING_MIGRATION)
        write_migration(migrations_dir, "3")
        store = MockContentfulStore()
        state = store.add_environment("GH-x")

        with pytest.raises(MigrationError) as exc_info:
            await VersionTracker(store, config).apply_pending(
                environment_of(store, "GH-x"), migrations_dir
            )

        assert exc_info.value.version == "2"
        assert "field already exists" in str(exc_info.value)
        assert state.content_types == ["1"]
        assert state.versions("versionTracking", "version") == ["1"]

    @pytest.mark.asyncio
    async def test_resumes_after_failure(self, config: Config, migrations_dir: Path) -> None:
        write_migration(migrations_dir, "1")
        failing = write_migration(migrations_dir, "2", FAILING_MIGRATION)
        store = MockContentfulStore()
        state = store.add_environment("GH-x")
        tracker = VersionTracker(store, config)

        with pytest.raises(MigrationError):
            await tracker.apply_pending(environment_of(store, "GH-x"), migrations_dir)

        failing.write_text(RECORDING_MIGRATION.format(version="2"))
        applied = await tracker.apply_pending(environment_of(store, "GH-x"), migrations_dir)

        assert applied == ["2"]
        assert state.content_types == ["1", "2"]

    @pytest.mark.asyncio
    async def test_resumes_after_interrupted_run(
        self, config: Config, migrations_dir: Path
    ) -> None:
        """Test that a run stopped after recording 1.0.1 continues with 2 only."""
        for version in ["1", "1.0.1", "2"]:
            write_migration(migrations_dir, version)
        store = MockContentfulStore()
        state = store.add_environment("GH-x", versions=["1.0.1"])

        applied = await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert applied == ["2"]
        assert state.content_types == ["2"]

    @pytest.mark.asyncio
    async def test_multiple_tracking_entries(self, config: Config, migrations_dir: Path) -> None:
        write_migration(migrations_dir, "1")
        store = MockContentfulStore()
        state = store.add_environment("GH-x", versions=["1", "2"])

        with pytest.raises(MigrationError) as exc_info:
            await VersionTracker(store, config).apply_pending(
                environment_of(store, "GH-x"), migrations_dir
            )

        assert "only be one entry" in str(exc_info.value)
        assert state.content_types == []

    @pytest.mark.asyncio
    async def test_record_write_retried(self, config: Config, migrations_dir: Path) -> None:
        write_migration(migrations_dir, "1")
        store = MockContentfulStore()
        state = store.add_environment("GH-x")
        store.fail("write_version", TransientRemoteError("rate limited", 429), times=2)

        applied = await VersionTracker(store, config).apply_pending(
            environment_of(store, "GH-x"), migrations_dir
        )

        assert applied == ["1"]
        assert state.versions("versionTracking", "version") == ["1"]
        assert len(store.calls_of("write_version")) == 3

    @pytest.mark.asyncio
    async def test_record_write_exhausted(self, config: Config, migrations_dir: Path) -> None:
        write_migration(migrations_dir, "1")
        store = MockContentfulStore()
        store.add_environment("GH-x")
        store.fail("write_version", TransientRemoteError("rate limited", 429), times=3)

        with pytest.raises(TransientRemoteError):
            await VersionTracker(store, config).apply_pending(
                environment_of(store, "GH-x"), migrations_dir
            )
