"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for contentful_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture
def migrations_dir(tmp_path: Path) -> Path:
    """Empty migrations directory."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture(autouse=True)
def clean_action_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep runner environment variables from leaking into tests."""
    for name in list(os.environ):
        if name.startswith("INPUT_") or name.startswith("GITHUB_") or name == "LOG_LEVEL":
            monkeypatch.delenv(name, raising=False)
