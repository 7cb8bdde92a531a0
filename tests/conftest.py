"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.state_store import FileStateStore  # noqa: E402
from provider_mock import MockGitSource, MockResourceProvider  # noqa: E402


@pytest.fixture
def store(tmp_path: Path) -> FileStateStore:
    """Empty State Store for scope 'test'."""
    return FileStateStore(tmp_path / "state", "test")


@pytest.fixture
def provider() -> MockResourceProvider:
    return MockResourceProvider()


@pytest.fixture
def source() -> MockGitSource:
    return MockGitSource()
