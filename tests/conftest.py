"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_cloud imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.provider import ProviderRegistry  # noqa: E402
from converge.state import InMemoryStateStore  # noqa: E402
from fake_cloud import FakeCloud, make_registry  # noqa: E402


@pytest.fixture
def cloud() -> FakeCloud:
    """Fresh in-memory backend."""
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud) -> ProviderRegistry:
    """Registry with every fake adapter bound to the `cloud` fixture."""
    return make_registry(cloud)


@pytest.fixture
def store() -> InMemoryStateStore:
    """Empty in-memory state store."""
    return InMemoryStateStore()
