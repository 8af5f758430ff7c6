"""Root conftest for all tests."""

from pathlib import Path
from typing import Awaitable, Callable, Generator

import pytest
from aiohttp.test_utils import TestClient
from aiohttp.web import Application

# Register database fixtures as a plugin
pytest_plugins = ["tests.plugins.db_fixtures"]

# Shared test constants
TEST_OWNER = "test@example.com"
OTHER_OWNER = "other@example.com"

# Type alias for the aiohttp_client fixture - shared across all tests
AiohttpClient = Callable[[Application], Awaitable[TestClient]]


@pytest.fixture(autouse=True)
def mock_storage(tmp_path: Path) -> Generator[Path, None, None]:
    """Mock storage directory for all tests."""
    storage_root = tmp_path / "storage"
    storage_root.mkdir(parents=True)
    yield storage_root
