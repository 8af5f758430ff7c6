"""Shared pytest fixtures for server tests."""

from collections.abc import AsyncGenerator, AsyncIterator, Generator, Iterable
from pathlib import Path
from unittest.mock import patch

import jwt
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient

from cloudvault.server.app import JWT_ALGORITHM, create_app
from cloudvault.server.config import AuthConfig, ServerConfig, TreeConfig
from cloudvault.server.db.session import DatabaseSessionManager
from cloudvault.server.services.blob import LocalBlobStorage
from cloudvault.server.services.coordination import LocalCoordinationService
from cloudvault.server.services.favorite import FavoriteService
from cloudvault.server.services.file import FileEntity, FileService
from cloudvault.server.services.integrity import IntegrityService
from tests.conftest import TEST_OWNER, AiohttpClient


async def _chunks(content: bytes) -> AsyncIterator[bytes]:
    for i in range(0, len(content), 4):
        yield content[i : i + 4]


async def upload_bytes(
    file_service: FileService,
    name: str,
    content: bytes = b"content",
    parent_id: int | None = None,
    owner: str = TEST_OWNER,
    tags: Iterable[str] = (),
    mime_type: str | None = None,
) -> FileEntity:
    """Upload `content` as a file, streamed in small chunks."""
    return await file_service.upload_file(
        owner,
        name,
        _chunks(content),
        parent_id=parent_id,
        tags=tags,
        mime_type=mime_type,
    )


@pytest.fixture
def server_config(mock_storage: Path, tmp_path: Path) -> ServerConfig:
    """Create a ServerConfig object for testing."""
    return ServerConfig(
        storage_dir=str(mock_storage),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'server.db'}",
        auth=AuthConfig(secret_key="test-secret-key"),
    )


@pytest.fixture(autouse=True)
def patch_server_config(server_config: ServerConfig) -> Generator[None, None, None]:
    """Automatically patch server config for all server tests."""
    with patch("cloudvault.server.config.ServerConfig.load", return_value=server_config):
        yield


@pytest.fixture
def tree_config() -> TreeConfig:
    return TreeConfig(operation_timeout=5.0)


@pytest.fixture
def coordination_service() -> LocalCoordinationService:
    return LocalCoordinationService()


@pytest.fixture
def blob_storage(mock_storage: Path) -> LocalBlobStorage:
    return LocalBlobStorage(mock_storage)


@pytest.fixture
def favorite_service(
    session_manager: DatabaseSessionManager,
    coordination_service: LocalCoordinationService,
    tree_config: TreeConfig,
) -> FavoriteService:
    return FavoriteService(session_manager, coordination_service, tree_config)


@pytest_asyncio.fixture
async def file_service(
    session_manager: DatabaseSessionManager,
    blob_storage: LocalBlobStorage,
    coordination_service: LocalCoordinationService,
    tree_config: TreeConfig,
    favorite_service: FavoriteService,
) -> AsyncGenerator[FileService, None]:
    service = FileService(
        session_manager,
        blob_storage,
        coordination_service,
        tree_config,
        favorite_service=favorite_service,
    )
    yield service
    await service.wait_for_background_tasks()


@pytest.fixture
def integrity_service(
    session_manager: DatabaseSessionManager,
    blob_storage: LocalBlobStorage,
    coordination_service: LocalCoordinationService,
    tree_config: TreeConfig,
) -> IntegrityService:
    return IntegrityService(
        session_manager,
        blob_storage,
        coordination_service,
        tree_config,
        blob_sweep_grace_seconds=60,
    )


@pytest_asyncio.fixture(name="client")
async def client_fixture(
    aiohttp_client: AiohttpClient, server_config: ServerConfig
) -> TestClient:
    """Test client for the full application."""
    return await aiohttp_client(create_app(server_config))


def make_auth_headers(server_config: ServerConfig, owner: str) -> dict[str, str]:
    token = jwt.encode(
        {"sub": owner}, server_config.auth.secret_key, algorithm=JWT_ALGORITHM
    )
    return {"x-access-token": token}


@pytest.fixture(name="auth_headers")
def auth_headers_fixture(server_config: ServerConfig) -> dict[str, str]:
    """Auth headers for TEST_OWNER."""
    return make_auth_headers(server_config, TEST_OWNER)
