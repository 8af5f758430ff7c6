import os
from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from cloudvault.server.config import ServerConfig


@pytest.fixture(autouse=True)
def patch_server_config() -> Generator[None, None, None]:
    """Override the autouse fixture from conftest.py to do nothing.

    This ensures that ServerConfig.load() runs the real logic instead of returning a mock.
    """
    yield


def test_server_config_defaults(tmp_path: Path) -> None:
    """Test loading configuration with defaults."""
    config_dir = tmp_path / "config"
    # Ensure directory exists but no file
    config_dir.mkdir()

    config = ServerConfig.load(config_dir)

    assert config.host == "0.0.0.0"
    assert config.port == 8080
    assert config.storage_dir == "storage"
    assert config.db_url == "sqlite+aiosqlite:///storage/cloudvault.db"
    assert config.auth.secret_key != ""  # Should be generated in-memory
    assert config.tree.max_depth == 256
    assert config.tree.preserve_original_type is True

    # Verify NO config file was created (read-only)
    config_file = config_dir / "config.yaml"
    assert not config_file.exists()


def test_server_config_load_from_file(tmp_path: Path) -> None:
    """Test loading configuration from a file."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "config.yaml"

    data = {
        "host": "127.0.0.1",
        "port": 9090,
        "storage_dir": str(tmp_path / "data"),
        "database_url": "sqlite+aiosqlite:///:memory:",
        "auth": {"secret_key": "my-secret-key", "expiration_hours": 1},
        "tree": {"max_depth": 32, "operation_timeout": 2.5, "search_limit": 10},
    }
    with open(config_file, "w") as f:
        yaml.safe_dump(data, f)

    config = ServerConfig.load(config_dir)

    assert config.host == "127.0.0.1"
    assert config.port == 9090
    assert config.storage_root == tmp_path / "data"
    assert config.db_url == "sqlite+aiosqlite:///:memory:"
    assert config.auth.secret_key == "my-secret-key"
    assert config.auth.expiration_hours == 1
    assert config.tree.max_depth == 32
    assert config.tree.operation_timeout == 2.5
    assert config.tree.search_limit == 10


def test_server_config_env_var_override(tmp_path: Path) -> None:
    """Test that environment variables override config file."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text("port: 9090\n")

    with patch.dict(
        os.environ,
        {
            "CLOUDVAULT_JWT_SECRET": "env-secret",
            "CLOUDVAULT_HOST": "1.2.3.4",
            "CLOUDVAULT_PORT": "5555",
            "CLOUDVAULT_OPERATION_TIMEOUT": "0.5",
        },
    ):
        config = ServerConfig.load(config_dir)
        assert config.auth.secret_key == "env-secret"
        assert config.host == "1.2.3.4"
        assert config.port == 5555
        assert config.tree.operation_timeout == 0.5


def test_empty_config_file(tmp_path: Path) -> None:
    (tmp_path / "config.yaml").write_text("")
    config = ServerConfig.load(tmp_path)
    assert config.port == 8080


def test_secret_not_generated_on_request(tmp_path: Path) -> None:
    with patch.dict(os.environ, {}, clear=True):
        config = ServerConfig.load(tmp_path, generate_secret=False)
    assert config.auth.secret_key == ""
