"""Server configuration.

Values come from `<config_dir>/config.yaml` when present, then environment
variables override them. The file is never written back.
"""

import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from mashumaro.mixins.json import DataClassJSONMixin

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.yaml"
DATABASE_FILE_NAME = "cloudvault.db"


@dataclass
class AuthConfig(DataClassJSONMixin):
    secret_key: str = ""
    """HS256 signing key for access tokens. Generated in memory when empty."""

    expiration_hours: int = 24


@dataclass
class TreeConfig(DataClassJSONMixin):
    """Limits and policies of the file tree."""

    max_depth: int = 256
    """Ancestry walks longer than this are reported as a corrupt tree."""

    operation_timeout: float = 30.0
    """Seconds allowed for one unit of work against the store."""

    preserve_original_type: bool = True
    """Default rename policy: keep a file's extension when the new name omits it."""

    search_limit: int = 100

    storage_quota: int = 10 * 1024 * 1024 * 1024
    """Bytes of live file content allowed per owner; 0 disables the check."""


@dataclass
class ServerConfig(DataClassJSONMixin):
    host: str = "0.0.0.0"
    port: int = 8080
    storage_dir: str = "storage"
    database_url: str | None = None
    auth: AuthConfig = field(default_factory=AuthConfig)
    tree: TreeConfig = field(default_factory=TreeConfig)
    blob_sweep_grace_seconds: int = 3600
    """Unreferenced blobs younger than this are left alone by the sweep."""

    @property
    def storage_root(self) -> Path:
        return Path(self.storage_dir)

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.storage_root / DATABASE_FILE_NAME}"

    @classmethod
    def load(
        cls, config_dir: Path | str | None = None, generate_secret: bool = True
    ) -> "ServerConfig":
        """Load configuration from the config directory and the environment.

        Without a configured JWT secret a random one is generated unless
        `generate_secret` is false, in which case it stays empty.
        """
        data: dict[str, Any] = {}
        if config_dir is not None:
            config_file = Path(config_dir) / CONFIG_FILE_NAME
            if config_file.exists():
                logger.info(f"Loading config from {config_file}")
                with config_file.open() as f:
                    data = yaml.safe_load(f) or {}
            else:
                logger.info(f"No config file at {config_file}, using defaults")

        config = cls.from_dict(data)

        if host := os.getenv("CLOUDVAULT_HOST"):
            config.host = host
        if port := os.getenv("CLOUDVAULT_PORT"):
            config.port = int(port)
        if storage_dir := os.getenv("CLOUDVAULT_STORAGE_DIR"):
            config.storage_dir = storage_dir
        if database_url := os.getenv("CLOUDVAULT_DATABASE_URL"):
            config.database_url = database_url
        if secret := os.getenv("CLOUDVAULT_JWT_SECRET"):
            config.auth.secret_key = secret
        if timeout := os.getenv("CLOUDVAULT_OPERATION_TIMEOUT"):
            config.tree.operation_timeout = float(timeout)
        if quota := os.getenv("CLOUDVAULT_STORAGE_QUOTA"):
            config.tree.storage_quota = int(quota)

        if not config.auth.secret_key and generate_secret:
            logger.warning(
                "No JWT secret configured, generating one; tokens will not survive a restart"
            )
            config.auth.secret_key = secrets.token_hex(32)
        return config
