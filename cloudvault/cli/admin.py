"""Maintenance subcommands: integrity checks, blob sweeping and tokens."""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

from cloudvault.server.config import ServerConfig
from cloudvault.server.db.session import DatabaseSessionManager
from cloudvault.server.services.blob import LocalBlobStorage
from cloudvault.server.services.coordination import LocalCoordinationService
from cloudvault.server.services.integrity import IntegrityService

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _integrity_service(
    config: ServerConfig, session_manager: DatabaseSessionManager
) -> IntegrityService:
    return IntegrityService(
        session_manager,
        LocalBlobStorage(config.storage_root),
        LocalCoordinationService(),
        config.tree,
        config.blob_sweep_grace_seconds,
    )


async def async_integrity(config: ServerConfig, owner: str, repair: bool) -> bool:
    session_manager = DatabaseSessionManager(config.db_url)
    service = _integrity_service(config, session_manager)
    try:
        await session_manager.create_all()
        report = await service.verify_user_tree(owner, repair=repair)
    finally:
        await session_manager.close()
    print(json.dumps(asdict(report), indent=2))
    return report.is_consistent


async def async_sweep_blobs(config: ServerConfig) -> None:
    session_manager = DatabaseSessionManager(config.db_url)
    service = _integrity_service(config, session_manager)
    try:
        await session_manager.create_all()
        report = await service.sweep_orphan_blobs()
    finally:
        await session_manager.close()
    print(json.dumps(asdict(report), indent=2))


def subcommand_integrity(args: argparse.Namespace) -> None:
    """Handler for integrity subcommand."""
    setup_logging(args.verbose)
    config = ServerConfig.load(args.config_dir)
    consistent = asyncio.run(async_integrity(config, args.owner, args.repair))
    if not consistent and not args.repair:
        sys.exit(1)


def subcommand_sweep_blobs(args: argparse.Namespace) -> None:
    """Handler for sweep-blobs subcommand."""
    setup_logging(args.verbose)
    config = ServerConfig.load(args.config_dir)
    asyncio.run(async_sweep_blobs(config))


def subcommand_token(args: argparse.Namespace) -> None:
    """Handler for token subcommand."""
    from cloudvault.server.app import create_token

    setup_logging(args.verbose)
    config = ServerConfig.load(args.config_dir, generate_secret=False)
    if not config.auth.secret_key:
        logger.error(
            "No JWT secret configured; set auth.secret_key or CLOUDVAULT_JWT_SECRET "
            "so the server accepts the token"
        )
        sys.exit(1)
    print(create_token(config, args.owner))


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="directory containing config.yaml",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )


def add_parser(subparsers: Any) -> None:
    parser_integrity = subparsers.add_parser(
        "integrity", help="verify the file tree of an owner"
    )
    parser_integrity.add_argument("owner", type=str, help="owner id")
    parser_integrity.add_argument(
        "--repair", action="store_true", help="fix what can be fixed"
    )
    _add_common(parser_integrity)
    parser_integrity.set_defaults(func=subcommand_integrity)

    parser_sweep = subparsers.add_parser(
        "sweep-blobs", help="delete stored blobs no live file references"
    )
    _add_common(parser_sweep)
    parser_sweep.set_defaults(func=subcommand_sweep_blobs)

    parser_token = subparsers.add_parser(
        "token", help="issue an access token for development"
    )
    parser_token.add_argument("owner", type=str, help="owner id")
    _add_common(parser_token)
    parser_token.set_defaults(func=subcommand_token)
