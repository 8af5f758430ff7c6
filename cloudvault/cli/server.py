"""Subcommand to run the storage server."""

import argparse
from typing import Any


def subcommand_serve(args: argparse.Namespace) -> None:
    # Imported lazily so maintenance commands do not pay for the web stack
    from cloudvault.server.app import run

    run(args)


def add_parser(subparsers: Any) -> None:
    parser_serve = subparsers.add_parser("serve", help="run the storage server")
    parser_serve.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="directory containing config.yaml",
    )
    parser_serve.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser_serve.set_defaults(func=subcommand_serve)
