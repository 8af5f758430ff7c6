"""Module for database models."""

from . import favorite, file  # noqa: F401

__all__ = [
    "favorite",
    "file",
]
