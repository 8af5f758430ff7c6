"""Decorators for route handlers."""

from collections.abc import Awaitable, Callable

from aiohttp import web

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def public_route(handler: Handler) -> Handler:
    """Decorator to mark a route handler as public (no authentication required)."""
    handler.is_public = True  # type: ignore[attr-defined]
    return handler
