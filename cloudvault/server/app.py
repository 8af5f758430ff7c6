import logging
import time
from argparse import Namespace
from collections.abc import Awaitable, Callable

import jwt
from aiohttp import web

from cloudvault.models.base import create_error_response
from cloudvault.models.file import FileErrorVO

from .config import ServerConfig
from .db.session import DatabaseSessionManager
from .routes import favorite, file_web, system
from .services.blob import LocalBlobStorage
from .services.coordination import LocalCoordinationService
from .services.exceptions import (
    FileServiceException,
    InvalidMoveCycle,
    NameConflict,
)
from .services.favorite import FavoriteService
from .services.file import FileService
from .services.integrity import IntegrityService

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def trace_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    start = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as err:
        status = err.status
        raise
    finally:
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(f"Trace: {request.method} {request.path} -> {status} ({elapsed_ms:.1f} ms)")


def _error_body(err: FileServiceException) -> FileErrorVO:
    body = FileErrorVO(success=False, error_code=err.error_code, error_msg=str(err))
    if isinstance(err, NameConflict):
        body.conflict_names = err.names
    elif isinstance(err, InvalidMoveCycle):
        body.item_id = str(err.item_id)
    return body


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Convert service errors into JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except FileServiceException as err:
        if err.status >= 500:
            logger.warning(f"{request.method} {request.path} failed: {err}")
        else:
            logger.debug(f"{request.method} {request.path} rejected: {err}")
        return web.json_response(_error_body(err).to_dict(), status=err.status)
    except Exception:
        logger.exception(f"Unhandled error for {request.method} {request.path}")
        return web.json_response(
            create_error_response("Internal server error", "E500").to_dict(),
            status=500,
        )


def _unauthorized(message: str) -> web.Response:
    return web.json_response(
        create_error_response(message, "E401").to_dict(), status=401
    )


@web.middleware
async def jwt_auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if getattr(handler, "is_public", False):
        return await handler(request)

    token = request.headers.get("x-access-token")
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
    if not token:
        return _unauthorized("Unauthorized")

    config: ServerConfig = request.app["config"]
    try:
        payload = jwt.decode(token, config.auth.secret_key, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return _unauthorized("Invalid token")
    if not (user := payload.get("sub")):
        return _unauthorized("Invalid token")
    request["user"] = str(user)
    return await handler(request)


def create_token(config: ServerConfig, owner: str) -> str:
    """Issue an access token for `owner`."""
    now = int(time.time())
    payload = {
        "sub": owner,
        "iat": now,
        "exp": now + config.auth.expiration_hours * 3600,
    }
    return jwt.encode(payload, config.auth.secret_key, algorithm=JWT_ALGORITHM)


def create_app(config: ServerConfig | None = None) -> web.Application:
    if config is None:
        config = ServerConfig.load()

    app = web.Application(
        middlewares=[trace_middleware, error_middleware, jwt_auth_middleware]
    )
    app["config"] = config

    # Initialize services
    storage_root = config.storage_root
    storage_root.mkdir(parents=True, exist_ok=True)
    session_manager = DatabaseSessionManager(config.db_url)
    blob_storage = LocalBlobStorage(storage_root)
    coordination_service = LocalCoordinationService()
    favorite_service = FavoriteService(session_manager, coordination_service, config.tree)
    file_service = FileService(
        session_manager,
        blob_storage,
        coordination_service,
        config.tree,
        favorite_service=favorite_service,
    )
    app["session_manager"] = session_manager
    app["blob_storage"] = blob_storage
    app["coordination_service"] = coordination_service
    app["favorite_service"] = favorite_service
    app["file_service"] = file_service
    app["integrity_service"] = IntegrityService(
        session_manager,
        blob_storage,
        coordination_service,
        config.tree,
        config.blob_sweep_grace_seconds,
    )

    async def on_startup(app: web.Application) -> None:
        await session_manager.create_all()

    async def on_cleanup(app: web.Application) -> None:
        await file_service.wait_for_background_tasks()
        await session_manager.close()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    # Register routes
    app.add_routes(system.routes)
    app.add_routes(file_web.routes)
    app.add_routes(favorite.routes)
    return app


def run(args: Namespace) -> None:
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = ServerConfig.load(getattr(args, "config_dir", None))
    app = create_app(config)
    logger.info(f"Starting server on {config.host}:{config.port}")
    web.run_app(app, host=config.host, port=config.port, handler_cancellation=True)
