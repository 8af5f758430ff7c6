from aiohttp import web

from cloudvault.models.base import BaseResponse

from .decorators import public_route

routes = web.RouteTableDef()


@routes.get("/health")
@public_route
async def handle_health(request: web.Request) -> web.Response:
    # Endpoint: GET /health
    # Purpose: Liveness check, no authentication.
    return web.json_response(BaseResponse().to_dict())
