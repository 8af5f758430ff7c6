import logging

from aiohttp import web

from cloudvault.models.base import BaseResponse
from cloudvault.models.favorite import (
    FavoriteBatchDTO,
    FavoriteCheckVO,
    FavoriteCountVO,
    FavoriteDTO,
    FavoriteFileVO,
    FavoriteFolderCreateDTO,
    FavoriteFolderDeleteDTO,
    FavoriteFolderListVO,
    FavoriteFolderResultVO,
    FavoriteFolderUpdateDTO,
    FavoriteFolderVO,
    FavoriteListDTO,
    FavoriteListVO,
)
from cloudvault.server.services.favorite import FavoriteFolderEntity, FavoriteService

from .common import parse_body, to_user_file_vo

logger = logging.getLogger(__name__)
routes = web.RouteTableDef()


def _to_folder_vo(folder: FavoriteFolderEntity) -> FavoriteFolderVO:
    return FavoriteFolderVO(
        id=str(folder.id),
        name=folder.name,
        is_default=folder.is_default,
        description=folder.description,
        file_count=folder.file_count,
        create_time=folder.create_time,
        update_time=folder.update_time,
    )


@routes.post("/api/favorite/add")
async def handle_favorite_add(request: web.Request) -> web.Response:
    # Endpoint: POST /api/favorite/add
    # Purpose: Favorite a file, in the default folder unless folderId is given.
    # Response: FavoriteCountVO (number of favorites added)

    req_data = await parse_body(request, FavoriteDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    added = await favorite_service.add_to_folder(
        user, req_data.file_id, req_data.folder_id
    )
    return web.json_response(FavoriteCountVO(count=int(added)).to_dict())


@routes.post("/api/favorite/remove")
async def handle_favorite_remove(request: web.Request) -> web.Response:
    req_data = await parse_body(request, FavoriteDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    removed = await favorite_service.remove_from_folder(
        user, req_data.file_id, req_data.folder_id
    )
    return web.json_response(FavoriteCountVO(count=int(removed)).to_dict())


@routes.post("/api/favorite/batch/add")
async def handle_favorite_batch_add(request: web.Request) -> web.Response:
    req_data = await parse_body(request, FavoriteBatchDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    added = await favorite_service.add_batch_to_folder(
        user, req_data.id_list, req_data.folder_id
    )
    return web.json_response(FavoriteCountVO(count=added).to_dict())


@routes.post("/api/favorite/batch/remove")
async def handle_favorite_batch_remove(request: web.Request) -> web.Response:
    req_data = await parse_body(request, FavoriteBatchDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    removed = await favorite_service.remove_batch_from_folder(
        user, req_data.id_list, req_data.folder_id
    )
    return web.json_response(FavoriteCountVO(count=removed).to_dict())


@routes.post("/api/favorite/check")
async def handle_favorite_check(request: web.Request) -> web.Response:
    req_data = await parse_body(request, FavoriteDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    is_favorite = await favorite_service.is_favorite(
        user, req_data.file_id, req_data.folder_id
    )
    return web.json_response(FavoriteCheckVO(is_favorite=is_favorite).to_dict())


@routes.post("/api/favorite/list")
async def handle_favorite_list(request: web.Request) -> web.Response:
    # Endpoint: POST /api/favorite/list
    # Purpose: Page through favorites of live files, newest first.
    # Response: FavoriteListVO

    req_data = await parse_body(request, FavoriteListDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    page = await favorite_service.list_favorites(
        user, req_data.folder_id, req_data.page_no, req_data.page_size
    )
    response = FavoriteListVO(
        total=page.total,
        pages=page.pages,
        page_no=page.page_no,
        page_size=page.page_size,
        items=[
            FavoriteFileVO(
                favorite_id=str(item.favorite_id),
                folder_id=str(item.folder_id),
                folder_name=item.folder_name,
                file=to_user_file_vo(item.file),
            )
            for item in page.items
        ],
    )
    return web.json_response(response.to_dict())


@routes.get("/api/favorite/folders")
async def handle_favorite_folders(request: web.Request) -> web.Response:
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    folders = await favorite_service.list_favorite_folders(user)
    response = FavoriteFolderListVO(folders=[_to_folder_vo(f) for f in folders])
    return web.json_response(response.to_dict())


@routes.post("/api/favorite/folder/create")
async def handle_favorite_folder_create(request: web.Request) -> web.Response:
    req_data = await parse_body(request, FavoriteFolderCreateDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    folder = await favorite_service.create_favorite_folder(
        user, req_data.name, req_data.description, req_data.is_default
    )
    return web.json_response(FavoriteFolderResultVO(folder=_to_folder_vo(folder)).to_dict())


@routes.post("/api/favorite/folder/update")
async def handle_favorite_folder_update(request: web.Request) -> web.Response:
    req_data = await parse_body(request, FavoriteFolderUpdateDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    folder = await favorite_service.update_favorite_folder(
        user,
        req_data.id,
        name=req_data.name,
        description=req_data.description,
        is_default=req_data.is_default,
    )
    return web.json_response(FavoriteFolderResultVO(folder=_to_folder_vo(folder)).to_dict())


@routes.post("/api/favorite/folder/delete")
async def handle_favorite_folder_delete(request: web.Request) -> web.Response:
    # Endpoint: POST /api/favorite/folder/delete
    # Purpose: Delete a non-default folder; its favorites move to the default.

    req_data = await parse_body(request, FavoriteFolderDeleteDTO)
    user = request["user"]
    favorite_service: FavoriteService = request.app["favorite_service"]

    moved = await favorite_service.delete_favorite_folder(user, req_data.id)
    logger.debug(f"Folder {req_data.id} deleted, {moved} favorites reassigned")
    return web.json_response(BaseResponse().to_dict())
