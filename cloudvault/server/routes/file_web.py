import logging
import urllib.parse
from collections.abc import AsyncIterator

from aiohttp import BodyPartReader, hdrs, web

from cloudvault.models.file import (
    CapacityVO,
    FileDeleteDTO,
    FileDeleteVO,
    FileListQueryDTO,
    FileListQueryVO,
    FileMoveDTO,
    FileMoveVO,
    FilePathQueryDTO,
    FilePathQueryVO,
    FileSearchDTO,
    FileSearchVO,
    FileUpdateDTO,
    FileVO,
    FolderCreateDTO,
    NameConflictQueryDTO,
    NameConflictQueryVO,
    PathItemVO,
    RecentFilesVO,
    TagAddDTO,
    TagListVO,
    TagRemoveDTO,
    TagUpdateVO,
)
from cloudvault.server.services.exceptions import ValidationError
from cloudvault.server.services.file import FileService
from cloudvault.server.utils.names import normalize_tags

from .common import parse_body, parse_optional_int, to_user_file_vo

logger = logging.getLogger(__name__)
routes = web.RouteTableDef()


@routes.post("/api/file/folder/create")
async def handle_folder_create(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/folder/create
    # Purpose: Create a folder under parentId (root when omitted).
    # Response: FileVO

    req_data = await parse_body(request, FolderCreateDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    entity = await file_service.create_folder(
        user, req_data.name, req_data.parent_id, req_data.tags
    )
    return web.json_response(FileVO(file=to_user_file_vo(entity)).to_dict())


async def _read_field(field: BodyPartReader) -> AsyncIterator[bytes]:
    while chunk := await field.read_chunk():
        yield chunk


@routes.post("/api/file/upload")
async def handle_upload(request: web.Request) -> web.Response:
    """Upload one file.

    Body: multipart/form-data with a `file` part, optionally preceded by a
    `name` part.
    Query: name, parentId, tags (comma separated); all optional.

    The entity name is the explicit `name` when given. The part's filename is
    only a fallback, since clients may percent-encode it.
    """
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    name = request.query.get("name")
    parent_id = parse_optional_int(request.query.get("parentId"), "parentId")
    tags = normalize_tags(request.query.get("tags", "").split(","))

    if not request.content_type.startswith("multipart/"):
        raise ValidationError("Expected a multipart/form-data body")
    reader = await request.multipart()
    while (field := await reader.next()) is not None:
        if not isinstance(field, BodyPartReader):
            continue
        if field.name == "name" and not name:
            name = (await field.text()).strip()
        elif field.name == "file":
            name = name or field.filename
            if not name:
                raise ValidationError("Uploaded file has no name")
            entity = await file_service.upload_file(
                user,
                name,
                _read_field(field),
                parent_id=parent_id,
                tags=tags,
                mime_type=field.headers.get(hdrs.CONTENT_TYPE),
            )
            return web.json_response(FileVO(file=to_user_file_vo(entity)).to_dict())

    raise ValidationError("No file field found")


@routes.post("/api/file/update")
async def handle_update(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/update
    # Purpose: Rename an item and/or replace its tags.
    # Response: FileVO

    req_data = await parse_body(request, FileUpdateDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    entity = await file_service.update_file(
        user,
        req_data.id,
        name=req_data.name,
        tags=req_data.tags,
        preserve_original_type=req_data.preserve_original_type,
    )
    return web.json_response(FileVO(file=to_user_file_vo(entity)).to_dict())


@routes.post("/api/file/move")
async def handle_move(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/move
    # Purpose: Move items into a folder, all or nothing.
    # Response: FileMoveVO

    req_data = await parse_body(request, FileMoveDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    moved = await file_service.move_items(
        user, req_data.id_list, req_data.target_folder_id
    )
    return web.json_response(FileMoveVO(moved_count=moved).to_dict())


@routes.post("/api/file/delete")
async def handle_delete(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/delete
    # Purpose: Soft delete items and their descendants.
    # Response: FileDeleteVO

    req_data = await parse_body(request, FileDeleteDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    deleted = await file_service.delete_items(user, req_data.id_list)
    return web.json_response(FileDeleteVO(deleted_count=deleted).to_dict())


@routes.post("/api/file/list/query")
async def handle_file_list_query(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/list/query
    # Purpose: List the children of a folder, folders first.
    # Response: FileListQueryVO

    req_data = await parse_body(request, FileListQueryDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    page = await file_service.list_folder(
        user,
        req_data.parent_id,
        category=req_data.type,
        order=req_data.order,
        sequence=req_data.sequence,
        page_no=req_data.page_no,
        page_size=req_data.page_size,
    )
    response = FileListQueryVO(
        total=page.total,
        pages=page.pages,
        page_no=page.page_no,
        page_size=page.page_size,
        items=[to_user_file_vo(e) for e in page.items],
    )
    return web.json_response(response.to_dict())


@routes.post("/api/file/search")
async def handle_file_search(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/search
    # Purpose: Search by name or tag.
    # Response: FileSearchVO

    req_data = await parse_body(request, FileSearchDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    entities = await file_service.search(
        user,
        req_data.query,
        mode=req_data.mode,
        category=req_data.type,
        tags=req_data.tags,
        include_folder=req_data.include_folder,
    )
    response = FileSearchVO(items=[to_user_file_vo(e) for e in entities])
    return web.json_response(response.to_dict())


@routes.post("/api/file/path/query")
async def handle_path_query(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/path/query
    # Purpose: Breadcrumbs of a folder.
    # Response: FilePathQueryVO

    req_data = await parse_body(request, FilePathQueryDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    chain = await file_service.get_folder_path(user, req_data.id)
    response = FilePathQueryVO(
        path=[PathItemVO(id=str(a.id), name=a.name) for a in chain]
    )
    return web.json_response(response.to_dict())


@routes.post("/api/file/name/conflicts")
async def handle_name_conflicts(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/name/conflicts
    # Purpose: Check which names already exist in a folder before uploading.
    # Response: NameConflictQueryVO

    req_data = await parse_body(request, NameConflictQueryDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    conflicts = await file_service.check_name_conflicts(
        user, req_data.parent_id, req_data.names
    )
    return web.json_response(NameConflictQueryVO(conflicts=conflicts).to_dict())


@routes.get("/api/file/tags")
async def handle_tag_list(request: web.Request) -> web.Response:
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    tags = await file_service.list_tags(user)
    return web.json_response(TagListVO(tags=tags).to_dict())


@routes.post("/api/file/tags/add")
async def handle_tag_add(request: web.Request) -> web.Response:
    req_data = await parse_body(request, TagAddDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    updated = await file_service.add_tag(user, req_data.tag, req_data.id_list)
    return web.json_response(
        TagUpdateVO(tag=req_data.tag.strip(), updated_count=updated).to_dict()
    )


@routes.post("/api/file/tags/remove")
async def handle_tag_remove(request: web.Request) -> web.Response:
    req_data = await parse_body(request, TagRemoveDTO)
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    if not req_data.delete_all and not req_data.id_list:
        raise ValidationError("Either idList or deleteAll is required")
    updated = await file_service.remove_tag(
        user, req_data.tag, req_data.id_list, delete_all=req_data.delete_all
    )
    return web.json_response(
        TagUpdateVO(tag=req_data.tag.strip(), updated_count=updated).to_dict()
    )


@routes.post("/api/file/capacity/query")
async def handle_capacity_query(request: web.Request) -> web.Response:
    # Endpoint: POST /api/file/capacity/query
    # Purpose: Get storage usage and quota of the caller.
    # Response: CapacityVO

    user = request["user"]
    file_service: FileService = request.app["file_service"]

    quota = await file_service.get_storage_quota(user)
    response = CapacityVO(
        used_capacity=quota.used,
        total_capacity=quota.total,
        available_capacity=quota.available,
        percentage=quota.percentage,
    )
    return web.json_response(response.to_dict())


@routes.get("/api/file/recent")
async def handle_recent(request: web.Request) -> web.Response:
    # Endpoint: GET /api/file/recent?limit=10
    # Purpose: Most recently updated files, at most 50.
    # Response: RecentFilesVO

    user = request["user"]
    file_service: FileService = request.app["file_service"]

    limit = parse_optional_int(request.query.get("limit"), "limit")
    entities = await file_service.list_recent(user, 10 if limit is None else limit)
    return web.json_response(
        RecentFilesVO(items=[to_user_file_vo(e) for e in entities]).to_dict()
    )


@routes.get(r"/api/file/{file_id:\d+}")
async def handle_get_file(request: web.Request) -> web.Response:
    user = request["user"]
    file_service: FileService = request.app["file_service"]

    entity = await file_service.get_file(user, int(request.match_info["file_id"]))
    return web.json_response(FileVO(file=to_user_file_vo(entity)).to_dict())


@routes.get(r"/api/file/{file_id:\d+}/content")
async def handle_download(request: web.Request) -> web.StreamResponse:
    # Endpoint: GET /api/file/{id}/content
    # Purpose: Download the content of a file.

    user = request["user"]
    file_service: FileService = request.app["file_service"]

    entity, blob_path = await file_service.open_content(
        user, int(request.match_info["file_id"])
    )
    quoted = urllib.parse.quote(entity.name)
    headers = {hdrs.CONTENT_DISPOSITION: f"attachment; filename*=UTF-8''{quoted}"}
    if entity.mime_type:
        headers[hdrs.CONTENT_TYPE] = entity.mime_type
    return web.FileResponse(blob_path, headers=headers)

