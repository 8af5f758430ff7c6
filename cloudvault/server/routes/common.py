"""Request parsing and response conversion shared by the route modules."""

import json
from typing import Any, TypeVar

from aiohttp import web
from mashumaro.exceptions import InvalidFieldValue, MissingField
from mashumaro.mixins.json import DataClassJSONMixin

from cloudvault.models.file import UserFileVO
from cloudvault.server.services.exceptions import ValidationError
from cloudvault.server.services.file import FileEntity

_DTO = TypeVar("_DTO", bound=DataClassJSONMixin)


async def parse_body(request: web.Request, dto_cls: type[_DTO]) -> _DTO:
    """Decode a JSON body into a request model, raising `ValidationError`."""
    text = await request.text()
    try:
        data: Any = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError as err:
        raise ValidationError(f"Malformed JSON body: {err}") from err
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return dto_cls.from_dict(data)
    except (MissingField, InvalidFieldValue) as err:
        raise ValidationError(str(err)) from err


def parse_optional_int(value: str | None, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError as err:
        raise ValidationError(f"{name} must be an integer") from err


def to_user_file_vo(entity: FileEntity) -> UserFileVO:
    return UserFileVO(
        id=str(entity.id),
        name=entity.name,
        is_folder=entity.is_folder,
        path=entity.path,
        parent_id=str(entity.parent_id) if entity.parent_id is not None else None,
        size=entity.size,
        type=entity.category,
        mime_type=entity.mime_type,
        extension=entity.extension,
        md5=entity.md5,
        url=entity.url,
        tags=list(entity.tags),
        create_time=entity.create_time,
        update_time=entity.update_time,
    )
