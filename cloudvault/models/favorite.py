"""Favorite folder API data models."""

from dataclasses import dataclass, field

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.json import DataClassJSONMixin

from .base import BaseResponse, PageResponse
from .file import UserFileVO


@dataclass
class FavoriteFolderVO(DataClassJSONMixin):
    """Object representing a favorite folder."""

    id: str
    name: str
    is_default: bool = field(metadata=field_options(alias="isDefault"))
    description: str | None = None
    file_count: int = field(metadata=field_options(alias="fileCount"), default=0)
    create_time: int = field(metadata=field_options(alias="createTime"), default=0)
    update_time: int = field(metadata=field_options(alias="updateTime"), default=0)

    class Config(BaseConfig):
        serialize_by_alias = True
        omit_none = True


@dataclass
class FavoriteFolderListVO(BaseResponse):
    folders: list[FavoriteFolderVO] = field(default_factory=list)


@dataclass
class FavoriteFolderCreateDTO(DataClassJSONMixin):
    name: str
    description: str | None = None
    is_default: bool = field(metadata=field_options(alias="isDefault"), default=False)

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FavoriteFolderUpdateDTO(DataClassJSONMixin):
    id: int
    name: str | None = None
    description: str | None = None
    is_default: bool | None = field(
        metadata=field_options(alias="isDefault"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FavoriteFolderDeleteDTO(DataClassJSONMixin):
    id: int

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FavoriteFolderResultVO(BaseResponse):
    folder: FavoriteFolderVO | None = None


@dataclass
class FavoriteDTO(DataClassJSONMixin):
    """Request model for adding, removing or checking one favorite.

    When `folderId` is omitted, add uses the default folder while remove and
    check consider every folder.
    """

    file_id: int = field(metadata=field_options(alias="fileId"))
    folder_id: int | None = field(
        metadata=field_options(alias="folderId"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FavoriteBatchDTO(DataClassJSONMixin):
    id_list: list[int] = field(metadata=field_options(alias="idList"))
    folder_id: int | None = field(
        metadata=field_options(alias="folderId"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FavoriteCheckVO(BaseResponse):
    is_favorite: bool = field(metadata=field_options(alias="isFavorite"), default=False)


@dataclass
class FavoriteCountVO(BaseResponse):
    count: int = 0


@dataclass
class FavoriteListDTO(DataClassJSONMixin):
    folder_id: int | None = field(
        metadata=field_options(alias="folderId"), default=None
    )
    page_no: int = field(metadata=field_options(alias="pageNo"), default=1)
    page_size: int = field(metadata=field_options(alias="pageSize"), default=50)

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FavoriteFileVO(DataClassJSONMixin):
    """A favorited file along with the favorite folder holding it."""

    favorite_id: str = field(metadata=field_options(alias="favoriteId"))
    folder_id: str = field(metadata=field_options(alias="folderId"))
    folder_name: str = field(metadata=field_options(alias="folderName"))
    file: UserFileVO

    class Config(BaseConfig):
        serialize_by_alias = True
        omit_none = True


@dataclass
class FavoriteListVO(PageResponse):
    items: list[FavoriteFileVO] = field(default_factory=list)
