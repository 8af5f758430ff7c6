"""File and folder API data models."""

from dataclasses import dataclass, field

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.json import DataClassJSONMixin

from .base import BaseEnum, BaseResponse, PageResponse


class FileCategory(str, BaseEnum):
    """Closed set of file categories used for type filtering."""

    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"
    AUDIO = "audio"
    ARCHIVE = "archive"
    CODE = "code"
    OTHER = "other"
    FOLDER = "folder"


class FileSortOrder(str, BaseEnum):
    """Secondary sort key for file listing. Folders always sort first."""

    NAME = "name"
    SIZE = "size"
    CREATE_TIME = "createTime"
    UPDATE_TIME = "updateTime"


class FileSortSequence(str, BaseEnum):
    """Sort direction for file listing."""

    ASC = "asc"
    DESC = "desc"


class SearchMode(str, BaseEnum):
    """Whether a search query matches names or tags."""

    NAME = "name"
    TAG = "tag"


@dataclass
class UserFileVO(DataClassJSONMixin):
    """Object representing a file or folder."""

    id: str
    name: str
    is_folder: bool = field(metadata=field_options(alias="isFolder"))
    path: str
    """Slash separated names of the ancestors, "/" at the root."""

    parent_id: str | None = field(
        metadata=field_options(alias="parentId"), default=None
    )
    size: int = 0
    type: FileCategory = FileCategory.OTHER
    mime_type: str | None = field(
        metadata=field_options(alias="mimeType"), default=None
    )
    extension: str | None = None
    md5: str | None = None
    url: str | None = None
    tags: list[str] = field(default_factory=list)
    create_time: int = field(metadata=field_options(alias="createTime"), default=0)
    update_time: int = field(metadata=field_options(alias="updateTime"), default=0)

    class Config(BaseConfig):
        serialize_by_alias = True
        omit_none = True


@dataclass
class FileErrorVO(BaseResponse):
    """Error response identifying which items blocked an operation."""

    conflict_names: list[str] | None = field(
        metadata=field_options(alias="conflictNames"), default=None
    )
    """Names that collided with existing siblings."""

    item_id: str | None = field(metadata=field_options(alias="itemId"), default=None)
    """The item that caused the failure, e.g. a folder that would form a cycle."""


@dataclass
class FolderCreateDTO(DataClassJSONMixin):
    """Request model for creating a folder."""

    name: str
    parent_id: int | None = field(
        metadata=field_options(alias="parentId"), default=None
    )
    tags: list[str] = field(default_factory=list)

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FileVO(BaseResponse):
    """Response model wrapping a single file."""

    file: UserFileVO | None = None


@dataclass
class FileUpdateDTO(DataClassJSONMixin):
    """Request model for renaming a file and/or replacing its tags."""

    id: int
    name: str | None = None
    tags: list[str] | None = None
    preserve_original_type: bool | None = field(
        metadata=field_options(alias="preserveOriginalType"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FileMoveDTO(DataClassJSONMixin):
    """Request model for moving items into a folder (null for root)."""

    id_list: list[int] = field(metadata=field_options(alias="idList"))
    target_folder_id: int | None = field(
        metadata=field_options(alias="targetFolderId"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FileMoveVO(BaseResponse):
    moved_count: int = field(metadata=field_options(alias="movedCount"), default=0)


@dataclass
class FileDeleteDTO(DataClassJSONMixin):
    """Request model for deleting files."""

    id_list: list[int] = field(metadata=field_options(alias="idList"))

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FileDeleteVO(BaseResponse):
    deleted_count: int = field(
        metadata=field_options(alias="deletedCount"), default=0
    )


@dataclass
class FileListQueryDTO(DataClassJSONMixin):
    """Request model for listing the children of a folder."""

    parent_id: int | None = field(
        metadata=field_options(alias="parentId"), default=None
    )
    type: FileCategory | None = None
    order: FileSortOrder = FileSortOrder.CREATE_TIME
    sequence: FileSortSequence = FileSortSequence.DESC
    page_no: int = field(metadata=field_options(alias="pageNo"), default=1)
    page_size: int = field(metadata=field_options(alias="pageSize"), default=50)

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FileListQueryVO(PageResponse):
    """Response model containing a paginated list of files."""

    items: list[UserFileVO] = field(default_factory=list)


@dataclass
class FileSearchDTO(DataClassJSONMixin):
    """Request model for searching by name or tag."""

    query: str
    type: FileCategory | None = None
    tags: list[str] = field(default_factory=list)
    include_folder: bool = field(
        metadata=field_options(alias="includeFolder"), default=True
    )
    mode: SearchMode = SearchMode.NAME

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class FileSearchVO(BaseResponse):
    items: list[UserFileVO] = field(default_factory=list)


@dataclass
class FilePathQueryDTO(DataClassJSONMixin):
    id: int

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class PathItemVO(DataClassJSONMixin):
    """One breadcrumb element."""

    id: str
    name: str


@dataclass
class FilePathQueryVO(BaseResponse):
    """Breadcrumbs ordered from the root to the requested folder."""

    path: list[PathItemVO] = field(default_factory=list)


@dataclass
class NameConflictQueryDTO(DataClassJSONMixin):
    names: list[str]
    parent_id: int | None = field(
        metadata=field_options(alias="parentId"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class NameConflictQueryVO(BaseResponse):
    conflicts: list[str] = field(default_factory=list)


@dataclass
class TagListVO(BaseResponse):
    tags: list[str] = field(default_factory=list)


@dataclass
class TagAddDTO(DataClassJSONMixin):
    """Request model for adding one tag to several files."""

    tag: str
    id_list: list[int] = field(metadata=field_options(alias="idList"))

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class TagRemoveDTO(DataClassJSONMixin):
    """Request model for removing a tag from some files, or from all of them."""

    tag: str
    id_list: list[int] = field(
        metadata=field_options(alias="idList"), default_factory=list
    )
    delete_all: bool = field(metadata=field_options(alias="deleteAll"), default=False)

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class TagUpdateVO(BaseResponse):
    tag: str | None = None
    updated_count: int = field(
        metadata=field_options(alias="updatedCount"), default=0
    )


@dataclass
class CapacityVO(BaseResponse):
    """Response model for storage usage against the quota."""

    used_capacity: int = field(metadata=field_options(alias="usedCapacity"), default=0)
    total_capacity: int = field(
        metadata=field_options(alias="totalCapacity"), default=0
    )
    available_capacity: int = field(
        metadata=field_options(alias="availableCapacity"), default=0
    )
    percentage: float = 0.0


@dataclass
class RecentFilesVO(BaseResponse):
    items: list[UserFileVO] = field(default_factory=list)
