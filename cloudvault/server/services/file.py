import asyncio
import logging
import mimetypes
from collections.abc import AsyncGenerator, AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cloudvault.models.file import (
    FileCategory,
    FileSortOrder,
    FileSortSequence,
    SearchMode,
)

from ..config import TreeConfig
from ..db.models.file import UserFileDO
from ..db.session import DatabaseSessionManager
from ..utils.file_types import classify
from ..utils.names import (
    MAX_NAME_LENGTH,
    ROOT_PATH,
    child_path,
    name_key,
    normalize_tags,
    sanitize_name,
    split_extension,
)
from .ancestry import Ancestor, AncestryResolver
from .blob import BlobStorage
from .coordination import CoordinationService
from .exceptions import (
    CorruptTree,
    InvalidMoveCycle,
    NameConflict,
    NotFoundOrForbidden,
    QuotaExceeded,
    ValidationError,
)
from .unit_of_work import unit_of_work
from .vfs import VirtualFileSystem

if TYPE_CHECKING:
    from .favorite import FavoriteService

logger = logging.getLogger(__name__)


__all__ = [
    "FileService",
    "FileEntity",
    "FilePage",
    "StorageQuota",
]

MAX_PAGE_SIZE = 1000
MAX_RECENT_LIMIT = 50


def tree_lock_key(owner: str) -> str:
    return f"tree:{owner}"


@dataclass
class FileEntity:
    """Domain object representing a file or folder."""

    id: int
    parent_id: int | None
    name: str
    is_folder: bool
    path: str
    size: int
    category: FileCategory
    extension: str | None
    mime_type: str | None
    md5: str | None
    create_time: int
    update_time: int
    tags: list[str] = field(default_factory=list)

    @property
    def url(self) -> str | None:
        """Where the content of a file can be downloaded."""
        if self.is_folder:
            return None
        return f"/api/file/{self.id}/content"

    @property
    def full_path(self) -> str:
        """Path including the entity's own name."""
        return child_path(self.path, self.name)


def to_file_entity(node: UserFileDO) -> FileEntity:
    """Convert a UserFileDO to a FileEntity."""
    return FileEntity(
        id=node.id,
        parent_id=node.parent_id,
        name=node.name,
        is_folder=node.is_folder,
        path=node.path,
        size=node.size,
        category=FileCategory(node.category),
        extension=node.extension,
        mime_type=node.mime_type,
        md5=node.md5,
        create_time=int(node.create_time),
        update_time=int(node.update_time),
        tags=node.tag_names,
    )


@dataclass
class FilePage:
    """One page of a folder listing."""

    total: int
    page_no: int
    page_size: int
    items: list[FileEntity]

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


@dataclass
class StorageQuota:
    """Storage use of an owner against their quota, in bytes."""

    total: int
    used: int

    @property
    def available(self) -> int:
        return max(self.total - self.used, 0)

    @property
    def percentage(self) -> float:
        """Share of the quota in use, capped at 100."""
        if self.total <= 0:
            return 0.0
        return round(min(100.0, self.used * 100 / self.total), 2)


def clean_name(name: str) -> str:
    """Sanitize a user supplied name or raise `ValidationError`."""
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Name must not be empty")
    cleaned = sanitize_name(name)
    if not cleaned or cleaned == ".":
        raise ValidationError(f"Name contains no valid characters: {name!r}")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name is longer than {MAX_NAME_LENGTH} characters")
    return cleaned


class FileService:
    """Mutation engine for the file tree.

    Every public call is one unit of work: a single transaction, bounded by
    the configured timeout. Mutations additionally hold the owner's tree lock
    so check-then-act sequences of one owner never interleave.
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        blob_storage: BlobStorage,
        coordination_service: CoordinationService,
        tree_config: TreeConfig | None = None,
        favorite_service: Optional["FavoriteService"] = None,
    ) -> None:
        self.session_manager = session_manager
        self.blob_storage = blob_storage
        self.coordination_service = coordination_service
        self.config = tree_config or TreeConfig()
        self.favorite_service = favorite_service
        self._background_tasks: set[asyncio.Task[None]] = set()

    @asynccontextmanager
    async def _unit_of_work(
        self, owner: str, lock: bool = True
    ) -> AsyncGenerator[AsyncSession, None]:
        async with unit_of_work(
            self.session_manager,
            self.config.operation_timeout,
            self.coordination_service,
            tree_lock_key(owner) if lock else None,
        ) as session:
            yield session

    def _resolver(self, session: AsyncSession) -> AncestryResolver:
        return AncestryResolver(session, max_depth=self.config.max_depth)

    async def _children_path(
        self, vfs: VirtualFileSystem, owner: str, parent_id: int | None
    ) -> str:
        """Path for entities created directly inside `parent_id`."""
        if parent_id is None:
            return ROOT_PATH
        parent = await vfs.get_folder(owner, parent_id, for_update=True)
        if parent is None:
            raise NotFoundOrForbidden(f"Folder {parent_id} not found")
        return child_path(parent.path, parent.name)

    async def _check_create_target(
        self, vfs: VirtualFileSystem, owner: str, parent_id: int | None, name: str
    ) -> str:
        path = await self._children_path(vfs, owner, parent_id)
        if await vfs.find_by_name_in_parent(owner, parent_id, name):
            raise NameConflict([name])
        return path

    async def _check_quota(
        self, vfs: VirtualFileSystem, owner: str, size: int
    ) -> None:
        quota = self.config.storage_quota
        if quota <= 0:
            return
        used = await vfs.total_usage(owner)
        if used + size > quota:
            logger.info(
                f"Rejecting upload of {size} bytes for {owner}: quota {quota} reached"
            )
            raise QuotaExceeded(used, size, quota)

    async def _rewrite_descendant_paths(
        self, vfs: VirtualFileSystem, owner: str, folder: UserFileDO
    ) -> int:
        """Recompute the path of everything below `folder` from its new position."""
        frontier = {folder.id: child_path(folder.path, folder.name)}
        visited = {folder.id}
        rewritten = 0
        depth = 0
        while frontier:
            depth += 1
            if depth > self.config.max_depth:
                logger.error(f"Corrupt tree below {folder.id}: too deep")
                raise CorruptTree(folder.id, f"deeper than {self.config.max_depth}")
            next_frontier: dict[int, str] = {}
            for child in await vfs.load_children(owner, list(frontier)):
                if child.id in visited:
                    logger.error(f"Corrupt tree below {folder.id}: cycle at {child.id}")
                    raise CorruptTree(child.id, "cycle below moved folder")
                visited.add(child.id)
                parent_id = child.parent_id
                if parent_id is None or parent_id not in frontier:
                    raise CorruptTree(child.id, "child outside the expanded folders")
                new_path = frontier[parent_id]
                if child.path != new_path:
                    child.path = new_path
                    rewritten += 1
                if child.is_folder:
                    next_frontier[child.id] = child_path(new_path, child.name)
            frontier = next_frontier
        await vfs.db.flush()
        return rewritten

    async def create_folder(
        self,
        owner: str,
        name: str,
        parent_id: int | None = None,
        tags: Iterable[str] = (),
    ) -> FileEntity:
        """Create a folder under `parent_id` (root when None)."""
        folder_name = clean_name(name)
        tag_list = normalize_tags(tags)
        async with self._unit_of_work(owner) as session:
            vfs = VirtualFileSystem(session)
            path = await self._check_create_target(vfs, owner, parent_id, folder_name)
            try:
                node = await vfs.create_node(
                    owner,
                    parent_id,
                    folder_name,
                    is_folder=True,
                    path=path,
                    category=FileCategory.FOLDER.value,
                    tags=tag_list,
                )
                await session.commit()
            except IntegrityError as err:
                raise NameConflict([folder_name]) from err
            logger.info(f"Created folder {node.id} '{folder_name}' in {path} for {owner}")
            return to_file_entity(node)

    async def upload_file(
        self,
        owner: str,
        name: str,
        stream: AsyncIterator[bytes],
        parent_id: int | None = None,
        tags: Iterable[str] = (),
        mime_type: str | None = None,
    ) -> FileEntity:
        """Store the content and create the file entity.

        The blob is removed again if the entity cannot be persisted.
        """
        file_name = clean_name(name)
        tag_list = normalize_tags(tags)
        _, extension = split_extension(file_name)
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = mimetypes.guess_type(file_name)[0] or mime_type

        # Fail common errors before any bytes are written.
        async with self._unit_of_work(owner, lock=False) as session:
            vfs = VirtualFileSystem(session)
            await self._check_create_target(vfs, owner, parent_id, file_name)
            await self._check_quota(vfs, owner, 0)

        info = await self.blob_storage.write_stream(stream, extension)
        committed = False
        try:
            async with self._unit_of_work(owner) as session:
                vfs = VirtualFileSystem(session)
                path = await self._check_create_target(vfs, owner, parent_id, file_name)
                await self._check_quota(vfs, owner, info.size)
                try:
                    node = await vfs.create_node(
                        owner,
                        parent_id,
                        file_name,
                        is_folder=False,
                        path=path,
                        size=info.size,
                        md5=info.md5,
                        blob_key=info.key,
                        extension=extension or None,
                        mime_type=mime_type,
                        category=classify(False, extension, mime_type).value,
                        tags=tag_list,
                    )
                    await session.commit()
                except IntegrityError as err:
                    raise NameConflict([file_name]) from err
                committed = True
        finally:
            if not committed:
                logger.info(f"Discarding blob {info.key} of failed upload '{file_name}'")
                await self._delete_blobs([info.key])
        logger.info(
            f"Uploaded file {node.id} '{file_name}' ({info.size} bytes) in {path} for {owner}"
        )
        return to_file_entity(node)

    async def update_file(
        self,
        owner: str,
        file_id: int,
        name: str | None = None,
        tags: Iterable[str] | None = None,
        preserve_original_type: bool | None = None,
    ) -> FileEntity:
        """Rename an entity and/or replace its tags.

        Renaming to the current name without a tag change is a no-op. When
        `preserve_original_type` is true (the configured default) and the new
        name of a file has no extension, the original extension is kept.
        """
        preserve = (
            self.config.preserve_original_type
            if preserve_original_type is None
            else preserve_original_type
        )
        new_name = clean_name(name) if name is not None else None
        async with self._unit_of_work(owner) as session:
            vfs = VirtualFileSystem(session)
            node = await vfs.get_node(owner, file_id, for_update=True)
            if node is None:
                raise NotFoundOrForbidden(f"Item {file_id} not found")

            patch: dict[str, object] = {}
            if new_name is not None:
                if not node.is_folder and preserve and node.extension:
                    if not split_extension(new_name)[1]:
                        stem = new_name.rstrip(".")
                        new_name = clean_name(f"{stem}.{node.extension}")
                if new_name != node.name:
                    if await vfs.find_by_name_in_parent(
                        owner, node.parent_id, new_name, exclude_ids=[node.id]
                    ):
                        raise NameConflict([new_name])
                    patch["name"] = new_name
                    if not node.is_folder:
                        _, extension = split_extension(new_name)
                        patch["extension"] = extension or None
                        patch["category"] = classify(
                            False, extension, node.mime_type
                        ).value
            if tags is not None:
                tag_list = normalize_tags(tags)
                if tag_list != node.tag_names:
                    patch["tags"] = tag_list

            if not patch:
                logger.debug(f"Update of {file_id} for {owner} changes nothing")
                return to_file_entity(node)

            old_name = node.name
            try:
                await vfs.update_node(node, **patch)
                if "name" in patch and node.is_folder:
                    await self._rewrite_descendant_paths(vfs, owner, node)
                await session.commit()
            except IntegrityError as err:
                raise NameConflict([new_name or node.name]) from err
            if "name" in patch:
                logger.info(f"Renamed {file_id} '{old_name}' -> '{node.name}' for {owner}")
            return to_file_entity(node)

    async def rename_item(
        self,
        owner: str,
        file_id: int,
        new_name: str,
        preserve_original_type: bool | None = None,
    ) -> FileEntity:
        return await self.update_file(
            owner,
            file_id,
            name=new_name,
            preserve_original_type=preserve_original_type,
        )

    async def move_items(
        self, owner: str, ids: Iterable[int], target_folder_id: int | None
    ) -> int:
        """Move entities into a folder (root when None), all or nothing.

        Returns the number of entities whose parent changed.
        """
        item_ids = list(dict.fromkeys(ids))
        if not item_ids:
            return 0
        async with self._unit_of_work(owner) as session:
            vfs = VirtualFileSystem(session)
            target_path = await self._children_path(vfs, owner, target_folder_id)
            nodes = await vfs.get_nodes(owner, item_ids, for_update=True)
            if missing := [i for i in item_ids if i not in nodes]:
                raise NotFoundOrForbidden(f"Items not found: {missing}")

            if target_folder_id is not None:
                # The target and each of its ancestors are forbidden destinations
                # for themselves.
                chain = await self._resolver(session).compute_ancestors(
                    owner, target_folder_id
                )
                chain_ids = {a.id for a in chain}
                for item_id in item_ids:
                    if nodes[item_id].is_folder and item_id in chain_ids:
                        logger.info(
                            f"Rejecting move of {item_id} into its descendant {target_folder_id}"
                        )
                        raise InvalidMoveCycle(item_id, target_folder_id)

            conflicts = await vfs.find_names_in_parent(
                owner,
                target_folder_id,
                [n.name for n in nodes.values()],
                exclude_ids=item_ids,
            )
            seen: set[str] = set()
            for item_id in item_ids:
                key = name_key(nodes[item_id].name)
                if key in seen:
                    conflicts.append(nodes[item_id].name)
                seen.add(key)
            if conflicts:
                raise NameConflict(dict.fromkeys(conflicts))

            to_move = [
                nodes[i] for i in item_ids if nodes[i].parent_id != target_folder_id
            ]
            try:
                for node in to_move:
                    await vfs.update_node(node, parent_id=target_folder_id, path=target_path)
                    if node.is_folder:
                        await self._rewrite_descendant_paths(vfs, owner, node)
                await session.commit()
            except IntegrityError as err:
                raise NameConflict([n.name for n in to_move]) from err
            logger.info(
                f"Moved {len(to_move)} items into {target_folder_id or 'root'} for {owner}"
            )
            return len(to_move)

    async def _expand_closure(
        self, vfs: VirtualFileSystem, owner: str, roots: dict[int, UserFileDO]
    ) -> dict[int, bool]:
        """Breadth-first expansion of roots to all live descendants.

        Maps id to its folder flag. Always recomputed from scratch.
        """
        closure = {node_id: node.is_folder for node_id, node in roots.items()}
        frontier = [node_id for node_id, is_folder in closure.items() if is_folder]
        while frontier:
            children = await vfs.list_child_ids(owner, frontier)
            frontier = []
            for child_id, is_folder in children:
                if child_id in closure:
                    continue
                closure[child_id] = is_folder
                if is_folder:
                    frontier.append(child_id)
        return closure

    async def delete_items(self, owner: str, ids: Iterable[int]) -> int:
        """Soft delete entities and everything below them.

        Ids that are missing or already deleted are skipped. Returns the number
        of entities deleted, descendants included.
        """
        item_ids = list(dict.fromkeys(ids))
        if not item_ids:
            return 0
        async with self._unit_of_work(owner) as session:
            vfs = VirtualFileSystem(session)
            roots = await vfs.get_nodes(owner, item_ids, for_update=True)
            if skipped := [i for i in item_ids if i not in roots]:
                logger.debug(f"Delete skipping missing items {skipped} for {owner}")
            if not roots:
                return 0

            closure = await self._expand_closure(vfs, owner, roots)
            count = await vfs.soft_delete_many(owner, closure)
            blob_keys = await vfs.list_blob_keys(
                owner, [i for i, is_folder in closure.items() if not is_folder]
            )
            if self.favorite_service is not None:
                await self.favorite_service.remove_references(
                    session, owner, list(closure)
                )
            await session.commit()

        logger.info(f"Deleted {count} items ({len(roots)} selected) for {owner}")
        self._schedule_blob_deletion(blob_keys)
        return count

    def _schedule_blob_deletion(self, keys: list[str]) -> None:
        if not keys:
            return
        task = asyncio.create_task(self._delete_blobs(keys))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _delete_blobs(self, keys: list[str]) -> None:
        for key in keys:
            try:
                await self.blob_storage.delete_blob(key)
            except (OSError, ValueError) as err:
                logger.warning(f"Failed to delete blob {key}: {err}")

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending blob deletions."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def list_folder(
        self,
        owner: str,
        parent_id: int | None = None,
        category: FileCategory | None = None,
        order: FileSortOrder = FileSortOrder.CREATE_TIME,
        sequence: FileSortSequence = FileSortSequence.DESC,
        page_no: int = 1,
        page_size: int = 50,
    ) -> FilePage:
        """List the children of a folder, folders first."""
        if page_no < 1 or not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"Page must be >= 1 and page size between 1 and {MAX_PAGE_SIZE}"
            )
        async with self._unit_of_work(owner, lock=False) as session:
            vfs = VirtualFileSystem(session)
            if parent_id is not None and await vfs.get_folder(owner, parent_id) is None:
                raise NotFoundOrForbidden(f"Folder {parent_id} not found")
            total, nodes = await vfs.list_children(
                owner,
                parent_id,
                category=category,
                order=order,
                sequence=sequence,
                offset=(page_no - 1) * page_size,
                limit=page_size,
            )
            return FilePage(
                total=total,
                page_no=page_no,
                page_size=page_size,
                items=[to_file_entity(n) for n in nodes],
            )

    async def search(
        self,
        owner: str,
        query: str,
        mode: SearchMode = SearchMode.NAME,
        category: FileCategory | None = None,
        tags: Iterable[str] = (),
        include_folder: bool = True,
    ) -> list[FileEntity]:
        """Search live entities by name or tag, newest first."""
        async with self._unit_of_work(owner, lock=False) as session:
            nodes = await VirtualFileSystem(session).search(
                owner,
                query,
                mode=mode,
                category=category,
                tags=normalize_tags(tags),
                include_folder=include_folder,
                limit=self.config.search_limit,
            )
            return [to_file_entity(n) for n in nodes]

    async def get_file(self, owner: str, file_id: int) -> FileEntity:
        async with self._unit_of_work(owner, lock=False) as session:
            node = await VirtualFileSystem(session).get_node(owner, file_id)
            if node is None:
                raise NotFoundOrForbidden(f"Item {file_id} not found")
            return to_file_entity(node)

    async def get_folder_path(
        self, owner: str, folder_id: int | None
    ) -> list[Ancestor]:
        """Breadcrumbs from the root down to and including the folder."""
        if folder_id is None:
            return []
        async with self._unit_of_work(owner, lock=False) as session:
            if await VirtualFileSystem(session).get_folder(owner, folder_id) is None:
                raise NotFoundOrForbidden(f"Folder {folder_id} not found")
            return await self._resolver(session).compute_ancestors(owner, folder_id)

    async def check_name_conflicts(
        self, owner: str, parent_id: int | None, names: Iterable[str]
    ) -> list[str]:
        """Return the requested names that already exist in the folder."""
        requested = [n for n in names if isinstance(n, str) and n.strip()]
        async with self._unit_of_work(owner, lock=False) as session:
            vfs = VirtualFileSystem(session)
            await self._children_path(vfs, owner, parent_id)
            existing = await vfs.find_names_in_parent(owner, parent_id, requested)
        existing_keys = {name_key(n) for n in existing}
        return [n for n in requested if name_key(n) in existing_keys]

    async def list_tags(self, owner: str) -> list[str]:
        async with self._unit_of_work(owner, lock=False) as session:
            return await VirtualFileSystem(session).list_tag_names(owner)

    async def add_tag(self, owner: str, tag: str, ids: Iterable[int]) -> int:
        """Add a tag to entities. Returns how many did not have it yet."""
        tag = _clean_tag(tag)
        item_ids = list(dict.fromkeys(ids))
        async with self._unit_of_work(owner) as session:
            vfs = VirtualFileSystem(session)
            nodes = await vfs.get_nodes(owner, item_ids, for_update=True)
            if missing := [i for i in item_ids if i not in nodes]:
                raise NotFoundOrForbidden(f"Items not found: {missing}")
            updated = 0
            for node in nodes.values():
                if tag not in node.tag_names:
                    await vfs.update_node(node, tags=[*node.tag_names, tag])
                    updated += 1
            await session.commit()
        logger.info(f"Tagged {updated} items with '{tag}' for {owner}")
        return updated

    async def remove_tag(
        self,
        owner: str,
        tag: str,
        ids: Iterable[int] = (),
        delete_all: bool = False,
    ) -> int:
        """Remove a tag from the given entities, or from every entity."""
        tag = _clean_tag(tag)
        async with self._unit_of_work(owner) as session:
            vfs = VirtualFileSystem(session)
            count = await vfs.remove_tag(
                owner, tag, None if delete_all else list(dict.fromkeys(ids))
            )
            await session.commit()
        logger.info(f"Removed tag '{tag}' from {count} items for {owner}")
        return count

    async def get_storage_usage(self, owner: str) -> int:
        """Total bytes of live files."""
        async with self._unit_of_work(owner, lock=False) as session:
            return await VirtualFileSystem(session).total_usage(owner)

    async def get_storage_quota(self, owner: str) -> StorageQuota:
        async with self._unit_of_work(owner, lock=False) as session:
            used = await VirtualFileSystem(session).total_usage(owner)
        return StorageQuota(total=self.config.storage_quota, used=used)

    async def list_recent(self, owner: str, limit: int = 10) -> list[FileEntity]:
        """Most recently updated live files, at most 50."""
        if limit < 1:
            raise ValidationError("Limit must be positive")
        async with self._unit_of_work(owner, lock=False) as session:
            nodes = await VirtualFileSystem(session).list_recent(
                owner, min(limit, MAX_RECENT_LIMIT)
            )
            return [to_file_entity(n) for n in nodes]

    async def open_content(self, owner: str, file_id: int) -> tuple[FileEntity, Path]:
        """Resolve the stored content of a live file."""
        async with self._unit_of_work(owner, lock=False) as session:
            node = await VirtualFileSystem(session).get_node(owner, file_id)
        if node is None or node.is_folder or not node.blob_key:
            raise NotFoundOrForbidden(f"File {file_id} not found")
        if not await self.blob_storage.exists(node.blob_key):
            logger.warning(f"Blob {node.blob_key} of file {file_id} is missing")
            raise NotFoundOrForbidden(f"Content of file {file_id} not found")
        return to_file_entity(node), self.blob_storage.get_blob_path(node.blob_key)


def _clean_tag(tag: str) -> str:
    if not isinstance(tag, str) or not tag.strip():
        raise ValidationError("Tag must not be empty")
    return tag.strip()
