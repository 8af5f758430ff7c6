import logging
from collections.abc import Collection, Iterable
from typing import Any, Optional, TypeVar

from sqlalchemy import Row, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from cloudvault.models.file import (
    FileCategory,
    FileSortOrder,
    FileSortSequence,
    SearchMode,
)

from ..db.models.file import FileTagDO, UserFileDO, now_ms
from ..utils.names import name_key

logger = logging.getLogger(__name__)

# Keeps IN (...) lists below the bound parameter limits of SQLite.
_CHUNK_SIZE = 500

_SORT_COLUMNS = {
    FileSortOrder.NAME: UserFileDO.name_key,
    FileSortOrder.SIZE: UserFileDO.size,
    FileSortOrder.CREATE_TIME: UserFileDO.create_time,
    FileSortOrder.UPDATE_TIME: UserFileDO.update_time,
}


_T = TypeVar("_T")


def _chunks(values: Collection[_T]) -> Iterable[list[_T]]:
    items = list(values)
    for i in range(0, len(items), _CHUNK_SIZE):
        yield items[i : i + _CHUNK_SIZE]


def _parent_is(parent_id: Optional[int]) -> ColumnElement[bool]:
    if parent_id is None:
        return UserFileDO.parent_id.is_(None)
    return UserFileDO.parent_id == parent_id


class VirtualFileSystem:
    """Tree Store over the `f_user_file` table.

    Every query is scoped to one owner and, unless stated otherwise, to live
    (not soft-deleted) entities. Writes are flushed but never committed; the
    calling service owns the transaction.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    def _live(self, owner: str) -> list[ColumnElement[bool]]:
        return [UserFileDO.owner_id == owner, UserFileDO.is_deleted.is_(False)]

    async def get_node(
        self, owner: str, node_id: int, for_update: bool = False
    ) -> Optional[UserFileDO]:
        stmt = select(UserFileDO).where(UserFileDO.id == node_id, *self._live(owner))
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_nodes(
        self, owner: str, node_ids: Collection[int], for_update: bool = False
    ) -> dict[int, UserFileDO]:
        """Batch lookup. Missing ids are simply absent from the result."""
        nodes: dict[int, UserFileDO] = {}
        for chunk in _chunks(set(node_ids)):
            stmt = select(UserFileDO).where(
                UserFileDO.id.in_(chunk), *self._live(owner)
            )
            if for_update:
                stmt = stmt.with_for_update()
            result = await self.db.execute(stmt)
            nodes.update((n.id, n) for n in result.scalars())
        return nodes

    async def get_folder(
        self, owner: str, folder_id: int, for_update: bool = False
    ) -> Optional[UserFileDO]:
        node = await self.get_node(owner, folder_id, for_update=for_update)
        if node is None or not node.is_folder:
            return None
        return node

    async def get_link(self, owner: str, node_id: int) -> Optional[Row[Any]]:
        """Fetch only the columns needed to walk up the tree.

        Soft-deleted rows are returned too so that callers can tell a missing
        parent from a deleted one.
        """
        stmt = select(
            UserFileDO.id,
            UserFileDO.parent_id,
            UserFileDO.name,
            UserFileDO.is_folder,
            UserFileDO.is_deleted,
        ).where(UserFileDO.id == node_id, UserFileDO.owner_id == owner)
        result = await self.db.execute(stmt)
        return result.one_or_none()

    async def list_children(
        self,
        owner: str,
        parent_id: Optional[int],
        category: Optional[FileCategory] = None,
        order: FileSortOrder = FileSortOrder.CREATE_TIME,
        sequence: FileSortSequence = FileSortSequence.DESC,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[int, list[UserFileDO]]:
        """List live children of a folder, folders first.

        Returns the total number of matches and the requested page.
        """
        conds = [*self._live(owner), _parent_is(parent_id)]
        if category is not None:
            conds.append(UserFileDO.category == category.value)

        count_stmt = select(func.count()).select_from(UserFileDO).where(*conds)
        total = (await self.db.execute(count_stmt)).scalar_one()

        sort_col = _SORT_COLUMNS[order]
        if sequence == FileSortSequence.ASC:
            ordering = [sort_col.asc(), UserFileDO.id.asc()]
        else:
            ordering = [sort_col.desc(), UserFileDO.id.desc()]
        stmt = (
            select(UserFileDO)
            .where(*conds)
            .order_by(UserFileDO.is_folder.desc(), *ordering)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return total, list(result.scalars())

    async def list_child_ids(
        self, owner: str, parent_ids: Collection[int]
    ) -> list[tuple[int, bool]]:
        """Ids and folder flags of the live children of any of `parent_ids`."""
        children: list[tuple[int, bool]] = []
        for chunk in _chunks(parent_ids):
            stmt = select(UserFileDO.id, UserFileDO.is_folder).where(
                UserFileDO.parent_id.in_(chunk), *self._live(owner)
            )
            result = await self.db.execute(stmt)
            children.extend((row.id, row.is_folder) for row in result)
        return children

    async def load_children(
        self, owner: str, parent_ids: Collection[int]
    ) -> list[UserFileDO]:
        """Live children of any of `parent_ids`, loaded for modification."""
        children: list[UserFileDO] = []
        for chunk in _chunks(parent_ids):
            stmt = (
                select(UserFileDO)
                .where(UserFileDO.parent_id.in_(chunk), *self._live(owner))
                .with_for_update()
            )
            result = await self.db.execute(stmt)
            children.extend(result.scalars())
        return children

    async def find_by_name_in_parent(
        self,
        owner: str,
        parent_id: Optional[int],
        name: str,
        exclude_ids: Collection[int] = (),
    ) -> Optional[UserFileDO]:
        """Find a live sibling whose name matches case-insensitively."""
        stmt = select(UserFileDO).where(
            *self._live(owner),
            _parent_is(parent_id),
            UserFileDO.name_key == name_key(name),
        )
        if exclude_ids:
            stmt = stmt.where(UserFileDO.id.not_in(list(exclude_ids)))
        result = await self.db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def find_names_in_parent(
        self,
        owner: str,
        parent_id: Optional[int],
        names: Iterable[str],
        exclude_ids: Collection[int] = (),
    ) -> list[str]:
        """Return the existing sibling names that collide with `names`."""
        keys = list({name_key(n) for n in names})
        if not keys:
            return []
        found: list[str] = []
        for chunk in _chunks(keys):
            stmt = select(UserFileDO.name).where(
                *self._live(owner),
                _parent_is(parent_id),
                UserFileDO.name_key.in_(chunk),
            )
            if exclude_ids:
                stmt = stmt.where(UserFileDO.id.not_in(list(exclude_ids)))
            result = await self.db.execute(stmt)
            found.extend(result.scalars())
        return sorted(found, key=str.casefold)

    async def create_node(
        self, owner: str, parent_id: Optional[int], name: str, **fields: Any
    ) -> UserFileDO:
        """Insert a new entity. Uniqueness is enforced by the sibling index."""
        tags: list[str] = fields.pop("tags", [])
        now = now_ms()
        node = UserFileDO(
            owner_id=owner,
            parent_id=parent_id,
            name=name,
            name_key=name_key(name),
            create_time=now,
            update_time=now,
            tags=[FileTagDO(owner_id=owner, name=t) for t in tags],
            **fields,
        )
        self.db.add(node)
        await self.db.flush()
        return node

    async def update_node(self, node: UserFileDO, **patch: Any) -> UserFileDO:
        """Apply a patch to a loaded entity and flush it.

        A `version` mismatch surfaces as `StaleDataError` from the flush.
        """
        if "tags" in patch:
            self.set_tags(node, patch.pop("tags"))
        if "name" in patch:
            patch["name_key"] = name_key(patch["name"])
        for key, value in patch.items():
            setattr(node, key, value)
        node.update_time = now_ms()
        await self.db.flush()
        return node

    def set_tags(self, node: UserFileDO, tags: list[str]) -> None:
        """Replace the tag set, reusing rows for tags that are kept."""
        existing = {t.name: t for t in node.tags}
        node.tags = [
            existing.get(t) or FileTagDO(owner_id=node.owner_id, name=t) for t in tags
        ]

    async def soft_delete_many(self, owner: str, node_ids: Collection[int]) -> int:
        """Mark live entities deleted and bump their version.

        Returns the number of rows that transitioned.
        """
        now = now_ms()
        count = 0
        for chunk in _chunks(node_ids):
            stmt = (
                update(UserFileDO)
                .where(UserFileDO.id.in_(chunk), *self._live(owner))
                .values(
                    is_deleted=True,
                    delete_time=now,
                    update_time=now,
                    version=UserFileDO.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            count += result.rowcount  # type: ignore[attr-defined]
        return count

    async def list_blob_keys(
        self, owner: str, node_ids: Collection[int]
    ) -> list[str]:
        """Blob keys of the files among `node_ids`, deleted or not."""
        keys: list[str] = []
        for chunk in _chunks(node_ids):
            stmt = select(UserFileDO.blob_key).where(
                UserFileDO.id.in_(chunk),
                UserFileDO.owner_id == owner,
                UserFileDO.is_folder.is_(False),
                UserFileDO.blob_key.is_not(None),
            )
            result = await self.db.execute(stmt)
            keys.extend(result.scalars())
        return keys

    async def search(
        self,
        owner: str,
        query: str,
        mode: SearchMode = SearchMode.NAME,
        category: Optional[FileCategory] = None,
        tags: Collection[str] = (),
        include_folder: bool = True,
        limit: int = 100,
    ) -> list[UserFileDO]:
        """Case-insensitive substring search over names or tags."""
        conds = self._live(owner)
        needle = query.strip()
        if mode == SearchMode.TAG:
            tag_match = select(FileTagDO.file_id).where(
                FileTagDO.owner_id == owner,
                func.lower(FileTagDO.name).contains(needle.lower(), autoescape=True),
            )
            conds.append(UserFileDO.id.in_(tag_match))
        elif needle:
            conds.append(UserFileDO.name_key.contains(name_key(needle), autoescape=True))
        if category is not None:
            conds.append(UserFileDO.category == category.value)
        if not include_folder:
            conds.append(UserFileDO.is_folder.is_(False))
        if tags:
            has_some = select(FileTagDO.file_id).where(
                FileTagDO.owner_id == owner, FileTagDO.name.in_(list(tags))
            )
            conds.append(UserFileDO.id.in_(has_some))

        stmt = (
            select(UserFileDO)
            .where(*conds)
            .order_by(
                UserFileDO.is_folder.desc(),
                UserFileDO.update_time.desc(),
                UserFileDO.id.desc(),
            )
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def list_tag_names(self, owner: str) -> list[str]:
        """Sorted distinct tags across live entities."""
        stmt = (
            select(FileTagDO.name)
            .distinct()
            .join(UserFileDO, UserFileDO.id == FileTagDO.file_id)
            .where(*self._live(owner))
            .order_by(FileTagDO.name)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def remove_tag(
        self, owner: str, tag: str, node_ids: Optional[Collection[int]] = None
    ) -> int:
        """Delete a tag from the given entities, or from all when `node_ids` is None."""
        live_ids = select(UserFileDO.id).where(*self._live(owner))
        base = [
            FileTagDO.owner_id == owner,
            FileTagDO.name == tag,
            FileTagDO.file_id.in_(live_ids),
        ]
        if node_ids is None:
            result = await self.db.execute(
                delete(FileTagDO)
                .where(*base)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount  # type: ignore[attr-defined]
        count = 0
        for chunk in _chunks(node_ids):
            result = await self.db.execute(
                delete(FileTagDO)
                .where(*base, FileTagDO.file_id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
            count += result.rowcount  # type: ignore[attr-defined]
        return count

    async def total_usage(self, owner: str) -> int:
        stmt = select(func.coalesce(func.sum(UserFileDO.size), 0)).where(
            *self._live(owner), UserFileDO.is_folder.is_(False)
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def list_recent(self, owner: str, limit: int) -> list[UserFileDO]:
        """Live files (not folders), most recently updated first."""
        stmt = (
            select(UserFileDO)
            .where(*self._live(owner), UserFileDO.is_folder.is_(False))
            .order_by(UserFileDO.update_time.desc(), UserFileDO.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def list_all(self, owner: str, include_deleted: bool = False) -> list[UserFileDO]:
        """Every entity of an owner, used by integrity checks."""
        conds: list[ColumnElement[bool]] = [UserFileDO.owner_id == owner]
        if not include_deleted:
            conds.append(UserFileDO.is_deleted.is_(False))
        result = await self.db.execute(select(UserFileDO).where(*conds))
        return list(result.scalars())

    async def live_ids(self, owner: str, node_ids: Collection[int]) -> set[int]:
        """Subset of `node_ids` that refer to live entities."""
        found: set[int] = set()
        for chunk in _chunks(node_ids):
            stmt = select(UserFileDO.id).where(
                UserFileDO.id.in_(chunk), *self._live(owner)
            )
            found.update((await self.db.execute(stmt)).scalars())
        return found
