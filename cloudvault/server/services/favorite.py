import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from ..config import TreeConfig
from ..db.models.favorite import FavoriteDO, FavoriteFolderDO
from ..db.models.file import UserFileDO, now_ms
from ..db.session import DatabaseSessionManager
from ..utils.names import MAX_NAME_LENGTH
from .coordination import CoordinationService
from .exceptions import NameConflict, NotFoundOrForbidden, ValidationError
from .file import FileEntity, to_file_entity
from .unit_of_work import unit_of_work
from .vfs import VirtualFileSystem

logger = logging.getLogger(__name__)

DEFAULT_FOLDER_NAME = "Default"


def favorite_lock_key(owner: str) -> str:
    return f"favorite:{owner}"


@dataclass
class FavoriteFolderEntity:
    """Domain object representing a favorite folder."""

    id: int
    name: str
    description: str | None
    is_default: bool
    create_time: int
    update_time: int
    file_count: int = 0


def _to_folder_entity(folder: FavoriteFolderDO, file_count: int = 0) -> FavoriteFolderEntity:
    return FavoriteFolderEntity(
        id=folder.id,
        name=folder.name,
        description=folder.description,
        is_default=folder.is_default,
        create_time=int(folder.create_time),
        update_time=int(folder.update_time),
        file_count=file_count,
    )


@dataclass
class FavoriteEntity:
    """A favorited file and the folder holding it."""

    favorite_id: int
    folder_id: int
    folder_name: str
    create_time: int
    file: FileEntity


@dataclass
class FavoritePage:
    total: int
    page_no: int
    page_size: int
    items: list[FavoriteEntity]

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


def _clean_folder_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Favorite folder name must not be empty")
    cleaned = name.strip()
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name is longer than {MAX_NAME_LENGTH} characters")
    return cleaned


class FavoriteService:
    """Keeps favorite folders and memberships consistent with the file tree.

    At most one default folder exists per owner. This is enforced by a unique
    partial index; favorite mutations of one owner are also serialised by a
    lock so get-or-create of the default never races within a process.

    Favorites pointing at deleted or missing files are removed when files are
    deleted, and every read joins against live files so such rows are never
    returned even if that cleanup did not happen.
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        coordination_service: CoordinationService,
        tree_config: TreeConfig | None = None,
    ) -> None:
        self.session_manager = session_manager
        self.coordination_service = coordination_service
        self.config = tree_config or TreeConfig()

    @asynccontextmanager
    async def _unit_of_work(
        self, owner: str, lock: bool = True
    ) -> AsyncGenerator[AsyncSession, None]:
        async with unit_of_work(
            self.session_manager,
            self.config.operation_timeout,
            self.coordination_service,
            favorite_lock_key(owner) if lock else None,
        ) as session:
            yield session

    async def _get_folder(
        self, session: AsyncSession, owner: str, folder_id: int
    ) -> FavoriteFolderDO:
        stmt = select(FavoriteFolderDO).where(
            FavoriteFolderDO.id == folder_id, FavoriteFolderDO.owner_id == owner
        )
        folder = (await session.execute(stmt)).scalar_one_or_none()
        if folder is None:
            raise NotFoundOrForbidden(f"Favorite folder {folder_id} not found")
        return folder

    async def _find_default(
        self, session: AsyncSession, owner: str
    ) -> FavoriteFolderDO | None:
        stmt = (
            select(FavoriteFolderDO)
            .where(
                FavoriteFolderDO.owner_id == owner,
                FavoriteFolderDO.is_default.is_(True),
            )
            .order_by(FavoriteFolderDO.create_time, FavoriteFolderDO.id)
            .limit(1)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _ensure_default(
        self, session: AsyncSession, owner: str
    ) -> FavoriteFolderDO:
        """Return the default folder, creating it when missing.

        Must be called while holding the owner's favorite lock.
        """
        if (folder := await self._find_default(session, owner)) is not None:
            return folder
        now = now_ms()
        folder = FavoriteFolderDO(
            owner_id=owner,
            name=DEFAULT_FOLDER_NAME,
            is_default=True,
            create_time=now,
            update_time=now,
        )
        try:
            async with session.begin_nested():
                session.add(folder)
        except IntegrityError:
            # Another process created it first
            logger.info(f"Default favorite folder for {owner} created concurrently")
            existing = await self._find_default(session, owner)
            if existing is None:
                raise
            return existing
        logger.info(f"Created default favorite folder {folder.id} for {owner}")
        return folder

    async def _live_counts(
        self, session: AsyncSession, owner: str
    ) -> dict[int, int]:
        stmt = (
            select(FavoriteDO.folder_id, func.count())
            .join(UserFileDO, UserFileDO.id == FavoriteDO.file_id)
            .where(
                FavoriteDO.owner_id == owner,
                UserFileDO.owner_id == owner,
                UserFileDO.is_deleted.is_(False),
            )
            .group_by(FavoriteDO.folder_id)
        )
        return {row[0]: row[1] for row in await session.execute(stmt)}

    async def get_or_create_default_folder(self, owner: str) -> FavoriteFolderEntity:
        async with self._unit_of_work(owner) as session:
            folder = await self._ensure_default(session, owner)
            await session.commit()
            counts = await self._live_counts(session, owner)
            return _to_folder_entity(folder, counts.get(folder.id, 0))

    async def list_favorite_folders(self, owner: str) -> list[FavoriteFolderEntity]:
        """All folders, default first then oldest, with live file counts."""
        async with self._unit_of_work(owner) as session:
            await self._ensure_default(session, owner)
            await session.commit()
            stmt = (
                select(FavoriteFolderDO)
                .where(FavoriteFolderDO.owner_id == owner)
                .order_by(
                    FavoriteFolderDO.is_default.desc(),
                    FavoriteFolderDO.create_time,
                    FavoriteFolderDO.id,
                )
            )
            folders = list((await session.execute(stmt)).scalars())
            counts = await self._live_counts(session, owner)
            return [_to_folder_entity(f, counts.get(f.id, 0)) for f in folders]

    async def _check_folder_name(
        self,
        session: AsyncSession,
        owner: str,
        name: str,
        exclude_id: int | None = None,
    ) -> None:
        stmt = select(FavoriteFolderDO.id).where(
            FavoriteFolderDO.owner_id == owner,
            func.lower(FavoriteFolderDO.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(FavoriteFolderDO.id != exclude_id)
        if (await session.execute(stmt.limit(1))).first() is not None:
            raise NameConflict([name], f'Favorite folder "{name}" already exists')

    async def _demote_defaults(self, session: AsyncSession, owner: str) -> int:
        result = await session.execute(
            update(FavoriteFolderDO)
            .where(
                FavoriteFolderDO.owner_id == owner,
                FavoriteFolderDO.is_default.is_(True),
            )
            .values(is_default=False, update_time=now_ms())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def create_favorite_folder(
        self,
        owner: str,
        name: str,
        description: str | None = None,
        is_default: bool = False,
    ) -> FavoriteFolderEntity:
        """Create a folder. A new default replaces the current one."""
        folder_name = _clean_folder_name(name)
        async with self._unit_of_work(owner) as session:
            await self._check_folder_name(session, owner, folder_name)
            if is_default:
                await self._demote_defaults(session, owner)
            now = now_ms()
            folder = FavoriteFolderDO(
                owner_id=owner,
                name=folder_name,
                description=description,
                is_default=is_default,
                create_time=now,
                update_time=now,
            )
            session.add(folder)
            await session.commit()
            logger.info(f"Created favorite folder {folder.id} '{folder_name}' for {owner}")
            return _to_folder_entity(folder)

    async def update_favorite_folder(
        self,
        owner: str,
        folder_id: int,
        name: str | None = None,
        description: str | None = None,
        is_default: bool | None = None,
    ) -> FavoriteFolderEntity:
        """Rename a folder, change its description or make it the default.

        The default can only be moved to another folder, not unset.
        """
        async with self._unit_of_work(owner) as session:
            folder = await self._get_folder(session, owner, folder_id)
            if is_default is False and folder.is_default:
                raise ValidationError(
                    "The default favorite folder cannot be unset; make another folder the default"
                )
            if name is not None:
                folder_name = _clean_folder_name(name)
                await self._check_folder_name(session, owner, folder_name, folder.id)
                folder.name = folder_name
            if description is not None:
                folder.description = description
            if is_default and not folder.is_default:
                # Demote first so the single-default index never sees two rows
                await self._demote_defaults(session, owner)
                await session.flush()
                folder.is_default = True
            folder.update_time = now_ms()
            await session.commit()
            counts = await self._live_counts(session, owner)
            return _to_folder_entity(folder, counts.get(folder.id, 0))

    async def delete_favorite_folder(self, owner: str, folder_id: int) -> int:
        """Delete a non-default folder, moving its favorites to the default.

        Favorites already present in the default folder are dropped. Returns
        the number of favorites moved.
        """
        async with self._unit_of_work(owner) as session:
            folder = await self._get_folder(session, owner, folder_id)
            if folder.is_default:
                raise ValidationError("The default favorite folder cannot be deleted")
            default = await self._ensure_default(session, owner)

            in_default = select(FavoriteDO.file_id).where(
                FavoriteDO.folder_id == default.id
            )
            await session.execute(
                delete(FavoriteDO).where(
                    FavoriteDO.folder_id == folder.id,
                    FavoriteDO.file_id.in_(in_default),
                )
            )
            result = await session.execute(
                update(FavoriteDO)
                .where(FavoriteDO.folder_id == folder.id)
                .values(folder_id=default.id)
            )
            moved: int = result.rowcount  # type: ignore[attr-defined]
            await session.delete(folder)
            await session.commit()
        logger.info(
            f"Deleted favorite folder {folder_id} for {owner}, moved {moved} favorites to default"
        )
        return moved

    async def _resolve_target(
        self, session: AsyncSession, owner: str, folder_id: int | None
    ) -> FavoriteFolderDO:
        if folder_id is None:
            return await self._ensure_default(session, owner)
        return await self._get_folder(session, owner, folder_id)

    async def _insert_favorites(
        self,
        session: AsyncSession,
        owner: str,
        folder: FavoriteFolderDO,
        file_ids: list[int],
    ) -> int:
        if not file_ids:
            return 0
        stmt = select(FavoriteDO.file_id).where(
            FavoriteDO.folder_id == folder.id, FavoriteDO.file_id.in_(file_ids)
        )
        present = set((await session.execute(stmt)).scalars())
        now = now_ms()
        new = [
            FavoriteDO(owner_id=owner, file_id=i, folder_id=folder.id, create_time=now)
            for i in file_ids
            if i not in present
        ]
        session.add_all(new)
        await session.flush()
        return len(new)

    async def add_to_folder(
        self, owner: str, file_id: int, folder_id: int | None = None
    ) -> bool:
        """Favorite a file. Returns False when it already was in that folder."""
        async with self._unit_of_work(owner) as session:
            if await VirtualFileSystem(session).get_node(owner, file_id) is None:
                raise NotFoundOrForbidden(f"Item {file_id} not found")
            folder = await self._resolve_target(session, owner, folder_id)
            added = await self._insert_favorites(session, owner, folder, [file_id])
            await session.commit()
        if added:
            logger.info(f"Added {file_id} to favorite folder {folder.id} for {owner}")
        return bool(added)

    async def add_batch_to_folder(
        self, owner: str, file_ids: Iterable[int], folder_id: int | None = None
    ) -> int:
        """Favorite several files. Missing or deleted files are skipped."""
        requested = list(dict.fromkeys(file_ids))
        async with self._unit_of_work(owner) as session:
            live = await VirtualFileSystem(session).live_ids(owner, requested)
            folder = await self._resolve_target(session, owner, folder_id)
            added = await self._insert_favorites(
                session, owner, folder, [i for i in requested if i in live]
            )
            await session.commit()
        logger.info(f"Added {added} favorites to folder {folder.id} for {owner}")
        return added

    async def remove_batch_from_folder(
        self, owner: str, file_ids: Iterable[int], folder_id: int | None = None
    ) -> int:
        """Remove favorites from one folder, or from every folder when None."""
        ids = list(dict.fromkeys(file_ids))
        if not ids:
            return 0
        async with self._unit_of_work(owner) as session:
            stmt = delete(FavoriteDO).where(
                FavoriteDO.owner_id == owner, FavoriteDO.file_id.in_(ids)
            )
            if folder_id is not None:
                await self._get_folder(session, owner, folder_id)
                stmt = stmt.where(FavoriteDO.folder_id == folder_id)
            result = await session.execute(stmt)
            await session.commit()
        removed: int = result.rowcount  # type: ignore[attr-defined]
        logger.info(f"Removed {removed} favorites for {owner}")
        return removed

    async def remove_from_folder(
        self, owner: str, file_id: int, folder_id: int | None = None
    ) -> bool:
        return await self.remove_batch_from_folder(owner, [file_id], folder_id) > 0

    def _live_favorites(self, owner: str) -> list[ColumnElement[bool]]:
        return [
            FavoriteDO.owner_id == owner,
            UserFileDO.owner_id == owner,
            UserFileDO.is_deleted.is_(False),
        ]

    async def is_favorite(
        self, owner: str, file_id: int, folder_id: int | None = None
    ) -> bool:
        async with self._unit_of_work(owner, lock=False) as session:
            stmt = (
                select(FavoriteDO.id)
                .join(UserFileDO, UserFileDO.id == FavoriteDO.file_id)
                .where(*self._live_favorites(owner), FavoriteDO.file_id == file_id)
            )
            if folder_id is not None:
                stmt = stmt.where(FavoriteDO.folder_id == folder_id)
            return (await session.execute(stmt.limit(1))).first() is not None

    async def count_favorites(self, owner: str, folder_id: int | None = None) -> int:
        async with self._unit_of_work(owner, lock=False) as session:
            stmt = (
                select(func.count(FavoriteDO.id))
                .join(UserFileDO, UserFileDO.id == FavoriteDO.file_id)
                .where(*self._live_favorites(owner))
            )
            if folder_id is not None:
                stmt = stmt.where(FavoriteDO.folder_id == folder_id)
            return (await session.execute(stmt)).scalar_one()

    async def list_favorites(
        self,
        owner: str,
        folder_id: int | None = None,
        page_no: int = 1,
        page_size: int = 50,
    ) -> FavoritePage:
        """List favorites of live files, newest first.

        Rows pointing at missing or deleted files are never returned and are
        purged as a side effect.
        """
        if page_no < 1 or page_size < 1:
            raise ValidationError("Page and page size must be positive")
        async with self._unit_of_work(owner) as session:
            if folder_id is not None:
                await self._get_folder(session, owner, folder_id)
            await self._purge_dangling(session, owner)
            await session.commit()

            conds = self._live_favorites(owner)
            if folder_id is not None:
                conds.append(FavoriteDO.folder_id == folder_id)
            count_stmt = (
                select(func.count(FavoriteDO.id))
                .join(UserFileDO, UserFileDO.id == FavoriteDO.file_id)
                .where(*conds)
            )
            total = (await session.execute(count_stmt)).scalar_one()
            stmt = (
                select(FavoriteDO, FavoriteFolderDO.name, UserFileDO)
                .join(UserFileDO, UserFileDO.id == FavoriteDO.file_id)
                .join(FavoriteFolderDO, FavoriteFolderDO.id == FavoriteDO.folder_id)
                .where(*conds)
                .order_by(FavoriteDO.create_time.desc(), FavoriteDO.id.desc())
                .offset((page_no - 1) * page_size)
                .limit(page_size)
            )
            items = [
                FavoriteEntity(
                    favorite_id=fav.id,
                    folder_id=fav.folder_id,
                    folder_name=folder_name,
                    create_time=int(fav.create_time),
                    file=to_file_entity(node),
                )
                for fav, folder_name, node in await session.execute(stmt)
            ]
            return FavoritePage(
                total=total, page_no=page_no, page_size=page_size, items=items
            )

    async def _purge_dangling(self, session: AsyncSession, owner: str) -> int:
        """Delete favorites whose file is missing or deleted. Best effort."""
        live_files = select(UserFileDO.id).where(
            UserFileDO.owner_id == owner, UserFileDO.is_deleted.is_(False)
        )
        try:
            async with session.begin_nested():
                result = await session.execute(
                    delete(FavoriteDO).where(
                        FavoriteDO.owner_id == owner,
                        FavoriteDO.file_id.not_in(live_files),
                    )
                )
        except SQLAlchemyError as err:
            logger.warning(f"Failed to purge dangling favorites for {owner}: {err}")
            return 0
        purged: int = result.rowcount  # type: ignore[attr-defined]
        if purged:
            logger.info(f"Purged {purged} dangling favorites for {owner}")
        return purged

    async def purge_dangling_favorites(self, owner: str) -> int:
        async with self._unit_of_work(owner) as session:
            purged = await self._purge_dangling(session, owner)
            await session.commit()
            return purged

    async def remove_references(
        self, session: AsyncSession, owner: str, file_ids: list[int]
    ) -> int:
        """Drop favorites of files being deleted, inside the caller's transaction.

        Failures are logged and leave the caller's transaction intact.
        """
        removed = 0
        try:
            async with session.begin_nested():
                for i in range(0, len(file_ids), 500):
                    result = await session.execute(
                        delete(FavoriteDO).where(
                            FavoriteDO.owner_id == owner,
                            FavoriteDO.file_id.in_(file_ids[i : i + 500]),
                        )
                    )
                    removed += result.rowcount  # type: ignore[attr-defined]
        except SQLAlchemyError as err:
            logger.warning(f"Failed to remove favorites of deleted files for {owner}: {err}")
            return 0
        if removed:
            logger.debug(f"Removed {removed} favorites of deleted files for {owner}")
        return removed

    async def fix_duplicate_defaults(self, owner: str) -> int:
        """Keep the oldest default folder and demote the others.

        Returns the number of folders demoted; 0 when the owner is consistent.
        """
        async with self._unit_of_work(owner) as session:
            stmt = (
                select(FavoriteFolderDO)
                .where(
                    FavoriteFolderDO.owner_id == owner,
                    FavoriteFolderDO.is_default.is_(True),
                )
                .order_by(FavoriteFolderDO.create_time, FavoriteFolderDO.id)
            )
            defaults = list((await session.execute(stmt)).scalars())
            for folder in defaults[1:]:
                folder.is_default = False
                folder.update_time = now_ms()
            await session.commit()
        if demoted := max(len(defaults) - 1, 0):
            logger.warning(
                f"Demoted {demoted} duplicate default favorite folders for {owner}"
            )
        return demoted
