import logging
import time
from dataclasses import dataclass

from sqlalchemy import delete, func, select

from cloudvault.server.config import TreeConfig
from cloudvault.server.db.models.favorite import FavoriteDO, FavoriteFolderDO
from cloudvault.server.db.models.file import UserFileDO, now_ms
from cloudvault.server.db.session import DatabaseSessionManager
from cloudvault.server.services.blob import BlobStorage
from cloudvault.server.services.coordination import CoordinationService
from cloudvault.server.services.file import tree_lock_key
from cloudvault.server.services.unit_of_work import unit_of_work
from cloudvault.server.services.vfs import VirtualFileSystem
from cloudvault.server.utils.names import path_from_names

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    scanned: int = 0
    path_drift: int = 0
    dangling_parent: int = 0
    cycles: int = 0
    missing_blob: int = 0
    size_mismatch: int = 0
    dangling_favorites: int = 0
    duplicate_defaults: int = 0
    repaired: int = 0
    ok: int = 0

    @property
    def is_consistent(self) -> bool:
        return not (
            self.path_drift
            or self.dangling_parent
            or self.cycles
            or self.missing_blob
            or self.size_mismatch
            or self.dangling_favorites
            or self.duplicate_defaults
        )


@dataclass
class SweepReport:
    scanned: int = 0
    referenced: int = 0
    too_recent: int = 0
    deleted: int = 0


class _BrokenChain(Exception):
    def __init__(self, kind: str, at: int) -> None:
        self.kind = kind
        self.at = at
        super().__init__(f"{kind} at {at}")


class IntegrityService:
    """Service to verify consistency of the tree, favorites and blob storage."""

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        blob_storage: BlobStorage,
        coordination_service: CoordinationService,
        tree_config: TreeConfig | None = None,
        blob_sweep_grace_seconds: int = 3600,
    ) -> None:
        """Create an integrity service instance."""
        self.session_manager = session_manager
        self.blob_storage = blob_storage
        self.coordination_service = coordination_service
        self.config = tree_config or TreeConfig()
        self.blob_sweep_grace_seconds = blob_sweep_grace_seconds

    def _expected_path(self, node: UserFileDO, nodes: dict[int, UserFileDO]) -> str:
        names: list[str] = []
        visited = {node.id}
        parent_id = node.parent_id
        while parent_id is not None:
            if len(visited) > self.config.max_depth or parent_id in visited:
                raise _BrokenChain("cycle", parent_id)
            parent = nodes.get(parent_id)
            if parent is None or not parent.is_folder:
                raise _BrokenChain("dangling parent", parent_id)
            visited.add(parent_id)
            names.append(parent.name)
            parent_id = parent.parent_id
        names.reverse()
        return path_from_names(names)

    async def verify_user_tree(self, owner: str, repair: bool = False) -> IntegrityReport:
        """Check every live entity and favorite of an owner.

        With `repair`, drifted paths are rewritten, dangling favorites purged
        and duplicate default folders demoted. Broken parent chains are only
        reported.
        """
        report = IntegrityReport()
        async with unit_of_work(
            self.session_manager,
            self.config.operation_timeout,
            self.coordination_service,
            tree_lock_key(owner),
        ) as session:
            vfs = VirtualFileSystem(session)
            nodes = {n.id: n for n in await vfs.list_all(owner)}

            for node in nodes.values():
                report.scanned += 1
                healthy = True
                try:
                    expected = self._expected_path(node, nodes)
                except _BrokenChain as err:
                    logger.error(
                        f"Integrity Fail: Entity {node.id} ({node.name}) has {err.kind} {err.at}"
                    )
                    if err.kind == "cycle":
                        report.cycles += 1
                    else:
                        report.dangling_parent += 1
                    continue

                if node.path != expected:
                    logger.warning(
                        f"Integrity Warning: Entity {node.id} path drift. Stored: {node.path}, Derived: {expected}"
                    )
                    report.path_drift += 1
                    healthy = False
                    if repair:
                        node.path = expected
                        report.repaired += 1

                if not node.is_folder:
                    key = node.blob_key
                    if not key or not await self.blob_storage.exists(key):
                        logger.error(
                            f"Integrity Fail: File {node.id} ({node.name}) missing blob {key}"
                        )
                        report.missing_blob += 1
                        continue
                    blob_size = await self.blob_storage.get_size(key)
                    if blob_size != node.size:
                        logger.warning(
                            f"Integrity Warning: File {node.id} size mismatch. VFS: {node.size}, Blob: {blob_size}"
                        )
                        report.size_mismatch += 1
                        continue

                if healthy:
                    report.ok += 1

            live_files = select(UserFileDO.id).where(
                UserFileDO.owner_id == owner, UserFileDO.is_deleted.is_(False)
            )
            dangling = [
                FavoriteDO.owner_id == owner,
                FavoriteDO.file_id.not_in(live_files),
            ]
            report.dangling_favorites = (
                await session.execute(select(func.count(FavoriteDO.id)).where(*dangling))
            ).scalar_one()
            if repair and report.dangling_favorites:
                await session.execute(delete(FavoriteDO).where(*dangling))
                report.repaired += report.dangling_favorites

            stmt = (
                select(FavoriteFolderDO)
                .where(
                    FavoriteFolderDO.owner_id == owner,
                    FavoriteFolderDO.is_default.is_(True),
                )
                .order_by(FavoriteFolderDO.create_time, FavoriteFolderDO.id)
            )
            defaults = list((await session.execute(stmt)).scalars())
            report.duplicate_defaults = max(len(defaults) - 1, 0)
            if repair:
                for folder in defaults[1:]:
                    folder.is_default = False
                    folder.update_time = now_ms()
                report.repaired += report.duplicate_defaults
                await session.commit()

        if report.is_consistent:
            logger.info(f"Integrity check for {owner}: {report.scanned} entities ok")
        else:
            logger.warning(f"Integrity check for {owner}: {report}")
        return report

    async def sweep_orphan_blobs(self) -> SweepReport:
        """Delete stored blobs that no live file references.

        Blobs younger than the grace period are kept since their upload may
        not have committed yet.
        """
        report = SweepReport()
        async with self.session_manager.session() as session:
            stmt = select(UserFileDO.blob_key).where(
                UserFileDO.is_deleted.is_(False), UserFileDO.blob_key.is_not(None)
            )
            referenced = set((await session.execute(stmt)).scalars())

        cutoff = time.time() - self.blob_sweep_grace_seconds
        for blob in await self.blob_storage.list_blobs():
            report.scanned += 1
            if blob.key in referenced:
                report.referenced += 1
                continue
            if blob.mtime > cutoff:
                report.too_recent += 1
                continue
            if await self.blob_storage.delete_blob(blob.key):
                report.deleted += 1
        logger.info(
            f"Blob sweep: scanned {report.scanned}, deleted {report.deleted}, kept {report.too_recent} recent"
        )
        return report
