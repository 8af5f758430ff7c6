"""Path and ancestry resolution over the parent chain."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..utils.names import path_from_names
from .exceptions import CorruptTree, NotFoundOrForbidden
from .vfs import VirtualFileSystem

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 256


@dataclass
class Ancestor:
    """One element of an ancestor chain."""

    id: int
    name: str


class AncestryResolver:
    """Walks `parent_id` links from an entity up to the root.

    Every walk is bounded by `max_depth` and tracks visited ids, so a cycle or
    a dangling parent raises `CorruptTree` instead of looping.
    """

    def __init__(self, db_session: AsyncSession, max_depth: int = DEFAULT_MAX_DEPTH):
        self.vfs = VirtualFileSystem(db_session)
        self.max_depth = max_depth

    def _corrupt(self, entity_id: int, reason: str) -> CorruptTree:
        logger.error(f"Corrupt tree at entity {entity_id}: {reason}")
        return CorruptTree(entity_id, reason)

    async def compute_ancestors(
        self, owner: str, node_id: int, include_self: bool = True
    ) -> list[Ancestor]:
        """Return the chain ordered root to leaf.

        Raises `NotFoundOrForbidden` when `node_id` itself is not a live entity
        of `owner`.
        """
        link = await self.vfs.get_link(owner, node_id)
        if link is None or link.is_deleted:
            raise NotFoundOrForbidden(f"Item {node_id} not found")

        chain: list[Ancestor] = []
        if include_self:
            chain.append(Ancestor(id=link.id, name=link.name))
        visited = {link.id}
        parent_id: Optional[int] = link.parent_id
        while parent_id is not None:
            if len(visited) > self.max_depth:
                raise self._corrupt(
                    node_id, f"ancestry deeper than {self.max_depth} levels"
                )
            if parent_id in visited:
                raise self._corrupt(node_id, f"cycle through {parent_id}")
            parent = await self.vfs.get_link(owner, parent_id)
            if parent is None:
                raise self._corrupt(node_id, f"missing parent {parent_id}")
            if parent.is_deleted:
                raise self._corrupt(node_id, f"deleted parent {parent_id}")
            if not parent.is_folder:
                raise self._corrupt(node_id, f"parent {parent_id} is not a folder")
            visited.add(parent_id)
            chain.append(Ancestor(id=parent.id, name=parent.name))
            parent_id = parent.parent_id
        chain.reverse()
        return chain

    async def is_descendant(
        self, candidate_ancestor_id: int, subject_id: int, owner: str
    ) -> bool:
        """True if `candidate_ancestor_id` is `subject_id` or one of its ancestors."""
        chain = await self.compute_ancestors(owner, subject_id, include_self=True)
        return any(a.id == candidate_ancestor_id for a in chain)

    async def derive_path(self, owner: str, node_id: int) -> str:
        """Recompute the denormalized path of an entity from its parent chain."""
        chain = await self.compute_ancestors(owner, node_id, include_self=False)
        return path_from_names(a.name for a in chain)
