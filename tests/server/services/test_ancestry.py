import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from cloudvault.server.db.models.file import UserFileDO
from cloudvault.server.services.ancestry import AncestryResolver
from cloudvault.server.services.exceptions import CorruptTree, NotFoundOrForbidden
from cloudvault.server.services.vfs import VirtualFileSystem

OWNER = "tree@example.com"


async def _chain(vfs: VirtualFileSystem, *names: str) -> list[UserFileDO]:
    nodes: list[UserFileDO] = []
    parent_id = None
    for name in names:
        node = await vfs.create_node(OWNER, parent_id, name, is_folder=True)
        nodes.append(node)
        parent_id = node.id
    return nodes


async def test_compute_ancestors(db_session: AsyncSession) -> None:
    vfs = VirtualFileSystem(db_session)
    a, b, c = await _chain(vfs, "A", "B", "C")
    resolver = AncestryResolver(db_session)

    chain = await resolver.compute_ancestors(OWNER, c.id)
    assert [x.id for x in chain] == [a.id, b.id, c.id]
    assert [x.name for x in chain] == ["A", "B", "C"]

    chain = await resolver.compute_ancestors(OWNER, c.id, include_self=False)
    assert [x.name for x in chain] == ["A", "B"]

    assert await resolver.compute_ancestors(OWNER, a.id, include_self=False) == []
    assert await resolver.derive_path(OWNER, c.id) == "/A/B"
    assert await resolver.derive_path(OWNER, a.id) == "/"


async def test_is_descendant(db_session: AsyncSession) -> None:
    vfs = VirtualFileSystem(db_session)
    a, b, c = await _chain(vfs, "A", "B", "C")
    other = await vfs.create_node(OWNER, None, "Other", is_folder=True)
    resolver = AncestryResolver(db_session)

    assert await resolver.is_descendant(a.id, c.id, OWNER)
    assert await resolver.is_descendant(b.id, c.id, OWNER)
    assert await resolver.is_descendant(c.id, c.id, OWNER)
    assert not await resolver.is_descendant(c.id, a.id, OWNER)
    assert not await resolver.is_descendant(other.id, c.id, OWNER)


async def test_missing_or_foreign_entity(db_session: AsyncSession) -> None:
    vfs = VirtualFileSystem(db_session)
    (a,) = await _chain(vfs, "A")
    resolver = AncestryResolver(db_session)

    with pytest.raises(NotFoundOrForbidden):
        await resolver.compute_ancestors(OWNER, 987654321)
    with pytest.raises(NotFoundOrForbidden):
        await resolver.compute_ancestors("intruder@example.com", a.id)

    await vfs.soft_delete_many(OWNER, [a.id])
    with pytest.raises(NotFoundOrForbidden):
        await resolver.compute_ancestors(OWNER, a.id)


async def test_cycle_is_reported(db_session: AsyncSession) -> None:
    vfs = VirtualFileSystem(db_session)
    a, b = await _chain(vfs, "A", "B")
    # Corrupt the store directly: A now lives inside its own child.
    a.parent_id = b.id
    await db_session.flush()

    resolver = AncestryResolver(db_session)
    with pytest.raises(CorruptTree) as exc_info:
        await resolver.compute_ancestors(OWNER, b.id)
    assert exc_info.value.entity_id == b.id


async def test_depth_limit(db_session: AsyncSession) -> None:
    vfs = VirtualFileSystem(db_session)
    nodes = await _chain(vfs, "L1", "L2", "L3", "L4")

    resolver = AncestryResolver(db_session, max_depth=2)
    with pytest.raises(CorruptTree):
        await resolver.compute_ancestors(OWNER, nodes[-1].id)
    assert len(await resolver.compute_ancestors(OWNER, nodes[1].id)) == 2


async def test_broken_parent_links(db_session: AsyncSession) -> None:
    vfs = VirtualFileSystem(db_session)
    orphan = await vfs.create_node(OWNER, 55555, "orphan.txt")
    resolver = AncestryResolver(db_session)
    with pytest.raises(CorruptTree, match="missing parent"):
        await resolver.compute_ancestors(OWNER, orphan.id)

    (folder,) = await _chain(vfs, "Gone")
    child = await vfs.create_node(OWNER, folder.id, "child.txt", path="/Gone")
    await vfs.soft_delete_many(OWNER, [folder.id])
    with pytest.raises(CorruptTree, match="deleted parent"):
        await resolver.compute_ancestors(OWNER, child.id)

    holder = await vfs.create_node(OWNER, None, "holder.txt")
    inner = await vfs.create_node(OWNER, holder.id, "inner.txt", path="/holder.txt")
    with pytest.raises(CorruptTree, match="not a folder"):
        await resolver.compute_ancestors(OWNER, inner.id)
