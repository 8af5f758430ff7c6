import pytest

from cloudvault.server.db.session import DatabaseSessionManager
from cloudvault.server.services.ancestry import AncestryResolver
from cloudvault.server.services.exceptions import (
    InvalidMoveCycle,
    NameConflict,
    NotFoundOrForbidden,
)
from cloudvault.server.services.file import FileService
from cloudvault.server.services.vfs import VirtualFileSystem
from tests.conftest import OTHER_OWNER, TEST_OWNER
from tests.server.conftest import upload_bytes


async def assert_paths_consistent(
    session_manager: DatabaseSessionManager, owner: str = TEST_OWNER
) -> None:
    """Every stored path equals the one derived from the parent chain."""
    async with session_manager.session() as session:
        resolver = AncestryResolver(session)
        for node in await VirtualFileSystem(session).list_all(owner):
            assert node.path == await resolver.derive_path(owner, node.id), node.name


async def test_move_folder_into_own_child_is_rejected(
    file_service: FileService,
) -> None:
    a = await file_service.create_folder(TEST_OWNER, "A")
    b = await file_service.create_folder(TEST_OWNER, "B", a.id)

    with pytest.raises(InvalidMoveCycle) as exc_info:
        await file_service.move_items(TEST_OWNER, [a.id], b.id)
    assert exc_info.value.item_id == a.id

    with pytest.raises(InvalidMoveCycle):
        await file_service.move_items(TEST_OWNER, [a.id], a.id)

    assert (await file_service.get_file(TEST_OWNER, a.id)).parent_id is None
    assert (await file_service.get_file(TEST_OWNER, b.id)).parent_id == a.id


async def test_move_batch_is_all_or_nothing(
    file_service: FileService, session_manager: DatabaseSessionManager
) -> None:
    a = await file_service.create_folder(TEST_OWNER, "A")
    b = await file_service.create_folder(TEST_OWNER, "B", a.id)
    x1 = await file_service.create_folder(TEST_OWNER, "X1")
    x2 = await file_service.create_folder(TEST_OWNER, "X2")
    f = await upload_bytes(file_service, "f.txt")

    batch = [x1.id, x2.id, f.id, a.id]
    with pytest.raises(InvalidMoveCycle) as exc_info:
        await file_service.move_items(TEST_OWNER, batch, b.id)
    assert exc_info.value.item_id == a.id

    for entity in (a, x1, x2, f):
        current = await file_service.get_file(TEST_OWNER, entity.id)
        assert current.parent_id is None
        assert current.path == "/"
    await assert_paths_consistent(session_manager)


async def test_move_updates_paths_of_descendants(
    file_service: FileService, session_manager: DatabaseSessionManager
) -> None:
    docs = await file_service.create_folder(TEST_OWNER, "Docs")
    archive = await file_service.create_folder(TEST_OWNER, "Archive")
    sub = await file_service.create_folder(TEST_OWNER, "Sub", docs.id)
    inner = await file_service.create_folder(TEST_OWNER, "Inner", sub.id)
    leaf = await upload_bytes(file_service, "leaf.txt", parent_id=inner.id)

    moved = await file_service.move_items(TEST_OWNER, [sub.id], archive.id)
    assert moved == 1

    moved_sub = await file_service.get_file(TEST_OWNER, sub.id)
    assert moved_sub.parent_id == archive.id
    assert moved_sub.path == "/Archive"
    assert (await file_service.get_file(TEST_OWNER, inner.id)).path == "/Archive/Sub"
    assert (
        await file_service.get_file(TEST_OWNER, leaf.id)
    ).path == "/Archive/Sub/Inner"

    # Back to the root
    assert await file_service.move_items(TEST_OWNER, [sub.id], None) == 1
    assert (await file_service.get_file(TEST_OWNER, leaf.id)).path == "/Sub/Inner"
    await assert_paths_consistent(session_manager)


async def test_move_counts_only_changed_parents(file_service: FileService) -> None:
    docs = await file_service.create_folder(TEST_OWNER, "Docs")
    inside = await upload_bytes(file_service, "inside.txt", parent_id=docs.id)
    outside = await upload_bytes(file_service, "outside.txt")

    moved = await file_service.move_items(
        TEST_OWNER, [inside.id, outside.id, outside.id], docs.id
    )
    assert moved == 1
    assert await file_service.move_items(TEST_OWNER, [], docs.id) == 0


async def test_move_name_conflict(file_service: FileService) -> None:
    target = await file_service.create_folder(TEST_OWNER, "Target")
    await upload_bytes(file_service, "a.txt", parent_id=target.id)
    incoming = await upload_bytes(file_service, "A.TXT")
    other = await upload_bytes(file_service, "b.txt")

    with pytest.raises(NameConflict) as exc_info:
        await file_service.move_items(TEST_OWNER, [other.id, incoming.id], target.id)
    assert exc_info.value.names == ["a.txt"]

    assert (await file_service.get_file(TEST_OWNER, other.id)).parent_id is None


async def test_move_duplicate_names_within_batch(file_service: FileService) -> None:
    one = await file_service.create_folder(TEST_OWNER, "One")
    two = await file_service.create_folder(TEST_OWNER, "Two")
    target = await file_service.create_folder(TEST_OWNER, "Target")
    x1 = await upload_bytes(file_service, "x.txt", parent_id=one.id)
    x2 = await upload_bytes(file_service, "X.txt", parent_id=two.id)

    with pytest.raises(NameConflict) as exc_info:
        await file_service.move_items(TEST_OWNER, [x1.id, x2.id], target.id)
    assert exc_info.value.names == ["X.txt"]


async def test_move_invalid_target_or_items(file_service: FileService) -> None:
    folder = await file_service.create_folder(TEST_OWNER, "Folder")
    a_file = await upload_bytes(file_service, "a.txt")
    foreign = await file_service.create_folder(OTHER_OWNER, "Foreign")

    with pytest.raises(NotFoundOrForbidden):
        await file_service.move_items(TEST_OWNER, [folder.id], a_file.id)
    with pytest.raises(NotFoundOrForbidden):
        await file_service.move_items(TEST_OWNER, [folder.id], foreign.id)
    with pytest.raises(NotFoundOrForbidden):
        await file_service.move_items(TEST_OWNER, [a_file.id, 424242], folder.id)
    with pytest.raises(NotFoundOrForbidden):
        await file_service.move_items(TEST_OWNER, [foreign.id], folder.id)

    assert (await file_service.get_file(TEST_OWNER, a_file.id)).parent_id is None


async def test_paths_stay_consistent_across_operations(
    file_service: FileService, session_manager: DatabaseSessionManager
) -> None:
    a = await file_service.create_folder(TEST_OWNER, "A")
    b = await file_service.create_folder(TEST_OWNER, "B", a.id)
    c = await file_service.create_folder(TEST_OWNER, "C", b.id)
    d = await file_service.create_folder(TEST_OWNER, "D")
    await upload_bytes(file_service, "one.txt", parent_id=c.id)
    await upload_bytes(file_service, "two.txt", parent_id=b.id)

    await file_service.move_items(TEST_OWNER, [c.id], d.id)
    await file_service.rename_item(TEST_OWNER, d.id, "Renamed")
    await file_service.move_items(TEST_OWNER, [d.id], b.id)
    await file_service.rename_item(TEST_OWNER, a.id, "Top")
    await file_service.delete_items(TEST_OWNER, [c.id])

    await assert_paths_consistent(session_manager)
    path = await file_service.get_folder_path(TEST_OWNER, d.id)
    assert [p.name for p in path] == ["Top", "B", "Renamed"]
