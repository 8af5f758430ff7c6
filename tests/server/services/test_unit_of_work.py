import asyncio
import time
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from cloudvault.server.db.models.file import UserFileDO
from cloudvault.server.db.session import DatabaseSessionManager
from cloudvault.server.services.coordination import (
    DEFAULT_LOCK_TTL,
    LocalCoordinationService,
)
from cloudvault.server.services.exceptions import (
    ConcurrentModification,
    StoreTimeout,
    TransientStoreError,
)
from cloudvault.server.services.unit_of_work import unit_of_work


async def test_commit_inside_unit_of_work(
    session_manager: DatabaseSessionManager,
) -> None:
    async with unit_of_work(session_manager, 5.0) as session:
        session.add(UserFileDO(owner_id="u", name="a", name_key="a"))
        await session.commit()

    async with session_manager.session() as session:
        assert len((await session.execute(select(UserFileDO))).scalars().all()) == 1


async def test_uncommitted_work_is_rolled_back(
    session_manager: DatabaseSessionManager,
) -> None:
    with pytest.raises(ValueError):
        async with unit_of_work(session_manager, 5.0) as session:
            session.add(UserFileDO(owner_id="u", name="a", name_key="a"))
            await session.flush()
            raise ValueError("boom")

    async with session_manager.session() as session:
        assert (await session.execute(select(UserFileDO))).scalars().all() == []


async def test_lock_wait_counts_against_timeout(
    session_manager: DatabaseSessionManager,
) -> None:
    coordination = LocalCoordinationService()
    assert await coordination.acquire_lock("tree:u") is not None

    with pytest.raises(StoreTimeout):
        async with unit_of_work(session_manager, 0.05, coordination, "tree:u"):
            pytest.fail("lock should not have been acquired")


async def test_slow_work_times_out(session_manager: DatabaseSessionManager) -> None:
    with pytest.raises(StoreTimeout) as exc_info:
        async with unit_of_work(session_manager, 0.05):
            await asyncio.sleep(1)
    assert exc_info.value.status == 504
    # A timeout is a transient failure
    assert isinstance(exc_info.value, TransientStoreError)


async def test_store_errors_are_mapped(session_manager: DatabaseSessionManager) -> None:
    with pytest.raises(ConcurrentModification):
        async with unit_of_work(session_manager, 5.0):
            raise StaleDataError("version mismatch")

    with pytest.raises(TransientStoreError) as exc_info:
        async with unit_of_work(session_manager, 5.0):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
    assert exc_info.value.error_code == "E503"


async def test_lock_released_after_unit_of_work(
    session_manager: DatabaseSessionManager,
) -> None:
    coordination = LocalCoordinationService()
    async with unit_of_work(session_manager, 5.0, coordination, "tree:u"):
        assert await coordination.acquire_lock("tree:u") is None
    assert await coordination.acquire_lock("tree:u") is not None


async def test_lock_held_for_long_operation_timeout(
    session_manager: DatabaseSessionManager,
) -> None:
    coordination = LocalCoordinationService()
    start = time.monotonic()
    async with unit_of_work(session_manager, 600.0, coordination, "tree:u"):
        # Still held once the default lock lifetime would have passed
        later = start + DEFAULT_LOCK_TTL + 5
        with patch(
            "cloudvault.server.services.coordination.time.monotonic",
            return_value=later,
        ):
            assert await coordination.acquire_lock("tree:u") is None
