"""Tests for session management."""

import pytest
from sqlalchemy import select, text

from cloudvault.server.db.models.file import UserFileDO
from cloudvault.server.db.session import DatabaseSessionManager


async def test_session_manager_session() -> None:
    """Test that the session manager can provide a session."""
    manager = DatabaseSessionManager("sqlite+aiosqlite:///:memory:")

    async with manager.session() as session:
        result = await session.execute(text("SELECT 1"))
        assert result.scalar() == 1

    await manager.close()


async def test_session_rolls_back_on_error(
    session_manager: DatabaseSessionManager,
) -> None:
    with pytest.raises(RuntimeError):
        async with session_manager.session() as session:
            session.add(UserFileDO(owner_id="x", name="a", name_key="a"))
            await session.flush()
            raise RuntimeError("boom")

    async with session_manager.session() as session:
        rows = (await session.execute(select(UserFileDO))).scalars().all()
        assert rows == []


async def test_closed_manager_rejects_sessions() -> None:
    manager = DatabaseSessionManager("sqlite+aiosqlite:///:memory:")
    await manager.close()

    with pytest.raises(Exception, match="not initialized"):
        async with manager.session():
            pass
