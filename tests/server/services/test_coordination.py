import asyncio
import time
from unittest.mock import patch

from cloudvault.server.services.coordination import LocalCoordinationService


async def test_locks() -> None:
    service = LocalCoordinationService()
    lock_key = "tree:user_1"

    token = await service.acquire_lock(lock_key, ttl=5)
    assert token is not None
    # Fail to acquire again
    assert await service.acquire_lock(lock_key, ttl=5) is None
    # Other keys are independent
    assert await service.acquire_lock("tree:user_2", ttl=5) is not None

    # Release
    assert await service.release_lock(lock_key, token) is True

    # Acquire again
    assert await service.acquire_lock(lock_key, ttl=5) is not None


async def test_expired_lock_is_taken_over() -> None:
    service = LocalCoordinationService()
    assert await service.acquire_lock("k", ttl=1) is not None

    later = time.monotonic() + 2
    with patch("cloudvault.server.services.coordination.time.monotonic", return_value=later):
        assert await service.acquire_lock("k", ttl=1) is not None


async def test_stale_holder_cannot_release_new_holder() -> None:
    service = LocalCoordinationService()
    stale = await service.acquire_lock("tree:user", ttl=0)
    assert stale is not None

    current = await service.acquire_lock("tree:user", ttl=30)
    assert current is not None

    # The expired holder finishes late and must not free the lock
    assert await service.release_lock("tree:user", stale) is False
    assert await service.acquire_lock("tree:user", ttl=30) is None

    assert await service.release_lock("tree:user", current) is True
    assert await service.acquire_lock("tree:user", ttl=30) is not None


async def test_lock_context_serializes_holders() -> None:
    service = LocalCoordinationService()
    events: list[str] = []

    async def worker(name: str) -> None:
        async with service.lock("favorite:user"):
            events.append(f"{name}-start")
            await asyncio.sleep(0.02)
            events.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))

    assert events in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )
    # Released after the block
    assert await service.acquire_lock("favorite:user") is not None


async def test_lock_released_on_error() -> None:
    service = LocalCoordinationService()
    try:
        async with service.lock("k"):
            raise ValueError("boom")
    except ValueError:
        pass
    assert await service.acquire_lock("k") is not None
