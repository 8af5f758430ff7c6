import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 60


class CoordinationService(ABC):
    """Interface for named locks shared by concurrent requests.

    Used to serialise check-then-act sequences per owner, for example tree
    mutations and default favorite folder creation.
    """

    @abstractmethod
    async def acquire_lock(
        self, key: str, ttl: float = DEFAULT_LOCK_TTL
    ) -> str | None:
        """Try to take the lock without waiting. Expires after `ttl` seconds.

        Returns a token identifying this holder, or None when the lock is taken.
        """

    @abstractmethod
    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock if `token` still holds it."""

    @asynccontextmanager
    async def lock(
        self, key: str, ttl: float = DEFAULT_LOCK_TTL, poll_interval: float = 0.01
    ) -> AsyncGenerator[None, None]:
        """Wait for the lock and hold it for the duration of the block.

        Waits indefinitely; callers bound it with their own timeout.
        """
        while (token := await self.acquire_lock(key, ttl)) is None:
            await asyncio.sleep(poll_interval)
        try:
            yield
        finally:
            await self.release_lock(key, token)


class LocalCoordinationService(CoordinationService):
    """In-process lock table for single server deployments."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[str, float]] = {}

    async def acquire_lock(
        self, key: str, ttl: float = DEFAULT_LOCK_TTL
    ) -> str | None:
        now = time.monotonic()
        held = self._locks.get(key)
        if held is not None and held[1] > now:
            return None
        if held is not None:
            logger.warning(f"Lock {key} expired while held, taking it over")
        token = uuid.uuid4().hex
        self._locks[key] = (token, now + ttl)
        return token

    async def release_lock(self, key: str, token: str) -> bool:
        held = self._locks.get(key)
        if held is None or held[0] != token:
            logger.warning(f"Lock {key} was taken over before release")
            return False
        del self._locks[key]
        return True
