"""Transaction scope shared by the tree services."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack, asynccontextmanager

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..db.session import DatabaseSessionManager
from .coordination import DEFAULT_LOCK_TTL, CoordinationService
from .exceptions import ConcurrentModification, StoreTimeout, TransientStoreError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(
    session_manager: DatabaseSessionManager,
    timeout: float,
    coordination_service: CoordinationService | None = None,
    lock_key: str | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session bounded by `timeout`, optionally holding a named lock.

    The lock wait counts against the timeout. Store failures are mapped onto
    the retryable service errors; uncommitted work is rolled back.
    """
    try:
        async with asyncio.timeout(timeout):
            async with AsyncExitStack() as stack:
                if coordination_service is not None and lock_key is not None:
                    # The lock must outlive the whole unit of work
                    ttl = max(DEFAULT_LOCK_TTL, timeout + 1)
                    await stack.enter_async_context(
                        coordination_service.lock(lock_key, ttl=ttl)
                    )
                session = await stack.enter_async_context(session_manager.session())
                yield session
    except TimeoutError as err:
        logger.warning(f"Unit of work {lock_key or ''} timed out after {timeout}s")
        raise StoreTimeout(f"Operation did not finish within {timeout}s") from err
    except (StaleDataError, IntegrityError) as err:
        logger.info(f"Concurrent modification detected: {err}")
        raise ConcurrentModification(
            "Item was modified by another request, retry"
        ) from err
    except OperationalError as err:
        logger.warning(f"Store error: {err.orig}")
        raise TransientStoreError("Storage temporarily unavailable") from err
