"""Per-unit serialization and retried units of work for billing mutations.

Same-unit mutations are serialized in-process by an ``asyncio.Lock`` per
(client, unit); across processes the version columns on bills and credit
balances turn lost updates into ConcurrentModificationError. Each attempt
runs in a fresh session so a retry never sees half-applied state.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from utility_billing.config import Settings, settings as default_settings
from utility_billing.errors import ConcurrentModificationError, StoreUnavailableError
from utility_billing.services.bill_store import translate_store_errors

logger = logging.getLogger(__name__)

T = TypeVar("T")

Work = Callable[[AsyncSession], Awaitable[T]]


class UnitLockRegistry:
    """One asyncio.Lock per (client_id, unit_id)."""

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def lock_for(self, client_id: str, unit_id: str) -> asyncio.Lock:
        key = (client_id, unit_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def _log_retry(description: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "%s: attempt %d failed (%s), retrying",
            description,
            state.attempt_number,
            error,
        )

    return before_sleep


async def _attempt(session_factory: async_sessionmaker[AsyncSession], work: Work) -> T:
    async with session_factory() as session:
        try:
            result = await work(session)
            with translate_store_errors("commit"):
                await session.commit()
            return result
        except Exception:
            await session.rollback()
            raise


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Work,
    description: str,
    config: Settings | None = None,
) -> T:
    """Run ``work`` in one transaction, retrying transient failures.

    ConcurrentModificationError re-runs the whole unit of work up to
    ``concurrency_retry_attempts`` times. StoreUnavailableError is retried
    with exponential backoff up to ``store_retry_attempts`` times. Anything
    else, and the last failure of either kind, propagates unchanged.
    """
    config = config or default_settings

    async def with_store_retry() -> T:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            stop=stop_after_attempt(config.store_retry_attempts),
            wait=wait_exponential(multiplier=config.store_retry_wait_seconds, max=5),
            before_sleep=_log_retry(f"{description} (store)"),
            reraise=True,
        ):
            with attempt:
                return await _attempt(session_factory, work)

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ConcurrentModificationError),
        stop=stop_after_attempt(config.concurrency_retry_attempts),
        wait=wait_none(),
        before_sleep=_log_retry(f"{description} (concurrent)"),
        reraise=True,
    ):
        with attempt:
            return await with_store_retry()


__all__ = ["UnitLockRegistry", "run_in_transaction"]
