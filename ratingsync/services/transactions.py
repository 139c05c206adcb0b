"""Transactional execution with retry for transient store failures.

``run_in_transaction`` gives a unit of work its own session inside one
transaction: any exception rolls everything back. ``run_with_retry`` wraps
any coroutine factory with exponential backoff (100ms, 200ms, 400ms, ...)
for failures classified as transient; everything else is re-raised on the
first attempt without waiting.

Usage:
    executor = TransactionExecutor(session_factory)

    async def work(session):
        ...

    result = await executor.run_transaction_with_retry(work, max_attempts=3)
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ratingsync.core.exceptions import (
    PermanentStoreError,
    TransientStoreError,
    ValidationError,
)
from ratingsync.core.logging import get_logger


logger = get_logger("services.transactions")

T = TypeVar("T")

# Message fragments of driver errors worth retrying
RETRIABLE_PATTERNS = (
    "connection refused",
    "connection reset",
    "timeout",
    "temporary failure",
    "deadlock",
    "serialization failure",
    "could not serialize access",
    "restart transaction",
)

BASE_BACKOFF_SECONDS = 0.1


# =============================================================================
# Exceptions
# =============================================================================


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"All {attempts} retry attempts exhausted"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class RetryCancelledError(Exception):
    """Raised when cancellation arrives while waiting between attempts."""

    def __init__(self, attempt: int, last_error: BaseException | None = None):
        self.attempt = attempt
        self.last_error = last_error
        super().__init__(f"Retry cancelled during backoff after attempt {attempt}")


# =============================================================================
# Classification
# =============================================================================


def is_retriable_error(error: BaseException) -> bool:
    """True for transient failures (connection, timeout, deadlock, serialization)."""
    if isinstance(error, (ValidationError, PermanentStoreError)):
        return False
    if isinstance(error, (TransientStoreError, ConnectionError, TimeoutError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRIABLE_PATTERNS)


# =============================================================================
# Executor
# =============================================================================


class TransactionExecutor:
    """Runs units of work atomically and retries transient failures."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._sleep = sleep

    async def run_in_transaction(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
        rollback_only: bool = False,
    ) -> T:
        """Run ``work`` in a fresh session; commit on return, roll back on raise.

        With ``rollback_only`` the work runs in full and is then rolled back.
        """
        async with self._session_factory() as session:
            try:
                result = await work(session)
                if rollback_only:
                    await session.rollback()
                else:
                    await session.commit()
            except BaseException:
                await session.rollback()
                raise
            return result

    async def run_with_retry(
        self,
        work: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """Call ``work`` until it succeeds, fails permanently, or attempts run out.

        Raises:
            RetryExhaustedError: every attempt failed with a transient error.
            RetryCancelledError: ``cancel_event`` was set during a backoff wait.
            Any non-retriable exception from ``work``, unchanged, on first sight.
        """
        last_error: BaseException | None = None
        failed_attempts = 0

        async def backoff(seconds: float) -> None:
            await self._wait(seconds, cancel_event, failed_attempts, last_error)

        def remember(retry_state: RetryCallState) -> None:
            nonlocal last_error, failed_attempts
            last_error = retry_state.outcome.exception()
            failed_attempts = retry_state.attempt_number
            logger.warning(
                f"Attempt {retry_state.attempt_number} failed, retrying in "
                f"{retry_state.next_action.sleep:.2f}s: {last_error}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=BASE_BACKOFF_SECONDS, exp_base=2, min=0),
            retry=retry_if_exception(is_retriable_error),
            sleep=backoff,
            before_sleep=remember,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await work()
        except RetryError as e:
            error = e.last_attempt.exception()
            logger.warning(f"Retry exhausted after {e.last_attempt.attempt_number} attempts: {error}")
            raise RetryExhaustedError(e.last_attempt.attempt_number, error) from error

    async def run_transaction_with_retry(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
        max_attempts: int = 3,
        cancel_event: asyncio.Event | None = None,
        rollback_only: bool = False,
    ) -> T:
        """Each attempt gets a fresh session and transaction."""
        return await self.run_with_retry(
            lambda: self.run_in_transaction(work, rollback_only=rollback_only),
            max_attempts=max_attempts,
            cancel_event=cancel_event,
        )

    async def _wait(
        self,
        seconds: float,
        cancel_event: asyncio.Event | None,
        attempt: int,
        last_error: BaseException | None,
    ) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        if cancel_event.is_set():
            raise RetryCancelledError(attempt, last_error)

        sleeper = asyncio.ensure_future(self._sleep(seconds))
        watcher = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, watcher, return_exceptions=True)

        if cancel_event.is_set():
            raise RetryCancelledError(attempt, last_error)
