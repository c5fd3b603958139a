from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from climate_insight.errors import InsightError, RetryCancelledError, RetryExhaustedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class CancelToken:
    """Caller-held handle that aborts a pending retry backoff."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, InsightError):
        return exc.retryable
    return True


class RetryPolicy:
    """
    Bounded exponential-backoff retry keyed by operation id.

    A failed call is retried while the attempts made so far for its id are
    below the limit, waiting ``base_delay * 2 ** attempts`` first. The
    per-id counter exists only while a call is outstanding.
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, sleep: Sleep = asyncio.sleep):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._attempts: Dict[str, int] = {}

    def attempts_for(self, operation_id: str) -> Optional[int]:
        return self._attempts.get(operation_id)

    @property
    def in_flight(self) -> Dict[str, int]:
        return dict(self._attempts)

    def backoff_delay(self, attempts: int) -> float:
        return self.base_delay * (2 ** attempts)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str,
        max_retries: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> T:
        limit = self.max_retries if max_retries is None else max_retries
        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    raise RetryCancelledError(operation_id, self._attempts.get(operation_id, 0))
                try:
                    result = await operation()
                except Exception as exc:
                    if not _is_retryable(exc):
                        raise
                    attempts = self._attempts.get(operation_id, 0)
                    if attempts >= limit:
                        raise RetryExhaustedError(operation_id, attempts, exc) from exc
                    delay = self.backoff_delay(attempts)
                    self._attempts[operation_id] = attempts + 1
                    LOGGER.warning(
                        "Remote call failed op=%s attempt=%s/%s backoff=%.2fs err=%s: %s",
                        operation_id,
                        attempts + 1,
                        limit,
                        delay,
                        type(exc).__name__,
                        exc,
                    )
                    await self._backoff(delay, operation_id, cancel_token)
                    continue
                return result
        finally:
            # Success, exhaustion, cancellation or a non-retryable error all end the call.
            self._attempts.pop(operation_id, None)

    async def _backoff(self, delay: float, operation_id: str, cancel_token: Optional[CancelToken]) -> None:
        if cancel_token is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        canceller = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, canceller, return_exceptions=True)
        if cancel_token.cancelled:
            raise RetryCancelledError(operation_id, self._attempts.get(operation_id, 0))
