"""Bounded retry with exponential backoff for transient datastore failures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from app.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    def __init__(self, attempts: int = 3, base_delay: float = 0.1, max_delay: float = 2.0) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        should_retry: Callable[[BaseException], bool],
        op: str = "datastore",
    ) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if attempt >= self.attempts or not should_retry(e):
                    raise
                delay = self.delay_for(attempt)
                log.warning("datastore_retry", op=op, attempt=attempt, delay=delay, error=str(e)[:200])
                await asyncio.sleep(delay)
                attempt += 1


def is_transient(exc: BaseException) -> bool:
    """Connection drops, lock timeouts and similar; never constraint violations."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False
