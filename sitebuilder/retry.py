from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import TransientUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000


class RetryExecutor:
    """Bounded exponential backoff for a single async operation.

    Only failures of the `retry_on` classes are retried; everything else is
    raised on the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        *,
        retry_on: Tuple[Type[BaseException], ...] = (TransientUnavailableError,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_ms = max(0, int(base_delay_ms))
        self._retry_on = retry_on
        self._sleep = sleep

    def delay_ms(self, attempt: int, base_delay_ms: Optional[int] = None) -> int:
        base = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        return base * 2 ** (attempt - 1)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
    ) -> T:
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        attempt = 1
        while True:
            try:
                return await operation()
            except self._retry_on as e:
                if attempt >= attempts:
                    logger.warning(
                        "[retry] giving up after %d attempt(s): %s", attempt, e
                    )
                    raise
                delay = self.delay_ms(attempt, base_delay_ms)
                logger.info(
                    "[retry] attempt %d failed with transient error (%s); retrying in %dms",
                    attempt,
                    e,
                    delay,
                )
                await self._sleep(delay / 1000.0)
                attempt += 1
