"""
Bounded retry with exponential backoff.

One policy object serves both the parse phase and batch writes in the loader.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from catalog_ingest.config.settings import IngestionSettings

logger = structlog.get_logger(__name__)

RetryCallback = Callable[[int, Exception, float], Any]


class RetryPolicy:
    """Retry an async operation up to max_attempts times"""

    def __init__(
        self,
        max_attempts: int,
        backoff_base: float = 2.0,
        max_backoff: float = 60.0,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.retry_on = retry_on
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: IngestionSettings,
        max_retries: Optional[int] = None,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RetryPolicy":
        retries = settings.max_retries if max_retries is None else max_retries
        return cls(
            max_attempts=retries + 1,
            backoff_base=settings.backoff_base_seconds,
            max_backoff=settings.max_backoff_seconds,
            retry_on=retry_on,
            sleep=sleep,
        )

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (1-based)"""
        return min(self.backoff_base**attempt, self.max_backoff)

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_retry: Optional[RetryCallback] = None,
        description: str = "operation",
    ) -> Any:
        """
        Await operation until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            on_retry: Called with (attempt, error, delay) before each backoff sleep
            description: Name used in log events

        Returns:
            Result of the first successful attempt

        Raises:
            The last error once all attempts failed, or immediately for errors
            outside retry_on
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Retries exhausted",
                        operation=description,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = self.backoff(attempt)
                logger.warning(
                    "Attempt failed, retrying",
                    operation=description,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e),
                )
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                await self._sleep(delay)


__all__ = ["RetryPolicy"]
