import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from docextract.core.logging import LoggerLike
from docextract.services.provider import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_jitter_ms: int = 1000

    def delay_ms(self, attempt: int, jitter_ms: float) -> float:
        return self.base_delay_ms * 2**attempt + jitter_ms


def is_retryable(error: Exception) -> bool:
    """Only an error explicitly marked non-retryable stops the loop early."""
    return not (isinstance(error, ProviderError) and not error.retryable)


class RetryingExtractor:
    """Runs an async call up to ``max_retries + 1`` times with jittered backoff."""

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        log: LoggerLike | None = None,
    ) -> None:
        self._policy = policy
        self._sleep = sleep
        self._jitter = jitter
        self._log = log or logger

    async def run(
        self,
        attempt_fn: Callable[[], Awaitable[T]],
        *,
        log: LoggerLike | None = None,
    ) -> T:
        log = log or self._log
        attempt = 0
        while True:
            try:
                return await attempt_fn()
            except Exception as exc:
                if not is_retryable(exc):
                    log.warning("Extraction failed with terminal error: %s", exc)
                    raise
                if attempt >= self._policy.max_retries:
                    log.warning(
                        "Extraction failed after %d attempts: %s", attempt + 1, exc
                    )
                    raise
                delay_ms = self._policy.delay_ms(
                    attempt, self._jitter(0, self._policy.max_jitter_ms)
                )
                log.info(
                    "Retry attempt %d/%d after %.0fms",
                    attempt + 1,
                    self._policy.max_retries,
                    delay_ms,
                    extra={"attempt": attempt + 1, "error": str(exc)},
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1
