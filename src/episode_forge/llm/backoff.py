"""Bounded exponential backoff for unreliable upstream calls."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import AgentError, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry one call site."""
    max_attempts: int = 5
    base_delay: float = 0.7
    max_delay: float = 60.0
    jitter: float = 0.25

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based).

        A server-declared ``retry_after`` wins over the computed value. The
        cap is applied after jitter, so successive delays never decrease.
        """
        if retry_after is not None:
            return min(self.max_delay, max(0.0, retry_after))
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return min(self.max_delay, delay)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "upstream call",
    timeout: Optional[float] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or runs out of attempts.

    Each attempt is bounded by ``timeout``; expiry counts as a retryable
    upstream failure. Only ``AgentError`` instances with ``retryable`` set are
    retried. Anything else propagates immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if timeout:
                return await asyncio.wait_for(operation(), timeout)
            return await operation()
        except asyncio.TimeoutError:
            error: AgentError = UpstreamError(
                f"{label} timed out after {timeout}s",
                "TIMEOUT",
                details={"label": label, "attempt": attempt},
            )
        except AgentError as exc:
            error = exc

        if not error.retryable or attempt >= policy.max_attempts:
            if error.retryable:
                logger.error("%s failed after %d attempts: %s", label, attempt, error)
            raise error

        delay = policy.compute_delay(attempt, getattr(error, "retry_after", None))
        logger.warning(
            "%s failed (%s), retry %d/%d in %.2fs",
            label, error.code_key, attempt, policy.max_attempts - 1, delay,
        )
        await sleep(delay)
