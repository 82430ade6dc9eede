"""
Retry policy for calls to the rate-limited export API.

The decision is a pure function of the error: throttling (429) and
server errors (5xx) are retried, honouring the server's Retry-After hint
when one is given; other client errors are permanent; anything that is
not status-coded (connection resets, timeouts) is assumed transient.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, TypeVar

from core.exceptions import BundleDownloadError, SourceStatusError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts per request made to the export API
MAX_ATTEMPTS = 3

# Wait before retrying a 429/5xx without a Retry-After header
DEFAULT_RETRY_AFTER = 10.0

HTTP_TOO_MANY_REQUESTS = 429


class RetryDecision(NamedTuple):
    should_retry: bool
    wait: float


class RetryPolicy:
    """
    Bounded retry around a single source API call.

    Attributes:
        max_attempts: Attempts before giving up (default: 3)
        default_wait: Seconds to wait when the server gives no hint (default: 10)
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        default_wait: float = DEFAULT_RETRY_AFTER,
        sleep: Callable[[float], Awaitable[Any]] = None
    ):
        self.max_attempts = max_attempts
        self.default_wait = default_wait
        self._sleep = sleep or asyncio.sleep

    def decide(self, error: BaseException) -> RetryDecision:
        """Decide whether to retry after `error` and how long to wait first."""
        if isinstance(error, SourceStatusError):
            if error.status_code != HTTP_TOO_MANY_REQUESTS and error.status_code < 500:
                return RetryDecision(False, self.default_wait)
            if error.retry_after and error.retry_after > 0:
                return RetryDecision(True, float(error.retry_after))

        return RetryDecision(True, self.default_wait)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        context: Optional[Dict[str, Any]] = None
    ) -> T:
        """
        Run `operation` until it succeeds, fails permanently, or the
        attempts run out.

        Raises:
            BundleDownloadError: wrapping the last error once retries are exhausted
                or a permanent error is seen
        """
        context = dict(context or {})
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                decision = self.decide(e)
                logger.warning(
                    f"Attempt #{attempt}/{self.max_attempts} to {description} failed: {e}",
                    extra={"error_context": {**context, "attempt": attempt}}
                )
                if not decision.should_retry:
                    logger.error(f"Not retrying {description}: permanent failure")
                    break
                if attempt < self.max_attempts:
                    logger.info(f"Retrying {description} after {decision.wait}s")
                    await self._sleep(decision.wait)

        context["attempts"] = attempt
        raise BundleDownloadError(
            f"Unable to {description}. Tried {attempt} times.",
            context=context,
            original_exception=last_error
        )
