import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from algosync.core.errors import ErrorKind, classify_error
from algosync.schemas.sync import RetryOutcome, RetryPolicy
from algosync.services.backoff import DEFAULT_RETRY_POLICY, ExponentialBackoffCalculator

log = logging.getLogger("retry_executor")

Sleep = Callable[[float], Awaitable[Any]]


class RetryInterrupted(Exception):
    """Recorded as the last error when a backoff sleep is cancelled."""


class RetryExecutor:
    """
    Runs an async operation under a RetryPolicy.

    Only RETRYABLE errors (rate limit, concurrency limit) are retried, with the
    backoff delay slept between attempts. FATAL and UNKNOWN errors stop the
    loop on the spot. Cancellation of the backoff sleep ends the loop as a
    fatal outcome instead of propagating, so one interrupted batch never takes
    its siblings down with it.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Optional[Sleep] = None):
        self.policy = policy or DEFAULT_RETRY_POLICY
        self.backoff = ExponentialBackoffCalculator(self.policy)
        self._sleep = sleep or asyncio.sleep

    async def execute_with_retry(self, operation: Callable[[], Awaitable[Any]]) -> RetryOutcome:
        started = time.monotonic()
        max_attempts = self.policy.max_attempts
        last_error: Optional[BaseException] = None
        last_kind: Optional[ErrorKind] = None
        attempts = 0

        for attempt in range(1, max_attempts + 1):
            attempts = attempt
            try:
                log.debug(f"Executing operation, attempt {attempt}/{max_attempts}")
                result = await operation()
                elapsed = _elapsed_ms(started)
                log.info(f"Operation succeeded on attempt {attempt}/{max_attempts} after {elapsed}ms")
                return RetryOutcome(
                    succeeded=True,
                    result=result,
                    attempts=attempt,
                    total_elapsed_ms=elapsed,
                )
            except Exception as e:
                last_error = e
                last_kind = classify_error(e)

            if last_kind is not ErrorKind.RETRYABLE:
                log.error(f"Attempt {attempt}/{max_attempts} failed with {last_kind.value} error, giving up: {last_error}")
                break

            log.warning(f"Attempt {attempt}/{max_attempts} hit a retryable error: {last_error}")
            if attempt == max_attempts:
                break

            delay = self.backoff.delay_seconds(attempt)
            log.info(f"Waiting {delay:.3f}s before attempt {attempt + 1}/{max_attempts}")
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                log.warning(f"Interrupted while waiting to retry after attempt {attempt}/{max_attempts}")
                last_error = RetryInterrupted(f"Retry interrupted after attempt {attempt}: {last_error}")
                last_kind = ErrorKind.FATAL
                break

        elapsed = _elapsed_ms(started)
        log.error(f"Operation failed after {attempts} attempt(s), total time {elapsed}ms")
        return RetryOutcome(
            succeeded=False,
            attempts=attempts,
            total_elapsed_ms=elapsed,
            last_error=last_error,
            error_kind=last_kind,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
