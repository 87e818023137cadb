import logging
import time
from uuid import UUID

from algosync.clients.solvedac import ActivityApiClient
from algosync.core.errors import error_message
from algosync.schemas.sync import BatchResult
from algosync.services.retry import RetryExecutor

log = logging.getLogger("batch_collector")


class RateLimitAwareBatchCollector:
    """Fetches one page of submissions per batch through the RetryExecutor."""

    def __init__(self, api_client: ActivityApiClient, retry_executor: RetryExecutor):
        self.api_client = api_client
        self.retry_executor = retry_executor

    async def collect(self, job_id: UUID, handle: str, batch_number: int, batch_size: int) -> BatchResult:
        log.info(f"Collecting batch {batch_number} for {handle} (job {job_id})")
        started = time.monotonic()

        outcome = await self.retry_executor.execute_with_retry(
            lambda: self.api_client.get_submissions(handle, batch_number)
        )
        total_ms = int((time.monotonic() - started) * 1000)
        # Only limiter errors are retried, so a second attempt means we were throttled
        rate_limited = outcome.attempts > 1

        if outcome.succeeded and outcome.result is not None:
            # The API's page size is not guaranteed to match the requested batch size
            collected = min(len(outcome.result.items), batch_size)
            log.info(f"Batch {batch_number} collected {collected} items in {outcome.attempts} attempt(s)")
            return BatchResult(
                job_id=job_id,
                batch_number=batch_number,
                items_collected=collected,
                succeeded=True,
                retry_attempts=outcome.attempts,
                rate_limit_encountered=rate_limited,
                total_retry_time_ms=total_ms,
            )

        message = error_message(outcome.last_error)
        log.error(f"Batch {batch_number} failed after {outcome.attempts} attempt(s): {message}")
        return BatchResult(
            job_id=job_id,
            batch_number=batch_number,
            items_collected=0,
            succeeded=False,
            retry_attempts=outcome.attempts,
            rate_limit_encountered=rate_limited,
            total_retry_time_ms=total_ms,
            error_message=message,
        )
