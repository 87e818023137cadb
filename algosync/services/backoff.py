from typing import Optional

from algosync.core.config import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_BASE_DELAY_MS,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
)
from algosync.schemas.sync import RetryPolicy

DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=RETRY_MAX_ATTEMPTS,
    base_delay_ms=RETRY_BASE_DELAY_MS,
    max_delay_ms=RETRY_MAX_DELAY_MS,
    backoff_multiplier=RETRY_BACKOFF_MULTIPLIER,
)


class ExponentialBackoffCalculator:
    """
    delay(n) = min(base * multiplier^(n-1), max_delay) in milliseconds.

    The product is built one factor at a time and stops at the cap, so large
    attempt numbers never produce huge intermediate values.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or DEFAULT_RETRY_POLICY

    def delay_ms(self, attempt_number: int) -> int:
        if attempt_number <= 0:
            return 0

        cap = self.policy.max_delay_ms
        delay = float(self.policy.base_delay_ms)
        if delay >= cap:
            return cap

        for _ in range(attempt_number - 1):
            delay *= self.policy.backoff_multiplier
            if delay >= cap:
                return cap

        return int(delay)

    def delay_seconds(self, attempt_number: int) -> float:
        return self.delay_ms(attempt_number) / 1000.0
