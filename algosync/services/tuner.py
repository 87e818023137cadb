import logging
import math
import os
from collections import deque
from typing import Deque, List, Optional

from algosync.schemas.sync import RetryPolicy, SagaRunResult
from algosync.schemas.tuning import (
    BatchSizeRecommendation,
    PerformanceGrade,
    PerformanceReport,
    RetryPolicyRecommendation,
    RunMetrics,
)
from algosync.services.backoff import DEFAULT_RETRY_POLICY

log = logging.getLogger("adaptive_tuner")

# Rough cost of one page request in seconds, used for time estimates only
SECONDS_PER_BATCH = 2
BATCHES_PER_THREAD = 10
HISTORY_SIZE = 100


class AdaptiveTuner:
    """
    Advisory analysis of finished saga runs. Nothing here changes a running
    saga; callers decide whether to apply the recommendations.
    """

    def __init__(self, history_size: int = HISTORY_SIZE):
        # Only the most recent runs inform the retry policy
        self.history: Deque[RunMetrics] = deque(maxlen=history_size)

    def analyze(self, result: SagaRunResult) -> PerformanceReport:
        total = result.total_batches
        success_rate = result.successful_batches / total if total else 0.0
        avg_batch_time = result.execution_time_ms / total if total else 0.0

        metrics = RunMetrics(
            job_id=result.job_id,
            total_batches=total,
            successful_batches=result.successful_batches,
            failed_batches=result.failed_batches,
            execution_time_ms=result.execution_time_ms,
        )
        self.history.append(metrics)

        report = PerformanceReport(
            job_id=result.job_id,
            success_rate=success_rate,
            avg_batch_time_ms=avg_batch_time,
            total_execution_time_ms=result.execution_time_ms,
            grade=_grade(success_rate, avg_batch_time),
            suggestions=_suggestions(metrics, success_rate, avg_batch_time),
        )
        log.info(f"Job {result.job_id} graded {report.grade.value} (success rate {success_rate:.2f}, avg batch {avg_batch_time:.0f}ms)")
        return report

    def recommend_batch_size(self, total_items: int, concurrency_hint: Optional[int] = None) -> BatchSizeRecommendation:
        if total_items <= 100:
            batch_size = 25
        elif total_items <= 500:
            batch_size = 50
        elif total_items <= 2000:
            batch_size = 100
        else:
            batch_size = 200

        batch_count = max(1, math.ceil(total_items / batch_size))
        threads = concurrency_hint or os.cpu_count() or 1
        concurrency = max(1, min(threads * BATCHES_PER_THREAD, batch_count))
        estimated_minutes = max(1, int(batch_count * SECONDS_PER_BATCH / 60 / concurrency))

        return BatchSizeRecommendation(
            batch_size=batch_size,
            batch_count=batch_count,
            concurrency_level=concurrency,
            estimated_minutes=estimated_minutes,
            reasoning=f"{total_items} items split into {batch_count} batches of {batch_size}, {concurrency} running at once",
        )

    def optimize_retry_policy(self, history: Optional[List[RunMetrics]] = None) -> RetryPolicyRecommendation:
        runs = self.history if history is None else history
        runs = [r for r in runs if r.total_batches > 0]
        if not runs:
            return RetryPolicyRecommendation(
                policy=DEFAULT_RETRY_POLICY,
                previous_failure_rate=0.0,
                expected_improvement_percent=0,
                reasoning="No run history, keeping the default policy",
            )

        failure_rate = sum(r.failed_batches / r.total_batches for r in runs) / len(runs)

        if failure_rate > 0.5:
            # Hammering a throttled API makes it worse: fewer, slower retries
            policy = RetryPolicy(max_attempts=2, base_delay_ms=5000, max_delay_ms=300000, backoff_multiplier=3.0)
            improvement = 40
            reasoning = "High failure rate, backing off harder with fewer attempts"
        elif failure_rate > 0.2:
            policy = RetryPolicy(max_attempts=3, base_delay_ms=2000, max_delay_ms=120000, backoff_multiplier=2.0)
            improvement = 25
            reasoning = "Moderate failure rate, using longer base delays"
        else:
            policy = RetryPolicy(max_attempts=4, base_delay_ms=500, max_delay_ms=30000, backoff_multiplier=1.5)
            improvement = 10
            reasoning = "Low failure rate, retrying sooner and more often"

        log.info(f"Retry policy recommendation over {len(runs)} runs (failure rate {failure_rate:.2f}): {reasoning}")
        return RetryPolicyRecommendation(
            policy=policy,
            previous_failure_rate=failure_rate,
            expected_improvement_percent=improvement,
            reasoning=reasoning,
        )


def _grade(success_rate: float, avg_batch_time_ms: float) -> PerformanceGrade:
    if success_rate >= 0.95 and avg_batch_time_ms <= 1000:
        return PerformanceGrade.EXCELLENT
    if success_rate >= 0.90 and avg_batch_time_ms <= 2000:
        return PerformanceGrade.GOOD
    if success_rate >= 0.80 and avg_batch_time_ms <= 5000:
        return PerformanceGrade.FAIR
    if success_rate >= 0.70:
        return PerformanceGrade.POOR
    return PerformanceGrade.CRITICAL


def _suggestions(metrics: RunMetrics, success_rate: float, avg_batch_time_ms: float) -> List[str]:
    suggestions = []
    if success_rate < 0.9:
        suggestions.append("Success rate below 90%: review the retry policy and API limits")
    if avg_batch_time_ms > 3000:
        suggestions.append("Average batch time above 3s: consider a smaller batch size")
    if metrics.total_batches and metrics.failed_batches > metrics.total_batches * 0.3:
        suggestions.append("More than 30% of batches failed: lower the concurrency level")
    if metrics.execution_time_ms > 600000:
        suggestions.append("Run took longer than 10 minutes: consider more parallelism")
    if not suggestions:
        suggestions.append("Performance is good, no changes needed")
    return suggestions
