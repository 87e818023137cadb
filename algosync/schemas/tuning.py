import uuid
from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from algosync.schemas.sync import RetryPolicy


class PerformanceGrade(str, Enum):
    EXCELLENT = "EXCELLENT"  # 95%+ success, batches under 1s
    GOOD = "GOOD"            # 90%+ success, batches under 2s
    FAIR = "FAIR"            # 80%+ success, batches under 5s
    POOR = "POOR"            # 70%+ success
    CRITICAL = "CRITICAL"


class RunMetrics(BaseModel):
    """What the tuner remembers about one saga run."""
    job_id: uuid.UUID
    total_batches: int
    successful_batches: int
    failed_batches: int
    execution_time_ms: int


class PerformanceReport(BaseModel):
    job_id: uuid.UUID
    success_rate: float
    avg_batch_time_ms: float
    total_execution_time_ms: int
    grade: PerformanceGrade
    suggestions: List[str] = Field(default_factory=list)


class BatchSizeRecommendation(BaseModel):
    batch_size: int
    batch_count: int
    concurrency_level: int
    estimated_minutes: int
    reasoning: str


class RetryPolicyRecommendation(BaseModel):
    policy: RetryPolicy
    previous_failure_rate: float
    expected_improvement_percent: int
    reasoning: str
