import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from algosync.core.errors import ErrorKind
from algosync.models.sync_job import SagaStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy(BaseModel):
    """Retry configuration for one remote operation. Not persisted."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    base_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(60000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)


class RetryOutcome(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    succeeded: bool
    result: Optional[Any] = None
    attempts: int
    total_elapsed_ms: int = 0
    last_error: Optional[BaseException] = None
    error_kind: Optional[ErrorKind] = None


class BatchPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    handle: str
    batch_size: int
    total_batches: int
    estimated_item_count: int
    created_at: datetime = Field(default_factory=_utcnow)


class BatchResult(BaseModel):
    """Outcome of collecting one batch. Failures are data, never exceptions."""
    model_config = ConfigDict(frozen=True)

    job_id: uuid.UUID
    batch_number: int
    items_collected: int = 0
    succeeded: bool
    retry_attempts: int = 1
    rate_limit_encountered: bool = False
    total_retry_time_ms: int = 0
    error_message: Optional[str] = None


class SagaRunResult(BaseModel):
    """Terminal summary of one orchestration attempt."""
    model_config = ConfigDict(frozen=True)

    job_id: uuid.UUID
    user_id: uuid.UUID
    succeeded: bool
    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    execution_time_ms: int = 0
    status: SagaStatus
    failure_reason: Optional[str] = None


class Checkpoint(BaseModel):
    """Read model of a SyncCheckpoint row."""
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    user_id: uuid.UUID
    handle: str
    batch_size: int
    current_batch: int
    total_batches: int
    last_processed_item_id: int
    items_collected: int
    failed_attempts: int
    pending_batches: List[int] = Field(default_factory=list)
    resumable: bool
    captured_at: datetime


class StartSyncRequest(BaseModel):
    """Schema for the sync start request body."""
    user_id: uuid.UUID
    handle: str = Field(..., min_length=1, max_length=50, description="solved.ac handle to import.")
    period_months: int = Field(6, ge=1, le=120, description="How many months of history to collect.")


class OutboxEventResponse(BaseModel):
    """Schema for auditing an outbox row."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: Any
    saga_id: Optional[uuid.UUID] = None
    saga_type: Optional[str] = None
    created_at: datetime
    processed: bool
    processed_at: Optional[datetime] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    schema_version: int


class OutboxStats(BaseModel):
    unprocessed: int
    processed: int
    exhausted: int
    created_since: Optional[int] = None
