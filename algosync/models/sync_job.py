from enum import Enum
from tortoise import fields, models
import uuid


class SagaStatus(str, Enum):
    INITIATED = "INITIATED"  # Plan created, nothing collected yet
    IN_PROGRESS = "IN_PROGRESS"  # Batches are being collected
    COMPLETED = "COMPLETED"
    PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"  # Some batches failed, compensation applied
    FAILED = "FAILED"
    RECOVERED = "RECOVERED"  # Missing batches collected by a resume pass


TERMINAL_STATUSES = (
    SagaStatus.COMPLETED,
    SagaStatus.PARTIALLY_COMPLETED,
    SagaStatus.FAILED,
    SagaStatus.RECOVERED,
)


class SyncJob(models.Model):
    """
    Business record of one initial sync run. Every status transition is saved
    in the same transaction as the outbox event that announces it.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = fields.UUIDField()
    handle = fields.CharField(max_length=50)
    status = fields.CharEnumField(SagaStatus, default=SagaStatus.INITIATED)
    total_batches = fields.IntField(default=0)
    successful_batches = fields.IntField(default=0)
    failed_batches = fields.IntField(default=0)
    items_collected = fields.IntField(default=0)
    failure_reason = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    completed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "sync_jobs"
        indexes = [
            ("user_id",),               # User sync history
            ("status",),                # Status-based filtering
            ("user_id", "created_at"),  # Composite: latest job per user
        ]
