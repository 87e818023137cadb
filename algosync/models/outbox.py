from tortoise import fields, models
import uuid


class OutboxEvent(models.Model):
    """
    The Outbox table stores events atomically with the database transaction.
    This is the core of the Transactional Outbox Pattern. Rows are picked up by
    change-data-capture; the retry columns are only touched by the sweeper.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    aggregate_type = fields.CharField(max_length=50) # e.g., 'SYNC_JOB'
    aggregate_id = fields.CharField(max_length=100) # e.g., 'sync-job-<uuid>'
    event_type = fields.CharField(max_length=100) # e.g., 'DATA_SYNC_INITIATED'
    payload = fields.JSONField() # The actual event data
    saga_id = fields.UUIDField(null=True)
    saga_type = fields.CharField(max_length=50, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    processed = fields.BooleanField(default=False)
    processed_at = fields.DatetimeField(null=True)
    retry_count = fields.IntField(default=0)
    max_retries = fields.IntField(default=5)
    next_retry_at = fields.DatetimeField(null=True)
    last_error = fields.TextField(null=True)
    exhausted = fields.BooleanField(default=False) # retry_count reached max_retries
    schema_version = fields.IntField(default=1)

    @property
    def event_id(self):
        return self.id

    class Meta:
        table = "outbox_events"
        indexes = [
            ("processed", "exhausted", "created_at"),  # Unprocessed sweep
            ("aggregate_type", "aggregate_id"),         # Aggregate history
            ("saga_id",),                               # Saga audit
            ("processed_at",),                          # Retention cleanup
        ]
