from tortoise import fields, models


class SyncCheckpoint(models.Model):
    """
    Latest known-good progress of a sync job. One row per job, replaced on
    every save and never deleted, so it doubles as an audit record.
    """
    job_id = fields.UUIDField(primary_key=True)
    user_id = fields.UUIDField()
    handle = fields.CharField(max_length=50)
    batch_size = fields.IntField()
    current_batch = fields.IntField(default=0) # Number of batches resolved so far
    total_batches = fields.IntField()
    last_processed_item_id = fields.BigIntField(default=0)
    items_collected = fields.IntField(default=0)
    failed_attempts = fields.IntField(default=0)
    pending_batches = fields.JSONField(default=list) # Batch numbers still missing
    resumable = fields.BooleanField(default=False)
    captured_at = fields.DatetimeField()
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "data_sync_checkpoints"
        indexes = [
            ("user_id", "captured_at"),  # Latest checkpoint per user
        ]
