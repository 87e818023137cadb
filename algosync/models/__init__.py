# algosync/models/__init__.py
from .checkpoint import SyncCheckpoint
from .outbox import OutboxEvent
from .sync_job import SagaStatus, SyncJob

# Export all models
__all__ = [
    "OutboxEvent",
    "SagaStatus",
    "SyncCheckpoint",
    "SyncJob",
]
