import logging
from uuid import UUID

from algosync.core.config import AVERAGE_ITEMS_PER_MONTH
from algosync.schemas.sync import BatchPlan

log = logging.getLogger("batch_planner")


class BatchPlanner:
    """Turns a sync request into a fixed number of equally sized page fetches."""

    def __init__(self, average_items_per_month: int = AVERAGE_ITEMS_PER_MONTH):
        self.average_items_per_month = average_items_per_month

    def plan(self, user_id: UUID, handle: str, period_months: int, batch_size: int) -> BatchPlan:
        if period_months <= 0:
            raise ValueError(f"period_months must be positive, got {period_months}")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        estimated = period_months * self.average_items_per_month
        # Ceiling division, never fewer than one batch
        total_batches = max(1, -(-estimated // batch_size))

        log.info(f"Batch plan for user {user_id} ({handle}): {estimated} items in {total_batches} batches of {batch_size}")
        return BatchPlan(
            user_id=user_id,
            handle=handle,
            batch_size=batch_size,
            total_batches=total_batches,
            estimated_item_count=estimated,
        )
