import logging
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import UUID

from algosync.models.checkpoint import SyncCheckpoint
from algosync.schemas.sync import Checkpoint

log = logging.getLogger("checkpoint_store")


class CheckpointStore:
    """Durable per-job progress. One row per job id; saves replace it."""

    async def save(
        self,
        job_id: UUID,
        user_id: UUID,
        handle: str,
        batch_size: int,
        current_batch: int,
        total_batches: int,
        last_processed_item_id: int,
        items_collected: int,
        failed_attempts: int,
        pending_batches: List[int],
        resumable: bool,
        conn: Any = None,
    ) -> Checkpoint:
        fields = dict(
            user_id=user_id,
            handle=handle,
            batch_size=batch_size,
            current_batch=current_batch,
            total_batches=total_batches,
            last_processed_item_id=last_processed_item_id,
            items_collected=items_collected,
            failed_attempts=failed_attempts,
            pending_batches=sorted(pending_batches),
            resumable=resumable,
            captured_at=datetime.now(timezone.utc),
        )

        # Upsert: a new checkpoint replaces the previous one for the same job
        row = await SyncCheckpoint.get_or_none(job_id=job_id, using_db=conn)
        if row:
            row.update_from_dict(fields)
            await row.save(using_db=conn)
        else:
            row = await SyncCheckpoint.create(job_id=job_id, using_db=conn, **fields)

        log.info(
            f"Checkpoint saved for job {job_id}: {current_batch}/{total_batches} batches, "
            f"{items_collected} items, pending={fields['pending_batches']}, resumable={resumable}"
        )
        return Checkpoint.model_validate(row)

    async def claim_for_resume(self, job_id: UUID) -> bool:
        """
        Flips resumable to False on the row. Only one caller can win the
        conditional update, so a job is never resumed twice at once. The
        resume pass writes the real resumable flag when it finishes.
        """
        claimed = await SyncCheckpoint.filter(job_id=job_id, resumable=True).update(resumable=False)
        return bool(claimed)

    async def release_resume_claim(self, job_id: UUID) -> None:
        await SyncCheckpoint.filter(job_id=job_id).update(resumable=True)
        log.info(f"Resume claim on job {job_id} released")

    async def find(self, job_id: UUID) -> Optional[Checkpoint]:
        row = await SyncCheckpoint.get_or_none(job_id=job_id)
        return Checkpoint.model_validate(row) if row else None

    async def find_latest_for_user(self, user_id: UUID) -> Optional[Checkpoint]:
        row = await SyncCheckpoint.filter(user_id=user_id).order_by("-captured_at").first()
        return Checkpoint.model_validate(row) if row else None
