"""
INITIAL_DATA_SYNC_SAGA orchestrator.

Fixed pipeline: plan -> parallel collect -> validate/checkpoint ->
compensate-or-complete -> emit events. Every job status transition is saved
in the same transaction as the outbox event that describes it.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple
from uuid import UUID

from tortoise.transactions import in_transaction

from algosync.clients.solvedac import ActivityApiClient, SolvedacApiClient
from algosync.core.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_SYNC_PERIOD_MONTHS,
    MAX_CONCURRENT_BATCHES,
    MAX_RESUME_ATTEMPTS,
    PARTIAL_ACCEPT_THRESHOLD,
    RESUME_FAILURE_RATIO,
    SAGA_TIMEOUT_SECONDS,
)
from algosync.core.errors import error_message
from algosync.events.outbox_store import OutboxStore
from algosync.models.sync_job import TERMINAL_STATUSES, SagaStatus, SyncJob
from algosync.schemas.sync import BatchPlan, BatchResult, Checkpoint, SagaRunResult
from algosync.services.checkpoint_store import CheckpointStore
from algosync.services.collector import RateLimitAwareBatchCollector
from algosync.services.planner import BatchPlanner
from algosync.services.retry import RetryExecutor

log = logging.getLogger("initial_data_sync_saga")

SAGA_TYPE = "INITIAL_DATA_SYNC_SAGA"
AGGREGATE_TYPE = "SYNC_JOB"


class SyncEventType(str, Enum):
    DATA_SYNC_INITIATED = "DATA_SYNC_INITIATED"
    HISTORICAL_DATA_COLLECTED = "HISTORICAL_DATA_COLLECTED"
    DATA_SYNC_PARTIALLY_COMPLETED = "DATA_SYNC_PARTIALLY_COMPLETED"
    DATA_SYNC_CLEANUP_INITIATED = "DATA_SYNC_CLEANUP_INITIATED"
    COMPENSATION_TRANSACTION_FAILED = "COMPENSATION_TRANSACTION_FAILED"
    EMERGENCY_CLEANUP_INITIATED = "EMERGENCY_CLEANUP_INITIATED"
    INITIAL_DATA_SYNC_SAGA_FAILED = "INITIAL_DATA_SYNC_SAGA_FAILED"
    DATA_SYNC_RECOVERED = "DATA_SYNC_RECOVERED"
    DATA_SYNC_RECOVERY_FAILED = "DATA_SYNC_RECOVERY_FAILED"


class BatchCollector(Protocol):
    async def collect(self, job_id: UUID, handle: str, batch_number: int, batch_size: int) -> BatchResult: ...


class InitialDataSyncSaga:
    def __init__(
        self,
        planner: BatchPlanner,
        collector: BatchCollector,
        checkpoint_store: CheckpointStore,
        outbox_store: OutboxStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        partial_accept_threshold: float = PARTIAL_ACCEPT_THRESHOLD,
        resume_failure_ratio: float = RESUME_FAILURE_RATIO,
        max_resume_attempts: int = MAX_RESUME_ATTEMPTS,
        max_concurrent_batches: int = MAX_CONCURRENT_BATCHES,
        saga_timeout_seconds: float = SAGA_TIMEOUT_SECONDS,
    ):
        self.planner = planner
        self.collector = collector
        self.checkpoint_store = checkpoint_store
        self.outbox_store = outbox_store
        self.batch_size = batch_size
        self.partial_accept_threshold = partial_accept_threshold
        self.resume_failure_ratio = resume_failure_ratio
        self.max_resume_attempts = max_resume_attempts
        self.max_concurrent_batches = max_concurrent_batches
        self.saga_timeout_seconds = saga_timeout_seconds

    # ----------- Entry points -----------

    async def start_initial_sync(
        self,
        user_id: UUID,
        handle: str,
        period_months: int = DEFAULT_SYNC_PERIOD_MONTHS,
    ) -> SagaRunResult:
        """
        Runs the whole saga for a freshly linked account. Never raises: every
        failure ends up in the returned SagaRunResult. Cancellation by the
        caller is recorded on the job and then propagated.
        """
        job_id = uuid.uuid4()
        started = time.monotonic()
        plan: Optional[BatchPlan] = None
        log.info(f"Starting {SAGA_TYPE} - job {job_id}, user {user_id}, handle {handle}")

        try:
            # Step 1: plan
            plan = self.planner.plan(user_id, handle, period_months, self.batch_size)
            await self._open_job(job_id, plan)

            # Step 2: fan out, join
            await SyncJob.filter(id=job_id).update(status=SagaStatus.IN_PROGRESS)
            results = await self._collect_batches(
                job_id, handle, range(1, plan.total_batches + 1), plan.batch_size
            )

            # Step 3: validate
            successes, failures = _partition(results)
            log.info(f"Job {job_id} batches resolved - successful: {len(successes)}, failed: {len(failures)}")
            elapsed = _elapsed_ms(started)

            # Step 4: complete or compensate
            if not failures:
                await self._complete(job_id, plan, successes, elapsed)
                return SagaRunResult(
                    job_id=job_id,
                    user_id=user_id,
                    succeeded=True,
                    total_batches=plan.total_batches,
                    successful_batches=len(successes),
                    failed_batches=0,
                    execution_time_ms=elapsed,
                    status=SagaStatus.COMPLETED,
                )

            if successes:
                await self._save_progress(job_id, plan, successes, failures)
            failure_reason = await self._compensate(job_id, user_id, plan, successes, failures)
            return SagaRunResult(
                job_id=job_id,
                user_id=user_id,
                succeeded=False,
                total_batches=plan.total_batches,
                successful_batches=len(successes),
                failed_batches=len(failures),
                execution_time_ms=_elapsed_ms(started),
                status=SagaStatus.PARTIALLY_COMPLETED,
                failure_reason=failure_reason,
            )

        except asyncio.CancelledError:
            log.error(f"{SAGA_TYPE} cancelled by caller - job {job_id}")
            await self._record_cancellation(job_id, user_id)
            raise

        except Exception as e:
            log.exception(f"{SAGA_TYPE} failed - job {job_id}: {e}")
            await self._emergency_compensation(job_id, user_id, e)
            return SagaRunResult(
                job_id=job_id,
                user_id=user_id,
                succeeded=False,
                total_batches=plan.total_batches if plan else 0,
                execution_time_ms=_elapsed_ms(started),
                status=SagaStatus.FAILED,
                failure_reason=f"Saga execution failed: {error_message(e)}",
            )

    async def resume_sync(self, job_id: UUID) -> Optional[SagaRunResult]:
        """
        Re-drives only the batches the checkpoint still lists as pending.
        Returns None, without touching the remote API, when there is nothing
        that may be resumed.
        """
        checkpoint = await self.checkpoint_store.find(job_id)
        if checkpoint is None:
            log.warning(f"No checkpoint found for job {job_id}, nothing to resume")
            return None
        if not checkpoint.resumable:
            log.warning(f"Job {job_id} is not resumable (failed attempts: {checkpoint.failed_attempts})")
            return None
        if not await self.checkpoint_store.claim_for_resume(job_id):
            log.warning(f"Job {job_id} is already being resumed")
            return None

        started = time.monotonic()
        pending = checkpoint.pending_batches or list(
            range(checkpoint.current_batch + 1, checkpoint.total_batches + 1)
        )
        log.info(f"Resuming job {job_id} from {checkpoint.current_batch}/{checkpoint.total_batches}, pending batches {pending}")

        try:
            await SyncJob.filter(id=job_id).update(status=SagaStatus.IN_PROGRESS)
            results = await self._collect_batches(job_id, checkpoint.handle, pending, checkpoint.batch_size)
            return await self._finish_recovery(job_id, checkpoint, results, started)
        except asyncio.CancelledError:
            log.error(f"Resume of job {job_id} cancelled by caller")
            await self._release_resume_claim(job_id)
            raise
        except Exception as e:
            log.exception(f"Resume failed for job {job_id}: {e}")
            await self._release_resume_claim(job_id)
            return SagaRunResult(
                job_id=job_id,
                user_id=checkpoint.user_id,
                succeeded=False,
                total_batches=checkpoint.total_batches,
                successful_batches=checkpoint.current_batch,
                failed_batches=len(pending),
                execution_time_ms=_elapsed_ms(started),
                status=SagaStatus.FAILED,
                failure_reason=f"Resume failed: {error_message(e)}",
            )

    async def find_checkpoint(self, job_id: UUID) -> Optional[Checkpoint]:
        return await self.checkpoint_store.find(job_id)

    async def find_latest_checkpoint(self, user_id: UUID) -> Optional[Checkpoint]:
        return await self.checkpoint_store.find_latest_for_user(user_id)

    # ----------- Saga steps -----------

    async def _open_job(self, job_id: UUID, plan: BatchPlan) -> None:
        """Job row, progress-0 checkpoint and DATA_SYNC_INITIATED in one unit of work."""
        async with in_transaction() as conn:
            await SyncJob.create(
                id=job_id,
                user_id=plan.user_id,
                handle=plan.handle,
                status=SagaStatus.INITIATED,
                total_batches=plan.total_batches,
                using_db=conn,
            )
            await self.checkpoint_store.save(
                job_id=job_id,
                user_id=plan.user_id,
                handle=plan.handle,
                batch_size=plan.batch_size,
                current_batch=0,
                total_batches=plan.total_batches,
                last_processed_item_id=0,
                items_collected=0,
                failed_attempts=0,
                pending_batches=list(range(1, plan.total_batches + 1)),
                resumable=False,
                conn=conn,
            )
            await self._emit(
                job_id,
                SyncEventType.DATA_SYNC_INITIATED,
                {
                    "user_id": str(plan.user_id),
                    "handle": plan.handle,
                    "batch_size": plan.batch_size,
                    "total_batches": plan.total_batches,
                    "estimated_item_count": plan.estimated_item_count,
                },
                conn,
            )

    async def _collect_batches(
        self,
        job_id: UUID,
        handle: str,
        batch_numbers: Iterable[int],
        batch_size: int,
    ) -> List[BatchResult]:
        """
        One task per batch and a join barrier. A batch that raises becomes a
        failed BatchResult; batches still running at the saga timeout are
        cancelled and counted as failed.
        """
        batch_numbers = list(batch_numbers)
        if not batch_numbers:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent_batches) if self.max_concurrent_batches > 0 else None

        async def run(batch_number: int) -> BatchResult:
            try:
                if semaphore is None:
                    return await self.collector.collect(job_id, handle, batch_number, batch_size)
                async with semaphore:
                    return await self.collector.collect(job_id, handle, batch_number, batch_size)
            except Exception as e:
                log.error(f"Batch {batch_number} raised - job {job_id}: {e}")
                return _failed_batch(job_id, batch_number, error_message(e))

        log.info(f"Starting parallel collection of {len(batch_numbers)} batches - job {job_id}")
        tasks = {asyncio.create_task(run(n)): n for n in batch_numbers}
        try:
            done, pending = await asyncio.wait(list(tasks), timeout=self.saga_timeout_seconds or None)
        except asyncio.CancelledError:
            log.warning(f"Collection cancelled - job {job_id}, cancelling {len(tasks)} batch tasks")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if pending:
            log.error(f"Saga timeout reached - job {job_id}, cancelling {len(pending)} outstanding batches")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for task, batch_number in tasks.items():
            if task in done and not task.cancelled():
                results.append(task.result())
            else:
                results.append(_failed_batch(job_id, batch_number, "Batch cancelled by saga timeout"))
        return results

    async def _save_progress(
        self,
        job_id: UUID,
        plan: BatchPlan,
        successes: List[BatchResult],
        failures: List[BatchResult],
        conn: Any = None,
    ) -> Checkpoint:
        resumable = bool(failures) and len(failures) < self._resume_limit(plan.total_batches)
        return await self.checkpoint_store.save(
            job_id=job_id,
            user_id=plan.user_id,
            handle=plan.handle,
            batch_size=plan.batch_size,
            current_batch=len(successes),
            total_batches=plan.total_batches,
            last_processed_item_id=max(r.batch_number for r in successes),
            items_collected=sum(r.items_collected for r in successes),
            failed_attempts=1 if failures else 0,
            pending_batches=[r.batch_number for r in failures],
            resumable=resumable,
            conn=conn,
        )

    async def _complete(self, job_id: UUID, plan: BatchPlan, successes: List[BatchResult], elapsed_ms: int) -> None:
        items = sum(r.items_collected for r in successes)
        async with in_transaction() as conn:
            await self._save_progress(job_id, plan, successes, [], conn=conn)
            await self._update_job(
                job_id,
                SagaStatus.COMPLETED,
                conn,
                successful_batches=len(successes),
                failed_batches=0,
                items_collected=items,
            )
            await self._emit(
                job_id,
                SyncEventType.HISTORICAL_DATA_COLLECTED,
                {
                    "user_id": str(plan.user_id),
                    "collected_batches": len(successes),
                    "total_items": items,
                    "execution_time_ms": elapsed_ms,
                },
                conn,
            )
        log.info(f"{SAGA_TYPE} completed - job {job_id}, {items} items in {elapsed_ms}ms")

    async def _compensate(
        self,
        job_id: UUID,
        user_id: UUID,
        plan: BatchPlan,
        successes: List[BatchResult],
        failures: List[BatchResult],
    ) -> str:
        """
        Keeps the partial data when enough batches made it, otherwise asks for
        the collected data to be discarded. Returns the failure reason.
        """
        success_rate = len(successes) / (len(successes) + len(failures))
        failure_reason = f"Some batches failed: {len(failures)}/{plan.total_batches}"
        log.warning(
            f"Executing compensation - job {job_id}, successful: {len(successes)}, "
            f"failed: {len(failures)}, success rate: {success_rate:.2f}"
        )

        try:
            async with in_transaction() as conn:
                await self._update_job(
                    job_id,
                    SagaStatus.PARTIALLY_COMPLETED,
                    conn,
                    successful_batches=len(successes),
                    failed_batches=len(failures),
                    items_collected=sum(r.items_collected for r in successes),
                    failure_reason=failure_reason,
                )
                if success_rate >= self.partial_accept_threshold:
                    await self._emit(
                        job_id,
                        SyncEventType.DATA_SYNC_PARTIALLY_COMPLETED,
                        {
                            "user_id": str(user_id),
                            "successful_batches": len(successes),
                            "failed_batches": len(failures),
                            "failed_batch_numbers": sorted(r.batch_number for r in failures),
                            "success_rate": round(success_rate, 4),
                            "compensation_type": "PARTIAL_COMPLETION",
                        },
                        conn,
                    )
                    log.info(f"Partial completion accepted - job {job_id}")
                else:
                    await self._emit(
                        job_id,
                        SyncEventType.DATA_SYNC_CLEANUP_INITIATED,
                        {
                            "user_id": str(user_id),
                            "batches_to_cleanup": len(successes),
                            "success_rate": round(success_rate, 4),
                            "compensation_type": "DATA_CLEANUP",
                        },
                        conn,
                    )
                    log.warning(f"Data cleanup initiated due to low success rate - job {job_id}")
        except Exception as e:
            log.exception(f"Compensation transaction failed - job {job_id}: {e}")
            failure_reason = f"{failure_reason}; compensation failed: {error_message(e)}"
            await self._escalate_compensation_failure(job_id, user_id, failure_reason, e)

        return failure_reason

    async def _escalate_compensation_failure(self, job_id: UUID, user_id: UUID, reason: str, error: Exception) -> None:
        try:
            async with in_transaction() as conn:
                await self._update_job(job_id, SagaStatus.PARTIALLY_COMPLETED, conn, failure_reason=reason)
                await self._emit(
                    job_id,
                    SyncEventType.COMPENSATION_TRANSACTION_FAILED,
                    {
                        "user_id": str(user_id),
                        "error_message": error_message(error),
                        "compensation_type": "COMPENSATION_FAILED",
                    },
                    conn,
                )
        except Exception as e:
            log.error(f"Could not record compensation failure - job {job_id}: {e}")

    async def _emergency_compensation(self, job_id: UUID, user_id: UUID, error: Exception) -> None:
        """Best effort: a failure here is logged and dropped so the caller still gets a result."""
        log.error(f"Executing emergency compensation - job {job_id}")
        reason = f"Saga execution failed: {error_message(error)}"
        try:
            async with in_transaction() as conn:
                await self._update_job(job_id, SagaStatus.FAILED, conn, failure_reason=reason)
                await self._emit(
                    job_id,
                    SyncEventType.EMERGENCY_CLEANUP_INITIATED,
                    {
                        "user_id": str(user_id),
                        "error_message": error_message(error),
                        "compensation_type": "EMERGENCY_CLEANUP",
                    },
                    conn,
                )
                await self._emit(
                    job_id,
                    SyncEventType.INITIAL_DATA_SYNC_SAGA_FAILED,
                    {
                        "user_id": str(user_id),
                        "error_message": error_message(error),
                        "saga_status": SagaStatus.FAILED.value,
                    },
                    conn,
                )
        except Exception as e:
            log.error(f"Emergency compensation failed - job {job_id}: {e}")

    async def _finish_recovery(
        self,
        job_id: UUID,
        checkpoint: Checkpoint,
        results: List[BatchResult],
        started: float,
    ) -> SagaRunResult:
        successes, failures = _partition(results)
        remaining = sorted(r.batch_number for r in failures)
        recovered = not remaining

        current_batch = checkpoint.current_batch + len(successes)
        items = checkpoint.items_collected + sum(r.items_collected for r in successes)
        last_item = max([checkpoint.last_processed_item_id] + [r.batch_number for r in successes])
        failed_attempts = checkpoint.failed_attempts + (0 if recovered else 1)
        resumable = (
            not recovered
            and len(remaining) < self._resume_limit(checkpoint.total_batches)
            and failed_attempts <= self.max_resume_attempts
        )
        status = SagaStatus.RECOVERED if recovered else SagaStatus.FAILED
        failure_reason = None if recovered else f"Resume left {len(remaining)}/{checkpoint.total_batches} batches missing"

        async with in_transaction() as conn:
            await self.checkpoint_store.save(
                job_id=job_id,
                user_id=checkpoint.user_id,
                handle=checkpoint.handle,
                batch_size=checkpoint.batch_size,
                current_batch=current_batch,
                total_batches=checkpoint.total_batches,
                last_processed_item_id=last_item,
                items_collected=items,
                failed_attempts=failed_attempts,
                pending_batches=remaining,
                resumable=resumable,
                conn=conn,
            )
            await self._update_job(
                job_id,
                status,
                conn,
                successful_batches=current_batch,
                failed_batches=len(remaining),
                items_collected=items,
                failure_reason=failure_reason,
            )
            await self._emit(
                job_id,
                SyncEventType.DATA_SYNC_RECOVERED if recovered else SyncEventType.DATA_SYNC_RECOVERY_FAILED,
                {
                    "user_id": str(checkpoint.user_id),
                    "resumed_from_batch": checkpoint.current_batch,
                    "recovered_batches": len(successes),
                    "remaining_batches": remaining,
                    "total_items": items,
                    "resumable": resumable,
                },
                conn,
            )

        log.info(f"Resume of job {job_id} finished with {status.value}: {current_batch}/{checkpoint.total_batches} batches")
        return SagaRunResult(
            job_id=job_id,
            user_id=checkpoint.user_id,
            succeeded=recovered,
            total_batches=checkpoint.total_batches,
            successful_batches=current_batch,
            failed_batches=len(remaining),
            execution_time_ms=_elapsed_ms(started),
            status=status,
            failure_reason=failure_reason,
        )

    async def _record_cancellation(self, job_id: UUID, user_id: UUID) -> None:
        """Best effort, like the emergency path: the job must not stay IN_PROGRESS."""
        reason = "Saga cancelled before all batches resolved"
        try:
            async with in_transaction() as conn:
                await self._update_job(job_id, SagaStatus.FAILED, conn, failure_reason=reason)
                await self._emit(
                    job_id,
                    SyncEventType.INITIAL_DATA_SYNC_SAGA_FAILED,
                    {
                        "user_id": str(user_id),
                        "error_message": reason,
                        "saga_status": SagaStatus.FAILED.value,
                    },
                    conn,
                )
        except Exception as e:
            log.error(f"Could not record cancellation - job {job_id}: {e}")

    async def _release_resume_claim(self, job_id: UUID) -> None:
        try:
            await self.checkpoint_store.release_resume_claim(job_id)
        except Exception as e:
            log.error(f"Could not release resume claim - job {job_id}: {e}")

    # ----------- Helpers -----------

    def _resume_limit(self, total_batches: int) -> int:
        # Floored: with 5 batches and a 0.5 ratio, 2 failures are already too many
        return int(total_batches * self.resume_failure_ratio)

    async def _update_job(self, job_id: UUID, status: SagaStatus, conn: Any, **fields: Any) -> None:
        fields["status"] = status
        if status in TERMINAL_STATUSES:
            fields["completed_at"] = datetime.now(timezone.utc)
        await SyncJob.filter(id=job_id).using_db(conn).update(**fields)

    async def _emit(self, job_id: UUID, event_type: SyncEventType, payload: Dict[str, Any], conn: Any) -> UUID:
        return await self.outbox_store.append(
            aggregate_type=AGGREGATE_TYPE,
            aggregate_id=f"sync-job-{job_id}",
            event_type=event_type.value,
            payload={"saga_id": str(job_id), **payload},
            saga_id=job_id,
            saga_type=SAGA_TYPE,
            conn=conn,
        )


def build_initial_data_sync_saga(api_client: Optional[ActivityApiClient] = None) -> InitialDataSyncSaga:
    """Wires the saga with the configured defaults."""
    collector = RateLimitAwareBatchCollector(api_client or SolvedacApiClient(), RetryExecutor())
    return InitialDataSyncSaga(
        planner=BatchPlanner(),
        collector=collector,
        checkpoint_store=CheckpointStore(),
        outbox_store=OutboxStore(),
    )


def _partition(results: List[BatchResult]) -> Tuple[List[BatchResult], List[BatchResult]]:
    successes = [r for r in results if r.succeeded]
    failures = [r for r in results if not r.succeeded]
    return successes, failures


def _failed_batch(job_id: UUID, batch_number: int, message: str) -> BatchResult:
    return BatchResult(
        job_id=job_id,
        batch_number=batch_number,
        items_collected=0,
        succeeded=False,
        retry_attempts=1,
        rate_limit_encountered=False,
        total_retry_time_ms=0,
        error_message=message,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
