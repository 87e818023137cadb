import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

from algosync.events.outbox_store import OutboxStore
from algosync.models.sync_job import SagaStatus, SyncJob
from algosync.schemas.sync import BatchResult
from algosync.services.planner import BatchPlanner
from algosync.services.sync_saga import InitialDataSyncSaga, SyncEventType
from algosync.testing.fakes import AsyncContextManagerMock, FakeCollector

# 100 items a month in batches of 100: period_months == number of batches
PLANNER = BatchPlanner(average_items_per_month=100)


def make_saga(collector, outbox_store, checkpoint_store, **overrides):
    return InitialDataSyncSaga(
        planner=PLANNER,
        collector=collector,
        checkpoint_store=checkpoint_store,
        outbox_store=outbox_store,
        batch_size=100,
        **overrides,
    )


async def event_types(outbox_store, job_id):
    return [e.event_type for e in await outbox_store.find_by_saga(job_id)]


class TestFreshRun:

    @pytest.mark.asyncio
    async def test_full_success(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector()
        saga = make_saga(collector, outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=5)

        assert result.succeeded
        assert result.status == SagaStatus.COMPLETED
        assert result.total_batches == 5
        assert result.successful_batches == 5
        assert result.failed_batches == 0
        assert result.failure_reason is None
        assert collector.collected_batches == [1, 2, 3, 4, 5]

        assert await event_types(outbox_store, result.job_id) == [
            SyncEventType.DATA_SYNC_INITIATED.value,
            SyncEventType.HISTORICAL_DATA_COLLECTED.value,
        ]

        checkpoint = await saga.find_checkpoint(result.job_id)
        assert checkpoint.current_batch == 5
        assert checkpoint.last_processed_item_id == 5
        assert checkpoint.items_collected == 500
        assert checkpoint.pending_batches == []
        assert checkpoint.resumable is False

        job = await SyncJob.get(id=result.job_id)
        assert job.status == SagaStatus.COMPLETED
        assert job.items_collected == 500
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_event_payloads_carry_saga_id(self, db, outbox_store, checkpoint_store):
        user_id = uuid4()
        saga = make_saga(FakeCollector(), outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(user_id, "koosaga", period_months=5)

        initiated, collected = await outbox_store.find_by_saga(result.job_id)
        assert initiated.aggregate_type == "SYNC_JOB"
        assert initiated.aggregate_id == f"sync-job-{result.job_id}"
        assert initiated.saga_type == "INITIAL_DATA_SYNC_SAGA"
        assert initiated.payload["saga_id"] == str(result.job_id)
        assert initiated.payload["user_id"] == str(user_id)
        assert initiated.payload["total_batches"] == 5
        assert initiated.payload["estimated_item_count"] == 500
        assert collected.payload["collected_batches"] == 5
        assert collected.payload["total_items"] == 500

    @pytest.mark.asyncio
    async def test_seven_of_ten_is_accepted_partial(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={8, 9, 10})
        saga = make_saga(collector, outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        assert not result.succeeded
        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        assert result.successful_batches == 7
        assert result.failed_batches == 3
        assert result.failure_reason == "Some batches failed: 3/10"

        types = await event_types(outbox_store, result.job_id)
        assert types == [
            SyncEventType.DATA_SYNC_INITIATED.value,
            SyncEventType.DATA_SYNC_PARTIALLY_COMPLETED.value,
        ]

        checkpoint = await saga.find_checkpoint(result.job_id)
        assert checkpoint.current_batch == 7
        assert checkpoint.last_processed_item_id == 7
        assert checkpoint.items_collected == 700
        assert checkpoint.pending_batches == [8, 9, 10]
        assert checkpoint.failed_attempts == 1
        assert checkpoint.resumable is True

    @pytest.mark.asyncio
    async def test_five_of_ten_triggers_cleanup(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={6, 7, 8, 9, 10})
        saga = make_saga(collector, outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        cleanup = await outbox_store.find_by_saga(result.job_id, SyncEventType.DATA_SYNC_CLEANUP_INITIATED.value)
        assert len(cleanup) == 1
        assert cleanup[0].payload["compensation_type"] == "DATA_CLEANUP"
        assert await outbox_store.find_by_saga(result.job_id, SyncEventType.DATA_SYNC_PARTIALLY_COMPLETED.value) == []

        checkpoint = await saga.find_checkpoint(result.job_id)
        assert checkpoint.current_batch == 5
        assert checkpoint.resumable is False

    @pytest.mark.asyncio
    async def test_resume_limit_is_floored(self, db, outbox_store, checkpoint_store):
        """5 batches at a 0.5 ratio allow one failure for resume, not two"""
        saga = make_saga(FakeCollector(failing={4, 5}), outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=5)

        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        assert result.failed_batches == 2
        checkpoint = await saga.find_checkpoint(result.job_id)
        assert checkpoint.pending_batches == [4, 5]
        assert checkpoint.resumable is False
        assert await saga.resume_sync(result.job_id) is None

    @pytest.mark.asyncio
    async def test_total_failure_keeps_initial_checkpoint(self, db, outbox_store, checkpoint_store):
        saga = make_saga(FakeCollector(failing={1, 2, 3}), outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=3)

        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        assert result.successful_batches == 0
        assert SyncEventType.DATA_SYNC_CLEANUP_INITIATED.value in await event_types(outbox_store, result.job_id)
        checkpoint = await saga.find_checkpoint(result.job_id)
        assert checkpoint.current_batch == 0
        assert checkpoint.pending_batches == [1, 2, 3]
        assert checkpoint.resumable is False

    @pytest.mark.asyncio
    async def test_raising_batch_counts_as_failed(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(raising={4})
        saga = make_saga(collector, outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=5)

        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        assert result.successful_batches == 4
        assert result.failed_batches == 1
        assert collector.collected_batches == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_planning_failure_runs_emergency_compensation(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector()
        saga = make_saga(collector, outbox_store, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=0)

        assert not result.succeeded
        assert result.status == SagaStatus.FAILED
        assert result.failure_reason.startswith("Saga execution failed:")
        assert collector.calls == []
        assert await event_types(outbox_store, result.job_id) == [
            SyncEventType.EMERGENCY_CLEANUP_INITIATED.value,
            SyncEventType.INITIAL_DATA_SYNC_SAGA_FAILED.value,
        ]

    @pytest.mark.asyncio
    async def test_compensation_failure_is_escalated(self, db, checkpoint_store):
        class FlakyOutbox(OutboxStore):
            async def append(self, aggregate_type, aggregate_id, event_type, payload, saga_id=None, saga_type=None, conn=None):
                if event_type == SyncEventType.DATA_SYNC_PARTIALLY_COMPLETED.value:
                    raise RuntimeError("outbox table locked")
                return await super().append(aggregate_type, aggregate_id, event_type, payload, saga_id, saga_type, conn)

        outbox = FlakyOutbox()
        saga = make_saga(FakeCollector(failing={10}), outbox, checkpoint_store)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        assert "compensation failed: outbox table locked" in result.failure_reason
        assert await event_types(outbox, result.job_id) == [
            SyncEventType.DATA_SYNC_INITIATED.value,
            SyncEventType.COMPENSATION_TRANSACTION_FAILED.value,
        ]
        job = await SyncJob.get(id=result.job_id)
        assert job.status == SagaStatus.PARTIALLY_COMPLETED
        # checkpoint was written before compensation and survives it
        assert (await saga.find_checkpoint(result.job_id)).current_batch == 9


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_saga_timeout_cancels_stragglers(self, db, outbox_store, checkpoint_store):
        class HangingCollector(FakeCollector):
            async def collect(self, job_id, handle, batch_number, batch_size):
                if batch_number == 3:
                    await asyncio.sleep(30)
                return await super().collect(job_id, handle, batch_number, batch_size)

        saga = make_saga(HangingCollector(), outbox_store, checkpoint_store, saga_timeout_seconds=0.2)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=5)

        assert result.status == SagaStatus.PARTIALLY_COMPLETED
        assert result.failed_batches == 1
        checkpoint = await saga.find_checkpoint(result.job_id)
        assert checkpoint.pending_batches == [3]
        assert checkpoint.resumable is True

    @pytest.mark.asyncio
    async def test_caller_cancellation_stops_batches_and_fails_job(self, db, outbox_store, checkpoint_store):
        class SlowCollector(FakeCollector):
            cancelled = 0
            finished = 0

            async def collect(self, job_id, handle, batch_number, batch_size):
                try:
                    await asyncio.sleep(2)
                except asyncio.CancelledError:
                    self.cancelled += 1
                    raise
                self.finished += 1
                return await super().collect(job_id, handle, batch_number, batch_size)

        collector = SlowCollector()
        user_id = uuid4()
        saga = make_saga(collector, outbox_store, checkpoint_store)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(saga.start_initial_sync(user_id, "koosaga", period_months=5), 0.3)

        assert collector.cancelled == 5
        assert collector.finished == 0

        job = await SyncJob.filter(user_id=user_id).first()
        assert job.status == SagaStatus.FAILED
        assert job.completed_at is not None
        assert await event_types(outbox_store, job.id) == [
            SyncEventType.DATA_SYNC_INITIATED.value,
            SyncEventType.INITIAL_DATA_SYNC_SAGA_FAILED.value,
        ]

        # nothing is still running in the background
        await asyncio.sleep(0.1)
        assert collector.finished == 0

    @pytest.mark.asyncio
    async def test_max_concurrent_batches_bounds_fan_out(self, db, outbox_store, checkpoint_store):
        class CountingCollector(FakeCollector):
            active = 0
            peak = 0

            async def collect(self, job_id, handle, batch_number, batch_size):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return await super().collect(job_id, handle, batch_number, batch_size)

        collector = CountingCollector()
        saga = make_saga(collector, outbox_store, checkpoint_store, max_concurrent_batches=2)

        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=6)

        assert result.status == SagaStatus.COMPLETED
        assert collector.peak == 2


class TestResume:

    @pytest.mark.asyncio
    async def test_unknown_job_is_not_resumable(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector()
        saga = make_saga(collector, outbox_store, checkpoint_store)

        assert await saga.resume_sync(uuid4()) is None
        assert collector.calls == []

    @pytest.mark.asyncio
    async def test_non_resumable_checkpoint_does_no_collection(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={6, 7, 8, 9, 10})
        saga = make_saga(collector, outbox_store, checkpoint_store)
        result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)
        calls_before = len(collector.calls)
        events_before = await event_types(outbox_store, result.job_id)

        assert await saga.resume_sync(result.job_id) is None

        assert len(collector.calls) == calls_before
        assert await event_types(outbox_store, result.job_id) == events_before

    @pytest.mark.asyncio
    async def test_resume_recovers_only_pending_batches(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={8, 9, 10})
        saga = make_saga(collector, outbox_store, checkpoint_store)
        first = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        collector.failing = set()
        collector.calls.clear()
        result = await saga.resume_sync(first.job_id)

        assert result.succeeded
        assert result.status == SagaStatus.RECOVERED
        assert result.successful_batches == 10
        assert result.failed_batches == 0
        assert collector.calls == [("koosaga", 8), ("koosaga", 9), ("koosaga", 10)]

        checkpoint = await saga.find_checkpoint(first.job_id)
        assert checkpoint.current_batch == 10
        assert checkpoint.last_processed_item_id == 10
        assert checkpoint.items_collected == 1000
        assert checkpoint.pending_batches == []
        assert checkpoint.resumable is False

        assert (await event_types(outbox_store, first.job_id))[-1] == SyncEventType.DATA_SYNC_RECOVERED.value
        assert (await SyncJob.get(id=first.job_id)).status == SagaStatus.RECOVERED
        # nothing left to do
        assert await saga.resume_sync(first.job_id) is None

    @pytest.mark.asyncio
    async def test_concurrent_resumes_collect_once(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={9, 10})
        saga = make_saga(collector, outbox_store, checkpoint_store)
        first = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        collector.failing = set()
        collector.calls.clear()
        outcomes = await asyncio.gather(saga.resume_sync(first.job_id), saga.resume_sync(first.job_id))

        recovered = [r for r in outcomes if r is not None]
        assert len(recovered) == 1
        assert recovered[0].status == SagaStatus.RECOVERED
        assert collector.collected_batches == [9, 10]
        recovered_events = await outbox_store.find_by_saga(first.job_id, SyncEventType.DATA_SYNC_RECOVERED.value)
        assert len(recovered_events) == 1

    @pytest.mark.asyncio
    async def test_failed_resume_releases_claim(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={10})
        saga = make_saga(collector, outbox_store, checkpoint_store)
        first = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        with patch.object(saga, '_finish_recovery', AsyncMock(side_effect=RuntimeError("db gone"))):
            result = await saga.resume_sync(first.job_id)

        assert result.status == SagaStatus.FAILED
        assert result.failure_reason == "Resume failed: db gone"
        assert (await saga.find_checkpoint(first.job_id)).resumable is True

    @pytest.mark.asyncio
    async def test_resume_with_remaining_failures(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={8, 9, 10})
        saga = make_saga(collector, outbox_store, checkpoint_store)
        first = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        collector.failing = {9}
        result = await saga.resume_sync(first.job_id)

        assert not result.succeeded
        assert result.status == SagaStatus.FAILED
        assert result.successful_batches == 9
        assert result.failed_batches == 1

        checkpoint = await saga.find_checkpoint(first.job_id)
        assert checkpoint.pending_batches == [9]
        assert checkpoint.failed_attempts == 2
        assert checkpoint.resumable is True
        assert (await event_types(outbox_store, first.job_id))[-1] == SyncEventType.DATA_SYNC_RECOVERY_FAILED.value

    @pytest.mark.asyncio
    async def test_resume_attempts_are_capped(self, db, outbox_store, checkpoint_store):
        collector = FakeCollector(failing={10})
        saga = make_saga(collector, outbox_store, checkpoint_store, max_resume_attempts=3)
        first = await saga.start_initial_sync(uuid4(), "koosaga", period_months=10)

        outcomes = [await saga.resume_sync(first.job_id) for _ in range(4)]

        assert [r.status for r in outcomes[:3]] == [SagaStatus.FAILED] * 3
        assert outcomes[3] is None
        assert collector.attempts[10] == 4

    @pytest.mark.asyncio
    async def test_latest_checkpoint_for_user(self, db, outbox_store, checkpoint_store):
        user_id = uuid4()
        saga = make_saga(FakeCollector(), outbox_store, checkpoint_store)
        await saga.start_initial_sync(user_id, "koosaga", period_months=2)
        second = await saga.start_initial_sync(user_id, "koosaga", period_months=3)

        latest = await saga.find_latest_checkpoint(user_id)

        assert latest.job_id == second.job_id
        assert latest.total_batches == 3


def test_batch_result_is_frozen():
    result = BatchResult(job_id=uuid4(), batch_number=1, succeeded=True)
    with pytest.raises(Exception):
        result.items_collected = 5


class TestEmergencyPath:

    @pytest.mark.asyncio
    async def test_emergency_compensation_errors_are_swallowed(self):
        """Outbox down during emergency cleanup: the caller still gets a FAILED result"""
        outbox = MagicMock()
        outbox.append = AsyncMock(side_effect=RuntimeError("db gone"))
        saga = InitialDataSyncSaga(
            planner=PLANNER,
            collector=FakeCollector(),
            checkpoint_store=MagicMock(),
            outbox_store=outbox,
        )

        with patch('algosync.services.sync_saga.in_transaction', return_value=AsyncContextManagerMock()):
            with patch('algosync.services.sync_saga.SyncJob.filter') as mock_filter:
                mock_filter.return_value.using_db.return_value.update = AsyncMock(return_value=0)

                result = await saga.start_initial_sync(uuid4(), "koosaga", period_months=-1)

        assert result.status == SagaStatus.FAILED
        assert result.failure_reason.startswith("Saga execution failed:")
        outbox.append.assert_awaited_once()
