import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from algosync.core.config import OUTBOX_BATCH_SIZE, OUTBOX_RETENTION_DAYS, POLLING_INTERVAL
from algosync.core.db import init_db
from algosync.events.outbox_store import OutboxStore
from algosync.models.outbox import OutboxEvent
from algosync.services.backoff import ExponentialBackoffCalculator
from algosync.services.sync_saga import SyncEventType

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("outbox_sweeper")

Relay = Callable[[OutboxEvent], Awaitable[None]]


async def log_relay(event: OutboxEvent):
    """
    Default relay: routes an OutboxEvent by type and logs it.
    Stands in for a message broker publisher (Kafka/RabbitMQ).
    """
    event_type = event.event_type
    payload = event.payload or {}

    log.info(f"Relaying {event_type} (ID: {event.id.hex[:8]}...) for {event.aggregate_id}")

    if event_type == SyncEventType.DATA_SYNC_INITIATED.value:
        log.info(f"Sync started for {payload.get('handle')}: {payload.get('total_batches')} batches planned")

    elif event_type in (SyncEventType.HISTORICAL_DATA_COLLECTED.value, SyncEventType.DATA_SYNC_RECOVERED.value):
        log.info(f"Sync data ready for user {payload.get('user_id')}: {payload.get('total_items')} items")

    elif event_type == SyncEventType.DATA_SYNC_PARTIALLY_COMPLETED.value:
        log.warning(f"Partial sync accepted for user {payload.get('user_id')}, missing batches {payload.get('failed_batch_numbers')}")

    elif event_type in (
        SyncEventType.DATA_SYNC_CLEANUP_INITIATED.value,
        SyncEventType.EMERGENCY_CLEANUP_INITIATED.value,
    ):
        log.warning(f"Cleanup requested for user {payload.get('user_id')} ({payload.get('compensation_type')})")

    elif event_type in (
        SyncEventType.COMPENSATION_TRANSACTION_FAILED.value,
        SyncEventType.INITIAL_DATA_SYNC_SAGA_FAILED.value,
        SyncEventType.DATA_SYNC_RECOVERY_FAILED.value,
    ):
        log.error(f"!!! SYNC ALERT !!! {event_type} for saga {payload.get('saga_id')}: {payload.get('error_message')}")

    else:
        log.warning(f"No handler found for event type: {event_type}")


class OutboxSweeper:
    """
    Relays due outbox events and records the result on each row.
    Failed relays are rescheduled with exponential backoff until the event
    runs out of retries.
    """

    def __init__(
        self,
        store: Optional[OutboxStore] = None,
        relay: Relay = log_relay,
        batch_size: int = OUTBOX_BATCH_SIZE,
        retention_days: int = OUTBOX_RETENTION_DAYS,
        backoff: Optional[ExponentialBackoffCalculator] = None,
    ):
        self.store = store or OutboxStore()
        self.relay = relay
        self.batch_size = batch_size
        self.retention_days = retention_days
        self.backoff = backoff or ExponentialBackoffCalculator()

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        """Relays one batch of due events. Returns how many were marked processed."""
        now = now or datetime.now(timezone.utc)
        events = await self.store.find_unprocessed(self.batch_size, now=now)
        if not events:
            return 0

        relayed = 0
        for event in events:
            try:
                await self.relay(event)
            except Exception as e:
                retry_count = event.retry_count + 1
                next_retry_at = now + timedelta(milliseconds=self.backoff.delay_ms(retry_count))
                log.warning(f"Relay of {event.event_type} ({event.id}) failed, attempt {retry_count}: {e}")
                await self.store.update_retry(event.id, retry_count, next_retry_at, str(e))
                continue

            if await self.store.mark_processed(event.id, at=now):
                relayed += 1
        return relayed

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)
        processed = await self.store.purge_processed_before(cutoff)
        exhausted = await self.store.purge_exhausted_before(cutoff)
        return processed + exhausted


async def start_outbox_sweeper():
    """Main loop for the sweeper service."""
    await init_db()
    sweeper = OutboxSweeper()
    log.info("--- Outbox Sweeper Service Started ---")

    last_purge = None
    while True:
        try:
            await sweeper.sweep_once()
            today = datetime.now(timezone.utc).date()
            if last_purge != today:
                await sweeper.purge_expired()
                last_purge = today
        except Exception as e:
            log.exception(f"Sweeper encountered a critical DB error: {e}")

        await asyncio.sleep(POLLING_INTERVAL)


if __name__ == "__main__":
    try:
        asyncio.run(start_outbox_sweeper())
    except KeyboardInterrupt:
        print("Sweeper service stopped.")
