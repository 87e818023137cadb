import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from tortoise.expressions import Q

from algosync.core.config import OUTBOX_MAX_RETRIES
from algosync.models.outbox import OutboxEvent
from algosync.schemas.sync import OutboxStats

log = logging.getLogger("outbox_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxStore:
    """
    Append-only event log written inside the caller's unit of work.

    Every write takes an optional ``conn``. Callers that change business state
    MUST pass the connection of their ``in_transaction()`` block so the event
    and the state change commit or roll back together.
    """

    def __init__(self, max_retries: int = OUTBOX_MAX_RETRIES):
        self.max_retries = max_retries

    async def append(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: Dict[str, Any],
        saga_id: Optional[UUID] = None,
        saga_type: Optional[str] = None,
        conn: Any = None,
    ) -> UUID:
        event = await OutboxEvent.create(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
            saga_id=saga_id,
            saga_type=saga_type,
            processed=False,
            retry_count=0,
            max_retries=self.max_retries,
            # exhausted always mirrors retry_count >= max_retries
            exhausted=self.max_retries <= 0,
            using_db=conn,
        )
        log.debug(f"Outbox append {event_type} for {aggregate_type}/{aggregate_id} ({event.id})")
        return event.id

    async def find_unprocessed(self, limit: int, now: Optional[datetime] = None, conn: Any = None) -> List[OutboxEvent]:
        """Unprocessed, not exhausted and due now (or never scheduled), oldest first."""
        now = now or _utcnow()
        return await (
            OutboxEvent.filter(processed=False, exhausted=False)
            .filter(Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now))
            .order_by("created_at")
            .limit(limit)
            .using_db(conn)
        )

    async def find_due_for_retry(self, now: datetime, limit: int, conn: Any = None) -> List[OutboxEvent]:
        return await (
            OutboxEvent.filter(processed=False, exhausted=False, retry_count__gt=0, next_retry_at__lte=now)
            .order_by("next_retry_at")
            .limit(limit)
            .using_db(conn)
        )

    async def mark_processed(self, event_id: UUID, at: Optional[datetime] = None, conn: Any = None) -> bool:
        """
        Conditional update on processed=False. Returns True only for the call
        that actually flipped the row; repeated calls are a no-op.
        """
        updated = await (
            OutboxEvent.filter(id=event_id, processed=False)
            .using_db(conn)
            .update(processed=True, processed_at=at or _utcnow())
        )
        if not updated:
            log.debug(f"Outbox event {event_id} already processed or missing")
        return bool(updated)

    async def update_retry(
        self,
        event_id: UUID,
        retry_count: int,
        next_retry_at: Optional[datetime],
        error_message: Optional[str],
        conn: Any = None,
    ) -> bool:
        """
        Records a failed relay attempt. The update only moves retry_count
        forward, so two sweepers racing on the same row cannot both count it.
        """
        event = await OutboxEvent.get_or_none(id=event_id, using_db=conn)
        if not event or event.processed:
            return False

        exhausted = retry_count >= event.max_retries
        updated = await (
            OutboxEvent.filter(id=event_id, processed=False, retry_count__lt=retry_count)
            .using_db(conn)
            .update(
                retry_count=retry_count,
                next_retry_at=None if exhausted else next_retry_at,
                last_error=error_message,
                exhausted=exhausted,
            )
        )
        if updated and exhausted:
            log.error(f"Outbox event {event_id} ({event.event_type}) exhausted after {retry_count} retries: {error_message}")
        return bool(updated)

    async def purge_processed_before(self, cutoff: datetime, conn: Any = None) -> int:
        deleted = await OutboxEvent.filter(processed=True, processed_at__lt=cutoff).using_db(conn).delete()
        log.info(f"Purged {deleted} processed outbox events older than {cutoff.isoformat()}")
        return deleted

    async def purge_exhausted_before(self, cutoff: datetime, conn: Any = None) -> int:
        deleted = await OutboxEvent.filter(exhausted=True, created_at__lt=cutoff).using_db(conn).delete()
        log.info(f"Purged {deleted} exhausted outbox events older than {cutoff.isoformat()}")
        return deleted

    async def find_by_aggregate(self, aggregate_type: str, aggregate_id: str) -> List[OutboxEvent]:
        return await OutboxEvent.filter(
            aggregate_type=aggregate_type, aggregate_id=aggregate_id
        ).order_by("created_at")

    async def find_by_saga(self, saga_id: UUID, event_type: Optional[str] = None) -> List[OutboxEvent]:
        query = OutboxEvent.filter(saga_id=saga_id)
        if event_type:
            query = query.filter(event_type=event_type)
        return await query.order_by("created_at")

    async def stats(self, since: Optional[datetime] = None) -> OutboxStats:
        created_since = None
        if since is not None:
            created_since = await OutboxEvent.filter(created_at__gte=since).count()
        return OutboxStats(
            unprocessed=await OutboxEvent.filter(processed=False, exhausted=False).count(),
            processed=await OutboxEvent.filter(processed=True).count(),
            exhausted=await OutboxEvent.filter(exhausted=True).count(),
            created_since=created_since,
        )
