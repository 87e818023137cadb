import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from algosync.api.v1.sync import get_outbox_store
from algosync.events.outbox_store import OutboxStore
from algosync.schemas.response import SuccessResponse

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.get("/stats", response_model=SuccessResponse)
async def outbox_stats_endpoint(since: Optional[datetime] = None, outbox: OutboxStore = Depends(get_outbox_store)):
    """Backlog counters for the outbox table. `since` adds a created-since count."""
    try:
        stats = await outbox.stats(since=since)
        return SuccessResponse(data=stats.model_dump())
    except Exception as e:
        log.error(f"Error reading outbox stats: {e}")
        raise HTTPException(status_code=500, detail="Server failed to read outbox stats.")
