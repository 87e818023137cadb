import logging
from functools import lru_cache
from fastapi import APIRouter, Depends, HTTPException, status
from algosync.core.errors import SagaNotResumableError
from algosync.schemas.response import SuccessResponse
from algosync.schemas.sync import OutboxEventResponse, StartSyncRequest
from algosync.events.outbox_store import OutboxStore
from algosync.services.sync_saga import InitialDataSyncSaga, build_initial_data_sync_saga
from uuid import UUID

router = APIRouter()
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("uvicorn")


@lru_cache()
def get_saga() -> InitialDataSyncSaga:
    return build_initial_data_sync_saga()


def get_outbox_store() -> OutboxStore:
    return OutboxStore()


@router.post("", response_model=SuccessResponse)
async def start_sync_endpoint(request_data: StartSyncRequest, saga: InitialDataSyncSaga = Depends(get_saga)):
    """
    Runs the initial data sync for a newly linked handle.
    The saga never raises; a failed run is reported in the body, not as an HTTP error.
    """
    result = await saga.start_initial_sync(
        user_id=request_data.user_id,
        handle=request_data.handle,
        period_months=request_data.period_months,
    )
    log.info(f"Sync job {result.job_id} for {request_data.handle} finished with {result.status.value}.")
    return SuccessResponse(data=result.model_dump())


@router.post("/{job_id}/resume", response_model=SuccessResponse)
async def resume_sync_endpoint(job_id: UUID, saga: InitialDataSyncSaga = Depends(get_saga)):
    """Re-drives the batches a previous run left pending."""
    result = await saga.resume_sync(job_id)
    if result is None:
        raise SagaNotResumableError(f"Sync job {job_id} has no resumable checkpoint")
    log.info(f"Resume of sync job {job_id} finished with {result.status.value}.")
    return SuccessResponse(data=result.model_dump())


@router.get("/{job_id}/checkpoint", response_model=SuccessResponse)
async def get_checkpoint_endpoint(job_id: UUID, saga: InitialDataSyncSaga = Depends(get_saga)):
    """Fetches the latest checkpoint of a sync job."""
    try:
        checkpoint = await saga.find_checkpoint(job_id)
        if not checkpoint:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkpoint not found")
        return SuccessResponse(data=checkpoint.model_dump())
    except HTTPException as he:
        raise he
    except Exception as e:
        log.error(f"Error fetching checkpoint for job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch checkpoint.")


@router.get("/users/{user_id}/checkpoint", response_model=SuccessResponse)
async def get_latest_user_checkpoint_endpoint(user_id: UUID, saga: InitialDataSyncSaga = Depends(get_saga)):
    """Fetches the most recent checkpoint across all sync jobs of a user."""
    try:
        checkpoint = await saga.find_latest_checkpoint(user_id)
        if not checkpoint:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No checkpoint for this user")
        return SuccessResponse(data=checkpoint.model_dump())
    except HTTPException as he:
        raise he
    except Exception as e:
        log.error(f"Error fetching latest checkpoint for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch checkpoint.")


@router.get("/{job_id}/events", response_model=SuccessResponse)
async def list_job_events_endpoint(job_id: UUID, outbox: OutboxStore = Depends(get_outbox_store)):
    """Lists the outbox events a sync job has emitted, oldest first."""
    try:
        events = await outbox.find_by_saga(job_id)
        data = [OutboxEventResponse.model_validate(e).model_dump() for e in events]
        return SuccessResponse(data=data)
    except Exception as e:
        log.error(f"Error listing events for job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to list sync events.")
