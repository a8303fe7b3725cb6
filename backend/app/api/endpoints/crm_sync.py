"""
CRM Sync API Endpoints.

Trigger interface of the sync engine: start a run, follow its progress,
inspect recovery information and push batch updates to Pipedrive.

The caller passes the account's already decrypted Pipedrive token in the
X-Pipedrive-Api-Token header. It is never logged or echoed back.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.interfaces.crm import CRMClient
from app.db.session import get_async_session
from app.models.sync import SyncType
from app.services.crm_factory import CRMClientError, create_pipedrive_client
from app.services.crm_sync import (
    BatchUpdateRequest,
    ErrorType,
    RecordUpdateService,
    calculate_resume_parameters,
    classify_error,
    find_last_successful_sync_point,
    run_sync,
)
from app.services.sync_repository import SyncRepository

router = APIRouter(prefix="/crm-sync")
logger = logging.getLogger(__name__)

STATUS_BY_ERROR_TYPE = {
    ErrorType.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorType.AUTHENTICATION: status.HTTP_400_BAD_REQUEST,
    ErrorType.VALIDATION: status.HTTP_400_BAD_REQUEST,
}


# =============================================================================
# Models
# =============================================================================

class SyncRunRequest(BaseModel):
    """Request to start a sync run."""
    account_id: str = Field(..., min_length=1)
    sync_type: SyncType = SyncType.FULL
    since_timestamp: Optional[datetime] = None
    record_ids: Optional[List[str]] = None
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)
    force: bool = False


class SyncRunData(BaseModel):
    sync_run_id: str
    sync_type: SyncType
    status: str
    results: Dict[str, Any]
    duration_ms: int


class SyncRunResponse(BaseModel):
    """Response of a successful sync run."""
    success: bool
    data: SyncRunData


class UpdateItem(BaseModel):
    record_type: str
    record_id: int
    data: Dict[str, Any] = Field(default_factory=dict)


class BatchUpdateBody(BaseModel):
    """Records of one account to update in Pipedrive."""
    account_id: str = Field(..., min_length=1)
    updates: List[UpdateItem] = Field(..., min_length=1)


class BatchUpdateResponse(BaseModel):
    success: bool
    results: List[Dict[str, Any]]
    summary: Dict[str, Any]


class ConnectionResponse(BaseModel):
    success: bool
    user: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# =============================================================================
# Dependencies
# =============================================================================

async def get_repository(session: AsyncSession = Depends(get_async_session)) -> SyncRepository:
    """Repository bound to the request's session."""
    return SyncRepository(session)


async def get_crm_client(
    api_token: Optional[str] = Header(default=None, alias="X-Pipedrive-Api-Token"),
) -> AsyncGenerator[CRMClient, None]:
    """
    Pipedrive client for the request's credential, closed after the response.

    Raises:
        HTTPException 400: If the header is missing or the client cannot be built
    """
    try:
        client = create_pipedrive_client(api_token, get_settings())
    except CRMClientError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    try:
        yield client
    finally:
        await client.close()


def _status_for(error_type: Optional[ErrorType]) -> int:
    return STATUS_BY_ERROR_TYPE.get(error_type, status.HTTP_500_INTERNAL_SERVER_ERROR)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/run", response_model=SyncRunResponse)
async def run_crm_sync(
    request: SyncRunRequest,
    client: CRMClient = Depends(get_crm_client),
    repository: SyncRepository = Depends(get_repository),
) -> SyncRunResponse:
    """
    Run a sync for one account and wait for its outcome.

    The credential is verified first; an invalid token fails with 400
    before any run is recorded.

    Returns:
        Run id, sync type, aggregated results and duration

    Raises:
        HTTPException: 400 (request, credential, validation), 429 (rate
            limit), 500 (database or unclassified failure)
    """
    if request.sync_type == SyncType.SEARCH and not request.record_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="record_ids are required for SEARCH syncs",
        )

    connection = await client.test_connection()
    if not connection.success:
        classified = classify_error(connection.error or "", connection.status_code, connection.retry_after)
        error_type = connection.error_type or classified.type
        logger.warning(f"⚠️ Connection check failed for account {request.account_id}: {connection.error}")
        raise HTTPException(
            status_code=_status_for(error_type),
            detail=connection.error or classified.user_message,
        )

    try:
        outcome = await run_sync(
            client,
            repository,
            request.account_id,
            request.sync_type,
            since_timestamp=request.since_timestamp,
            record_ids=request.record_ids,
            batch_size=request.batch_size,
            force=request.force,
        )

    except HTTPException:
        raise

    except Exception as e:
        logger.error(f"❌ Sync run for account {request.account_id} crashed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync failed: {e}",
        )

    if not outcome.is_success:
        raise HTTPException(
            status_code=_status_for(outcome.error_type),
            detail=outcome.error,
        )

    return SyncRunResponse(
        success=True,
        data=SyncRunData(
            sync_run_id=str(outcome.sync_run_id),
            sync_type=outcome.sync_type,
            status=outcome.status.value,
            results=outcome.results,
            duration_ms=outcome.duration_ms,
        ),
    )


@router.get("/progress/{sync_run_id}")
async def get_sync_progress(
    sync_run_id: uuid.UUID,
    repository: SyncRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Persisted counters of a run (checkpointed after every batch)."""
    run = await repository.get_sync_run(sync_run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync run {sync_run_id} not found",
        )
    return run.to_progress()


@router.get("/latest/{account_id}")
async def get_latest_sync(
    account_id: str,
    repository: SyncRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Latest run of an account plus its sync state."""
    run = await repository.get_latest_sync_run(account_id)
    state = await repository.get_sync_state(account_id)

    return {
        "account_id": account_id,
        "latest_run": run.to_progress() if run else None,
        "sync_status": state.sync_status.value if state else None,
        "last_sync_timestamp": (
            state.last_sync_timestamp.isoformat() if state and state.last_sync_timestamp else None
        ),
    }


@router.get("/recovery/{account_id}")
async def get_recovery_info(
    account_id: str,
    batch_size: Optional[int] = None,
    repository: SyncRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Last successful sync point and where a resumed run would start."""
    point = await find_last_successful_sync_point(repository, account_id)
    if point is None:
        return {"account_id": account_id, "recovery_point": None, "resume": None}

    resume = calculate_resume_parameters(point, batch_size or get_settings().sync_batch_size)
    return {
        "account_id": account_id,
        "recovery_point": {
            "sync_run_id": point.sync_run_id,
            "records_processed": point.records_processed,
            "records_created": point.records_created,
            "records_updated": point.records_updated,
            "records_failed": point.records_failed,
            "last_successful_time": (
                point.last_successful_time.isoformat() if point.last_successful_time else None
            ),
        },
        "resume": {
            "start_from_record": resume.start_from_record,
            "skip_records": resume.skip_records,
            "estimated_remaining": resume.estimated_remaining,
            "batch_size": resume.batch_size,
        },
    }


@router.post("/batch-update", response_model=BatchUpdateResponse)
async def batch_update(
    body: BatchUpdateBody,
    client: CRMClient = Depends(get_crm_client),
    repository: SyncRepository = Depends(get_repository),
) -> BatchUpdateResponse:
    """
    Update existing Pipedrive records; conflicts are retried per record.

    Always answers 200 with one result per requested record.
    """
    settings = get_settings()
    service = RecordUpdateService(
        client,
        repository,
        body.account_id,
        retry_base_delay=settings.sync_conflict_retry_delay_ms / 1000,
        batch_chunk_size=settings.sync_update_chunk_size,
        batch_pause=settings.sync_update_pause_ms / 1000,
    )

    result = await service.batch_update(
        [BatchUpdateRequest(u.record_type, u.record_id, u.data) for u in body.updates]
    )

    return BatchUpdateResponse(
        success=result.success,
        results=[r.to_dict() for r in result.results],
        summary=result.summary,
    )


@router.get("/test-connection", response_model=ConnectionResponse)
async def test_connection(client: CRMClient = Depends(get_crm_client)) -> ConnectionResponse:
    """Verifies the Pipedrive credential."""
    result = await client.test_connection()
    if result.success:
        return ConnectionResponse(success=True, user=(result.data or {}).get("data"))
    return ConnectionResponse(success=False, error=result.error)
