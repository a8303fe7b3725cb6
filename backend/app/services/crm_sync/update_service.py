"""
Conflict-Aware Update Service.

Pushes updates of existing records to Pipedrive one record at a time.
Only conflict rejections (the remote record changed underneath us) are
retried. The local update sync status is written once, after the remote
outcome is known.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.interfaces.crm import CRMClient, CRMRequestError, CRMResult
from app.models.crm import UpdateSyncStatus

from .error_classifier import classify_error, is_conflict_error

logger = logging.getLogger(__name__)

SUPPORTED_RECORD_TYPES = ("activity", "person", "organization", "deal")


@dataclass
class UpdateResult:
    """Outcome of a single-record update."""
    success: bool
    record_id: Any
    record_type: str
    error: Optional[str] = None
    retry_count: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "record_id": self.record_id,
            "record_type": self.record_type,
            "error": self.error,
            "retry_count": self.retry_count,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BatchUpdateRequest:
    record_type: str
    record_id: Any
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchUpdateResult:
    """Aggregate of a batch update; results holds one entry per request."""
    success: bool
    results: List[UpdateResult]
    summary: Dict[str, Any]


class RecordUpdateService:
    """
    Single-record and batch updates against the remote CRM.

    The client and repository are passed in per use, so concurrent runs
    for different accounts never share an instance.
    """

    def __init__(
        self,
        client: CRMClient,
        repository,
        account_id: str,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        batch_chunk_size: int = 10,
        batch_pause: float = 1.0,
    ):
        """
        Args:
            client: Remote CRM client
            repository: SyncRepository (or compatible) for local status writes
            account_id: Account whose local rows receive the status writes
            max_attempts: Attempts per record, retries included
            retry_base_delay: Seconds before the first conflict retry (doubles each time)
            batch_chunk_size: Records between throttling pauses
            batch_pause: Seconds to pause between chunks
        """
        self.client = client
        self.repository = repository
        self.account_id = account_id
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.batch_chunk_size = batch_chunk_size
        self.batch_pause = batch_pause

    async def update_activity(self, record_id: int, data: Dict[str, Any]) -> UpdateResult:
        return await self._update_with_retry("activity", record_id, data, self.client.update_activity)

    async def update_person(self, record_id: int, data: Dict[str, Any]) -> UpdateResult:
        return await self._update_with_retry("person", record_id, data, self.client.update_person)

    async def update_organization(self, record_id: int, data: Dict[str, Any]) -> UpdateResult:
        return await self._update_with_retry("organization", record_id, data, self.client.update_organization)

    async def update_deal(self, record_id: int, data: Dict[str, Any]) -> UpdateResult:
        return await self._update_with_retry("deal", record_id, data, self.client.update_deal)

    async def _update_with_retry(
        self,
        record_type: str,
        record_id: int,
        data: Dict[str, Any],
        call: Callable[[int, Dict[str, Any]], Awaitable[CRMResult]],
    ) -> UpdateResult:
        attempt = 0
        last_error: Optional[str] = None

        while attempt < self.max_attempts:
            attempt += 1

            try:
                result = await call(record_id, data)
            except CRMRequestError as e:
                result = CRMResult(
                    success=False,
                    error=str(e),
                    error_type=e.error_type,
                    status_code=e.status_code,
                )

            if result.success:
                await self._write_local_status(record_type, record_id, UpdateSyncStatus.SYNCED)
                if attempt > 1:
                    logger.info(f"✅ {record_type} {record_id} updated after {attempt} attempts")
                return UpdateResult(
                    success=True,
                    record_id=record_id,
                    record_type=record_type,
                    retry_count=attempt - 1,
                )

            last_error = result.error
            classified = classify_error(result.error or "", result.status_code, result.retry_after)

            if not is_conflict_error(result.error, result.status_code):
                logger.warning(
                    f"⚠️ Update of {record_type} {record_id} failed [{classified.type.value}]: {result.error}"
                )
                break

            logger.warning(
                f"⚠️ Conflict updating {record_type} {record_id} (attempt {attempt}/{self.max_attempts})"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))

        await self._write_local_status(record_type, record_id, UpdateSyncStatus.FAILED)
        return UpdateResult(
            success=False,
            record_id=record_id,
            record_type=record_type,
            error=last_error,
            retry_count=attempt,
        )

    async def _write_local_status(self, record_type: str, record_id: int, status: UpdateSyncStatus) -> None:
        # Deals have no local row
        if record_type == "deal":
            return

        stamp = datetime.now(timezone.utc) if status == UpdateSyncStatus.SYNCED else None
        updated = await self.repository.set_update_sync_status(
            self.account_id, record_type, record_id, status, stamp
        )
        if not updated:
            logger.debug(f"No local {record_type} of account {self.account_id} linked to remote id {record_id}")

    async def batch_update(self, requests: List[BatchUpdateRequest]) -> BatchUpdateResult:
        """
        Updates a heterogeneous list of records sequentially.

        Pauses batch_pause seconds after every batch_chunk_size records
        while more remain, so N records see at most ceil(N / chunk) pauses.
        Unsupported record types fail without a remote call.
        """
        results: List[UpdateResult] = []
        total = len(requests)

        logger.info(f"🔄 Batch update of {total} records")

        for index, request in enumerate(requests, start=1):
            results.append(await self._route(request))

            if index % self.batch_chunk_size == 0 and index < total:
                logger.debug(f"Processed {index}/{total}, pausing {self.batch_pause}s")
                await asyncio.sleep(self.batch_pause)

        failed = [r for r in results if not r.success]
        summary = {
            "total": total,
            "successful": total - len(failed),
            "failed": len(failed),
            "errors": [f"{r.record_type} {r.record_id}: {r.error}" for r in failed],
        }

        logger.info(f"✅ Batch update done: {summary['successful']}/{total} succeeded")
        return BatchUpdateResult(success=not failed, results=results, summary=summary)

    async def _route(self, request: BatchUpdateRequest) -> UpdateResult:
        record_type = (request.record_type or "").lower()

        if record_type == "activity":
            return await self.update_activity(request.record_id, request.data)
        if record_type == "person":
            return await self.update_person(request.record_id, request.data)
        if record_type == "organization":
            return await self.update_organization(request.record_id, request.data)
        if record_type == "deal":
            return await self.update_deal(request.record_id, request.data)

        return UpdateResult(
            success=False,
            record_id=request.record_id,
            record_type=request.record_type,
            error=f"Unsupported record type: {request.record_type}",
        )
