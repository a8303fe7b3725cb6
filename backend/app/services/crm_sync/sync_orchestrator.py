"""
CRM Sync Orchestrator.

Coordinates a sync run for one account:
PENDING -> IN_PROGRESS -> SUCCESS | FAILED.

While the run is in progress the account's last sync timestamp is
cleared, so a crashed or failed run always forces the next run to be a
full resync.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.core.config import Settings, get_settings
from app.core.interfaces.crm import CRMClient, CRMRequestError
from app.integrations.pipedrive.processors import (
    RemotePerson,
    parse_remote_person,
    parse_remote_timestamp,
)
from app.models.sync import AccountSyncStatus, SyncRun, SyncRunStatus, SyncType

from .contact_batch_processor import BatchProgress, ContactBatchProcessor
from .error_classifier import ClassifiedError, ErrorType, classify_error, classify_exception
from .error_tracker import ErrorTracker
from .organization_resolver import OrganizationResolution, OrganizationResolver
from .recovery import (
    FailedBatch,
    RecoveryStrategy,
    create_multi_batch_recovery_plan,
    execute_with_recovery,
    select_recovery_strategy,
)
from .timeout_guard import (
    Deadline,
    TimeoutConfig,
    TimeoutMetricsTracker,
    calculate_progressive_timeout,
    execute_with_timeout,
)

logger = logging.getLogger(__name__)


@dataclass
class RunCounters:
    """Cumulative counts of a run; written to the SyncRun row after every batch."""
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    batches_total: int = 0
    batches_completed: int = 0
    batches_failed: int = 0
    failed_batches: List[FailedBatch] = field(default_factory=list)
    organizations: OrganizationResolution = field(default_factory=OrganizationResolution)

    def absorb(self, progress: BatchProgress) -> None:
        self.processed += progress.processed
        self.created += progress.created
        self.updated += progress.updated
        self.unchanged += progress.unchanged
        self.failed += progress.failed

    def checkpoint_fields(self) -> Dict[str, int]:
        return {
            "total_records": self.total,
            "records_processed": self.processed,
            "records_created": self.created,
            "records_updated": self.updated,
            "records_failed": self.failed,
        }


@dataclass
class SyncRunOutcome:
    """What the trigger interface returns for one run."""
    sync_run_id: uuid.UUID
    sync_type: SyncType
    status: SyncRunStatus
    results: Dict[str, Any]
    duration_ms: int
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None

    @property
    def is_success(self) -> bool:
        return self.status == SyncRunStatus.SUCCESS


class SyncOrchestrator:
    """
    Orchestrates a Pipedrive -> local sync run.

    Responsibilities:
    - Run/account state transitions
    - Input fetch (with recovery) and narrowing per sync type
    - Organization pre-resolution
    - Batching with progressive per-batch timeouts and checkpoints
    - Result aggregation

    One instance serves one run; the client and repository are passed in.
    """

    def __init__(
        self,
        client: CRMClient,
        repository,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize sync orchestrator.

        Args:
            client: Remote CRM client bound to the account's credential
            repository: SyncRepository for the run's session
            settings: Application settings (defaults to get_settings())
        """
        self.client = client
        self.repository = repository
        self.settings = settings or get_settings()
        self.timeout_config = TimeoutConfig(
            sync_timeout_ms=self.settings.sync_timeout_ms,
            batch_timeout_ms=self.settings.sync_batch_timeout_ms,
            max_batch_timeout_ms=self.settings.sync_max_batch_timeout_ms,
            progressive_timeout_enabled=self.settings.sync_progressive_timeout,
        )
        self.error_tracker = ErrorTracker()
        self.timeout_metrics = TimeoutMetricsTracker()

    async def run(
        self,
        account_id: str,
        sync_type: SyncType,
        since_timestamp: Optional[datetime] = None,
        record_ids: Optional[List[str]] = None,
        batch_size: Optional[int] = None,
        force: bool = False,
    ) -> SyncRunOutcome:
        """
        Execute one sync run.

        Args:
            account_id: Account to sync
            sync_type: FULL, INCREMENTAL or SEARCH
            since_timestamp: INCREMENTAL lower bound (defaults to the last successful sync)
            record_ids: SEARCH scope (remote person ids)
            batch_size: Records per batch (defaults to SYNC_BATCH_SIZE)
            force: Ignore timestamps and rewrite unchanged contacts

        Returns:
            SyncRunOutcome. Run failures are reported here, not raised.
        """
        start = time.monotonic()
        batch_size = batch_size or self.settings.sync_batch_size
        counters = RunCounters()

        logger.info(f"🔄 Sync run starting: account={account_id} type={sync_type.value} batch_size={batch_size}")

        run = await self.repository.create_sync_run(account_id, sync_type)
        sync_run_id = run.id

        previous_state = await self.repository.get_sync_state(account_id)
        previous_sync = previous_state.last_sync_timestamp if previous_state else None

        await self.repository.update_sync_state(account_id, AccountSyncStatus.IN_PROGRESS, None)
        await self.repository.update_sync_run(run, status=SyncRunStatus.IN_PROGRESS)

        deadline = Deadline(self.timeout_config.sync_timeout_ms)
        result = await execute_with_timeout(
            lambda: self._execute(
                run,
                account_id,
                sync_type,
                since_timestamp or previous_sync,
                record_ids,
                batch_size,
                force,
                counters,
                deadline,
            ),
            self.timeout_config.sync_timeout_ms,
            label="Sync",
        )

        duration_ms = int((time.monotonic() - start) * 1000)
        results = self._build_results(counters)

        if result.success:
            await self._complete(run, account_id, counters, duration_ms)
            logger.info(
                f"✅ Sync run {sync_run_id} succeeded in {duration_ms}ms: "
                f"{counters.processed}/{counters.total} processed, {counters.created} created, "
                f"{counters.updated} updated, {counters.failed} failed"
            )
            return SyncRunOutcome(
                sync_run_id=sync_run_id,
                sync_type=sync_type,
                status=SyncRunStatus.SUCCESS,
                results=results,
                duration_ms=duration_ms,
            )

        if result.exception is not None:
            classified = classify_exception(result.exception)
            logger.error(f"❌ Sync run {sync_run_id} failed: {result.error}", exc_info=result.exception)
        else:
            classified = classify_error(result.error or "")
            logger.error(f"❌ Sync run {sync_run_id} failed: {result.error}")

        error = result.error or classified.user_message
        await self._fail(run, account_id, counters, duration_ms, error)

        return SyncRunOutcome(
            sync_run_id=sync_run_id,
            sync_type=sync_type,
            status=SyncRunStatus.FAILED,
            results=results,
            duration_ms=duration_ms,
            error=error,
            error_type=classified.type,
        )

    async def _execute(
        self,
        run: SyncRun,
        account_id: str,
        sync_type: SyncType,
        since: Optional[datetime],
        record_ids: Optional[List[str]],
        batch_size: int,
        force: bool,
        counters: RunCounters,
        deadline: Deadline,
    ) -> None:
        # === PHASE 1: Fetch persons ===
        logger.debug("Phase 1: Fetching persons from Pipedrive...")
        records = await self._fetch_persons(deadline)
        logger.info(f"📥 Fetched {len(records)} persons")

        # === PHASE 2: Narrow input ===
        records = self._select_records(records, sync_type, since, record_ids, force)
        counters.total = len(records)
        await self.repository.update_sync_run(run, total_records=counters.total)

        if not records:
            logger.info("ℹ️ Nothing to sync")
            return

        # === PHASE 3: Resolve organizations ===
        logger.debug("Phase 3: Resolving organizations...")
        persons = self._parse_for_organizations(records)
        counters.organizations = await OrganizationResolver(self.repository).resolve(account_id, persons)

        # === PHASE 4: Process batches ===
        batches = [records[i:i + batch_size] for i in range(0, len(records), batch_size)]
        counters.batches_total = len(batches)
        batch_timeout_ms = calculate_progressive_timeout(len(records), batch_size, self.timeout_config)
        processor = ContactBatchProcessor(self.repository, self.error_tracker, force=force)

        logger.info(f"📊 Processing {len(records)} persons in {len(batches)} batches (timeout {batch_timeout_ms}ms each)")

        for number, batch in enumerate(batches, start=1):
            progress = BatchProgress(batch_number=number, size=len(batch))

            outcome = await execute_with_timeout(
                lambda: processor.process_batch(account_id, batch, counters.organizations, progress),
                batch_timeout_ms,
                label=f"Batch {number}",
            )
            self.timeout_metrics.track(number, len(batch), outcome.duration_ms, batch_timeout_ms, outcome.timed_out)

            if not outcome.success:
                if not outcome.timed_out:
                    # Database failures and unexpected errors end the run
                    raise outcome.exception

                # The cancelled record may have left a pending row behind
                await self.repository.reset_after_failure(run)

                unprocessed = len(batch) - progress.processed
                progress.failed += unprocessed
                self.error_tracker.track_batch_error(
                    number,
                    len(batch),
                    f"{outcome.error} ({unprocessed} records not processed)",
                    timed_out=True,
                )

            counters.absorb(progress)

            if progress.all_failed:
                counters.batches_failed += 1
                start_index = (number - 1) * batch_size
                counters.failed_batches.append(
                    FailedBatch(
                        batch_number=number,
                        start_index=start_index,
                        end_index=start_index + len(batch),
                        error=outcome.error or self._last_batch_error(number),
                    )
                )
            else:
                counters.batches_completed += 1

            # === Checkpoint ===
            await self.repository.update_sync_run(run, **counters.checkpoint_fields())

    async def _fetch_persons(self, deadline: Deadline) -> List[Dict[str, Any]]:
        """
        Fetch all persons; a failed fetch goes through the recovery harness.

        Raises:
            CRMRequestError: If the fetch cannot be recovered
        """

        async def fetch() -> List[Dict[str, Any]]:
            result = await self.client.list_persons(deadline=deadline)
            if not result.success:
                raise CRMRequestError(
                    result.error or "Failed to fetch persons from Pipedrive",
                    error_type=result.error_type,
                    status_code=result.status_code,
                    retry_after=result.retry_after,
                )
            return result.items

        try:
            return await fetch()
        except CRMRequestError as e:
            classified = classify_exception(e)

        strategy = select_recovery_strategy(classified)
        logger.warning(f"⚠️ Fetch failed [{classified.type.value}], strategy {strategy.value}: {classified.message}")

        if strategy == RecoveryStrategy.NO_RECOVERY:
            raise CRMRequestError(
                classified.message,
                error_type=classified.type,
                status_code=classified.status_code,
            )

        recovery = await execute_with_recovery(
            fetch,
            strategy,
            max_retries=self.settings.pipedrive_max_retries,
            base_delay=self._retry_delay_for(classified),
            timeout_ms=max(1, int(deadline.remaining() * 1000)),
        )
        if recovery.success:
            return recovery.data

        if isinstance(recovery.exception, CRMRequestError):
            raise recovery.exception
        raise CRMRequestError(recovery.error or classified.message, error_type=classified.type)

    def _retry_delay_for(self, classified: ClassifiedError) -> float:
        if classified.type == ErrorType.RATE_LIMIT and classified.retry_after is not None:
            return classified.retry_after
        return self.settings.pipedrive_retry_delay / 1000

    @staticmethod
    def _select_records(
        records: List[Dict[str, Any]],
        sync_type: SyncType,
        since: Optional[datetime],
        record_ids: Optional[List[str]],
        force: bool,
    ) -> List[Dict[str, Any]]:
        """
        Narrow the fetched persons to the run's scope.

        Every sync type fetches everything; INCREMENTAL keeps persons
        updated at or after `since` (all of them when forced or when
        there is no cursor), SEARCH keeps the requested ids.
        """
        if sync_type == SyncType.SEARCH:
            wanted = {str(record_id) for record_id in (record_ids or [])}
            return [r for r in records if str(r.get("id")) in wanted]

        if sync_type == SyncType.INCREMENTAL and since is not None and not force:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            selected = []
            for record in records:
                updated_at = parse_remote_timestamp(record.get("update_time"))
                if updated_at is None or updated_at >= since:
                    selected.append(record)
            logger.info(f"📥 INCREMENTAL: {len(selected)}/{len(records)} persons changed since {since.isoformat()}")
            return selected

        return records

    @staticmethod
    def _parse_for_organizations(records: List[Dict[str, Any]]) -> List[RemotePerson]:
        # Unparseable records are reported when their batch processes them
        persons = []
        for record in records:
            try:
                persons.append(parse_remote_person(record))
            except (TypeError, ValueError):
                continue
        return persons

    def _last_batch_error(self, batch_number: int) -> str:
        for err in reversed(self.error_tracker.record_errors):
            if err.batch_number == batch_number:
                return err.error
        return "All records failed"

    async def _complete(self, run: SyncRun, account_id: str, counters: RunCounters, duration_ms: int) -> None:
        now = datetime.now(timezone.utc)
        await self.repository.update_sync_run(
            run,
            status=SyncRunStatus.SUCCESS,
            end_time=now,
            duration_ms=duration_ms,
            **counters.checkpoint_fields(),
        )
        await self.repository.update_sync_state(account_id, AccountSyncStatus.COMPLETED, now)

    async def _fail(
        self,
        run: SyncRun,
        account_id: str,
        counters: RunCounters,
        duration_ms: int,
        error: str,
    ) -> None:
        await self.repository.reset_after_failure(run)
        await self.repository.update_sync_run(
            run,
            status=SyncRunStatus.FAILED,
            end_time=datetime.now(timezone.utc),
            duration_ms=duration_ms,
            error=error,
            **counters.checkpoint_fields(),
        )
        await self.repository.update_sync_state(account_id, AccountSyncStatus.FAILED, None)

    def _build_results(self, counters: RunCounters) -> Dict[str, Any]:
        recovery_plan = None
        if counters.failed_batches:
            recovery_plan = create_multi_batch_recovery_plan(counters.failed_batches).to_dict()

        return {
            "total": counters.total,
            "processed": counters.processed,
            "created": counters.created,
            "updated": counters.updated,
            "unchanged": counters.unchanged,
            "failed": counters.failed,
            "errors": self.error_tracker.get_summary().get_error_messages(),
            "batches": {
                "total": counters.batches_total,
                "completed": counters.batches_completed,
                "failed": counters.batches_failed,
            },
            "organizations": counters.organizations.to_dict(),
            "recovery_plan": recovery_plan,
            "timeouts": self.timeout_metrics.analyze(),
        }


async def run_sync(
    client: CRMClient,
    repository,
    account_id: str,
    sync_type: SyncType,
    since_timestamp: Optional[datetime] = None,
    record_ids: Optional[List[str]] = None,
    batch_size: Optional[int] = None,
    force: bool = False,
    settings: Optional[Settings] = None,
) -> SyncRunOutcome:
    """
    Trigger interface: run one sync for one account.

    Safe to call repeatedly; concurrent calls for the same account are
    not deduplicated here.
    """
    orchestrator = SyncOrchestrator(client, repository, settings)
    return await orchestrator.run(
        account_id,
        sync_type,
        since_timestamp=since_timestamp,
        record_ids=record_ids,
        batch_size=batch_size,
        force=force,
    )
