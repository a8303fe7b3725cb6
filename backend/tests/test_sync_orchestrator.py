"""
Tests for the sync orchestrator.

Runs against an in-memory SQLite database through the real repository,
with the remote CRM replaced by FakeCRMClient.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.core.interfaces.crm import CRMListResult, ErrorType
from app.models.crm import Contact, UpdateSyncStatus
from app.models.sync import AccountSyncStatus, SyncRunStatus, SyncType
from app.services.crm_sync import SyncOrchestrator, run_sync
from app.services.sync_repository import SyncRepository

from conftest import FakeCRMClient, make_person

ACCOUNT = "acct-1"


class FailingContactRepository(SyncRepository):
    """Repository whose contact inserts fail at the database level."""

    async def create_contact(self, account_id, **fields):
        raise OperationalError("INSERT INTO contacts", {}, Exception("database connection lost"))


class StallingContactRepository(SyncRepository):
    """Repository whose insert of one remote person stalls before committing."""

    def __init__(self, session, stall_on: int):
        super().__init__(session)
        self.stall_on = stall_on

    async def create_contact(self, account_id, **fields):
        if fields.get("remote_person_id") != self.stall_on:
            return await super().create_contact(account_id, **fields)
        self.session.add(Contact(account_id=account_id, **fields))
        await asyncio.sleep(5)


class SlowClient(FakeCRMClient):
    async def list_persons(self, deadline=None):
        await asyncio.sleep(5)
        return CRMListResult(success=True, items=[])


@pytest.mark.asyncio
class TestSyncLifecycle:
    """Run and account state transitions."""

    async def test_empty_full_sync(self, repository, settings):
        """No remote persons: SUCCESS, zero counters, account COMPLETED."""
        client = FakeCRMClient([])

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)

        assert outcome.status == SyncRunStatus.SUCCESS
        assert outcome.results["total"] == 0
        assert outcome.results["processed"] == 0
        assert outcome.results["batches"] == {"total": 0, "completed": 0, "failed": 0}
        assert outcome.results["recovery_plan"] is None

        run = await repository.get_sync_run(outcome.sync_run_id)
        assert run.status == SyncRunStatus.SUCCESS
        assert run.end_time is not None
        assert run.duration_ms is not None

        state = await repository.get_sync_state(ACCOUNT)
        assert state.sync_status == AccountSyncStatus.COMPLETED
        assert state.last_sync_timestamp is not None

    async def test_full_sync_creates_contacts_and_organizations(self, repository, settings):
        persons = [
            make_person(1, "Jane Doe", org_id=9, org_name="Acme"),
            make_person(2, "John Roe", org_id=9, org_name="Acme"),
            make_person(3, "Ann Poe", org_name="Globex"),
        ]

        outcome = await run_sync(FakeCRMClient(persons), repository, ACCOUNT, SyncType.FULL, settings=settings)

        assert outcome.status == SyncRunStatus.SUCCESS
        assert outcome.results["created"] == 3
        assert outcome.results["organizations"]["created"] == 2
        assert await repository.count_contacts(ACCOUNT) == 3

        acme = await repository.find_organization_by_remote_id(ACCOUNT, 9)
        globex = await repository.find_organization_by_name(ACCOUNT, "  GLOBEX ")
        assert acme.name == "Acme"
        assert globex.remote_org_id is None

        jane = await repository.find_contact_by_remote_id(ACCOUNT, 1)
        assert jane.email == "person1@example.org"
        assert jane.organization_id == acme.id
        assert jane.remote_org_id == 9
        assert jane.update_sync_status == UpdateSyncStatus.SYNCED

        ann = await repository.find_contact_by_remote_id(ACCOUNT, 3)
        assert ann.organization_id == globex.id
        assert ann.organisation == "Globex"

    async def test_resync_is_idempotent(self, repository, settings):
        """A second run over unchanged data creates and updates nothing."""
        persons = [make_person(i, org_id=100 + i % 3) for i in range(1, 8)]
        client = FakeCRMClient(persons)

        first = await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)
        second = await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)

        assert first.results["created"] == 7
        assert second.results["created"] == 0
        assert second.results["updated"] == 0
        assert second.results["unchanged"] == 7
        assert second.results["organizations"]["created"] == 0
        assert await repository.count_contacts(ACCOUNT) == 7

    async def test_force_rewrites_unchanged(self, repository, settings):
        client = FakeCRMClient([make_person(1), make_person(2)])
        await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.FULL, force=True, settings=settings)

        assert outcome.results["updated"] == 2

    async def test_links_existing_contact_by_email(self, repository, settings):
        existing = await repository.create_contact(ACCOUNT, name="J. Doe", email="JANE@example.org")
        client = FakeCRMClient([make_person(1, "Jane Doe", email="jane@example.org")])

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)

        assert outcome.results["updated"] == 1
        assert outcome.results["created"] == 0
        await repository.session.refresh(existing)
        assert existing.remote_person_id == 1
        assert existing.name == "Jane Doe"


@pytest.mark.asyncio
class TestBatching:
    """Batch processing and failure accounting."""

    async def test_120_persons_in_batches_of_50_with_failing_batch(self, repository, settings):
        """Batch 2 fails entirely; batches 1 and 3 complete and the run still succeeds."""
        persons = []
        for i in range(1, 121):
            person = make_person(i)
            if 51 <= i <= 100:
                del person["id"]
            persons.append(person)

        outcome = await run_sync(
            FakeCRMClient(persons), repository, ACCOUNT, SyncType.FULL, batch_size=50, settings=settings
        )

        results = outcome.results
        assert outcome.status == SyncRunStatus.SUCCESS
        assert results["total"] == 120
        assert results["processed"] == 120
        assert results["created"] == 70
        assert results["failed"] == 50
        assert results["batches"] == {"total": 3, "completed": 2, "failed": 1}
        assert len(results["errors"]) == 11
        assert results["errors"][-1] == "...and 40 more errors"

        plan = results["recovery_plan"]
        assert len(plan["batches_to_retry"]) == 1
        assert plan["batches_to_retry"][0]["retry_batch_number"] == 2
        assert plan["batches_to_retry"][0]["start_index"] == 50
        assert plan["batches_to_retry"][0]["end_index"] == 100

        run = await repository.get_sync_run(outcome.sync_run_id)
        assert run.total_records == 120
        assert run.records_processed == 120
        assert run.records_created == 70
        assert run.records_failed == 50

    async def test_database_error_fails_run(self, session, settings):
        """A record-level database error aborts the run and clears the cursor."""
        repository = FailingContactRepository(session)
        await repository.update_sync_state(ACCOUNT, AccountSyncStatus.COMPLETED, datetime(2026, 1, 1, tzinfo=timezone.utc))

        outcome = await run_sync(
            FakeCRMClient([make_person(1), make_person(2)]), repository, ACCOUNT, SyncType.FULL, settings=settings
        )

        assert outcome.status == SyncRunStatus.FAILED
        assert outcome.error_type == ErrorType.DATABASE
        assert "Database error" in outcome.error

        run = await repository.get_sync_run(outcome.sync_run_id)
        assert run.status == SyncRunStatus.FAILED
        assert run.error

        state = await repository.get_sync_state(ACCOUNT)
        assert state.sync_status == AccountSyncStatus.FAILED
        assert state.last_sync_timestamp is None


    async def test_timed_out_batch_fails_only_that_batch(self, session, settings):
        """Batch 2 stalls on its first record; batches 1 and 3 still complete."""
        settings.sync_batch_timeout_ms = 200
        repository = StallingContactRepository(session, stall_on=3)
        persons = [make_person(i) for i in range(1, 7)]

        outcome = await run_sync(
            FakeCRMClient(persons), repository, ACCOUNT, SyncType.FULL, batch_size=2, settings=settings
        )

        results = outcome.results
        assert outcome.status == SyncRunStatus.SUCCESS
        assert results["created"] == 4
        assert results["failed"] == 2
        assert results["batches"] == {"total": 3, "completed": 2, "failed": 1}
        assert any("Batch 2 timed out after 200ms" in e for e in results["errors"])

        retry = results["recovery_plan"]["batches_to_retry"]
        assert [(b["retry_batch_number"], b["start_index"], b["end_index"]) for b in retry] == [(2, 2, 4)]

        # The stalled record was never persisted
        assert await repository.find_contact_by_remote_id(ACCOUNT, 3) is None
        assert await repository.find_contact_by_remote_id(ACCOUNT, 5) is not None
        assert await repository.count_contacts(ACCOUNT) == 4

        run = await repository.get_sync_run(outcome.sync_run_id)
        assert run.records_created == 4
        assert run.records_failed == 2

    async def test_partially_processed_batch_times_out(self, session, settings):
        """Records finished before the timeout stay; the batch is not retried as a whole."""
        settings.sync_batch_timeout_ms = 200
        repository = StallingContactRepository(session, stall_on=4)
        persons = [make_person(i) for i in range(1, 7)]

        outcome = await run_sync(
            FakeCRMClient(persons), repository, ACCOUNT, SyncType.FULL, batch_size=2, settings=settings
        )

        results = outcome.results
        assert results["created"] == 5
        assert results["failed"] == 1
        assert results["batches"]["failed"] == 0
        assert results["recovery_plan"] is None
        assert await repository.find_contact_by_remote_id(ACCOUNT, 3) is not None
        assert await repository.find_contact_by_remote_id(ACCOUNT, 4) is None
        assert await repository.count_contacts(ACCOUNT) == 5

@pytest.mark.asyncio
class TestFetch:
    """Fetch phase and recovery."""

    async def test_authentication_failure_not_retried(self, repository, settings):
        client = FakeCRMClient()
        client.list_results = [
            CRMListResult(
                success=False,
                error="API key expired or invalid",
                error_type=ErrorType.AUTHENTICATION,
                status_code=401,
            )
        ]

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)

        assert outcome.status == SyncRunStatus.FAILED
        assert outcome.error_type == ErrorType.AUTHENTICATION
        assert outcome.error == "API key expired or invalid"
        assert client.list_calls == 1

    async def test_rate_limit_recovered(self, repository, settings):
        client = FakeCRMClient([make_person(1)])
        client.list_results = [
            CRMListResult(
                success=False,
                error="Rate limit exceeded",
                error_type=ErrorType.RATE_LIMIT,
                status_code=429,
                retry_after=0,
            )
        ]

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.FULL, settings=settings)

        assert outcome.status == SyncRunStatus.SUCCESS
        assert outcome.results["created"] == 1
        assert client.list_calls == 2

    async def test_run_timeout(self, repository, settings):
        settings.sync_timeout_ms = 50

        outcome = await SyncOrchestrator(SlowClient(), repository, settings).run(ACCOUNT, SyncType.FULL)

        assert outcome.status == SyncRunStatus.FAILED
        assert outcome.error == "Sync timed out after 50ms"
        assert outcome.error_type == ErrorType.NETWORK

        state = await repository.get_sync_state(ACCOUNT)
        assert state.sync_status == AccountSyncStatus.FAILED
        assert state.last_sync_timestamp is None


@pytest.mark.asyncio
class TestSyncScopes:
    """INCREMENTAL and SEARCH narrowing."""

    async def test_incremental_uses_last_sync_timestamp(self, repository, settings):
        await repository.update_sync_state(
            ACCOUNT, AccountSyncStatus.COMPLETED, datetime(2026, 1, 3, tzinfo=timezone.utc)
        )
        client = FakeCRMClient([
            make_person(1, update_time="2026-01-01 09:00:00"),
            make_person(2, update_time="2026-01-04 09:00:00"),
            make_person(3, update_time="2026-01-05 09:00:00"),
        ])

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.INCREMENTAL, settings=settings)

        assert outcome.results["total"] == 2
        assert await repository.find_contact_by_remote_id(ACCOUNT, 1) is None

    async def test_incremental_explicit_since(self, repository, settings):
        client = FakeCRMClient([
            make_person(1, update_time="2026-01-01 09:00:00"),
            make_person(2, update_time="2026-01-04 09:00:00"),
        ])

        outcome = await run_sync(
            client,
            repository,
            ACCOUNT,
            SyncType.INCREMENTAL,
            since_timestamp=datetime(2026, 1, 2, tzinfo=timezone.utc),
            settings=settings,
        )

        assert outcome.results["total"] == 1

    async def test_incremental_without_cursor_is_full(self, repository, settings):
        client = FakeCRMClient([make_person(1), make_person(2)])

        outcome = await run_sync(client, repository, ACCOUNT, SyncType.INCREMENTAL, settings=settings)

        assert outcome.results["total"] == 2

    async def test_search_narrows_to_record_ids(self, repository, settings):
        client = FakeCRMClient([make_person(1), make_person(2), make_person(3)])

        outcome = await run_sync(
            client, repository, ACCOUNT, SyncType.SEARCH, record_ids=["2", "3"], settings=settings
        )

        assert outcome.results["total"] == 2
        assert outcome.results["created"] == 2
        assert await repository.find_contact_by_remote_id(ACCOUNT, 1) is None
