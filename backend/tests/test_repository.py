"""
Tests for the sync repository and configuration validation.
"""

from datetime import datetime, timezone

import pytest

from app.core.config import Settings, clear_settings_cache, get_settings, validate_crm_settings
from app.models.crm import UpdateSyncStatus
from app.models.sync import AccountSyncStatus, SyncRunStatus, SyncType
from app.services.sync_repository import normalize_name


class TestNormalizeName:
    def test_normalize(self):
        assert normalize_name("  Acme   Corp ") == "acme corp"
        assert normalize_name(None) == ""


@pytest.mark.asyncio
class TestSyncRepository:
    """Tests for SyncRepository against SQLite."""

    async def test_sync_run_lifecycle(self, repository):
        run = await repository.create_sync_run("acct-1", SyncType.FULL)

        assert run.status == SyncRunStatus.PENDING
        assert run.records_processed == 0

        await repository.update_sync_run(run, status=SyncRunStatus.SUCCESS, records_processed=5, end_time=datetime.now(timezone.utc))

        latest = await repository.get_latest_sync_run("acct-1")
        success = await repository.get_last_successful_run("acct-1")
        assert latest.id == run.id
        assert success.records_processed == 5
        assert await repository.get_last_successful_run("acct-2") is None

    async def test_sync_state_created_on_first_use(self, repository):
        assert await repository.get_sync_state("acct-1") is None

        await repository.update_sync_state("acct-1", AccountSyncStatus.IN_PROGRESS, None)
        state = await repository.update_sync_state(
            "acct-1", AccountSyncStatus.COMPLETED, datetime(2026, 1, 5, tzinfo=timezone.utc)
        )

        assert state.sync_status == AccountSyncStatus.COMPLETED
        assert state.last_sync_timestamp is not None

    async def test_contact_lookups(self, repository):
        await repository.create_contact("acct-1", name="Jane Doe", email="Jane@Example.org", remote_person_id=5)
        await repository.create_contact("acct-1", name="John  Roe")

        assert (await repository.find_contact_by_remote_id("acct-1", 5)).name == "Jane Doe"
        assert (await repository.find_contact_by_email("acct-1", " jane@example.org ")).remote_person_id == 5
        assert await repository.find_contact_by_remote_id("acct-2", 5) is None
        # Linked contacts are never matched by name
        assert await repository.find_contact_by_name("acct-1", "jane doe") is None
        assert await repository.count_contacts("acct-1") == 2

    async def test_contact_name_matching_collapses_whitespace(self, repository):
        stored = await repository.create_contact("acct-1", name="  Jane   Doe ")

        assert (await repository.find_contact_by_name("acct-1", "jane doe")).id == stored.id
        assert stored.normalized_name == "jane doe"

        await repository.update_contact(stored, name="Jane  Q. Doe")

        assert await repository.find_contact_by_name("acct-1", "Jane Doe") is None
        assert (await repository.find_contact_by_name("acct-1", "jane q.   doe")).id == stored.id

    async def test_organization_name_matching(self, repository):
        organization = await repository.create_organization("acct-1", " Acme  Corp", remote_org_id=9)

        assert (await repository.find_organization_by_name("acct-1", "ACME CORP")).id == organization.id

        await repository.update_organization(organization, name="Acme Corporation")

        assert organization.normalized_name == "acme corporation"

    async def test_set_update_sync_status(self, repository):
        contact = await repository.create_contact("acct-1", name="Jane", remote_person_id=5)

        updated = await repository.set_update_sync_status("acct-1", "person", 5, UpdateSyncStatus.FAILED)
        missing = await repository.set_update_sync_status("acct-1", "organization", 99, UpdateSyncStatus.SYNCED)
        foreign = await repository.set_update_sync_status("acct-2", "person", 5, UpdateSyncStatus.SYNCED)

        await repository.session.refresh(contact)
        assert updated == 1
        assert missing == 0
        assert foreign == 0
        assert contact.update_sync_status == UpdateSyncStatus.FAILED


class TestValidateCrmSettings:
    """Tests for validate_crm_settings."""

    def test_defaults_valid(self):
        assert validate_crm_settings(Settings()) == []

    def test_invalid_values(self):
        settings = Settings(
            PIPEDRIVE_BASE_URL="not-a-url",
            PIPEDRIVE_TIMEOUT=500,
            PIPEDRIVE_MAX_RETRIES=-1,
            PIPEDRIVE_RETRY_DELAY=10,
            PIPEDRIVE_MAX_NAME_LENGTH=0,
            SYNC_BATCH_TIMEOUT_MS=400000,
        )

        errors = validate_crm_settings(settings)

        assert "Invalid base URL: not-a-url" in errors
        assert "Timeout must be at least 1000ms" in errors
        assert "Max retries must be non-negative" in errors
        assert "Retry delay must be at least 100ms" in errors
        assert "Max name length must be positive" in errors
        assert "batch_timeout_ms cannot exceed sync_timeout_ms" in errors

    def test_settings_cache(self, monkeypatch):
        clear_settings_cache()
        first = get_settings()
        monkeypatch.setenv("SYNC_BATCH_SIZE", "25")

        assert get_settings() is first

        clear_settings_cache()
        try:
            assert get_settings().sync_batch_size == 25
        finally:
            clear_settings_cache()
