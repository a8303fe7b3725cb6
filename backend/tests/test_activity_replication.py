"""
Tests for activity replication.
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.core.interfaces.crm import CRMResult
from app.models.crm import Activity, ActivityType, Campaign, UpdateSyncStatus
from app.services.crm_sync import ActivityReplicationService

ACCOUNT = "acct-1"


async def create_activity(repository, remote_person_id=12, shortcode="ASC", subject="Follow-up call"):
    session = repository.session
    campaign = None
    if shortcode:
        campaign = Campaign(name="Adult Social Care", shortcode=shortcode)
        session.add(campaign)

    contact = await repository.create_contact(
        ACCOUNT,
        name="Jane Doe",
        remote_person_id=remote_person_id,
        remote_org_id=9,
    )
    activity = Activity(
        account_id=ACCOUNT,
        type=ActivityType.CALL,
        subject=subject,
        due_date=datetime(2026, 2, 3, 14, 30, tzinfo=timezone.utc),
        contact_id=contact.id,
        campaign_id=campaign.id if campaign else None,
        created_by="Test User",
    )
    session.add(activity)
    await session.commit()
    activity_id = activity.id

    # Reload through the repository with relationships eagerly loaded
    session.expunge_all()
    return activity_id


@pytest.mark.asyncio
class TestActivityReplication:
    """Tests for ActivityReplicationService."""

    async def test_replicates_with_campaign_prefix(self, repository, fake_client):
        activity_id = await create_activity(repository)
        service = ActivityReplicationService(fake_client, repository)

        replicated = await service.replicate_activity(activity_id)

        assert replicated is True
        sent = fake_client.created_activities[0]
        assert sent["campaign_shortcode"] == "ASC"
        assert sent["person_id"] == 12
        assert sent["org_id"] == 9

        activity = await repository.get_activity(activity_id)
        assert activity.replicated_to_remote is True
        assert activity.remote_activity_id == 3001
        assert activity.remote_sync_attempts == 1
        assert activity.update_sync_status == UpdateSyncStatus.SYNCED

    async def test_skips_unlinked_contact(self, repository, fake_client):
        activity_id = await create_activity(repository, remote_person_id=None)
        service = ActivityReplicationService(fake_client, repository)

        assert await service.replicate_activity(activity_id) is False
        assert fake_client.created_activities == []

    async def test_retries_then_fails(self, repository, fake_client):
        fake_client.update_results = [CRMResult(success=False, error="HTTP 500: Internal Server Error")] * 3
        activity_id = await create_activity(repository, shortcode=None)
        service = ActivityReplicationService(fake_client, repository, retry_base_delay=1.0)

        with patch("app.services.crm_sync.activity_replication.asyncio.sleep", new_callable=AsyncMock) as sleep:
            replicated = await service.replicate_activity(activity_id)

        assert replicated is False
        assert len(fake_client.created_activities) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

        activity = await repository.get_activity(activity_id)
        assert activity.replicated_to_remote is False
        assert activity.remote_sync_attempts == 3
        assert activity.last_remote_sync_attempt is not None
        assert activity.update_sync_status == UpdateSyncStatus.FAILED

    async def test_missing_activity(self, repository, fake_client):
        service = ActivityReplicationService(fake_client, repository)

        assert await service.replicate_activity(uuid.uuid4()) is False
