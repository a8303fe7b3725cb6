"""
Activity Replication.

Pushes locally logged activities to Pipedrive. Campaign activities carry
the [CMPGN-<shortcode>] subject prefix so they can be found remotely.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from app.core.interfaces.crm import CRMClient, CRMRequestError, CRMResult
from app.integrations.pipedrive.processors import activity_to_data
from app.models.crm import UpdateSyncStatus

logger = logging.getLogger(__name__)


class ActivityReplicationService:
    """Creates remote activities for local ones, retrying failed attempts with backoff."""

    def __init__(
        self,
        client: CRMClient,
        repository,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self.client = client
        self.repository = repository
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay

    async def replicate_activity(self, activity_id: uuid.UUID) -> bool:
        """
        Replicate one activity.

        Args:
            activity_id: Local activity id

        Returns:
            True if the activity exists remotely afterwards
        """
        activity = await self.repository.get_activity(activity_id)
        if activity is None:
            logger.warning(f"⚠️ Activity {activity_id} not found")
            return False

        if activity.replicated_to_remote and activity.remote_activity_id is not None:
            logger.debug(f"Activity {activity_id} already replicated as {activity.remote_activity_id}")
            return True

        if activity.contact is None or activity.contact.remote_person_id is None:
            logger.info(f"ℹ️ Skipping activity {activity_id}: contact not linked to a Pipedrive person")
            return False

        data = activity_to_data(activity)

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.client.create_activity(data)
            except CRMRequestError as e:
                result = CRMResult(success=False, error=str(e), error_type=e.error_type)

            now = datetime.now(timezone.utc)
            attempts = (activity.remote_sync_attempts or 0) + 1

            if result.success and result.remote_id is not None:
                await self.repository.update_activity(
                    activity,
                    remote_activity_id=int(result.remote_id),
                    replicated_to_remote=True,
                    remote_sync_attempts=attempts,
                    last_remote_sync_attempt=now,
                    last_remote_update=now,
                    update_sync_status=UpdateSyncStatus.SYNCED,
                )
                logger.info(f"✅ Activity {activity_id} replicated as Pipedrive activity {result.remote_id}")
                return True

            await self.repository.update_activity(
                activity,
                remote_sync_attempts=attempts,
                last_remote_sync_attempt=now,
            )
            logger.warning(
                f"⚠️ Replicating activity {activity_id} failed (attempt {attempt}/{self.max_attempts}): {result.error}"
            )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))

        await self.repository.update_activity(activity, update_sync_status=UpdateSyncStatus.FAILED)
        logger.error(f"❌ Activity {activity_id} could not be replicated after {self.max_attempts} attempts")
        return False
