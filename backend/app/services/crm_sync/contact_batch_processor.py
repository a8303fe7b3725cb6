"""
Contact Batch Processor for CRM Sync.

Applies one batch of remote persons to local contacts, one record at a
time. Progress is kept on a mutable BatchProgress owned by the caller,
so the counts of a batch cancelled by its timeout are still known.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.integrations.pipedrive.processors import RemotePerson, parse_remote_person
from app.integrations.pipedrive.schema import DEFAULT_PERSON_NAME
from app.models.crm import Contact, UpdateSyncStatus

from .error_classifier import ErrorType, classify_exception
from .error_tracker import ErrorTracker
from .organization_resolver import OrganizationResolution

logger = logging.getLogger(__name__)


class SyncAbortedError(Exception):
    """Raised when a record-level database failure makes the rest of the run untrustworthy."""
    pass


@dataclass
class BatchProgress:
    """Counters for one batch, updated after every record."""
    batch_number: int
    size: int
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def all_failed(self) -> bool:
        return self.size > 0 and self.failed >= self.size


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ContactBatchProcessor:
    """
    Upserts remote persons into local contacts.

    Matching order: remote person id, then email, then normalized name
    (unlinked contacts only). A contact whose last_remote_update already
    equals the person's update time is left alone unless force is set.
    """

    def __init__(self, repository, error_tracker: ErrorTracker, force: bool = False):
        """
        Args:
            repository: SyncRepository (or compatible)
            error_tracker: Tracker of the current run
            force: Rewrite contacts even when unchanged
        """
        self.repository = repository
        self.error_tracker = error_tracker
        self.force = force

    async def process_batch(
        self,
        account_id: str,
        records: List[Dict[str, Any]],
        organizations: OrganizationResolution,
        progress: BatchProgress,
    ) -> BatchProgress:
        """
        Process a batch sequentially.

        Args:
            account_id: Account being synced
            records: Raw Pipedrive person dicts
            organizations: Organizations resolved for the run
            progress: Counters to update in place

        Returns:
            The same BatchProgress

        Raises:
            SyncAbortedError: On a database failure
        """
        logger.debug(f"Processing batch {progress.batch_number} with {len(records)} persons...")

        for record in records:
            record_id = str(record.get("id", "?"))

            try:
                outcome = await self._sync_person(account_id, record, organizations)

            except SQLAlchemyError as e:
                raise SyncAbortedError(f"Database error while syncing person {record_id}: {e}") from e

            except Exception as e:
                classified = classify_exception(e)
                if classified.type == ErrorType.DATABASE:
                    raise SyncAbortedError(f"Database error while syncing person {record_id}: {e}") from e

                progress.processed += 1
                progress.failed += 1
                self.error_tracker.track_record_error(
                    record_id=record_id,
                    record_type="Person",
                    error=str(e) or e.__class__.__name__,
                    error_type=classified.type,
                    batch_number=progress.batch_number,
                )
                continue

            progress.processed += 1
            if outcome == "created":
                progress.created += 1
            elif outcome == "updated":
                progress.updated += 1
            else:
                progress.unchanged += 1

        logger.info(
            f"  ✅ Batch {progress.batch_number}: {progress.processed}/{progress.size} processed "
            f"({progress.created} created, {progress.updated} updated, {progress.failed} failed)"
        )
        return progress

    async def _sync_person(
        self,
        account_id: str,
        record: Dict[str, Any],
        organizations: OrganizationResolution,
    ) -> str:
        person = parse_remote_person(record)
        contact = await self._match_contact(account_id, person)
        organization_id = organizations.lookup(person)

        fields = {
            "name": person.name or DEFAULT_PERSON_NAME,
            "email": person.email,
            "phone": person.phone,
            "job_title": person.job_title,
            "organisation": person.org_name,
            "organization_id": organization_id,
            "remote_person_id": person.remote_id,
            "remote_org_id": person.org_remote_id,
            "last_remote_update": person.update_time or datetime.now(timezone.utc),
            "update_sync_status": UpdateSyncStatus.SYNCED,
        }

        if contact is None:
            await self.repository.create_contact(account_id, **fields)
            return "created"

        if not self.force and self._is_unchanged(contact, person):
            return "unchanged"

        await self.repository.update_contact(contact, **fields)
        return "updated"

    async def _match_contact(self, account_id: str, person: RemotePerson) -> Optional[Contact]:
        contact = await self.repository.find_contact_by_remote_id(account_id, person.remote_id)
        if contact is None and person.email:
            contact = await self.repository.find_contact_by_email(account_id, person.email)
            if contact is not None and contact.remote_person_id not in (None, person.remote_id):
                contact = None
        if contact is None and person.name:
            contact = await self.repository.find_contact_by_name(account_id, person.name)
        return contact

    @staticmethod
    def _is_unchanged(contact: Contact, person: RemotePerson) -> bool:
        if contact.remote_person_id != person.remote_id or person.update_time is None:
            return False
        return _as_utc(contact.last_remote_update) == _as_utc(person.update_time)
