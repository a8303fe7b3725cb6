"""
Sync Repository.

Persistence operations used by the sync engine. Every write touches a
single row and is committed on its own, so a crash mid-batch leaves
already-written rows consistent.
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.crm import Activity, Contact, Organization, UpdateSyncStatus
from app.models.sync import AccountSyncStatus, SyncRun, SyncRunStatus, SyncType, UserSyncState

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

# Record types whose local rows carry a remote id and sync status
REMOTE_ID_COLUMNS = {
    "activity": (Activity, Activity.remote_activity_id),
    "person": (Contact, Contact.remote_person_id),
    "organization": (Organization, Organization.remote_org_id),
}


def normalize_name(name: Optional[str]) -> str:
    """
    Matching key for names: lower-cased, trimmed, inner whitespace collapsed.

    Example:
        >>> normalize_name("  Acme   Corp ")
        'acme corp'
    """
    if not name:
        return ""
    return _WHITESPACE.sub(" ", name).strip().lower()


class SyncRepository:
    """
    SQLAlchemy-backed persistence for one session.

    Failed commits are rolled back before the error propagates, so the
    session stays usable for recording the failure afterwards.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def _save(self, instance: Any, **fields) -> Any:
        for key, value in fields.items():
            setattr(instance, key, value)
        self.session.add(instance)
        await self._commit()
        return instance

    # =========================================================================
    # SyncRun
    # =========================================================================

    async def create_sync_run(self, account_id: str, sync_type: SyncType) -> SyncRun:
        run = SyncRun(
            account_id=account_id,
            sync_type=sync_type,
            status=SyncRunStatus.PENDING,
            start_time=datetime.now().astimezone(),
        )
        return await self._save(run)

    async def update_sync_run(self, run: SyncRun, **fields) -> SyncRun:
        return await self._save(run, **fields)

    async def reset_after_failure(self, run: SyncRun) -> SyncRun:
        """
        Discards uncommitted work (a failed run, or a timed-out batch) and
        reloads the run row.

        Every other instance in the session is expired as well; callers
        keep ids, not ORM objects, across this call.
        """
        await self.session.rollback()
        await self.session.refresh(run)
        return run

    async def get_sync_run(self, sync_run_id: uuid.UUID) -> Optional[SyncRun]:
        return await self.session.get(SyncRun, sync_run_id)

    async def get_latest_sync_run(self, account_id: str) -> Optional[SyncRun]:
        result = await self.session.execute(
            select(SyncRun)
            .where(SyncRun.account_id == account_id)
            .order_by(SyncRun.start_time.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_last_successful_run(self, account_id: str) -> Optional[SyncRun]:
        result = await self.session.execute(
            select(SyncRun)
            .where(SyncRun.account_id == account_id, SyncRun.status == SyncRunStatus.SUCCESS)
            .order_by(SyncRun.end_time.desc())
            .limit(1)
        )
        return result.scalars().first()

    # =========================================================================
    # UserSyncState
    # =========================================================================

    async def get_sync_state(self, account_id: str) -> Optional[UserSyncState]:
        result = await self.session.execute(
            select(UserSyncState).where(UserSyncState.account_id == account_id)
        )
        return result.scalars().first()

    async def update_sync_state(
        self,
        account_id: str,
        sync_status: AccountSyncStatus,
        last_sync_timestamp: Optional[datetime],
    ) -> UserSyncState:
        """Sets status and cursor together, creating the row on first use."""
        state = await self.get_sync_state(account_id)
        if state is None:
            state = UserSyncState(account_id=account_id)
        return await self._save(
            state,
            sync_status=sync_status,
            last_sync_timestamp=last_sync_timestamp,
        )

    # =========================================================================
    # Contacts
    # =========================================================================

    async def find_contact_by_remote_id(self, account_id: str, remote_person_id: int) -> Optional[Contact]:
        result = await self.session.execute(
            select(Contact).where(
                Contact.account_id == account_id,
                Contact.remote_person_id == remote_person_id,
            )
        )
        return result.scalars().first()

    async def find_contact_by_email(self, account_id: str, email: str) -> Optional[Contact]:
        result = await self.session.execute(
            select(Contact).where(
                Contact.account_id == account_id,
                func.lower(Contact.email) == email.strip().lower(),
            )
        )
        return result.scalars().first()

    async def find_contact_by_name(self, account_id: str, name: str) -> Optional[Contact]:
        """Matches unlinked contacts only; a linked contact belongs to another person."""
        result = await self.session.execute(
            select(Contact).where(
                Contact.account_id == account_id,
                Contact.remote_person_id.is_(None),
                Contact.normalized_name == normalize_name(name),
            )
        )
        return result.scalars().first()

    async def create_contact(self, account_id: str, **fields) -> Contact:
        fields["normalized_name"] = normalize_name(fields.get("name"))
        return await self._save(Contact(account_id=account_id), **fields)

    async def update_contact(self, contact: Contact, **fields) -> Contact:
        if "name" in fields:
            fields["normalized_name"] = normalize_name(fields["name"])
        return await self._save(contact, **fields)

    async def count_contacts(self, account_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Contact).where(Contact.account_id == account_id)
        )
        return result.scalar_one()

    # =========================================================================
    # Organizations
    # =========================================================================

    async def find_organization_by_remote_id(self, account_id: str, remote_org_id: int) -> Optional[Organization]:
        result = await self.session.execute(
            select(Organization).where(
                Organization.account_id == account_id,
                Organization.remote_org_id == remote_org_id,
            )
        )
        return result.scalars().first()

    async def find_organization_by_name(self, account_id: str, name: str) -> Optional[Organization]:
        result = await self.session.execute(
            select(Organization).where(
                Organization.account_id == account_id,
                Organization.normalized_name == normalize_name(name),
            )
        )
        return result.scalars().first()

    async def create_organization(self, account_id: str, name: str, **fields) -> Organization:
        organization = Organization(
            account_id=account_id,
            name=name,
            normalized_name=normalize_name(name),
        )
        return await self._save(organization, **fields)

    async def update_organization(self, organization: Organization, **fields) -> Organization:
        if "name" in fields:
            fields["normalized_name"] = normalize_name(fields["name"])
        return await self._save(organization, **fields)

    # =========================================================================
    # Activities
    # =========================================================================

    async def get_activity(self, activity_id: uuid.UUID) -> Optional[Activity]:
        """Loads an activity with its contact (and organization) and campaign."""
        return await self.session.get(Activity, activity_id)

    async def update_activity(self, activity: Activity, **fields) -> Activity:
        return await self._save(activity, **fields)

    # =========================================================================
    # Update sync status
    # =========================================================================

    async def set_update_sync_status(
        self,
        account_id: str,
        record_type: str,
        remote_id: int,
        status: UpdateSyncStatus,
        last_remote_update: Optional[datetime] = None,
    ) -> int:
        """
        Writes the update sync status of the account's local row linked to a
        remote record. Remote ids are only unique within one account.

        Args:
            account_id: Account owning the local row
            record_type: "activity", "person" or "organization"
            remote_id: Remote record id
            status: New status
            last_remote_update: Stamped only when given

        Returns:
            Number of rows updated (0 if no local row is linked)
        """
        model, remote_column = REMOTE_ID_COLUMNS[record_type]
        values: dict = {"update_sync_status": status}
        if last_remote_update is not None:
            values["last_remote_update"] = last_remote_update

        result = await self.session.execute(
            update(model)
            .where(model.account_id == account_id, remote_column == remote_id)
            .values(**values)
        )
        await self._commit()
        return result.rowcount
