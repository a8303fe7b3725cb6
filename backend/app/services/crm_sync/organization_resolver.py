"""
Organization Resolver for CRM Sync.

Resolves every distinct organization referenced by a run's persons once,
before any person is processed, so person-to-organization linkage is
always resolvable.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.integrations.pipedrive.processors import (
    RemoteOrganization,
    RemotePerson,
    collect_referenced_organizations,
)
from app.models.crm import Organization, UpdateSyncStatus
from app.services.sync_repository import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class OrganizationResolution:
    """Result of organization resolution for one run."""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    by_remote_id: Dict[int, uuid.UUID] = field(default_factory=dict)
    by_name: Dict[str, uuid.UUID] = field(default_factory=dict)

    def lookup(self, person: RemotePerson) -> Optional[uuid.UUID]:
        """Local organization id for a person, by remote org id first, then by name."""
        if person.org_remote_id is not None and person.org_remote_id in self.by_remote_id:
            return self.by_remote_id[person.org_remote_id]
        if person.org_name:
            return self.by_name.get(normalize_name(person.org_name))
        return None

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
        }


class OrganizationResolver:
    """
    Creates or updates local Organization rows for remote organizations.

    Matching: remote id first, then normalized name. A name match without
    a remote id gets linked to the remote organization.
    """

    def __init__(self, repository):
        self.repository = repository

    async def resolve(self, account_id: str, persons: List[RemotePerson]) -> OrganizationResolution:
        """
        Resolve all organizations referenced by persons.

        Database errors propagate; anything else counts the organization
        as failed and resolution continues.

        Args:
            account_id: Account being synced
            persons: Persons of the run

        Returns:
            OrganizationResolution with lookup tables and counts
        """
        organizations = collect_referenced_organizations(persons)
        resolution = OrganizationResolution()

        if not organizations:
            return resolution

        logger.info(f"🏢 Resolving {len(organizations)} organizations")

        for remote_org in organizations:
            try:
                organization = await self._resolve_one(account_id, remote_org, resolution)

            except SQLAlchemyError:
                raise

            except Exception as e:
                logger.error(f"  ❌ Failed to resolve organization '{remote_org.name}': {e}", exc_info=True)
                resolution.failed += 1
                continue

            if organization.remote_org_id is not None:
                resolution.by_remote_id[organization.remote_org_id] = organization.id
            resolution.by_name[normalize_name(remote_org.name or organization.name)] = organization.id

        logger.info(
            f"  ✅ Organizations: {resolution.created} created, {resolution.updated} updated, "
            f"{resolution.unchanged} unchanged, {resolution.failed} failed"
        )
        return resolution

    async def _resolve_one(
        self,
        account_id: str,
        remote_org: RemoteOrganization,
        resolution: OrganizationResolution,
    ) -> Organization:
        organization = None
        if remote_org.remote_id is not None:
            organization = await self.repository.find_organization_by_remote_id(account_id, remote_org.remote_id)
        if organization is None and remote_org.name:
            organization = await self.repository.find_organization_by_name(account_id, remote_org.name)

        now = datetime.now(timezone.utc)

        if organization is None:
            if not remote_org.name:
                raise ValueError(f"Organization {remote_org.remote_id} has no name")
            resolution.created += 1
            return await self.repository.create_organization(
                account_id,
                remote_org.name,
                remote_org_id=remote_org.remote_id,
                address=remote_org.address,
                last_remote_update=now,
                update_sync_status=UpdateSyncStatus.SYNCED,
            )

        changes = {}
        if remote_org.remote_id is not None and organization.remote_org_id != remote_org.remote_id:
            changes["remote_org_id"] = remote_org.remote_id
        if remote_org.name and remote_org.name != organization.name:
            changes["name"] = remote_org.name
        if remote_org.address and remote_org.address != organization.address:
            changes["address"] = remote_org.address

        if not changes:
            resolution.unchanged += 1
            return organization

        resolution.updated += 1
        return await self.repository.update_organization(
            organization,
            last_remote_update=now,
            update_sync_status=UpdateSyncStatus.SYNCED,
            **changes,
        )
