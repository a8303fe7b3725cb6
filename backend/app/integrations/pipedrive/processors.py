"""
Data Processing Logic for Pipedrive Records.

Parses raw Pipedrive API records into typed values the sync engine
works with, and turns local ORM rows into the plain dicts the payload
sanitizer accepts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RemotePerson:
    """A Pipedrive person reduced to the fields the sync engine uses."""
    remote_id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    job_title: Optional[str] = None
    org_remote_id: Optional[int] = None
    org_name: Optional[str] = None
    org_address: Optional[str] = None
    update_time: Optional[datetime] = None


@dataclass
class RemoteOrganization:
    remote_id: Optional[int]
    name: str
    address: Optional[str] = None
    update_time: Optional[datetime] = None


def parse_remote_timestamp(value: Any) -> Optional[datetime]:
    """
    Parses Pipedrive timestamps ("2026-01-05 10:12:00", UTC) and ISO strings.

    Returns:
        Timezone-aware datetime, or None if missing / unparseable
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable Pipedrive timestamp: {value!r}")
        return None

    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def get_primary_value(values: Any) -> Optional[str]:
    """
    Picks the primary entry of a multi-valued field.

    Pipedrive returns email/phone as [{"value": ..., "primary": bool}],
    but older payloads use plain strings.

    Example:
        >>> get_primary_value([{"value": "a@x.org", "primary": False}, {"value": "b@x.org", "primary": True}])
        'b@x.org'
    """
    if not values:
        return None
    if isinstance(values, str):
        return values or None
    if not isinstance(values, list):
        return None

    entries = [v for v in values if isinstance(v, dict) and v.get("value")]
    for entry in entries:
        if entry.get("primary"):
            return str(entry["value"])
    if entries:
        return str(entries[0]["value"])

    plain = [v for v in values if isinstance(v, str) and v]
    return plain[0] if plain else None


def parse_remote_person(record: Dict[str, Any]) -> RemotePerson:
    """
    Parses a raw person record.

    Raises:
        ValueError: If the record has no usable id
    """
    remote_id = record.get("id")
    if remote_id is None:
        raise ValueError("Pipedrive person record without id")

    org = record.get("org_id")
    org_remote_id: Optional[int] = None
    org_name = record.get("org_name")
    org_address = None
    if isinstance(org, dict):
        org_remote_id = org.get("value")
        org_name = org.get("name") or org_name
        org_address = org.get("address")
    elif org is not None:
        org_remote_id = int(org)

    return RemotePerson(
        remote_id=int(remote_id),
        name=(record.get("name") or "").strip(),
        email=get_primary_value(record.get("email")),
        phone=get_primary_value(record.get("phone")),
        job_title=record.get("job_title"),
        org_remote_id=int(org_remote_id) if org_remote_id is not None else None,
        org_name=org_name,
        org_address=org_address,
        update_time=parse_remote_timestamp(record.get("update_time")),
    )


def collect_referenced_organizations(persons: List[RemotePerson]) -> List[RemoteOrganization]:
    """
    Distinct organizations referenced by a set of persons, in first-seen order.

    Persons carrying only an org name (no remote id) are keyed by that name.
    """
    seen: Dict[Any, RemoteOrganization] = {}
    for person in persons:
        if person.org_remote_id is not None:
            key: Any = person.org_remote_id
        elif person.org_name:
            key = person.org_name.strip().lower()
        else:
            continue

        if key not in seen:
            seen[key] = RemoteOrganization(
                remote_id=person.org_remote_id,
                name=person.org_name or "",
                address=person.org_address,
            )
    return list(seen.values())


def contact_to_person_data(contact) -> Dict[str, Any]:
    """Local Contact -> input for PayloadSanitizer.build_person_payload."""
    org_remote_id = contact.remote_org_id
    if org_remote_id is None and contact.organization is not None:
        org_remote_id = contact.organization.remote_org_id

    return {
        "name": contact.name,
        "email": [contact.email] if contact.email else [],
        "phone": [contact.phone] if contact.phone else [],
        "org_id": org_remote_id,
        "org_name": contact.organisation,
    }


def activity_to_data(activity) -> Dict[str, Any]:
    """Local Activity (with contact and campaign loaded) -> input for build_activity_payload."""
    contact = activity.contact
    campaign = activity.campaign

    org_remote_id = None
    if contact is not None:
        org_remote_id = contact.remote_org_id
        if org_remote_id is None and contact.organization is not None:
            org_remote_id = contact.organization.remote_org_id

    return {
        "subject": activity.subject,
        "type": activity.type.value if activity.type else None,
        "note": activity.note,
        "due_date": activity.due_date,
        "person_id": contact.remote_person_id if contact is not None else None,
        "org_id": org_remote_id,
        "contact_name": contact.name if contact is not None else None,
        "user_name": activity.created_by,
        "campaign_name": campaign.name if campaign is not None else None,
        "campaign_shortcode": campaign.shortcode if campaign is not None else None,
    }
