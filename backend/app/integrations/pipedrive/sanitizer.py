"""
Payload Sanitizer for Pipedrive.

Turns local record data into request bodies Pipedrive accepts:
- strips executable markup and tags from free text
- truncates fields to the configured maximum lengths
- fills safe defaults (person name, activity subject)
- applies the campaign marker to activity subjects
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from app.core.config import Settings
from app.integrations.pipedrive.schema import (
    ACTIVITY_LABELS,
    CAMPAIGN_PREFIX_TEMPLATE,
    DEFAULT_ACTIVITY_SUBJECT,
    DEFAULT_ORGANIZATION_NAME,
    DEFAULT_PERSON_NAME,
    map_activity_type,
)

logger = logging.getLogger(__name__)

SCRIPT_TAG_PATTERN = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")

# Keys never forwarded from caller-supplied update data
DANGEROUS_KEYS = {
    "__proto__",
    "constructor",
    "prototype",
    "api_token",
}


def format_campaign_subject(subject: str, shortcode: Optional[str]) -> str:
    """
    Prefix a subject with the campaign marker.

    Example:
        >>> format_campaign_subject("Follow-up call", "ASC")
        '[CMPGN-ASC] Follow-up call'
        >>> format_campaign_subject("Follow-up call", None)
        'Follow-up call'
    """
    if not shortcode or not shortcode.strip():
        return subject
    return CAMPAIGN_PREFIX_TEMPLATE.format(shortcode=shortcode.strip()) + subject


def generate_activity_subject(
    activity_type: Optional[str],
    contact_name: Optional[str] = None,
    user_name: Optional[str] = None,
    campaign_name: Optional[str] = None,
) -> str:
    """
    Label for an activity logged without a subject.

    Example:
        >>> generate_activity_subject("EMAIL", "John Doe", "Test User", "Adult Social Care")
        '📧 Email Communication - John Doe by Test User (Adult Social Care)'
    """
    label = ACTIVITY_LABELS.get((activity_type or "").upper())
    if not label:
        return DEFAULT_ACTIVITY_SUBJECT

    subject = label
    if contact_name:
        subject += f" - {contact_name}"
    if user_name:
        subject += f" by {user_name}"
    if campaign_name:
        subject += f" ({campaign_name})"
    return subject


class PayloadSanitizer:
    """
    Builds sanitized Pipedrive payloads.

    Length limits and the sanitization switch come from Settings, so one
    instance belongs to one client.
    """

    def __init__(self, settings: Settings):
        self.enabled = settings.pipedrive_enable_data_sanitization
        self.max_name_length = settings.pipedrive_max_name_length
        self.max_email_length = settings.pipedrive_max_email_length
        self.max_phone_length = settings.pipedrive_max_phone_length
        self.max_org_name_length = settings.pipedrive_max_org_name_length
        self.max_subject_length = settings.pipedrive_max_subject_length
        self.max_note_length = settings.pipedrive_max_note_length

    def sanitize_string(self, value: Any, max_length: int) -> Optional[str]:
        """
        Strip markup, trim whitespace and truncate.

        Returns:
            Cleaned string, or None for None / empty input

        Example:
            >>> sanitizer.sanitize_string("<script>x()</script><b>Jane</b> ", 255)
            'Jane'
        """
        if value is None:
            return None

        text = str(value)
        if self.enabled:
            text = SCRIPT_TAG_PATTERN.sub("", text)
            text = HTML_TAG_PATTERN.sub("", text)
            text = text.strip()
            text = text[:max_length]

        return text or None

    def _sanitize_list(self, values: Any, max_length: int) -> List[str]:
        if values is None:
            return []
        if not isinstance(values, (list, tuple)):
            values = [values]

        cleaned = []
        for value in values:
            if isinstance(value, dict):
                value = value.get("value")
            text = self.sanitize_string(value, max_length)
            if text:
                cleaned.append(text)
        return cleaned

    def build_person_payload(self, person: Dict[str, Any]) -> Dict[str, Any]:
        """
        Person body: multi-valued email/phone as arrays, organization linked
        by remote id when known, otherwise by name.

        Example:
            >>> sanitizer.build_person_payload({"name": "Jane", "email": "jane@x.org", "org_id": 4})
            {"name": "Jane", "email": ["jane@x.org"], "phone": [], "org_id": 4}
        """
        payload: Dict[str, Any] = {
            "name": self.sanitize_string(person.get("name"), self.max_name_length) or DEFAULT_PERSON_NAME,
            "email": self._sanitize_list(person.get("email"), self.max_email_length),
            "phone": self._sanitize_list(person.get("phone"), self.max_phone_length),
        }

        if person.get("org_id"):
            payload["org_id"] = int(person["org_id"])
        else:
            org_name = self.sanitize_string(person.get("org_name"), self.max_org_name_length)
            if org_name:
                payload["org_name"] = org_name

        for key in ("owner_id", "visible_to", "label_ids"):
            if person.get(key) is not None:
                payload[key] = person[key]

        return payload

    def build_organization_payload(self, organization: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.sanitize_string(organization.get("name"), self.max_org_name_length)
            or DEFAULT_ORGANIZATION_NAME,
        }
        for key in ("address", "industry", "country"):
            value = self.sanitize_string(organization.get(key), self.max_org_name_length)
            if value:
                payload[key] = value
        if organization.get("visible_to") is not None:
            payload["visible_to"] = organization["visible_to"]
        return payload

    def build_activity_payload(self, activity: Dict[str, Any]) -> Dict[str, Any]:
        """
        Activity body.

        The subject defaults to a generated label, gets the campaign marker
        when the activity carries a campaign shortcode, and is truncated as
        a whole.

        Example:
            >>> sanitizer.build_activity_payload({"subject": "Follow-up call", "campaign_shortcode": "ASC"})
            {"subject": "[CMPGN-ASC] Follow-up call", "type": "task"}
        """
        subject = self.sanitize_string(activity.get("subject"), self.max_subject_length)
        if not subject:
            subject = generate_activity_subject(
                activity.get("type"),
                activity.get("contact_name"),
                activity.get("user_name"),
                activity.get("campaign_name"),
            )

        subject = format_campaign_subject(subject, activity.get("campaign_shortcode"))
        if self.enabled:
            subject = subject[: self.max_subject_length]

        payload: Dict[str, Any] = {
            "subject": subject,
            "type": map_activity_type(activity.get("type")),
        }

        due = activity.get("due_date")
        if isinstance(due, datetime):
            payload["due_date"] = due.strftime("%Y-%m-%d")
            payload["due_time"] = due.strftime("%H:%M")
        elif isinstance(due, date):
            payload["due_date"] = due.strftime("%Y-%m-%d")
        elif isinstance(due, str) and due:
            payload["due_date"] = due[:10]

        note = self.sanitize_string(activity.get("note"), self.max_note_length)
        if note:
            payload["note"] = note

        for key in ("person_id", "org_id", "user_id", "deal_id"):
            if activity.get(key):
                payload[key] = int(activity[key])
        if activity.get("done") is not None:
            payload["done"] = 1 if activity["done"] else 0

        return payload

    def sanitize_update_data(self, data: Dict[str, Any] | None) -> Dict[str, Any]:
        """
        Clean caller-supplied update fields.

        Drops None values and blocked keys, sanitizes strings (notes get the
        note limit, everything else the name limit), keeps other values as-is.
        """
        if not data:
            return {}

        cleaned: Dict[str, Any] = {}
        for key, value in data.items():
            if key in DANGEROUS_KEYS:
                logger.warning(f"Blocked update key: '{key}'")
                continue
            if value is None:
                continue
            if isinstance(value, str):
                limit = self.max_note_length if key == "note" else self.max_name_length
                if key == "subject":
                    limit = self.max_subject_length
                value = self.sanitize_string(value, limit)
                if value is None:
                    continue
            elif key in ("email", "phone") and isinstance(value, list):
                limit = self.max_email_length if key == "email" else self.max_phone_length
                value = self._sanitize_list(value, limit)
            cleaned[key] = value
        return cleaned
