"""
Pipedrive Resource Configuration.

Defines the API resources the sync engine talks to and how local
activity types map onto Pipedrive activity types.
"""

from typing import Any, Dict

# Resource name -> endpoint settings
RESOURCES: Dict[str, Dict[str, Any]] = {
    "persons": {
        "endpoint": "/persons",
        "search_endpoint": "/persons/search",
        "record_type": "Person",
    },
    "organizations": {
        "endpoint": "/organizations",
        "search_endpoint": "/organizations/search",
        "record_type": "Organization",
    },
    "activities": {
        "endpoint": "/activities",
        "record_type": "Activity",
    },
    "deals": {
        "endpoint": "/deals",
        "record_type": "Deal",
    },
}

# Page size used when listing; Pipedrive caps it at 500
LIST_PAGE_SIZE = 100

# Local activity type -> Pipedrive activity type key
ACTIVITY_TYPE_MAP: Dict[str, str] = {
    "CALL": "call",
    "EMAIL": "email",
    "MEETING": "meeting",
    "LINKEDIN": "task",
    "REFERRAL": "task",
    "CONFERENCE": "meeting",
}
DEFAULT_ACTIVITY_TYPE = "task"

# Local activity type -> label used when an activity has no subject
ACTIVITY_LABELS: Dict[str, str] = {
    "CALL": "📞 Phone Call",
    "EMAIL": "📧 Email Communication",
    "MEETING": "🤝 Meeting",
    "LINKEDIN": "💼 LinkedIn Outreach",
    "REFERRAL": "🔗 Referral",
    "CONFERENCE": "🎤 Conference",
}
DEFAULT_ACTIVITY_SUBJECT = "Activity"

CAMPAIGN_PREFIX_TEMPLATE = "[CMPGN-{shortcode}] "

DEFAULT_PERSON_NAME = "Unknown Contact"
DEFAULT_ORGANIZATION_NAME = "Unknown Organization"


def get_resource_config(resource: str) -> Dict[str, Any]:
    """
    Gets the configuration for a resource.

    Raises:
        ValueError: If the resource is not supported
    """
    if resource not in RESOURCES:
        raise ValueError(f"Unknown Pipedrive resource: {resource}")
    return RESOURCES[resource]


def map_activity_type(activity_type: str | None) -> str:
    if not activity_type:
        return DEFAULT_ACTIVITY_TYPE
    return ACTIVITY_TYPE_MAP.get(activity_type.upper(), DEFAULT_ACTIVITY_TYPE)
