"""
ORM models for the local CRM store and sync bookkeeping.
"""

from .crm import Activity, ActivityType, Campaign, Contact, Organization, UpdateSyncStatus
from .sync import AccountSyncStatus, SyncRun, SyncRunStatus, SyncType, UserSyncState

__all__ = [
    "Activity",
    "ActivityType",
    "Campaign",
    "Contact",
    "Organization",
    "UpdateSyncStatus",
    "AccountSyncStatus",
    "SyncRun",
    "SyncRunStatus",
    "SyncType",
    "UserSyncState",
]
