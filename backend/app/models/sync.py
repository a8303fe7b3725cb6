"""
Sync bookkeeping models.

SyncRun records one invocation of the sync engine for one account and
doubles as the progress checkpoint polled by observers. UserSyncState
holds the per-account incremental cursor.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SyncType(str, enum.Enum):
    """Scope of a sync run."""

    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"
    SEARCH = "SEARCH"


class SyncRunStatus(str, enum.Enum):
    """Lifecycle of a sync run. SUCCESS and FAILED are terminal."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class AccountSyncStatus(str, enum.Enum):
    """Sync status of an account as a whole."""

    SYNCED = "SYNCED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncRun(Base):
    """
    One sync run for one account.

    Counters are cumulative and rewritten after every batch so that
    a run interrupted mid-way still shows how far it got.
    """

    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    account_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Account (user) the run belongs to",
    )

    sync_type: Mapped[SyncType] = mapped_column(
        Enum(SyncType, name="sync_type"),
        nullable=False,
    )

    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status"),
        nullable=False,
        default=SyncRunStatus.PENDING,
        index=True,
    )

    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Checkpoint counters
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Error message if the run failed",
    )

    __table_args__ = (
        Index("ix_sync_runs_account_start", "account_id", "start_time"),
    )

    def to_progress(self) -> dict:
        """Checkpoint view used by the progress endpoint."""
        return {
            "sync_run_id": str(self.id),
            "sync_type": self.sync_type.value,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "total_records": self.total_records,
            "records_processed": self.records_processed,
            "records_updated": self.records_updated,
            "records_created": self.records_created,
            "records_failed": self.records_failed,
            "error": self.error,
        }

    def __repr__(self) -> str:
        return f"<SyncRun(id={self.id}, type={self.sync_type.value}, status={self.status.value})>"


class UserSyncState(Base):
    """
    Per-account sync cursor.

    While sync_status is IN_PROGRESS, last_sync_timestamp is NULL, so a
    crashed run forces the next one to be a full resync.
    """

    __tablename__ = "user_sync_states"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    account_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    last_sync_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    sync_status: Mapped[AccountSyncStatus] = mapped_column(
        Enum(AccountSyncStatus, name="account_sync_status"),
        nullable=False,
        default=AccountSyncStatus.SYNCED,
    )

    def __repr__(self) -> str:
        return f"<UserSyncState(account_id='{self.account_id}', status={self.sync_status.value})>"
