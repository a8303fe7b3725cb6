"""
Local CRM records mirrored to Pipedrive.

Every record that can exist remotely carries a nullable remote id, the
time of its last successful remote sync and an update sync status.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class UpdateSyncStatus(str, enum.Enum):
    """Outcome of the last push of a record to the remote CRM."""

    SYNCED = "SYNCED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class ActivityType(str, enum.Enum):
    CALL = "CALL"
    EMAIL = "EMAIL"
    MEETING = "MEETING"
    LINKEDIN = "LINKEDIN"
    REFERRAL = "REFERRAL"
    CONFERENCE = "CONFERENCE"


class Organization(Base):
    """Local organization, matched by remote id or normalized name."""

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Lower-cased, whitespace-collapsed name used for matching",
    )
    address: Mapped[str | None] = mapped_column(String(512), nullable=True)

    remote_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_remote_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    update_sync_status: Mapped[UpdateSyncStatus] = mapped_column(
        Enum(UpdateSyncStatus, name="update_sync_status"),
        nullable=False,
        default=UpdateSyncStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("account_id", "remote_org_id", name="uq_organizations_account_remote"),
        Index("ix_organizations_account_normalized", "account_id", "normalized_name"),
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name='{self.name}', remote_org_id={self.remote_org_id})>"


class Contact(Base):
    """Local contact mirrored as a Pipedrive person."""

    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
        comment="Lower-cased, whitespace-collapsed name used for matching",
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organisation: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Free-text organization name as entered",
    )
    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)

    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    organization: Mapped[Organization | None] = relationship(lazy="selectin")

    remote_person_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    remote_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_remote_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    update_sync_status: Mapped[UpdateSyncStatus] = mapped_column(
        Enum(UpdateSyncStatus, name="update_sync_status"),
        nullable=False,
        default=UpdateSyncStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_contacts_account_normalized", "account_id", "normalized_name"),
    )

    def __repr__(self) -> str:
        return f"<Contact(id={self.id}, name='{self.name}', remote_person_id={self.remote_person_id})>"


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    shortcode: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        unique=True,
        comment="Marker used as [CMPGN-<shortcode>] in remote activity subjects",
    )

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, shortcode='{self.shortcode}')>"


class Activity(Base):
    """Local activity replicated to Pipedrive."""

    __tablename__ = "activities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    type: Mapped[ActivityType] = mapped_column(Enum(ActivityType, name="activity_type"), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact: Mapped[Contact] = relationship(lazy="selectin")

    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("campaigns.id", ondelete="SET NULL"),
        nullable=True,
    )
    campaign: Mapped[Campaign | None] = relationship(lazy="selectin")

    created_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Display name of the user who logged the activity",
    )

    remote_activity_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    replicated_to_remote: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remote_sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_remote_sync_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_remote_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    update_sync_status: Mapped[UpdateSyncStatus] = mapped_column(
        Enum(UpdateSyncStatus, name="update_sync_status"),
        nullable=False,
        default=UpdateSyncStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Activity(id={self.id}, type={self.type.value}, remote_activity_id={self.remote_activity_id})>"
