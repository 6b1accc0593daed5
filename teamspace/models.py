from enum import Enum
from typing import Optional, Dict
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import SQLModel, Field, Column
from datetime import datetime, timezone


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    UPLOAD = "upload"
    PREVIEW = "preview"
    DOWNLOAD = "download"
    DELETE = "delete"
    FOLDER_CREATED = "folder_created"
    FOLDER_DELETED = "folder_deleted"
    LINK_DELETED = "link_deleted"
    PROJECT_CREATED = "project_created"


# Actions whose observations accumulate into one record per subject.
MEMBERSHIP_ACTIONS = frozenset({AuditAction.PREVIEW.value, AuditAction.DOWNLOAD.value})

_MEMBERSHIP_ACTIONS_SQL = "action IN ('preview', 'download')"


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(default_factory=lambda: gen_id("prj"), primary_key=True)
    name: str = Field(sa_column=Column(String(length=255), nullable=False, index=True))
    description: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_by: str = Field(index=True)
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class ProjectMember(SQLModel, table=True):
    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "username", name="uq_project_members_project_user"),
    )

    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    username: str = Field(sa_column=Column(String(length=255), primary_key=True, index=True))
    added_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class AuditRecord(SQLModel, table=True):
    """One ledger row per (subject, action).

    ``preview`` and ``download`` rows are unique per subject and collect their
    observers in :class:`AuditMembership`; every other action is an immutable
    append-only entry.
    """

    __tablename__ = "audit_records"
    __table_args__ = (
        Index(
            "uq_audit_records_subject_action",
            "project_id",
            "folder",
            "subject_name",
            "action",
            unique=True,
            sqlite_where=text(_MEMBERSHIP_ACTIONS_SQL),
            postgresql_where=text(_MEMBERSHIP_ACTIONS_SQL),
        ),
        UniqueConstraint(
            "project_id",
            "idempotency_key",
            name="uq_audit_records_project_idempotency_key",
        ),
    )

    id: str = Field(default_factory=lambda: gen_id("aud"), primary_key=True)
    project_id: str = Field(index=True)
    folder: Optional[str] = Field(default=None, index=True)
    subject_name: Optional[str] = Field(default=None, index=True)
    action: str = Field(index=True)
    actor: str = Field(index=True)
    acted_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    details: Dict = Field(default_factory=dict, sa_column=Column(JSON))
    idempotency_key: Optional[str] = Field(default=None)


class AuditMembership(SQLModel, table=True):
    __tablename__ = "audit_memberships"
    __table_args__ = (
        UniqueConstraint("record_id", "username", name="uq_audit_memberships_record_user"),
    )

    id: str = Field(default_factory=lambda: gen_id("mbr"), primary_key=True)
    record_id: str = Field(
        sa_column=Column(
            ForeignKey("audit_records.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    username: str = Field(index=True)
    acted_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class ProjectEvent(SQLModel, table=True):
    __tablename__ = "project_events"

    id: str = Field(default_factory=lambda: gen_id("evt"), primary_key=True)
    project_id: str = Field(index=True)
    topic: str
    description: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    starts_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_by: str
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    is_deleted: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, index=True, default=False),
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class EventNotification(SQLModel, table=True):
    __tablename__ = "event_notifications"
    __table_args__ = (
        UniqueConstraint("event_id", "username", name="uq_event_notifications_event_user"),
    )

    id: str = Field(default_factory=lambda: gen_id("evn"), primary_key=True)
    project_id: str = Field(index=True)
    event_id: str = Field(
        sa_column=Column(
            ForeignKey("project_events.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    topic: str
    username: str = Field(index=True)
    created_by: str
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    read: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, index=True, default=False),
    )
    read_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("project_id", "client_key", name="uq_chat_messages_project_client_key"),
    )

    id: str = Field(default_factory=lambda: gen_id("msg"), primary_key=True)
    project_id: str = Field(index=True)
    username: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    client_key: Optional[str] = Field(default=None)


class ChatMention(SQLModel, table=True):
    __tablename__ = "chat_mentions"
    __table_args__ = (
        UniqueConstraint("message_id", "mentioned_user", name="uq_chat_mentions_message_user"),
    )

    id: str = Field(default_factory=lambda: gen_id("men"), primary_key=True)
    project_id: str = Field(index=True)
    message_id: str = Field(
        sa_column=Column(
            ForeignKey("chat_messages.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    mentioned_by: str
    mentioned_user: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    read: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, index=True, default=False),
    )
    read_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


__all__ = [
    "gen_id",
    "AuditAction",
    "MEMBERSHIP_ACTIONS",
    "Project",
    "ProjectMember",
    "AuditRecord",
    "AuditMembership",
    "ProjectEvent",
    "EventNotification",
    "ChatMessage",
    "ChatMention",
]
