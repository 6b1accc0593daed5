from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, constr

from .models import AuditAction


class MemberEntry(BaseModel):
    username: str
    at: datetime


class AuditActionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: AuditAction
    folder: Optional[constr(strip_whitespace=True, min_length=1, max_length=255)] = None
    file_name: Optional[constr(strip_whitespace=True, min_length=1, max_length=1024)] = None
    at: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[constr(strip_whitespace=True, min_length=1, max_length=128)] = None


class RecordActionOut(BaseModel):
    status: str
    action: str
    record_id: Optional[str] = None
    recorded: bool


class AuditRecordOut(BaseModel):
    id: str
    project_id: str
    folder: Optional[str] = None
    subject_name: Optional[str] = None
    action: str
    actor: str
    acted_at: datetime
    members: List[MemberEntry] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditRecordsPage(BaseModel):
    items: List[AuditRecordOut]
    total: int
    page: int
    size: int
    has_next: bool = False
    total_pages: int = 1


class FileStatusOut(BaseModel):
    project_id: str
    folder: Optional[str] = None
    file_name: str
    uploaded_by: Optional[str] = None
    viewed_by: List[str] = Field(default_factory=list)
    downloaded_by: List[str] = Field(default_factory=list)
    threshold: int
    fully_viewed: bool
    fully_downloaded: bool


class ProjectCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=255)
    description: Optional[str] = None
    members: List[constr(strip_whitespace=True, min_length=1, max_length=255)] = Field(default_factory=list)


class ProjectOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_by: str
    created_at: datetime
    members: List[str] = Field(default_factory=list)


class MemberAdd(BaseModel):
    username: constr(strip_whitespace=True, min_length=1, max_length=255)


class RosterOut(BaseModel):
    project_id: str
    usernames: List[str]


class EventCreate(BaseModel):
    topic: constr(strip_whitespace=True, min_length=1, max_length=255)
    description: Optional[str] = None
    starts_at: Optional[datetime] = None


class EventOut(BaseModel):
    id: str
    project_id: str
    topic: str
    description: Optional[str] = None
    starts_at: Optional[datetime] = None
    created_by: str
    created_at: datetime
    is_deleted: bool = False
    notified: List[str] = Field(default_factory=list)


class ChatPost(BaseModel):
    message: constr(strip_whitespace=True, min_length=1, max_length=4000)
    client_key: Optional[constr(strip_whitespace=True, min_length=1, max_length=128)] = None


class ChatMessageOut(BaseModel):
    id: str
    project_id: str
    username: str
    message: str
    created_at: datetime
    client_key: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)


# Notification items. ``key`` is the identity used for de-duplication in any
# aggregated or live list.

class _Notice(BaseModel):
    model_config = ConfigDict(frozen=True)


class FileUploadNotice(_Notice):
    kind: Literal["upload"] = "upload"
    project_id: str
    folder: Optional[str] = None
    file_name: str
    uploaded_by: str
    uploaded_at: datetime
    read: bool = False

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.kind, self.project_id, self.file_name)

    @property
    def timestamp(self) -> datetime:
        return self.uploaded_at


class EventNotice(_Notice):
    kind: Literal["event"] = "event"
    id: str
    project_id: str
    event_id: str
    topic: str
    created_by: str
    created_at: datetime
    starts_at: Optional[datetime] = None
    read: bool = False

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.kind, self.project_id, self.event_id)

    @property
    def timestamp(self) -> datetime:
        return self.created_at


class ChatMentionNotice(_Notice):
    kind: Literal["mention"] = "mention"
    id: str
    project_id: str
    message_id: str
    mentioned_by: str
    mentioned_user: str
    message: str
    created_at: datetime
    read: bool = False

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.kind, self.project_id, self.id)

    @property
    def timestamp(self) -> datetime:
        return self.created_at


NotificationItem = Annotated[
    Union[FileUploadNotice, EventNotice, ChatMentionNotice],
    Field(discriminator="kind"),
]


class NotificationFeed(_Notice):
    viewer: str
    project_id: Optional[str] = None
    uploads: Tuple[FileUploadNotice, ...] = ()
    events: Tuple[EventNotice, ...] = ()
    mentions: Tuple[ChatMentionNotice, ...] = ()
    unread_count: int = 0
    unread_breakdown: Dict[str, int] = Field(default_factory=dict)
    project_names: Dict[str, str] = Field(default_factory=dict)

    def grouped_uploads(self) -> Dict[str, Dict[str, List[FileUploadNotice]]]:
        """Uploads grouped by project then folder, newest first within each."""

        grouped: Dict[str, Dict[str, List[FileUploadNotice]]] = {}
        for notice in self.uploads:
            grouped.setdefault(notice.project_id, {}).setdefault(notice.folder or "", []).append(notice)
        return grouped

    def keys(self) -> List[Tuple[str, str, str]]:
        return [item.key for item in (*self.mentions, *self.events, *self.uploads)]


class UnreadCountOut(BaseModel):
    viewer: str
    project_id: Optional[str] = None
    unread_count: int
    uploads: int = 0
    events: int = 0
    mentions: int = 0


class AckOut(BaseModel):
    changed: bool
    read: bool = True


class StatusResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
