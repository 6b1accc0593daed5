"""Unified notification feed for a viewer.

Combines unread file uploads (derived from the audit ledger), unread event
notices and unread chat mentions into one :class:`NotificationFeed`, either
for a single project or across every project the viewer belongs to.
Acknowledgements apply optimistically: an item being marked read disappears
from the viewer's feed at once and is reconciled on the next aggregation.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, select

from .config import completion_roster_size
from .db import as_utc, get_session_ctx, utcnow
from .errors import TransientStoreError
from .events import event_notification_row
from .chat import mention_row
from .ledger import LedgerRow, query_audit_actions
from .models import AuditAction, ChatMention, EventNotification, ProjectEvent
from .observability.metrics import AGGREGATION_DURATION, AGGREGATIONS
from .readstate import SubjectKey, completion_for, unread_uploads
from .realtime.feed import ChangeFeed, get_change_feed
from .roster import get_project, get_rosters, project_names, projects_for
from .schemas import ChatMentionNotice, EventNotice, FileStatusOut, FileUploadNotice, NotificationFeed


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager]

_FEED_ACTIONS = (
    AuditAction.UPLOAD.value,
    AuditAction.PREVIEW.value,
    AuditAction.DOWNLOAD.value,
    AuditAction.DELETE.value,
    AuditAction.FOLDER_DELETED.value,
)

_PENDING = "pending"
_CONFIRMED = "confirmed"


@dataclass(frozen=True)
class AckResult:
    changed: bool


@dataclass
class _Snapshot:
    project_ids: List[str]
    rows: List[LedgerRow]
    rosters: Dict[str, List[str]]
    events: List[Tuple[EventNotification, ProjectEvent]]
    mentions: List[ChatMention]
    names: Dict[str, str]


def upload_notice(row: LedgerRow) -> FileUploadNotice:
    return FileUploadNotice(
        project_id=row.project_id,
        folder=row.folder,
        file_name=row.subject_name or "",
        uploaded_by=row.actor,
        uploaded_at=row.acted_at,
    )


def event_notice(notice: EventNotification, event: Optional[ProjectEvent] = None) -> EventNotice:
    return EventNotice(
        id=notice.id,
        project_id=notice.project_id,
        event_id=notice.event_id,
        topic=notice.topic,
        created_by=notice.created_by,
        created_at=as_utc(notice.created_at),
        starts_at=as_utc(event.starts_at) if event is not None else None,
        read=bool(notice.read),
    )


def mention_notice(mention: ChatMention) -> ChatMentionNotice:
    return ChatMentionNotice(
        id=mention.id,
        project_id=mention.project_id,
        message_id=mention.message_id,
        mentioned_by=mention.mentioned_by,
        mentioned_user=mention.mentioned_user,
        message=mention.message,
        created_at=as_utc(mention.created_at),
        read=bool(mention.read),
    )


def counts_toward_unread(notice: EventNotice, now: datetime) -> bool:
    """Past events stay listed but no longer count as unread."""
    return notice.starts_at is None or notice.starts_at >= now


class NotificationService:
    def __init__(
        self,
        session_factory: SessionFactory = get_session_ctx,
        *,
        clock: Callable[[], datetime] = utcnow,
        roster_size: Optional[int] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._roster_size = roster_size
        self._feed = feed
        self._lock = threading.Lock()
        self._reads = 0
        # viewer -> {(kind, id): state}
        self._overlay: Dict[str, Dict[Tuple[str, str], str]] = defaultdict(dict)

    @property
    def roster_size(self) -> Optional[int]:
        if self._roster_size is not None:
            return self._roster_size
        return completion_roster_size()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed or get_change_feed()

    # -- reads ---------------------------------------------------------

    def _load(self, session: Session, viewer: str, project_id: Optional[str]) -> _Snapshot:
        if project_id:
            project = get_project(session, project_id)
            ids = [project_id]
            names = {project.id: project.name}
        else:
            ids = projects_for(session, viewer)
            names = project_names(session, ids)
        if not ids:
            return _Snapshot([], [], {}, [], [], {})

        rows = query_audit_actions(session, ids, actions=_FEED_ACTIONS)
        rosters = get_rosters(session, ids)
        events = session.exec(
            select(EventNotification, ProjectEvent)
            .join(ProjectEvent, EventNotification.event_id == ProjectEvent.id)
            .where(EventNotification.username == viewer)
            .where(EventNotification.project_id.in_(ids))
            .where(EventNotification.read == False)  # noqa: E712
            .where(ProjectEvent.is_deleted == False)  # noqa: E712
        ).all()
        mentions = session.exec(
            select(ChatMention)
            .where(ChatMention.mentioned_user == viewer)
            .where(ChatMention.project_id.in_(ids))
            .where(ChatMention.read == False)  # noqa: E712
        ).all()
        return _Snapshot(ids, rows, rosters, list(events), list(mentions), names)

    def _snapshot(self, viewer: str, project_id: Optional[str]) -> _Snapshot:
        with self._session_factory() as session:
            try:
                return self._load(session, viewer, project_id)
            except DBAPIError as exc:
                session.rollback()
                raise TransientStoreError("Notifications temporarily unavailable") from exc

    def _reconcile_overlay(self, viewer: str, present: Sequence[Tuple[str, str]]) -> Dict[Tuple[str, str], str]:
        """Drop confirmed acknowledgements the store now agrees with."""

        seen = set(present)
        with self._lock:
            overlay = self._overlay.get(viewer, {})
            for key in [k for k, state in overlay.items() if state == _CONFIRMED and k not in seen]:
                del overlay[key]
            if not overlay:
                self._overlay.pop(viewer, None)
            return dict(overlay)

    def _read(self, viewer: str, project_id: Optional[str]) -> Tuple[_Snapshot, Dict[Tuple[str, str], str]]:
        """Load a snapshot and the acknowledgements still hiding items in it.

        Confirmed acknowledgements only matter to reads that started before
        the write committed; once no read is in flight they are dropped.
        """

        with self._lock:
            self._reads += 1
        try:
            snapshot = self._snapshot(viewer, project_id)
            present = [("event", notice.event_id) for notice, _event in snapshot.events]
            present.extend(("mention", mention.id) for mention in snapshot.mentions)
            return snapshot, self._reconcile_overlay(viewer, present)
        finally:
            with self._lock:
                self._reads -= 1
                if not self._reads:
                    self._drop_confirmed()

    def _drop_confirmed(self) -> None:
        for viewer in list(self._overlay):
            overlay = self._overlay[viewer]
            for key in [k for k, state in overlay.items() if state == _CONFIRMED]:
                del overlay[key]
            if not overlay:
                del self._overlay[viewer]

    def aggregate(self, viewer: str, project_id: Optional[str] = None) -> NotificationFeed:
        """Return everything unread for ``viewer``.

        With ``project_id`` the feed covers that project only; otherwise it
        spans every project the viewer belongs to. Each item appears once.
        """

        started = time.perf_counter()
        snapshot, hidden = self._read(viewer, project_id)
        now = self._clock()

        uploads = tuple(upload_notice(row) for row in unread_uploads(snapshot.rows, viewer))
        events_by_key: Dict[Tuple, EventNotice] = {}
        for notice, event in snapshot.events:
            item = event_notice(notice, event)
            events_by_key.setdefault(item.key, item)
        mentions_by_key: Dict[Tuple, ChatMentionNotice] = {}
        for mention in snapshot.mentions:
            item = mention_notice(mention)
            mentions_by_key.setdefault(item.key, item)

        events = tuple(
            sorted(
                (item for item in events_by_key.values() if ("event", item.event_id) not in hidden),
                key=lambda item: (item.created_at, item.project_id, item.event_id),
                reverse=True,
            )
        )
        mentions = tuple(
            sorted(
                (item for item in mentions_by_key.values() if ("mention", item.id) not in hidden),
                key=lambda item: (item.created_at, item.project_id, item.id),
                reverse=True,
            )
        )
        breakdown = {
            "uploads": len(uploads),
            "events": sum(1 for item in events if counts_toward_unread(item, now)),
            "mentions": len(mentions),
        }
        result = NotificationFeed(
            viewer=viewer,
            project_id=project_id,
            uploads=uploads,
            events=events,
            mentions=mentions,
            unread_count=sum(breakdown.values()),
            unread_breakdown=breakdown,
            project_names=snapshot.names,
        )
        AGGREGATIONS.labels("project" if project_id else "global").inc()
        AGGREGATION_DURATION.observe(time.perf_counter() - started)
        logger.debug(
            "Aggregated %d unread for %s", result.unread_count, viewer,
            extra={"event": "notifications_aggregated", "project_id": project_id},
        )
        return result

    def unread_count(self, viewer: str, project_id: Optional[str] = None) -> int:
        return self.aggregate(viewer, project_id).unread_count

    def file_status(self, project_id: str, folder: Optional[str] = None) -> List[FileStatusOut]:
        """Per-file completion for a project, optionally narrowed to one folder."""

        with self._session_factory() as session:
            try:
                get_project(session, project_id)
                rows = query_audit_actions(session, project_id, actions=_FEED_ACTIONS)
                rosters = get_rosters(session, [project_id])
            except DBAPIError as exc:
                session.rollback()
                raise TransientStoreError("Audit ledger unavailable") from exc

        completion = completion_for(rows, rosters, roster_size=self.roster_size)
        keys: List[SubjectKey] = sorted(
            (key for key in completion if folder is None or key.folder == folder),
            key=lambda key: (key.folder or "", key.name),
        )
        return [
            FileStatusOut(
                project_id=key.project_id,
                folder=key.folder,
                file_name=key.name,
                uploaded_by=completion[key].uploader,
                viewed_by=sorted(completion[key].viewers),
                downloaded_by=sorted(completion[key].downloaders),
                threshold=completion[key].threshold,
                fully_viewed=completion[key].fully_viewed,
                fully_downloaded=completion[key].fully_downloaded,
            )
            for key in keys
        ]

    # -- acknowledgements ----------------------------------------------

    def _mark(self, viewer: str, key: Tuple[str, str], state: Optional[str]) -> None:
        with self._lock:
            if state == _CONFIRMED and not self._reads:
                state = None
            if state is None:
                overlay = self._overlay.get(viewer)
                if overlay is not None:
                    overlay.pop(key, None)
                    if not overlay:
                        self._overlay.pop(viewer, None)
            else:
                self._overlay[viewer][key] = state

    def pending_acknowledgements(self, viewer: str) -> Dict[Tuple[str, str], str]:
        with self._lock:
            return dict(self._overlay.get(viewer, {}))

    def mark_event_read(self, event_id: str, viewer: str, project_id: str) -> AckResult:
        """Mark the viewer's notice for ``event_id`` read.

        Idempotent: repeating it, or acknowledging a notice that does not
        exist, succeeds with ``changed=False``.
        """

        key = ("event", event_id)
        self._mark(viewer, key, _PENDING)
        try:
            with self._session_factory() as session:
                notice = session.exec(
                    select(EventNotification)
                    .where(EventNotification.event_id == event_id)
                    .where(EventNotification.username == viewer)
                    .where(EventNotification.project_id == project_id)
                ).first()
                if notice is None:
                    self._mark(viewer, key, None)
                    return AckResult(changed=False)
                result = session.exec(
                    update(EventNotification)
                    .where(EventNotification.id == notice.id)
                    .where(EventNotification.read == False)  # noqa: E712
                    .values(read=True, read_at=self._clock())
                )
                session.commit()
                changed = bool(result.rowcount)
        except DBAPIError as exc:
            self._mark(viewer, key, None)
            raise TransientStoreError("Could not acknowledge event") from exc

        self._mark(viewer, key, _CONFIRMED)
        if changed:
            row = event_notification_row(notice)
            row["read"] = True
            self.feed.publish("event_notifications", "update", row)
        return AckResult(changed=changed)

    def mark_mention_read(self, mention_id: str, viewer: Optional[str] = None) -> AckResult:
        """Mark a mention read. ``viewer``, when given, must be the mentioned user."""

        key = ("mention", mention_id)
        if viewer is not None:
            self._mark(viewer, key, _PENDING)
        try:
            with self._session_factory() as session:
                mention = session.get(ChatMention, mention_id)
                if mention is None or (viewer is not None and mention.mentioned_user != viewer):
                    if viewer is not None:
                        self._mark(viewer, key, None)
                    return AckResult(changed=False)
                owner = mention.mentioned_user
                result = session.exec(
                    update(ChatMention)
                    .where(ChatMention.id == mention_id)
                    .where(ChatMention.read == False)  # noqa: E712
                    .values(read=True, read_at=self._clock())
                )
                session.commit()
                changed = bool(result.rowcount)
        except DBAPIError as exc:
            if viewer is not None:
                self._mark(viewer, key, None)
            raise TransientStoreError("Could not acknowledge mention") from exc

        self._mark(owner, key, _CONFIRMED)
        if changed:
            row = mention_row(mention)
            row["read"] = True
            self.feed.publish("chat_mentions", "update", row)
        return AckResult(changed=changed)


_default_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """FastAPI dependency returning the process-wide service."""
    global _default_service
    if _default_service is None:
        _default_service = NotificationService()
    return _default_service


def reset_notification_service() -> NotificationService:
    global _default_service
    _default_service = NotificationService()
    return _default_service
