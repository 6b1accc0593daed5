"""Client-side live views over the change feed.

A view holds the locally rendered state for one viewer and one scope. Push
events are merged as they arrive and a periodic reconciliation pass replaces
the state with an authoritative snapshot. Every item is keyed by identity so
repeated or out-of-order deliveries converge on the same list.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple
from uuid import uuid4

from ..config import optimistic_tolerance_seconds, reconcile_interval_seconds
from ..db import as_utc, get_session_ctx, utcnow
from ..errors import LedgerError, StaleScopeError, TransientStoreError
from ..models import AuditAction, MEMBERSHIP_ACTIONS
from ..notifications import AckResult, NotificationService, counts_toward_unread
from ..observability.logging import bound_scope
from ..observability.metrics import record_reconcile
from ..schemas import ChatMentionNotice, ChatMessageOut, EventNotice, FileUploadNotice, NotificationFeed
from .feed import ChangeEvent, ChangeFeed, Subscription


logger = logging.getLogger(__name__)

Key = Tuple[str, str, str]

_NOTIFICATION_TABLES = (
    "audit_records",
    "audit_memberships",
    "event_notifications",
    "project_events",
    "chat_mentions",
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes from the in-process feed and ISO strings from SSE."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def _field(source: Any, name: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(name, default)
    return getattr(source, name, default)


class NotificationClient(Protocol):
    async def fetch_feed(self, viewer: str, project_id: Optional[str] = None) -> NotificationFeed: ...

    async def mark_event_read(self, event_id: str, viewer: str, project_id: str) -> AckResult: ...

    async def mark_mention_read(self, mention_id: str, viewer: str) -> AckResult: ...


class ChatClient(Protocol):
    async def list_messages(self, project_id: str) -> List[ChatMessageOut]: ...

    async def post_message(
        self, project_id: str, username: str, message: str, client_key: str
    ) -> ChatMessageOut: ...


class LocalNotificationClient:
    """Runs a :class:`NotificationService` off the event loop."""

    def __init__(self, service: NotificationService) -> None:
        self._service = service

    async def fetch_feed(self, viewer: str, project_id: Optional[str] = None) -> NotificationFeed:
        return await asyncio.to_thread(self._service.aggregate, viewer, project_id)

    async def mark_event_read(self, event_id: str, viewer: str, project_id: str) -> AckResult:
        return await asyncio.to_thread(self._service.mark_event_read, event_id, viewer, project_id)

    async def mark_mention_read(self, mention_id: str, viewer: str) -> AckResult:
        return await asyncio.to_thread(self._service.mark_mention_read, mention_id, viewer)


class LocalChatClient:
    def __init__(self, session_factory=get_session_ctx, feed: Optional[ChangeFeed] = None) -> None:
        self._session_factory = session_factory
        self._feed = feed

    def _list(self, project_id: str) -> List[ChatMessageOut]:
        from ..chat import list_messages, mentions_for, message_out

        with self._session_factory() as session:
            rows = list_messages(session, project_id)
            mentioned = mentions_for(session, [row.id for row in rows])
            return [message_out(row, mentioned.get(row.id, ())) for row in rows]

    def _post(self, project_id: str, username: str, message: str, client_key: str) -> ChatMessageOut:
        from ..chat import message_out, post_message

        with self._session_factory() as session:
            record, mentions, _ = post_message(
                session,
                project_id=project_id,
                username=username,
                message=message,
                client_key=client_key,
                feed=self._feed,
            )
            return message_out(record, [m.mentioned_user for m in mentions])

    async def list_messages(self, project_id: str) -> List[ChatMessageOut]:
        return await asyncio.to_thread(self._list, project_id)

    async def post_message(self, project_id: str, username: str, message: str, client_key: str) -> ChatMessageOut:
        return await asyncio.to_thread(self._post, project_id, username, message, client_key)


class _LiveView:
    """Scope token, subscriptions and pump tasks shared by the live views."""

    tables: Tuple[str, ...] = ()

    def __init__(self, viewer: str, feed: ChangeFeed, *, tolerance: Optional[float] = None) -> None:
        self.viewer = viewer
        self._feed = feed
        self._tolerance = optimistic_tolerance_seconds() if tolerance is None else tolerance
        self._token = 0
        self._pass = 0
        self._scope: Optional[str] = None
        self._opened = False
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []
        self._buffers: List[List[ChangeEvent]] = []

    @property
    def scope(self) -> Optional[str]:
        return self._scope

    @property
    def is_open(self) -> bool:
        return self._opened

    def _filters(self, table: str) -> Dict[str, Any]:
        return {"project_id": self._scope}

    def _reset_state(self) -> None:
        raise NotImplementedError

    def _merge(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    async def _reconcile(self, token: int, number: int) -> None:
        raise NotImplementedError

    def _check(self, token: int, number: Optional[int] = None) -> None:
        if token != self._token:
            raise StaleScopeError(f"Scope changed while applying token {token}")
        if number is not None and number != self._pass:
            raise StaleScopeError(f"Reconciliation pass {number} superseded by {self._pass}")

    async def _teardown(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        tasks, self._tasks = self._tasks, []
        for subscription in subscriptions:
            subscription.close()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._buffers = []

    async def _open_scope(self, scope: Optional[str]) -> None:
        await self._teardown()
        self._token += 1
        self._scope = scope
        self._reset_state()
        token = self._token
        for table in self.tables:
            subscription = self._feed.subscribe(table, **self._filters(table))
            self._subscriptions.append(subscription)
            self._tasks.append(asyncio.create_task(self._pump(subscription, token)))
        self._opened = True
        await self.refresh()

    async def close(self) -> None:
        """Drop subscriptions and local state; in-flight results become stale."""

        await self._teardown()
        self._token += 1
        self._opened = False
        self._scope = None
        self._reset_state()

    async def _pump(self, subscription: Subscription, token: int) -> None:
        async for event in subscription:
            try:
                self._apply(event, token)
            except StaleScopeError:
                logger.debug("Dropping %s event for a closed scope", event.table)
                return

    def _apply(self, event: ChangeEvent, token: int) -> None:
        self._check(token)
        for buffer in self._buffers:
            buffer.append(event)
        self._merge(event)

    def apply(self, event: ChangeEvent) -> None:
        """Merge one push event into the current scope."""
        self._apply(event, self._token)

    async def refresh(self) -> bool:
        """Run one reconciliation pass.

        Returns ``False`` when the result was discarded because the scope
        changed or a newer pass started meanwhile.
        """

        self._pass += 1
        number, token = self._pass, self._token
        buffer: List[ChangeEvent] = []
        self._buffers.append(buffer)
        try:
            with bound_scope(self._scope or "*"):
                await self._reconcile(token, number)
                for event in buffer:
                    self._merge(event)
        except StaleScopeError:
            record_reconcile("stale")
            logger.debug("Discarded stale reconciliation pass %d", number)
            return False
        except TransientStoreError:
            record_reconcile("failed")
            raise
        finally:
            if buffer in self._buffers:
                self._buffers.remove(buffer)
        record_reconcile("applied")
        return True

    async def run_periodic(self, interval: Optional[float] = None) -> None:
        """Reconcile every ``interval`` seconds until cancelled."""

        period = reconcile_interval_seconds() if interval is None else interval
        while True:
            await asyncio.sleep(period)
            if not self._opened:
                continue
            try:
                await self.refresh()
            except TransientStoreError as exc:
                logger.warning("Periodic reconciliation failed: %s", exc)


class LiveNotificationView(_LiveView):
    """Live unread notifications for one viewer, scoped to a project or global."""

    tables = _NOTIFICATION_TABLES

    def __init__(
        self,
        viewer: str,
        client: NotificationClient,
        feed: ChangeFeed,
        *,
        tolerance: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._clock = clock
        self._items: Dict[Key, Any] = {}
        self._project_ids: frozenset = frozenset()
        self._names: Dict[str, str] = {}
        # acknowledgements whose write is still in flight
        self._acks: set = set()
        # confirmed acknowledgement -> pass counter when it was confirmed
        self._confirmed: Dict[Key, int] = {}
        # Facts learned since the last reconciliation pass. A late or repeated
        # delivery cannot bring an item back until the next snapshot says so.
        self._closed: set = set()
        self._seen: set = set()
        self._deleted: Dict[Tuple[str, Optional[str]], datetime] = {}
        self._folders_deleted: Dict[Tuple[str, Optional[str]], datetime] = {}
        super().__init__(viewer, feed, tolerance=tolerance)

    async def open(self, project_id: Optional[str] = None) -> None:
        await self._open_scope(project_id)

    def _filters(self, table: str) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"project_id": self._scope}
        if table == "event_notifications":
            filters["username"] = self.viewer
        elif table == "chat_mentions":
            filters["mentioned_user"] = self.viewer
        return filters

    def _reset_state(self) -> None:
        self._items = {}
        self._project_ids = frozenset([self._scope]) if self._scope else frozenset()
        self._names = {}
        self._confirmed = {}
        self._forget_facts()

    def _forget_facts(self) -> None:
        self._closed = set(self._confirmed)
        self._seen = set()
        self._deleted = {}
        self._folders_deleted = {}

    # -- state ---------------------------------------------------------

    def _hidden_upload(self, item: FileUploadNotice) -> bool:
        if (item.project_id, item.file_name) in self._seen:
            return True
        deleted_at = self._deleted.get((item.project_id, item.file_name))
        if deleted_at is not None and item.uploaded_at <= deleted_at:
            return True
        folder_deleted_at = self._folders_deleted.get((item.project_id, item.folder))
        return folder_deleted_at is not None and item.uploaded_at <= folder_deleted_at

    def _close(self, key: Key) -> None:
        self._closed.add(key)
        self._items.pop(key, None)

    def _put(self, item: Any) -> None:
        if item.key in self._closed or item.key in self._acks:
            return
        if isinstance(item, FileUploadNotice) and self._hidden_upload(item):
            return
        current = self._items.get(item.key)
        if current is None or item.timestamp >= current.timestamp:
            self._items[item.key] = item

    def _drop(self, predicate: Callable[[Any], bool]) -> None:
        for key in [key for key, item in self._items.items() if predicate(item)]:
            del self._items[key]

    def _of(self, kind: type) -> Tuple[Any, ...]:
        items = [item for item in self._items.values() if isinstance(item, kind)]
        return tuple(sorted(items, key=lambda item: (item.timestamp, item.key), reverse=True))

    @property
    def uploads(self) -> Tuple[FileUploadNotice, ...]:
        return self._of(FileUploadNotice)

    @property
    def events(self) -> Tuple[EventNotice, ...]:
        return self._of(EventNotice)

    @property
    def mentions(self) -> Tuple[ChatMentionNotice, ...]:
        return self._of(ChatMentionNotice)

    @property
    def unread_count(self) -> int:
        now = self._clock()
        events = sum(1 for item in self.events if counts_toward_unread(item, now))
        return len(self.uploads) + events + len(self.mentions)

    def snapshot(self) -> NotificationFeed:
        return NotificationFeed(
            viewer=self.viewer,
            project_id=self._scope,
            uploads=self.uploads,
            events=self.events,
            mentions=self.mentions,
            unread_count=self.unread_count,
            project_names=dict(self._names),
        )

    # -- merging -------------------------------------------------------

    def _merge(self, event: ChangeEvent) -> None:
        row = event.row
        project_id = row.get("project_id")
        if project_id not in self._project_ids:
            return
        handler = getattr(self, f"_on_{event.table}", None)
        if handler is not None:
            handler(event.op, row)

    def _on_audit_records(self, op: str, row: Mapping[str, Any]) -> None:
        if op != "insert":
            return
        action = row.get("action")
        project_id, name = row.get("project_id"), row.get("subject_name")
        if action == AuditAction.UPLOAD.value and name and row.get("actor") != self.viewer:
            self._put(
                FileUploadNotice(
                    project_id=project_id,
                    folder=row.get("folder"),
                    file_name=name,
                    uploaded_by=row.get("actor"),
                    uploaded_at=parse_timestamp(row.get("acted_at")),
                )
            )
        elif action == AuditAction.DELETE.value and name:
            when = parse_timestamp(row.get("acted_at"))
            previous = self._deleted.get((project_id, name))
            if previous is None or when > previous:
                self._deleted[(project_id, name)] = when
            self._drop(
                lambda item: isinstance(item, FileUploadNotice)
                and item.project_id == project_id
                and item.file_name == name
                and item.uploaded_at <= when
            )
        elif action == AuditAction.FOLDER_DELETED.value:
            folder = row.get("folder")
            when = parse_timestamp(row.get("acted_at"))
            previous = self._folders_deleted.get((project_id, folder))
            if previous is None or when > previous:
                self._folders_deleted[(project_id, folder)] = when
            self._drop(
                lambda item: isinstance(item, FileUploadNotice)
                and item.project_id == project_id
                and item.folder == folder
                and item.uploaded_at <= when
            )

    def _on_audit_memberships(self, op: str, row: Mapping[str, Any]) -> None:
        if op != "insert" or row.get("username") != self.viewer:
            return
        if row.get("action") not in MEMBERSHIP_ACTIONS:
            return
        self._seen.add((row.get("project_id"), row.get("subject_name")))
        self._items.pop(("upload", row.get("project_id"), row.get("subject_name")), None)

    def _on_event_notifications(self, op: str, row: Mapping[str, Any]) -> None:
        if row.get("username") != self.viewer:
            return
        key = ("event", row.get("project_id"), row.get("event_id"))
        if row.get("read"):
            self._close(key)
            return
        self._put(
            EventNotice(
                id=row.get("id"),
                project_id=row.get("project_id"),
                event_id=row.get("event_id"),
                topic=row.get("topic"),
                created_by=row.get("created_by"),
                created_at=parse_timestamp(row.get("created_at")),
                starts_at=parse_timestamp(row.get("starts_at")),
            )
        )

    def _on_project_events(self, op: str, row: Mapping[str, Any]) -> None:
        if row.get("is_deleted"):
            self._close(("event", row.get("project_id"), row.get("id")))

    def _on_chat_mentions(self, op: str, row: Mapping[str, Any]) -> None:
        if row.get("mentioned_user") != self.viewer:
            return
        key = ("mention", row.get("project_id"), row.get("id"))
        if row.get("read"):
            self._close(key)
            return
        self._put(
            ChatMentionNotice(
                id=row.get("id"),
                project_id=row.get("project_id"),
                message_id=row.get("message_id"),
                mentioned_by=row.get("mentioned_by"),
                mentioned_user=row.get("mentioned_user"),
                message=row.get("message") or "",
                created_at=parse_timestamp(row.get("created_at")),
            )
        )

    async def _reconcile(self, token: int, number: int) -> None:
        result = await self._client.fetch_feed(self.viewer, self._scope)
        self._check(token, number)
        self._items = {}
        # acknowledgements confirmed before this pass began are in the snapshot
        self._confirmed = {key: mark for key, mark in self._confirmed.items() if mark >= number}
        self._forget_facts()
        if self._scope:
            self._project_ids = frozenset([self._scope])
        else:
            self._project_ids = frozenset(result.project_names)
        self._names = dict(result.project_names)
        for item in (*result.uploads, *result.events, *result.mentions):
            self._put(item)

    # -- acknowledgements ----------------------------------------------

    def _find(self, kind: str, identity: str) -> Optional[Any]:
        for key, item in self._items.items():
            if key[0] == kind and key[2] == identity:
                return item
        return None

    async def _acknowledge(self, key: Key, call) -> AckResult:
        removed = self._items.pop(key, None)
        self._acks.add(key)
        try:
            result = await call()
        except LedgerError:
            self._acks.discard(key)
            if removed is not None and key not in self._items and key not in self._closed:
                self._items[key] = removed
            raise
        self._acks.discard(key)
        self._confirmed[key] = self._pass
        self._close(key)
        return result

    async def acknowledge_event(self, event_id: str, project_id: Optional[str] = None) -> AckResult:
        """Hide the event at once and mark it read; restored if the write fails."""

        item = self._find("event", event_id)
        project_id = project_id or (item.project_id if item is not None else self._scope)
        if not project_id:
            raise ValueError("project_id is required to acknowledge an event outside a project scope")
        return await self._acknowledge(
            ("event", project_id, event_id),
            lambda: self._client.mark_event_read(event_id, self.viewer, project_id),
        )

    async def acknowledge_mention(self, mention_id: str) -> AckResult:
        item = self._find("mention", mention_id)
        project_id = item.project_id if item is not None else (self._scope or "")
        return await self._acknowledge(
            ("mention", project_id, mention_id),
            lambda: self._client.mark_mention_read(mention_id, self.viewer),
        )


@dataclass(frozen=True)
class ChatEntry:
    username: str
    message: str
    created_at: datetime
    id: Optional[str] = None
    client_key: Optional[str] = None
    pending: bool = False

    @property
    def key(self) -> str:
        return self.id or f"pending:{self.client_key}"


def _entry(source: Any) -> ChatEntry:
    return ChatEntry(
        id=_field(source, "id"),
        username=_field(source, "username"),
        message=_field(source, "message") or "",
        created_at=parse_timestamp(_field(source, "created_at")),
        client_key=_field(source, "client_key"),
    )


class LiveChatView(_LiveView):
    """Live message list for one project chat with optimistic sends.

    A sent message shows at once as a placeholder carrying a client-generated
    key. Whichever arrives first, the push echo or the server response,
    replaces the placeholder in place; the other is then a duplicate id and
    is ignored.
    """

    tables = ("chat_messages",)

    def __init__(
        self,
        viewer: str,
        client: ChatClient,
        feed: ChangeFeed,
        *,
        tolerance: Optional[float] = None,
    ) -> None:
        self._client = client
        self._entries: List[ChatEntry] = []
        self._placed: Dict[str, float] = {}
        super().__init__(viewer, feed, tolerance=tolerance)

    async def open(self, project_id: str) -> None:
        if not project_id:
            raise ValueError("project_id is required")
        await self._open_scope(project_id)

    def _reset_state(self) -> None:
        self._entries = []
        self._placed = {}

    @property
    def messages(self) -> Tuple[ChatEntry, ...]:
        return tuple(self._entries)

    def _absorb(self, entry: ChatEntry) -> None:
        if entry.id and any(current.id == entry.id for current in self._entries):
            if entry.client_key:
                # a resend of a stored message leaves its placeholder behind
                self._entries = [
                    current for current in self._entries
                    if not (current.pending and current.client_key == entry.client_key)
                ]
                self._placed.pop(entry.client_key, None)
            return
        if entry.client_key:
            for index, current in enumerate(self._entries):
                if current.pending and current.client_key == entry.client_key:
                    self._entries[index] = entry
                    self._placed.pop(entry.client_key, None)
                    return
        self._entries.append(entry)

    def _merge(self, event: ChangeEvent) -> None:
        if event.op == "insert" and event.row.get("project_id") == self._scope:
            self._absorb(_entry(event.row))

    def _expired(self, client_key: Optional[str]) -> bool:
        placed = self._placed.get(client_key or "")
        return placed is None or time.monotonic() - placed > self._tolerance

    async def _reconcile(self, token: int, number: int) -> None:
        rows = await self._client.list_messages(self._scope)
        self._check(token, number)
        pending = [
            entry for entry in self._entries
            if entry.pending and not self._expired(entry.client_key)
        ]
        for entry in self._entries:
            if entry.pending and self._expired(entry.client_key):
                self._placed.pop(entry.client_key or "", None)
        self._entries = []
        for row in rows:
            self._absorb(_entry(row))
        confirmed = {entry.client_key for entry in self._entries if entry.client_key}
        for entry in pending:
            if entry.client_key in confirmed:
                self._placed.pop(entry.client_key, None)
            else:
                self._entries.append(entry)

    async def send(self, text: str, *, client_key: Optional[str] = None) -> ChatEntry:
        """Post ``text`` optimistically and return the confirmed entry."""

        if not self._scope:
            raise RuntimeError("Chat view is not open")
        key = client_key or uuid4().hex
        scope, token = self._scope, self._token
        placeholder = ChatEntry(
            username=self.viewer,
            message=text,
            created_at=utcnow(),
            client_key=key,
            pending=True,
        )
        self._entries.append(placeholder)
        self._placed[key] = time.monotonic()
        try:
            stored = await self._client.post_message(scope, self.viewer, text, key)
        except LedgerError:
            if token == self._token:
                self._entries = [entry for entry in self._entries if entry is not placeholder]
                self._placed.pop(key, None)
            raise
        confirmed = _entry(stored)
        if token == self._token:
            self._absorb(confirmed)
        return replace(confirmed, pending=False)
