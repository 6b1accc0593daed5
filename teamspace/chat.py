"""Project chat messages and the @mentions they raise."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .db import as_utc
from .errors import ConflictError
from .models import ChatMention, ChatMessage
from .realtime.feed import ChangeFeed, get_change_feed
from .roster import get_project, get_project_members
from .schemas import ChatMessageOut


logger = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"(?<![\w@])@([A-Za-z0-9_.\-]+)")


def message_row(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "project_id": message.project_id,
        "username": message.username,
        "message": message.message,
        "created_at": as_utc(message.created_at),
        "client_key": message.client_key,
    }


def mention_row(mention: ChatMention) -> Dict[str, Any]:
    return {
        "id": mention.id,
        "project_id": mention.project_id,
        "message_id": mention.message_id,
        "mentioned_by": mention.mentioned_by,
        "mentioned_user": mention.mentioned_user,
        "message": mention.message,
        "created_at": as_utc(mention.created_at),
        "read": mention.read,
    }


def extract_mentions(text: str, roster: Iterable[str], author: str) -> List[str]:
    """Return roster members mentioned in ``text``, in order of appearance."""

    members = set(roster)
    found: List[str] = []
    for match in _MENTION_RE.finditer(text or ""):
        name = match.group(1)
        if name not in members:
            # "@bob." at the end of a sentence
            name = name.rstrip(".-")
        if name in members and name != author and name not in found:
            found.append(name)
    return found


def _mentions_of(session: Session, message_id: str) -> List[ChatMention]:
    return list(
        session.exec(
            select(ChatMention)
            .where(ChatMention.message_id == message_id)
            .order_by(ChatMention.mentioned_user)
        ).all()
    )


def _by_client_key(session: Session, project_id: str, client_key: str) -> Optional[ChatMessage]:
    return session.exec(
        select(ChatMessage)
        .where(ChatMessage.project_id == project_id)
        .where(ChatMessage.client_key == client_key)
    ).first()


def post_message(
    session: Session,
    *,
    project_id: str,
    username: str,
    message: str,
    client_key: Optional[str] = None,
    feed: Optional[ChangeFeed] = None,
) -> Tuple[ChatMessage, List[ChatMention], bool]:
    """Store a chat message and its mentions.

    A ``client_key`` already stored for the project returns the first
    message instead of a second copy. The last element of the result tells
    whether anything was written.
    """

    text = (message or "").strip()
    if not text:
        raise ValueError("Message text is required")
    get_project(session, project_id)
    if client_key:
        existing = _by_client_key(session, project_id, client_key)
        if existing is not None:
            return existing, _mentions_of(session, existing.id), False

    record = ChatMessage(project_id=project_id, username=username, message=text, client_key=client_key)
    session.add(record)
    session.flush()
    mentions = [
        ChatMention(
            project_id=project_id,
            message_id=record.id,
            mentioned_by=username,
            mentioned_user=mentioned,
            message=text,
            created_at=record.created_at,
        )
        for mentioned in extract_mentions(text, get_project_members(session, project_id), username)
    ]
    session.add_all(mentions)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        existing = _by_client_key(session, project_id, client_key) if client_key else None
        if existing is None:
            raise ConflictError("Chat message could not be stored") from exc
        logger.info("Duplicate chat send collapsed project=%s key=%s", project_id, client_key)
        return existing, _mentions_of(session, existing.id), False

    target = feed or get_change_feed()
    target.publish("chat_messages", "insert", message_row(record))
    for mention in mentions:
        target.publish("chat_mentions", "insert", mention_row(mention))
    return record, mentions, True


def list_messages(session: Session, project_id: str, limit: int = 200) -> List[ChatMessage]:
    """Return the latest ``limit`` messages, oldest first."""

    rows = session.exec(
        select(ChatMessage)
        .where(ChatMessage.project_id == project_id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit)
    ).all()
    return list(reversed(rows))


def mentions_for(session: Session, message_ids: Iterable[str]) -> Dict[str, List[str]]:
    ids = sorted(set(message_ids))
    if not ids:
        return {}
    found: Dict[str, List[str]] = {}
    rows = session.exec(
        select(ChatMention)
        .where(ChatMention.message_id.in_(ids))
        .order_by(ChatMention.mentioned_user)
    ).all()
    for row in rows:
        found.setdefault(row.message_id, []).append(row.mentioned_user)
    return found


def message_out(message: ChatMessage, mentioned: Iterable[str] = ()) -> ChatMessageOut:
    return ChatMessageOut(
        id=message.id,
        project_id=message.project_id,
        username=message.username,
        message=message.message,
        created_at=as_utc(message.created_at),
        client_key=message.client_key,
        mentions=list(mentioned),
    )
