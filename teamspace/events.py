"""Scheduled project events and their per-member notices."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlmodel import Session

from .db import as_utc, utcnow
from .errors import NotFoundError
from .models import EventNotification, ProjectEvent
from .realtime.feed import ChangeFeed, get_change_feed
from .roster import get_project, get_project_members


logger = logging.getLogger(__name__)


def event_row(event: ProjectEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "project_id": event.project_id,
        "topic": event.topic,
        "starts_at": as_utc(event.starts_at),
        "created_by": event.created_by,
        "is_deleted": event.is_deleted,
    }


def event_notification_row(notice: EventNotification, starts_at: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": notice.id,
        "project_id": notice.project_id,
        "event_id": notice.event_id,
        "topic": notice.topic,
        "username": notice.username,
        "created_by": notice.created_by,
        "created_at": as_utc(notice.created_at),
        "starts_at": as_utc(starts_at),
        "read": notice.read,
    }


def create_event(
    session: Session,
    *,
    project_id: str,
    topic: str,
    created_by: str,
    starts_at: Optional[datetime] = None,
    description: Optional[str] = None,
    recipients: Optional[Iterable[str]] = None,
    feed: Optional[ChangeFeed] = None,
) -> Tuple[ProjectEvent, List[EventNotification]]:
    """Create an event and one unread notice per recipient except its creator.

    Recipients default to the project roster.
    """

    topic = (topic or "").strip()
    if not topic:
        raise ValueError("Event topic is required")
    get_project(session, project_id)
    event = ProjectEvent(
        project_id=project_id,
        topic=topic,
        description=description,
        starts_at=as_utc(starts_at),
        created_by=created_by,
    )
    session.add(event)
    session.flush()

    usernames = get_project_members(session, project_id) if recipients is None else list(recipients)
    notices = [
        EventNotification(
            project_id=project_id,
            event_id=event.id,
            topic=topic,
            username=username,
            created_by=created_by,
            created_at=event.created_at,
        )
        for username in sorted(set(usernames))
        if username and username != created_by
    ]
    session.add_all(notices)
    session.commit()

    target = feed or get_change_feed()
    target.publish("project_events", "insert", event_row(event))
    for notice in notices:
        target.publish("event_notifications", "insert", event_notification_row(notice, event.starts_at))
    logger.info(
        "Created event %s with %d notices", event.id, len(notices),
        extra={"event": "event_created", "project_id": project_id},
    )
    return event, notices


def delete_event(
    session: Session,
    *,
    project_id: str,
    event_id: str,
    deleted_by: str,
    feed: Optional[ChangeFeed] = None,
) -> ProjectEvent:
    """Soft-delete an event so its notices drop out of every feed."""

    event = session.get(ProjectEvent, event_id)
    if event is None or event.project_id != project_id:
        raise NotFoundError(f"Event {event_id} not found")
    if event.is_deleted:
        return event
    event.is_deleted = True
    event.deleted_at = utcnow()
    session.add(event)
    session.commit()
    (feed or get_change_feed()).publish("project_events", "update", event_row(event))
    logger.info(
        "Event %s deleted by %s", event_id, deleted_by,
        extra={"event": "event_deleted", "project_id": project_id},
    )
    return event
