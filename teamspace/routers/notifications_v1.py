from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user, require_member
from ..db import get_session
from ..notifications import NotificationService, get_notification_service
from ..schemas import AckOut, NotificationFeed, UnreadCountOut


router = APIRouter(prefix="/v1/notifications", tags=["v1", "notifications"])


@router.get("", response_model=NotificationFeed, summary="Unread notifications")
@router.get("/", response_model=NotificationFeed, summary="Unread notifications")
def get_notifications(
    project_id: Optional[str] = Query(None, description="Limit to one project; omit for every project"),
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: NotificationService = Depends(get_notification_service),
):
    if project_id:
        require_member(session, project_id, current_user["sub"])
    return service.aggregate(current_user["sub"], project_id)


@router.get("/count", response_model=UnreadCountOut, summary="Unread notification count")
def get_unread_count(
    project_id: Optional[str] = Query(None),
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: NotificationService = Depends(get_notification_service),
):
    if project_id:
        require_member(session, project_id, current_user["sub"])
    feed = service.aggregate(current_user["sub"], project_id)
    return UnreadCountOut(
        viewer=feed.viewer,
        project_id=project_id,
        unread_count=feed.unread_count,
        uploads=feed.unread_breakdown.get("uploads", 0),
        events=feed.unread_breakdown.get("events", 0),
        mentions=feed.unread_breakdown.get("mentions", 0),
    )


@router.post("/events/{event_id}/read", response_model=AckOut, summary="Mark an event notification read")
def read_event(
    event_id: str,
    project_id: str = Query(...),
    current_user=Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    result = service.mark_event_read(event_id, current_user["sub"], project_id)
    return AckOut(changed=result.changed)


@router.post("/mentions/{mention_id}/read", response_model=AckOut, summary="Mark a mention read")
def read_mention(
    mention_id: str,
    current_user=Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    result = service.mark_mention_read(mention_id, current_user["sub"])
    return AckOut(changed=result.changed)
