"""Projects, rosters, scheduled events and chat."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import get_current_user, require_member
from ..chat import list_messages, mentions_for, message_out, post_message
from ..db import as_utc, get_session
from ..events import create_event, delete_event
from ..models import EventNotification, ProjectEvent
from ..roster import add_member, create_project, get_project, get_project_members
from ..schemas import (
    ChatMessageOut,
    ChatPost,
    EventCreate,
    EventOut,
    MemberAdd,
    ProjectCreate,
    ProjectOut,
    RosterOut,
)


router = APIRouter(prefix="/v1/projects", tags=["v1", "projects"])


def _event_out(event: ProjectEvent, notices: List[EventNotification] = ()) -> EventOut:
    return EventOut(
        id=event.id,
        project_id=event.project_id,
        topic=event.topic,
        description=event.description,
        starts_at=as_utc(event.starts_at),
        created_by=event.created_by,
        created_at=as_utc(event.created_at),
        is_deleted=bool(event.is_deleted),
        notified=[notice.username for notice in notices],
    )


@router.post("", response_model=ProjectOut, status_code=status.HTTP_201_CREATED, summary="Create a project")
def post_project(body: ProjectCreate, current_user=Depends(get_current_user), session=Depends(get_session)):
    try:
        project = create_project(
            session,
            name=body.name,
            created_by=current_user["sub"],
            description=body.description,
            members=body.members,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ProjectOut(
        id=project.id,
        name=project.name,
        description=project.description,
        created_by=project.created_by,
        created_at=as_utc(project.created_at),
        members=get_project_members(session, project.id),
    )


@router.get("/{project_id}", response_model=ProjectOut, summary="Get a project")
def get_project_detail(project_id: str, current_user=Depends(get_current_user), session=Depends(get_session)):
    require_member(session, project_id, current_user["sub"])
    project = get_project(session, project_id)
    return ProjectOut(
        id=project.id,
        name=project.name,
        description=project.description,
        created_by=project.created_by,
        created_at=as_utc(project.created_at),
        members=get_project_members(session, project_id),
    )


@router.get("/{project_id}/members", response_model=RosterOut, summary="List the project roster")
def get_members(project_id: str, current_user=Depends(get_current_user), session=Depends(get_session)):
    require_member(session, project_id, current_user["sub"])
    return RosterOut(project_id=project_id, usernames=get_project_members(session, project_id))


@router.post("/{project_id}/members", response_model=RosterOut, summary="Add a member to the roster")
def post_member(
    project_id: str,
    body: MemberAdd,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    require_member(session, project_id, current_user["sub"])
    add_member(session, project_id, body.username)
    return RosterOut(project_id=project_id, usernames=get_project_members(session, project_id))


@router.post(
    "/{project_id}/events",
    response_model=EventOut,
    status_code=status.HTTP_201_CREATED,
    summary="Schedule an event and notify the roster",
)
def post_event(
    project_id: str,
    body: EventCreate,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    require_member(session, project_id, current_user["sub"])
    try:
        event, notices = create_event(
            session,
            project_id=project_id,
            topic=body.topic,
            created_by=current_user["sub"],
            starts_at=body.starts_at,
            description=body.description,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _event_out(event, notices)


@router.delete("/{project_id}/events/{event_id}", response_model=EventOut, summary="Delete an event")
def remove_event(
    project_id: str,
    event_id: str,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    require_member(session, project_id, current_user["sub"])
    event = delete_event(session, project_id=project_id, event_id=event_id, deleted_by=current_user["sub"])
    return _event_out(event)


@router.get("/{project_id}/chat", response_model=List[ChatMessageOut], summary="Recent chat messages")
def get_chat(
    project_id: str,
    limit: int = Query(200, ge=1, le=1000),
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    require_member(session, project_id, current_user["sub"])
    rows = list_messages(session, project_id, limit=limit)
    mentioned = mentions_for(session, [row.id for row in rows])
    return [message_out(row, mentioned.get(row.id, ())) for row in rows]


@router.post("/{project_id}/chat", response_model=ChatMessageOut, summary="Post a chat message")
def post_chat(
    project_id: str,
    body: ChatPost,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    require_member(session, project_id, current_user["sub"])
    try:
        record, mentions, _ = post_message(
            session,
            project_id=project_id,
            username=current_user["sub"],
            message=body.message,
            client_key=body.client_key,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return message_out(record, [mention.mentioned_user for mention in mentions])
