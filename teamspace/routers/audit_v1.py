"""Versioned audit ledger endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import get_current_user, require_member
from ..db import get_session
from ..ledger import LedgerRow, Subject, get_record, query_audit_actions, record_action
from ..models import AuditAction
from ..notifications import NotificationService, get_notification_service
from ..schemas import (
    AuditActionIn,
    AuditRecordOut,
    AuditRecordsPage,
    FileStatusOut,
    MemberEntry,
    RecordActionOut,
)


router = APIRouter(prefix="/v1/projects/{project_id}", tags=["v1", "audit"])


def _record_out(row: LedgerRow) -> AuditRecordOut:
    return AuditRecordOut(
        id=row.id,
        project_id=row.project_id,
        folder=row.folder,
        subject_name=row.subject_name,
        action=row.action,
        actor=row.actor,
        acted_at=row.acted_at,
        members=[MemberEntry(username=m.username, at=m.at) for m in row.members],
        details=row.details or {},
    )


@router.post("/audit", response_model=RecordActionOut, summary="Record an audit action")
def post_audit_action(
    project_id: str,
    body: AuditActionIn,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    actor = current_user["sub"]
    require_member(session, project_id, actor)
    try:
        outcome = record_action(
            session,
            Subject(project_id, body.folder, body.file_name),
            body.action.value,
            actor,
            body.at,
            details=body.details,
            idempotency_key=body.idempotency_key,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RecordActionOut(
        status=outcome.status.value,
        action=outcome.action,
        record_id=outcome.record_id,
        recorded=outcome.recorded,
    )


@router.get("/audit", response_model=AuditRecordsPage, summary="List audit records")
def list_audit_records(
    project_id: str,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    folder: Optional[str] = Query(None),
    action: Optional[str] = Query(None, description="Filter by action (comma-separated for multiple)"),
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
):
    require_member(session, project_id, current_user["sub"])
    actions: Optional[List[str]] = None
    if action:
        actions = [a.strip() for a in action.split(",") if a.strip()]
        unknown = [a for a in actions if a not in {choice.value for choice in AuditAction}]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown action: {', '.join(unknown)}")

    rows = list(reversed(query_audit_actions(session, project_id, folder=folder, actions=actions)))
    total = len(rows)
    offset = (page - 1) * size
    items = [_record_out(row) for row in rows[offset:offset + size]]
    has_next = (page * size) < total
    total_pages = int((total + size - 1) // size) if size else 1
    return AuditRecordsPage(
        items=items,
        total=total,
        page=page,
        size=size,
        has_next=has_next,
        total_pages=total_pages,
    )


@router.get("/audit/{record_id}", response_model=AuditRecordOut, summary="Get one audit record")
def get_audit_record(
    project_id: str,
    record_id: str,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    require_member(session, project_id, current_user["sub"])
    row = get_record(session, record_id)
    if row.project_id != project_id:
        raise HTTPException(status_code=404, detail="Not found")
    return _record_out(row)


@router.get("/files/status", response_model=List[FileStatusOut], summary="Per-file view and download completion")
def get_file_status(
    project_id: str,
    folder: Optional[str] = Query(None),
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: NotificationService = Depends(get_notification_service),
):
    require_member(session, project_id, current_user["sub"])
    return service.file_status(project_id, folder)
