"""Audit ledger for project files and folders.

``preview`` and ``download`` observations collapse into one record per
subject whose membership grows by atomic insert-or-ignore, so a user is
counted once no matter how many tabs, retries or racing writers report the
same action. Every other action is appended as its own immutable record.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlmodel import Session, select

from .config import ledger_backoff_base, ledger_max_attempts
from .db import as_utc, backend_name, get_current_user_id, utcnow
from .errors import ConflictError, ForbiddenActorError, NotFoundError, TransientStoreError
from .models import (
    MEMBERSHIP_ACTIONS,
    AuditAction,
    AuditMembership,
    AuditRecord,
    gen_id,
)
from .observability.metrics import record_ledger_retry, record_ledger_write
from .realtime.feed import ChangeFeed, get_change_feed


logger = logging.getLogger(__name__)

_FILE_ACTIONS = MEMBERSHIP_ACTIONS | {AuditAction.UPLOAD.value, AuditAction.DELETE.value}
_FOLDER_ACTIONS = {AuditAction.FOLDER_CREATED.value, AuditAction.FOLDER_DELETED.value}

_Change = Tuple[str, str, Dict[str, Any]]


class RecordStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ALREADY_RECORDED = "already_recorded"
    UPLOADER_EXCLUDED = "uploader_excluded"


@dataclass(frozen=True)
class Subject:
    project_id: str
    folder: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class RecordOutcome:
    status: RecordStatus
    action: str
    record_id: Optional[str] = None
    attempts: int = 1

    @property
    def recorded(self) -> bool:
        return self.status in (RecordStatus.CREATED, RecordStatus.UPDATED)


@dataclass(frozen=True)
class Member:
    username: str
    at: datetime


@dataclass(frozen=True)
class LedgerRow:
    """Immutable snapshot of an :class:`AuditRecord` and its membership."""

    id: str
    project_id: str
    folder: Optional[str]
    subject_name: Optional[str]
    action: str
    actor: str
    acted_at: datetime
    members: Tuple[Member, ...] = ()
    details: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def usernames(self) -> frozenset:
        return frozenset(member.username for member in self.members)


def _record_row(record: AuditRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "project_id": record.project_id,
        "folder": record.folder,
        "subject_name": record.subject_name,
        "action": record.action,
        "actor": record.actor,
        "acted_at": as_utc(record.acted_at),
    }


def _check_subject(subject: Subject, action: str) -> None:
    if not subject.project_id:
        raise ValueError("project_id is required")
    if action in _FILE_ACTIONS and not (subject.folder and subject.name):
        raise ValueError(f"{action} requires a folder and a file name")
    if action in _FOLDER_ACTIONS and not subject.folder:
        raise ValueError(f"{action} requires a folder")
    if action == AuditAction.LINK_DELETED.value and not subject.name:
        raise ValueError("link_deleted requires a link name")


def _check_actor(actor: str) -> None:
    if not actor:
        raise ValueError("actor is required")
    bound = get_current_user_id()
    if bound and bound != actor:
        raise ForbiddenActorError("Actions can only be recorded for the current user")


def _latest(rows: Iterable[LedgerRow], action: str, key) -> Dict[tuple, datetime]:
    latest: Dict[tuple, datetime] = {}
    for row in rows:
        if row.action != action:
            continue
        k = key(row)
        if k not in latest or row.acted_at > latest[k]:
            latest[k] = row.acted_at
    return latest


def live_uploads(rows: Sequence[LedgerRow]) -> List[LedgerRow]:
    """Uploads not hidden by a later ``delete`` or ``folder_deleted``.

    A ``delete`` hides earlier uploads of that name in any folder of the
    project; ``folder_deleted`` hides earlier uploads in that folder.
    """
    deleted = _latest(rows, AuditAction.DELETE.value, lambda row: (row.project_id, row.subject_name))
    folders_deleted = _latest(
        rows, AuditAction.FOLDER_DELETED.value, lambda row: (row.project_id, row.folder)
    )
    live = []
    for row in rows:
        if row.action != AuditAction.UPLOAD.value or not row.subject_name:
            continue
        deleted_at = deleted.get((row.project_id, row.subject_name))
        if deleted_at is not None and row.acted_at <= deleted_at:
            continue
        folder_deleted_at = folders_deleted.get((row.project_id, row.folder))
        if folder_deleted_at is not None and row.acted_at <= folder_deleted_at:
            continue
        live.append(row)
    return live


def uploader_of(session: Session, subject: Subject) -> Optional[str]:
    """Return who uploaded the live copy of ``subject``.

    The earliest upload still live wins, matching completion tracking.
    ``None`` when every upload has been deleted or none was recorded.
    """

    stmt = (
        select(AuditRecord)
        .where(AuditRecord.project_id == subject.project_id)
        .where(
            or_(
                and_(
                    AuditRecord.action == AuditAction.UPLOAD.value,
                    AuditRecord.folder == subject.folder,
                    AuditRecord.subject_name == subject.name,
                ),
                and_(
                    AuditRecord.action == AuditAction.DELETE.value,
                    AuditRecord.subject_name == subject.name,
                ),
                and_(
                    AuditRecord.action == AuditAction.FOLDER_DELETED.value,
                    AuditRecord.folder == subject.folder,
                ),
            )
        )
    )
    rows = [_snapshot(record, ()) for record in session.exec(stmt).all()]
    live = sorted(live_uploads(rows), key=lambda row: (row.acted_at, row.id))
    return live[0].actor if live else None


def _find_membership_record(session: Session, subject: Subject, action: str) -> Optional[AuditRecord]:
    stmt = (
        select(AuditRecord)
        .where(AuditRecord.project_id == subject.project_id)
        .where(AuditRecord.folder == subject.folder)
        .where(AuditRecord.subject_name == subject.name)
        .where(AuditRecord.action == action)
    )
    return session.exec(stmt).first()


def _insert_member(session: Session, record_id: str, username: str, at: datetime) -> bool:
    """Add ``username`` to the record's membership unless already present.

    Returns ``True`` when a row was written.
    """
    values = {"id": gen_id("mbr"), "record_id": record_id, "username": username, "acted_at": at}
    backend = backend_name()
    table = AuditMembership.__table__
    if backend.startswith("postgres"):
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(
            index_elements=["record_id", "username"]
        )
    elif backend.startswith("sqlite"):
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(
            index_elements=["record_id", "username"]
        )
    else:
        existing = session.exec(
            select(AuditMembership.id)
            .where(AuditMembership.record_id == record_id)
            .where(AuditMembership.username == username)
        ).first()
        if existing:
            return False
        # a racing duplicate surfaces as IntegrityError and is retried
        session.add(AuditMembership(**values))
        session.flush()
        return True
    result = session.exec(stmt)
    return bool(result.rowcount)


def _add_member(
    session: Session, subject: Subject, action: str, actor: str, at: datetime
) -> Tuple[RecordOutcome, List[_Change]]:
    record = _find_membership_record(session, subject, action)
    if uploader_of(session, subject) == actor:
        status = RecordStatus.UPLOADER_EXCLUDED
        return RecordOutcome(status, action, record.id if record else None), []

    changes: List[_Change] = []
    created = False
    if record is None:
        record = AuditRecord(
            project_id=subject.project_id,
            folder=subject.folder,
            subject_name=subject.name,
            action=action,
            actor=actor,
            acted_at=at,
        )
        session.add(record)
        session.flush()
        created = True
        changes.append(("audit_records", "insert", _record_row(record)))

    if not _insert_member(session, record.id, actor, at):
        return RecordOutcome(RecordStatus.ALREADY_RECORDED, action, record.id), []

    changes.append(
        (
            "audit_memberships",
            "insert",
            {
                "record_id": record.id,
                "project_id": subject.project_id,
                "folder": subject.folder,
                "subject_name": subject.name,
                "action": action,
                "username": actor,
                "acted_at": at,
            },
        )
    )
    status = RecordStatus.CREATED if created else RecordStatus.UPDATED
    return RecordOutcome(status, action, record.id), changes


def _cascade_folder(session: Session, subject: Subject) -> List[_Change]:
    doomed = session.exec(
        select(AuditRecord)
        .where(AuditRecord.project_id == subject.project_id)
        .where(AuditRecord.folder == subject.folder)
        .where(AuditRecord.action.in_(sorted(MEMBERSHIP_ACTIONS)))
    ).all()
    if not doomed:
        return []
    ids = [record.id for record in doomed]
    session.exec(delete(AuditMembership).where(AuditMembership.record_id.in_(ids)))
    session.exec(delete(AuditRecord).where(AuditRecord.id.in_(ids)))
    return [("audit_records", "delete", _record_row(record)) for record in doomed]


def _append(
    session: Session,
    subject: Subject,
    action: str,
    actor: str,
    at: datetime,
    details: Optional[Dict[str, Any]],
    idempotency_key: Optional[str],
) -> Tuple[RecordOutcome, List[_Change]]:
    if idempotency_key:
        existing = session.exec(
            select(AuditRecord.id)
            .where(AuditRecord.project_id == subject.project_id)
            .where(AuditRecord.idempotency_key == idempotency_key)
        ).first()
        if existing:
            return RecordOutcome(RecordStatus.ALREADY_RECORDED, action, existing), []

    changes: List[_Change] = []
    if action == AuditAction.FOLDER_DELETED.value:
        changes.extend(_cascade_folder(session, subject))

    record = AuditRecord(
        project_id=subject.project_id,
        folder=subject.folder,
        subject_name=subject.name,
        action=action,
        actor=actor,
        acted_at=at,
        details=details or {},
        idempotency_key=idempotency_key,
    )
    session.add(record)
    session.flush()
    changes.insert(0, ("audit_records", "insert", _record_row(record)))
    return RecordOutcome(RecordStatus.CREATED, action, record.id), changes


def _attempt(
    session: Session,
    subject: Subject,
    action: str,
    actor: str,
    at: datetime,
    details: Optional[Dict[str, Any]],
    idempotency_key: Optional[str],
) -> Tuple[RecordOutcome, List[_Change]]:
    try:
        if action in MEMBERSHIP_ACTIONS:
            outcome, changes = _add_member(session, subject, action, actor, at)
        else:
            outcome, changes = _append(session, subject, action, actor, at, details, idempotency_key)
        if changes:
            session.commit()
        else:
            session.rollback()
        return outcome, changes
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f"Concurrent {action} write for {subject}") from exc


def record_action(
    session: Session,
    subject: Subject,
    action: str,
    actor: str,
    at: Optional[datetime] = None,
    *,
    details: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
    feed: Optional[ChangeFeed] = None,
) -> RecordOutcome:
    """Record ``actor`` performing ``action`` on ``subject`` exactly once.

    Each attempt is its own transaction. Lost races re-read and re-apply
    immediately; store failures back off exponentially. When the retry budget
    runs out a :class:`TransientStoreError` is raised and nothing has been
    recorded. Committed changes are published to ``feed`` before returning.
    """

    action = AuditAction(action).value
    _check_subject(subject, action)
    _check_actor(actor)
    at = as_utc(at) or utcnow()

    max_attempts = ledger_max_attempts()
    attempt = 0
    while True:
        attempt += 1
        try:
            outcome, changes = _attempt(session, subject, action, actor, at, details, idempotency_key)
            break
        except ConflictError as exc:
            if attempt >= max_attempts:
                record_ledger_write(action, "conflict")
                raise TransientStoreError(f"Could not record {action}: too many concurrent writers") from exc
            record_ledger_retry("conflict")
            logger.info(
                "Retrying %s for %s after conflict", action, subject.name or subject.folder,
                extra={"event": "ledger_conflict", "attempt": attempt},
            )
        except DBAPIError as exc:
            session.rollback()
            if attempt >= max_attempts:
                record_ledger_write(action, "unavailable")
                logger.warning(
                    "Giving up on %s after %d attempts: %s", action, attempt, exc,
                    extra={"event": "ledger_unavailable"},
                )
                raise TransientStoreError(f"Could not record {action}: store unavailable") from exc
            record_ledger_retry("transient")
            time.sleep(ledger_backoff_base() * (2 ** (attempt - 1)))

    target = feed or get_change_feed()
    for table, op, row in changes:
        target.publish(table, op, row)
    record_ledger_write(action, outcome.status.value)
    logger.info(
        "Recorded %s by %s: %s", action, actor, outcome.status.value,
        extra={"event": "ledger_write", "project_id": subject.project_id, "record_id": outcome.record_id},
    )
    return replace(outcome, attempts=attempt)


def _snapshot(record: AuditRecord, members: Sequence[Member]) -> LedgerRow:
    return LedgerRow(
        id=record.id,
        project_id=record.project_id,
        folder=record.folder,
        subject_name=record.subject_name,
        action=record.action,
        actor=record.actor,
        acted_at=as_utc(record.acted_at),
        members=tuple(members),
        details=dict(record.details or {}),
    )


def query_audit_actions(
    session: Session,
    project_ids: str | Iterable[str],
    folder: Optional[str] = None,
    actions: Optional[Iterable[str]] = None,
) -> List[LedgerRow]:
    """Return ledger snapshots for the given projects, oldest first."""

    ids = [project_ids] if isinstance(project_ids, str) else sorted(set(project_ids))
    if not ids:
        return []
    stmt = select(AuditRecord).where(AuditRecord.project_id.in_(ids))
    if folder is not None:
        stmt = stmt.where(AuditRecord.folder == folder)
    if actions is not None:
        stmt = stmt.where(AuditRecord.action.in_(sorted(set(actions))))
    stmt = stmt.order_by(AuditRecord.acted_at.asc(), AuditRecord.id.asc())
    try:
        records = session.exec(stmt).all()
        membership_ids = [record.id for record in records if record.action in MEMBERSHIP_ACTIONS]
        members: Dict[str, List[Member]] = defaultdict(list)
        if membership_ids:
            rows = session.exec(
                select(AuditMembership)
                .where(AuditMembership.record_id.in_(membership_ids))
                .order_by(AuditMembership.acted_at.asc(), AuditMembership.username.asc())
            ).all()
            for row in rows:
                members[row.record_id].append(Member(row.username, as_utc(row.acted_at)))
    except DBAPIError as exc:
        session.rollback()
        raise TransientStoreError("Audit ledger unavailable") from exc
    return [_snapshot(record, members.get(record.id, ())) for record in records]


def get_record(session: Session, record_id: str) -> LedgerRow:
    record = session.get(AuditRecord, record_id)
    if record is None:
        raise NotFoundError(f"Audit record {record_id} not found")
    members = session.exec(
        select(AuditMembership)
        .where(AuditMembership.record_id == record_id)
        .order_by(AuditMembership.acted_at.asc(), AuditMembership.username.asc())
    ).all()
    return _snapshot(record, [Member(row.username, as_utc(row.acted_at)) for row in members])
