"""Project roster lookups and project creation."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import NotFoundError
from .ledger import Subject, record_action
from .models import AuditAction, Project, ProjectMember
from .realtime.feed import ChangeFeed


logger = logging.getLogger(__name__)


def get_project(session: Session, project_id: str) -> Project:
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


def get_project_members(session: Session, project_id: str) -> List[str]:
    """Return the usernames on a project's roster.

    Projects without explicit members fall back to their creator.
    """

    usernames = session.exec(
        select(ProjectMember.username)
        .where(ProjectMember.project_id == project_id)
        .order_by(ProjectMember.username)
    ).all()
    if usernames:
        return list(usernames)
    project = session.get(Project, project_id)
    if project is not None and project.created_by:
        return [project.created_by]
    return []


def get_rosters(session: Session, project_ids: Iterable[str]) -> Dict[str, List[str]]:
    ids = sorted(set(project_ids))
    if not ids:
        return {}
    rosters: Dict[str, List[str]] = defaultdict(list)
    rows = session.exec(
        select(ProjectMember)
        .where(ProjectMember.project_id.in_(ids))
        .order_by(ProjectMember.project_id, ProjectMember.username)
    ).all()
    for row in rows:
        rosters[row.project_id].append(row.username)
    for project_id in ids:
        if project_id not in rosters:
            rosters[project_id] = get_project_members(session, project_id)
    return dict(rosters)


def projects_for(session: Session, username: str) -> List[str]:
    """Return ids of every project ``username`` can see."""

    member_of = session.exec(
        select(ProjectMember.project_id).where(ProjectMember.username == username)
    ).all()
    created = session.exec(select(Project.id).where(Project.created_by == username)).all()
    return sorted(set(member_of) | set(created))


def project_names(session: Session, project_ids: Iterable[str]) -> Dict[str, str]:
    ids = sorted(set(project_ids))
    if not ids:
        return {}
    rows = session.exec(select(Project).where(Project.id.in_(ids))).all()
    return {row.id: row.name for row in rows}


def add_member(session: Session, project_id: str, username: str) -> bool:
    """Put ``username`` on the roster; ``False`` when already there."""

    get_project(session, project_id)
    existing = session.get(ProjectMember, (project_id, username))
    if existing is not None:
        return False
    session.add(ProjectMember(project_id=project_id, username=username))
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info("Duplicate roster add ignored project=%s user=%s", project_id, username)
        return False
    return True


def create_project(
    session: Session,
    *,
    name: str,
    created_by: str,
    description: Optional[str] = None,
    members: Iterable[str] = (),
    feed: Optional[ChangeFeed] = None,
) -> Project:
    name = (name or "").strip()
    if not name:
        raise ValueError("Project name is required")
    project = Project(name=name, description=description, created_by=created_by)
    session.add(project)
    session.flush()
    for username in sorted({created_by, *members}):
        session.add(ProjectMember(project_id=project.id, username=username))
    session.commit()
    session.refresh(project)
    record_action(
        session,
        Subject(project.id),
        AuditAction.PROJECT_CREATED.value,
        created_by,
        project.created_at,
        details={"project_name": name},
        feed=feed,
    )
    return project
