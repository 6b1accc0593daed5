"""Identity for API requests.

Authentication happens upstream; the proxy forwards the signed-in username
in ``X-Forwarded-User``.
"""

from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, status
from sqlmodel import Session

from .roster import get_project, get_project_members


USER_HEADER = "X-Forwarded-User"


def get_current_user(
    x_forwarded_user: Optional[str] = Header(default=None, alias=USER_HEADER),
) -> Dict[str, Any]:
    username = (x_forwarded_user or "").strip()
    if not username:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return {"sub": username}


def require_member(session: Session, project_id: str, username: str) -> None:
    """Raise 403 unless ``username`` is on the project's roster."""

    project = get_project(session, project_id)
    if username == project.created_by:
        return
    if username not in get_project_members(session, project_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this project")
