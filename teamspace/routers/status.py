from fastapi import APIRouter, Depends
from sqlalchemy import inspect, text

from ..db import backend_name, get_engine, get_session
from ..realtime.feed import get_change_feed
from ..schemas import StatusResponse


router = APIRouter(tags=["status"])

_REQUIRED_TABLES = (
    "projects",
    "project_members",
    "audit_records",
    "audit_memberships",
    "project_events",
    "event_notifications",
    "chat_messages",
    "chat_mentions",
)


@router.get("/status", response_model=StatusResponse)
def get_status():
    return StatusResponse()


@router.get("/status/db", response_model=dict)
def db_status(session=Depends(get_session)):
    ok = True
    details = {"backend": backend_name() or "other"}
    try:
        session.exec(text("SELECT 1")).one()
        existing = set(inspect(get_engine()).get_table_names())
        tables = {name: name in existing for name in _REQUIRED_TABLES}
        details["tables"] = tables
        ok = all(tables.values())
    except Exception as e:  # noqa: BLE001
        ok = False
        details["error"] = str(e)
    details["subscribers"] = get_change_feed().subscriber_count()
    return {"ok": ok, "details": details}
