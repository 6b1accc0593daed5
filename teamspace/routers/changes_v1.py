"""Server-sent events stream of committed ledger, event and chat changes."""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse

from ..auth import get_current_user, require_member
from ..db import get_session_ctx
from ..realtime.feed import TABLES, get_change_feed


router = APIRouter(prefix="/v1/changes", tags=["v1", "changes"])

KEEPALIVE_SECONDS = 15.0

_PER_USER_FILTERS = {
    "event_notifications": "username",
    "chat_mentions": "mentioned_user",
}


@router.get("/stream", summary="Stream changes", description="Server-sent events stream of row changes for one table.")
async def stream_changes(
    table: str = Query(..., description="One of: " + ", ".join(sorted(TABLES))),
    project_id: Optional[str] = Query(None),
    current_user=Depends(get_current_user),
):
    if table not in TABLES:
        raise HTTPException(status_code=400, detail=f"Unknown table: {table}")
    viewer = current_user["sub"]
    filters = {"project_id": project_id}
    if table in _PER_USER_FILTERS:
        filters[_PER_USER_FILTERS[table]] = viewer
    elif not project_id:
        raise HTTPException(status_code=400, detail=f"project_id is required for {table}")

    if project_id:
        def check():
            with get_session_ctx() as session:
                require_member(session, project_id, viewer)

        await asyncio.to_thread(check)

    subscription = get_change_feed().subscribe(table, **filters)

    async def event_generator():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                except StopAsyncIteration:
                    break
                payload = json.dumps(jsonable_encoder(event.as_dict()))
                yield f"id: {event.seq}\nevent: {event.op}\ndata: {payload}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")
