import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
viewer_ctx: ContextVar[str | None] = ContextVar("viewer", default=None)
scope_ctx: ContextVar[str | None] = ContextVar("scope", default=None)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        # The formatter references these fields unconditionally, so unbound
        # context must still produce an attribute.
        record.request_id = request_id_ctx.get() or ""
        record.viewer = viewer_ctx.get() or ""
        record.scope = scope_ctx.get() or ""
        return True


def setup_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger = logging.getLogger()
    logger.setLevel(level)
    # Clear default handlers
    logger.handlers = []
    handler = logging.StreamHandler()
    fmt = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(viewer)s %(scope)s"
    )
    handler.setFormatter(fmt)
    handler.addFilter(ContextFilter())
    logger.addHandler(handler)


def bind_request_id(req_id: str | None = None) -> str:
    rid = req_id or str(uuid.uuid4())
    request_id_ctx.set(rid)
    return rid


def bind_viewer(username: str | None) -> None:
    viewer_ctx.set(username)


@contextmanager
def bound_scope(scope: str | None) -> Iterator[None]:
    """Tag log records emitted inside the block with a viewer scope token."""

    token = scope_ctx.set(scope)
    try:
        yield
    finally:
        scope_ctx.reset(token)
