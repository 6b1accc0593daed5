import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


PROBLEM_MEDIA_TYPE = "application/problem+json"


class LedgerError(Exception):
    """Base class for audit ledger and notification failures."""

    code = "ledger_error"
    status = 500


class TransientStoreError(LedgerError):
    """The store is unreachable or kept failing; the caller may retry later."""

    code = "store_unavailable"
    status = 503

    def __init__(self, message: str = "Store temporarily unavailable", *, retry_after: int = 1):
        super().__init__(message)
        self.retry_after = retry_after


class ConflictError(LedgerError):
    """A concurrent writer won a race at the store; re-read and re-apply."""

    code = "conflict"
    status = 409


class NotFoundError(LedgerError):
    code = "not_found"
    status = 404


class StaleScopeError(LedgerError):
    """A reconciliation result arrived for a scope that is no longer current."""

    code = "stale_scope"
    status = 409


class ForbiddenActorError(LedgerError):
    """A user tried to record an action on someone else's behalf."""

    code = "forbidden_actor"
    status = 403


def _problem(
    *,
    code: str,
    message: str,
    status: int,
    trace_id: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = {
        "type": f"about:blank#{code}",
        "title": message,
        "status": status,
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    if details:
        body["details"] = details
    response_headers = {"X-Trace-Id": trace_id}
    if headers:
        response_headers.update(headers)
    return JSONResponse(
        body,
        status_code=status,
        headers=response_headers,
        media_type=PROBLEM_MEDIA_TYPE,
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        detail = exc.detail
        if isinstance(detail, dict):
            message = detail.get("message") or detail.get("error") or "HTTP error"
            return _problem(
                code="http_error",
                message=str(message),
                status=exc.status_code,
                trace_id=trace_id,
                details=detail,
            )
        if isinstance(detail, list):
            return _problem(
                code="http_error",
                message="HTTP error",
                status=exc.status_code,
                trace_id=trace_id,
                details={"errors": detail},
            )
        return _problem(code="http_error", message=str(detail), status=exc.status_code, trace_id=trace_id)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        return _problem(
            code="validation_error",
            message="Request validation failed",
            status=422,
            trace_id=trace_id,
            details={"errors": exc.errors()},
        )

    @app.exception_handler(TransientStoreError)
    async def transient_exc_handler(request: Request, exc: TransientStoreError):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        logging.warning("Store unavailable for %s %s: %s", request.method, request.url.path, exc)
        return _problem(
            code=exc.code,
            message=str(exc),
            status=exc.status,
            trace_id=trace_id,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(LedgerError)
    async def ledger_exc_handler(request: Request, exc: LedgerError):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        return _problem(code=exc.code, message=str(exc), status=exc.status, trace_id=trace_id)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        logging.exception("Unhandled error: %s", exc)
        return _problem(
            code="internal_error",
            message="An unexpected error occurred",
            status=500,
            trace_id=trace_id,
        )
