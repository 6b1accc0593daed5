import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .auth import USER_HEADER
from .db import init_db, reset_current_user_id, set_current_user_id
from .errors import register_error_handlers
from .observability.logging import bind_request_id, bind_viewer, setup_logging
from .observability.metrics import metrics_endpoint, request_metrics_middleware
from .observability.sentry import init_sentry
from .routers import status
from .routers.audit_v1 import router as audit_v1_router
from .routers.changes_v1 import router as changes_v1_router
from .routers.notifications_v1 import router as notifications_v1_router
from .routers.projects_v1 import router as projects_v1_router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app() -> FastAPI:
    tags_metadata = [
        {"name": "status", "description": "Service and database health"},
        {"name": "projects", "description": "Projects, rosters, events and chat"},
        {"name": "audit", "description": "File and folder audit ledger"},
        {"name": "notifications", "description": "Unread uploads, events and mentions"},
        {"name": "changes", "description": "Live change stream"},
        {"name": "v1", "description": "Versioned API endpoints"},
    ]
    app = FastAPI(title="Teamspace API", version="0.1.0", openapi_tags=tags_metadata, lifespan=lifespan)

    register_error_handlers(app)
    setup_logging()
    init_sentry(app)

    # CORS from environment configuration
    origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
    allow_origins = [o.strip() for o in origins.split(",") if o.strip()]
    allow_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "1") in ("1", "true", "TRUE")
    allow_methods = os.getenv("CORS_ALLOW_METHODS", "*")
    allow_headers = os.getenv("CORS_ALLOW_HEADERS", "*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=allow_methods.split(",") if "," in allow_methods else [allow_methods],
        allow_headers=allow_headers.split(",") if "," in allow_headers else [allow_headers],
    )
    # Metrics middleware
    app.middleware("http")(request_metrics_middleware)

    # Request ID binder
    @app.middleware("http")
    async def add_request_id(request, call_next):
        rid = request.headers.get("X-Request-Id")
        bind_request_id(rid)
        response = await call_next(request)
        if rid:
            response.headers["X-Request-Id"] = rid
        return response

    @app.middleware("http")
    async def bind_user(request: Request, call_next):
        username = (request.headers.get(USER_HEADER) or "").strip() or None
        ctx_token = set_current_user_id(username)
        bind_viewer(username)
        try:
            if username:
                logger.debug("Processing %s %s as %s", request.method, request.url.path, username)
            return await call_next(request)
        finally:
            reset_current_user_id(ctx_token)

    # Routers
    app.include_router(status.router)
    app.include_router(status.router, prefix="/v1", tags=["v1"])
    app.include_router(projects_v1_router)
    app.include_router(audit_v1_router)
    app.include_router(notifications_v1_router)
    app.include_router(changes_v1_router)
    # Prometheus metrics
    app.add_api_route("/metrics", metrics_endpoint, include_in_schema=False)

    return app


app = create_app()
