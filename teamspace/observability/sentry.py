import os

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from ..errors import ConflictError, StaleScopeError


def init_sentry(app) -> None:
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FastApiIntegration()],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        environment=os.getenv("SENTRY_ENVIRONMENT", "dev"),
        release=os.getenv("SENTRY_RELEASE") or f"teamspace@{app.version}",
        # Both are retried or discarded internally and never reach a user.
        ignore_errors=[ConflictError, StaleScopeError],
    )
