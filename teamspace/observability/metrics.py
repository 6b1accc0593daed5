import time
from typing import Callable

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.requests import Request
from starlette.responses import Response


REQUEST_COUNTER = Counter(
    "api_requests_total",
    "HTTP requests total",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "api_request_duration_seconds",
    "HTTP request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

LEDGER_WRITES = Counter(
    "ledger_writes_total",
    "Audit ledger write attempts by action and outcome",
    ["action", "outcome"],
)

LEDGER_RETRIES = Counter(
    "ledger_retries_total",
    "Audit ledger write retries",
    ["reason"],
)

AGGREGATIONS = Counter(
    "notification_aggregations_total",
    "Notification aggregation passes",
    ["scope"],
)

AGGREGATION_DURATION = Histogram(
    "notification_aggregation_duration_seconds",
    "Notification aggregation time",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)

RECONCILE_PASSES = Counter(
    "live_reconcile_passes_total",
    "Live view reconciliation passes",
    ["outcome"],
)

CHANGE_EVENTS = Counter(
    "change_events_published_total",
    "Change feed events published",
    ["table", "op"],
)


async def metrics_endpoint(_: Request) -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _normalize_path(path: str) -> str:
    # avoid high cardinality by collapsing generated ids
    if path.count("/") <= 2:
        return path
    parts = path.split("/")
    parts = [":id" if (p.isdigit() or (p[:4].endswith("_") and len(p) == 16)) else p for p in parts]
    return "/".join(parts)


async def request_metrics_middleware(request: Request, call_next: Callable):
    start = time.time()
    response = await call_next(request)
    elapsed = time.time() - start
    REQUEST_COUNTER.labels(request.method, _normalize_path(request.url.path), str(response.status_code)).inc()
    REQUEST_LATENCY.observe(elapsed)
    return response


def record_ledger_write(action: str, outcome: str) -> None:
    LEDGER_WRITES.labels(action, outcome).inc()


def record_ledger_retry(reason: str) -> None:
    LEDGER_RETRIES.labels(reason).inc()


def record_reconcile(outcome: str) -> None:
    RECONCILE_PASSES.labels(outcome).inc()
