"""Public SMS webhook.

Carrier gateways and the Android modem relay post deliveries here. Every
delivery gets a 200 with the stored record id, including redeliveries of an
SMS that is already stored.
"""

import asyncio
import hmac
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request

from momorecon.common.config import settings
from momorecon.common.db import SessionLocal
from momorecon.common.errors import IngestionError, http_status_for
from momorecon.common.events import KafkaBus
from momorecon.common.logging import configure_logging, log_context
from momorecon.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from momorecon.common.outbox import outbox_publisher
from momorecon.common.realtime import RealtimeNotifier
from momorecon.common.startup import log_startup_config
from momorecon.common.tracing import instrument_app, setup_tracing
from momorecon.services.ingestion.schemas import SmsInboundRequest, SmsInboundResponse
from momorecon.services.ingestion.service import IngestionService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["postgres_dsn", "kafka_bootstrap_servers", "redis_url", "sms_webhook_token"],
)
service = IngestionService(SessionLocal, realtime=RealtimeNotifier.from_url(settings.redis_url))
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Publish `sms.received` outbox rows for the lifetime of the app."""

    publisher_task = asyncio.create_task(outbox_publisher(SessionLocal, kafka, settings.service_name))
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="MoMo SMS Ingestion", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_webhook_token(token: str | None) -> None:
    """Shared-secret check, only when `SMS_WEBHOOK_TOKEN` is configured."""

    expected = settings.sms_webhook_token
    if expected and not hmac.compare_digest(token or "", expected):
        raise HTTPException(status_code=401, detail="invalid webhook token")


@app.post("/sms/inbound", response_model=SmsInboundResponse)
def sms_inbound(
    req: SmsInboundRequest,
    x_sms_webhook_token: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Store one delivery (or find the stored duplicate) and return its id."""

    enforce_webhook_token(x_sms_webhook_token)
    trace_id = x_trace_id or str(uuid4())
    with log_context(trace_id=trace_id):
        try:
            record, created = service.ingest(req, trace_id)
        except IngestionError as exc:
            raise HTTPException(status_code=http_status_for(exc), detail=str(exc)) from exc
    return SmsInboundResponse(sms_id=record.id, status=record.ingest_status, duplicate=not created)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
