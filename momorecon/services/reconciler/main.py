"""Reconciler worker process: Kafka consumer, backlog sweeper and outbox publisher."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from momorecon.common.circuit_breaker import CircuitBreakerRegistry
from momorecon.common.config import settings
from momorecon.common.db import SessionLocal
from momorecon.common.logging import configure_logging
from momorecon.common.metrics import metrics_response
from momorecon.common.realtime import RealtimeNotifier
from momorecon.common.startup import log_startup_config
from momorecon.common.tracing import instrument_app, setup_tracing
from momorecon.services.reconciler.matcher import Matcher, MatchPolicy
from momorecon.services.reconciler.parser import SmsParser
from momorecon.services.reconciler.service import ReconciliationPipeline
from momorecon.services.settlement.service import SettlementStateMachine

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "classifier_url",
        "classifier_api_key",
        "auto_settle_threshold",
        "match_lookback_seconds",
        "match_candidate_ordering",
        "reference_match_policy",
    ],
)
breakers = CircuitBreakerRegistry.from_settings(settings)
realtime = RealtimeNotifier.from_url(settings.redis_url)
pipeline = ReconciliationPipeline(
    SessionLocal,
    parser=SmsParser.from_settings(settings, breakers),
    matcher=Matcher(MatchPolicy.from_settings(settings)),
    state_machine=SettlementStateMachine(SessionLocal, realtime=realtime),
    realtime=realtime,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the consumer, backlog sweeper and outbox publisher with the app."""

    tasks = [
        asyncio.create_task(pipeline.outbox_publisher()),
        asyncio.create_task(pipeline.start_consumers()),
        asyncio.create_task(pipeline.backlog_sweeper()),
    ]
    yield
    for task in tasks:
        task.cancel()
    await pipeline.kafka.close()


app = FastAPI(title="MoMo Reconciler", lifespan=lifespan)
instrument_app(app)


@app.get("/breakers")
def breaker_status():
    """Current circuit breaker state per dependency."""

    return {"breakers": breakers.snapshot()}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
