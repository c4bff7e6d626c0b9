"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from momorecon.common.circuit_breaker import NOTIFIER_BREAKER, CircuitBreakerRegistry
from momorecon.common.config import settings
from momorecon.common.db import SessionLocal
from momorecon.common.logging import configure_logging
from momorecon.common.metrics import metrics_response
from momorecon.common.startup import log_startup_config
from momorecon.common.tracing import instrument_app, setup_tracing
from momorecon.services.notification.service import NotificationService, SupporterNotifier

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["postgres_dsn", "kafka_bootstrap_servers", "notifier_url", "notifier_api_key"],
)
breakers = CircuitBreakerRegistry.from_settings(settings)
notifier = SupporterNotifier.from_settings(settings)
service = NotificationService(
    SessionLocal,
    notifier=notifier,
    breaker=breakers.get(NOTIFIER_BREAKER) if notifier is not None else None,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="MoMo Supporter Notifications", lifespan=lifespan)
instrument_app(app)


@app.get("/breakers")
def breaker_status():
    return {"breakers": breakers.snapshot()}


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
