"""Notification dispatch service lifecycle and lightweight read endpoints."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from orderbell.common.config import settings
from orderbell.common.db import make_session_factory
from orderbell.common.logging import configure_logging
from orderbell.common.metrics import metrics_response
from orderbell.common.startup import log_startup_config
from orderbell.common.tracing import instrument_app, setup_tracing, shutdown_tracing
from orderbell.services.dispatch.config_source import RedisConfigSource
from orderbell.services.dispatch.feed import KafkaChangeFeed
from orderbell.services.dispatch.notifier import HttpNotifier
from orderbell.services.dispatch.service import NotificationDispatcher
from orderbell.services.dispatch.store import SqlOrderStore

configure_logging()
tracer_provider = setup_tracing(settings)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "orders_topic",
        "redis_url",
        "merchant_id",
        "branch_id",
        "notifier_url",
        "lease_ttl_seconds",
        "failure_cooldown_seconds",
    ],
)
dispatcher = NotificationDispatcher.from_settings(
    settings,
    store=SqlOrderStore(make_session_factory(settings.postgres_dsn)),
    feed=KafkaChangeFeed(settings.orders_topic, settings.consumer_group_prefix, settings.kafka_bootstrap_servers),
    config_source=RedisConfigSource(settings.redis_url, settings.merchant_id, settings.branch_id),
    notifier=HttpNotifier(settings.notifier_url, timeout_seconds=settings.notifier_timeout_seconds),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the dispatcher with the FastAPI application lifecycle."""

    await dispatcher.start()
    yield
    await dispatcher.stop()
    shutdown_tracing(tracer_provider)


app = FastAPI(title="OrderBell Notification Dispatch", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/status")
def status():
    """Dispatcher state: config gate, in-flight dispatches, known-sent sizes."""

    return dispatcher.status()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
