import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from aiokafka import AIOKafkaProducer
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from app.config import settings
from app.database import AsyncSessionLocal, Base, engine
from app.routers import orders
from app.services.outbox import OutboxRelay
from app.services.reconciliation import ReconciliationSweeper
from shared.channel import EventPublisher
from shared.errors import install_error_handlers
from shared.logging import setup_logging
from shared.middleware.metrics import MetricsMiddleware
from shared.middleware.request_id import RequestIDMiddleware
from shared.tracing import setup_tracing

setup_logging(settings.log_level, service="order-service")
logger = logging.getLogger(__name__)

if settings.tracing_enabled:
    setup_tracing("order-service", settings.otlp_endpoint, settings.trace_sample_ratio)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    app.state.http_client = httpx.AsyncClient(timeout=settings.upstream_timeout)

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    await producer.start()

    relay = OutboxRelay(
        AsyncSessionLocal,
        EventPublisher(producer),
        batch_size=settings.outbox_batch_size,
        poll_interval=settings.outbox_poll_interval,
    )
    sweeper = ReconciliationSweeper(
        AsyncSessionLocal,
        stale_after=settings.reconciliation_stale_after,
        interval=settings.reconciliation_interval,
    )
    app.state.outbox_relay = relay
    background = [asyncio.create_task(relay.run()), asyncio.create_task(sweeper.run())]
    logger.info("Startup complete")

    yield

    relay.stop()
    sweeper.stop()
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    await producer.stop()
    await app.state.http_client.aclose()
    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Order Service",
    description="Places orders, reserves stock and emits OrderPlaced events",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(MetricsMiddleware, service="order-service")
app.add_middleware(RequestIDMiddleware)
install_error_handlers(app)
app.include_router(orders.router, prefix="/orders", tags=["orders"])

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
