"""
Payment Service entry point.
Serves the /payments API and runs the OrderPlaced consumer as a background task.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from aiokafka import AIOKafkaProducer
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from payment_service import api
from payment_service.config import settings
from payment_service.consumer import build_order_placed_consumer, build_order_placed_subscriber
from payment_service.database import AsyncSessionLocal, Base, engine
from payment_service.gateway import SimulatedGateway
from payment_service.service import PaymentService
from shared.channel import EventPublisher
from shared.errors import install_error_handlers
from shared.logging import setup_logging
from shared.middleware.metrics import MetricsMiddleware
from shared.middleware.request_id import RequestIDMiddleware
from shared.tracing import setup_tracing

setup_logging(settings.log_level, service="payment-service")
logger = logging.getLogger(__name__)

if settings.tracing_enabled:
    setup_tracing("payment-service", settings.otlp_endpoint, settings.trace_sample_ratio)


def _log_consumer_exit(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("OrderPlaced consumer stopped unexpectedly", exc_info=task.exception())


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    consumer = build_order_placed_consumer(settings)
    await producer.start()
    await consumer.start()

    service = PaymentService(
        AsyncSessionLocal,
        SimulatedGateway(
            success_rate=settings.payment_success_rate,
            min_latency=settings.payment_min_latency,
            max_latency=settings.payment_max_latency,
        ),
        EventPublisher(producer),
        settled_topic=settings.payment_settled_topic,
    )
    app.state.payment_service = service

    subscriber = build_order_placed_subscriber(consumer, producer, service, settings)
    consumer_task = asyncio.create_task(subscriber.run())
    consumer_task.add_done_callback(_log_consumer_exit)
    logger.info(
        "Payment service started",
        extra={
            "bootstrap_servers": settings.kafka_bootstrap_servers,
            "consumer_group": settings.kafka_consumer_group,
            "success_rate": settings.payment_success_rate,
        },
    )

    yield

    consumer_task.cancel()
    await asyncio.gather(consumer_task, return_exceptions=True)
    await consumer.stop()
    await producer.stop()
    await engine.dispose()
    logger.info("Payment service stopped")


app = FastAPI(
    title="Payment Service",
    description="Settles payments for placed orders and emits PaymentSettled events",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(MetricsMiddleware, service="payment-service")
app.add_middleware(RequestIDMiddleware)
install_error_handlers(app)
app.include_router(api.router, prefix="/payments", tags=["payments"])

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
