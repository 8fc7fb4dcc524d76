"""
Event channel on top of Kafka (aiokafka).

Guarantees:
  - Publish is non-blocking: the caller gets a future and a completion callback
    records the physical position (partition + offset) or the failure.
    Nothing is retried here; durable retry lives in the order service outbox.
  - Subscription is at-least-once: offsets are committed only after a record
    has been handled or parked in the dead-letter topic.
  - Handler failures are retried with exponential backoff, then dead-lettered.
    Records that cannot be decoded are dead-lettered immediately. A failed
    dead-letter write seeks back and redelivers; a failed commit is logged.
  - Records are keyed by order id, so ordering holds per order only.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import CommitFailedError, KafkaError
from aiokafka.structs import TopicPartition
from opentelemetry import trace
from pydantic import ValidationError

from shared.errors import PublishFailed
from shared.events import EventBase
from shared.metrics import EVENTS_CONSUMED, EVENTS_PUBLISHED
from shared.tracing import context_from_headers, kafka_headers

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DLQ_SUFFIX = ".dlq"


@dataclass(frozen=True)
class PublishResult:
    topic: str
    partition: int
    offset: int


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class EventPublisher:
    def __init__(self, producer: AIOKafkaProducer):
        self._producer = producer

    async def publish(self, topic: str, key: str, event: EventBase) -> asyncio.Future:
        """
        Hand `event` to the broker and return without waiting for the ack.

        The returned future resolves to a PublishResult or fails with
        PublishFailed.
        """
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()
        outcome.add_done_callback(partial(_log_publish_outcome, topic, key))

        try:
            delivery = await self._producer.send(
                topic,
                key=key.encode(),
                value=event.to_bytes(),
                headers=kafka_headers(),
            )
        except KafkaError as exc:
            outcome.set_exception(PublishFailed(topic, key, str(exc)))
            return outcome

        delivery.add_done_callback(partial(_resolve_delivery, topic, key, outcome))
        return outcome


def _resolve_delivery(topic: str, key: str, outcome: asyncio.Future, delivery: asyncio.Future) -> None:
    if outcome.done():
        return
    if delivery.cancelled():
        outcome.set_exception(PublishFailed(topic, key, "delivery cancelled"))
        return
    exc = delivery.exception()
    if exc is not None:
        outcome.set_exception(PublishFailed(topic, key, str(exc)))
        return
    metadata = delivery.result()
    outcome.set_result(PublishResult(topic, metadata.partition, metadata.offset))


def _log_publish_outcome(topic: str, key: str, outcome: asyncio.Future) -> None:
    exc = outcome.exception() if not outcome.cancelled() else PublishFailed(topic, key, "cancelled")
    if exc is None:
        result = outcome.result()
        EVENTS_PUBLISHED.labels(topic, "acked").inc()
        logger.info(
            "Published event",
            extra={
                "topic": topic,
                "key": key,
                "partition": result.partition,
                "offset": result.offset,
            },
        )
    else:
        EVENTS_PUBLISHED.labels(topic, "failed").inc()
        logger.error("Failed to publish event", extra={"topic": topic, "key": key, "error": str(exc)})


# ---------------------------------------------------------------------------
# Dead letters
# ---------------------------------------------------------------------------


class DeadLetterSink:
    """Parks records that could not be handled in `<source topic>.dlq`."""

    def __init__(self, producer: AIOKafkaProducer, suffix: str = DLQ_SUFFIX):
        self._producer = producer
        self._suffix = suffix

    def topic_for(self, source_topic: str) -> str:
        return f"{source_topic}{self._suffix}"

    async def send(self, record, error: str, attempts: int) -> None:
        # Raising here leaves the offset uncommitted; the subscriber seeks back to the record.
        headers = list(record.headers or ()) + [
            ("dlq.source.topic", record.topic.encode()),
            ("dlq.source.partition", str(record.partition).encode()),
            ("dlq.source.offset", str(record.offset).encode()),
            ("dlq.error", error.encode()),
            ("dlq.attempts", str(attempts).encode()),
        ]
        await self._producer.send_and_wait(
            self.topic_for(record.topic),
            key=record.key,
            value=record.value,
            headers=headers,
        )
        logger.warning(
            "Record sent to dead-letter topic",
            extra={
                "topic": record.topic,
                "partition": record.partition,
                "offset": record.offset,
                "attempts": attempts,
                "error": error,
            },
        )


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


def build_consumer(topic: str, group_id: str, bootstrap_servers: str) -> AIOKafkaConsumer:
    return AIOKafkaConsumer(
        topic,
        bootstrap_servers=bootstrap_servers,
        group_id=group_id,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )


class EventSubscriber:
    def __init__(
        self,
        consumer: AIOKafkaConsumer,
        schema: type[EventBase],
        handler: Callable[[EventBase], Awaitable[None]],
        dead_letters: DeadLetterSink,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
    ):
        self._consumer = consumer
        self._schema = schema
        self._handler = handler
        self._dead_letters = dead_letters
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max

    async def run(self) -> None:
        """
        Consume until cancelled.

        A record that could be neither handled nor dead-lettered is sought
        back to and redelivered. A failed commit only means the record may be
        delivered again, which the idempotent handlers tolerate.
        """
        async for record in self._consumer:
            try:
                await self.dispatch(record)
            except Exception:
                logger.exception(
                    "Record could not be handled or dead-lettered, redelivering",
                    extra={"topic": record.topic, "partition": record.partition, "offset": record.offset},
                )
                EVENTS_CONSUMED.labels(record.topic, "redelivered").inc()
                self._consumer.seek(TopicPartition(record.topic, record.partition), record.offset)
                await asyncio.sleep(self._backoff(self._max_attempts))
                continue

            try:
                await self._consumer.commit()
            except CommitFailedError as exc:
                logger.warning(
                    "Offset commit failed, record may be redelivered",
                    extra={
                        "topic": record.topic,
                        "partition": record.partition,
                        "offset": record.offset,
                        "error": str(exc),
                    },
                )

    def _backoff(self, attempt: int) -> float:
        return min(self._backoff_base * 2 ** (attempt - 1), self._backoff_max)

    async def dispatch(self, record) -> str:
        """Handle one record; returns "processed" or "dlq"."""
        ctx = context_from_headers(record.headers)
        with tracer.start_as_current_span(f"kafka.consume.{record.topic}", context=ctx):
            try:
                event = self._schema.model_validate_json(record.value)
            except ValidationError as exc:
                logger.error(
                    "Failed to decode record",
                    extra={"topic": record.topic, "partition": record.partition, "offset": record.offset},
                )
                await self._dead_letters.send(record, f"undecodable: {exc}", attempts=0)
                EVENTS_CONSUMED.labels(record.topic, "dlq").inc()
                return "dlq"

            last_error = ""
            for attempt in range(1, self._max_attempts + 1):
                try:
                    await self._handler(event)
                except Exception as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                    logger.warning(
                        "Handler failed on attempt %d/%d",
                        attempt,
                        self._max_attempts,
                        extra={"topic": record.topic, "offset": record.offset, "error": last_error},
                    )
                    if attempt < self._max_attempts:
                        EVENTS_CONSUMED.labels(record.topic, "retried").inc()
                        await asyncio.sleep(self._backoff(attempt))
                    continue

                EVENTS_CONSUMED.labels(record.topic, "processed").inc()
                return "processed"

            await self._dead_letters.send(record, last_error, attempts=self._max_attempts)
            EVENTS_CONSUMED.labels(record.topic, "dlq").inc()
            return "dlq"
