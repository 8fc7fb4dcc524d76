"""
OrderPlaced subscription for the payment service.

At-least-once: a record is committed after PaymentService handled it or after
it was parked in `<topic>.dlq`. Idempotency is PaymentService's job.
"""

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from payment_service.config import Settings
from payment_service.service import PaymentService
from shared.channel import DeadLetterSink, EventSubscriber, build_consumer
from shared.events import OrderPlacedEvent


def build_order_placed_consumer(settings: Settings) -> AIOKafkaConsumer:
    return build_consumer(
        settings.order_placed_topic,
        settings.kafka_consumer_group,
        settings.kafka_bootstrap_servers,
    )


def build_order_placed_subscriber(
    consumer: AIOKafkaConsumer,
    producer: AIOKafkaProducer,
    service: PaymentService,
    settings: Settings,
) -> EventSubscriber:
    return EventSubscriber(
        consumer,
        OrderPlacedEvent,
        service.process_order_payment,
        DeadLetterSink(producer),
        max_attempts=settings.consumer_max_attempts,
        backoff_base=settings.consumer_backoff_base,
        backoff_max=settings.consumer_backoff_max,
    )
