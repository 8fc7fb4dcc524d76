# Import all models here so SQLAlchemy registers them with Base.metadata
from app.models.order import Order, OrderStatus
from app.models.outbox import OutboxEvent, OutboxStatus

__all__ = [
    "Order",
    "OrderStatus",
    "OutboxEvent",
    "OutboxStatus",
]
