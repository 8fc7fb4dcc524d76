"""
Pydantic event schemas shared by the order and payment services.

Payloads are camelCase JSON on the wire and field-stable: consumers ignore
unknown fields, producers never add any. Correlation and trace metadata travel
in Kafka headers, not in the payload.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EventBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()


class OrderPlacedEvent(EventBase):
    order_id: int
    user_id: int
    product_id: int
    amount: float
    quantity: int


class PaymentSettledEvent(EventBase):
    order_id: int
    status: str  # "SUCCESS" | "FAILED"
    transaction_id: str | None = None


EVENT_TYPES: dict[str, type[EventBase]] = {
    "OrderPlaced": OrderPlacedEvent,
    "PaymentSettled": PaymentSettledEvent,
}
