"""Wire format of the events exchanged between the services."""
import json

import pytest
from pydantic import ValidationError

from shared.events import EVENT_TYPES, OrderPlacedEvent, PaymentSettledEvent


class TestOrderPlacedEvent:
    def test_serialises_camel_case(self):
        event = OrderPlacedEvent(order_id=1, user_id=2, product_id=7, amount=75.0, quantity=3)

        body = json.loads(event.to_bytes())

        assert body == {"orderId": 1, "userId": 2, "productId": 7, "amount": 75.0, "quantity": 3}

    def test_ignores_unknown_fields(self):
        raw = b'{"orderId": 1, "userId": 2, "productId": 7, "amount": 75.0, "quantity": 3, "coupon": "X"}'

        event = OrderPlacedEvent.model_validate_json(raw)

        assert event.order_id == 1
        assert not hasattr(event, "coupon")

    def test_missing_field_is_rejected(self):
        with pytest.raises(ValidationError):
            OrderPlacedEvent.model_validate_json(b'{"orderId": 1}')

    def test_events_are_immutable(self):
        event = OrderPlacedEvent(order_id=1, user_id=2, product_id=7, amount=75.0, quantity=3)

        with pytest.raises(ValidationError):
            event.amount = 1.0


class TestPaymentSettledEvent:
    def test_declined_payment_has_no_transaction_id(self):
        event = PaymentSettledEvent(order_id=5, status="FAILED")

        assert json.loads(event.to_bytes()) == {"orderId": 5, "status": "FAILED", "transactionId": None}


def test_event_registry_round_trips_outbox_payloads():
    payload = OrderPlacedEvent(order_id=1, user_id=2, product_id=7, amount=75.0, quantity=3).model_dump(by_alias=True)

    event = EVENT_TYPES["OrderPlaced"].model_validate(payload)

    assert event.product_id == 7
