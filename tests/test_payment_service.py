"""
Payment processing: idempotency on order id, gateway outcomes, refunds.
"""
import json
import random
import re
from decimal import Decimal

import pytest

from conftest import FixedGateway
from payment_service.gateway import DECLINE_REMARKS, SimulatedGateway, generate_transaction_id
from payment_service.models import Payment, PaymentStatus
from payment_service.schemas import PaymentRequest
from payment_service.service import PaymentService
from shared.channel import EventPublisher
from shared.errors import DuplicatePayment, InvalidStateTransition, NotFound
from shared.events import OrderPlacedEvent

SETTLED = "payment-completed-topic"


def _order_placed(order_id=1, amount=75.0):
    return OrderPlacedEvent(order_id=order_id, user_id=1, product_id=7, amount=amount, quantity=3)


@pytest.fixture
def service(payment_sessions, producer):
    return PaymentService(payment_sessions, FixedGateway(True), EventPublisher(producer), settled_topic=SETTLED)


def _simulate_lost_race(service, payment_sessions, order_id):
    """Let the pre-insert lookup miss a row that a concurrent delivery already stored."""
    original = service._find_by_order
    calls = {"n": 0}

    async def racing_lookup(db, looked_up):
        calls["n"] += 1
        if calls["n"] == 1:
            async with payment_sessions() as other:
                other.add(
                    Payment(
                        order_id=order_id,
                        amount=Decimal("75.00"),
                        status=PaymentStatus.SUCCESS,
                        transaction_id="TXN-WINNER",
                        payment_method="CARD",
                    )
                )
                await other.commit()
            return None
        return await original(db, looked_up)

    service._find_by_order = racing_lookup


class TestOrderPlacedHandling:
    async def test_successful_payment_emits_payment_settled(self, service, producer):
        payment = await service.process_order_payment(_order_placed(1, 75.0))

        assert payment.status == PaymentStatus.SUCCESS
        assert payment.amount == Decimal("75.00")
        assert payment.payment_method == "CARD"
        assert payment.remarks == "Payment processed successfully via Kafka event"
        assert re.fullmatch(r"TXN-[0-9A-F-]{18}", payment.transaction_id)

        [settled] = producer.sent_to(SETTLED)
        assert settled.key == b"1"
        assert json.loads(settled.value) == {
            "orderId": 1,
            "status": "SUCCESS",
            "transactionId": payment.transaction_id,
        }

    async def test_duplicate_delivery_charges_once(self, service, producer, payment_sessions):
        first = await service.process_order_payment(_order_placed(1))
        second = await service.process_order_payment(_order_placed(1))

        assert second is None
        payments = await service.list_payments()
        assert len(payments) == 1
        assert payments[0].transaction_id == first.transaction_id
        assert len(producer.sent_to(SETTLED)) == 1

    async def test_declined_payment_is_stored_as_failed(self, payment_sessions, producer):
        service = PaymentService(payment_sessions, FixedGateway(False), EventPublisher(producer), SETTLED)

        payment = await service.process_order_payment(_order_placed(2))

        assert payment.status == PaymentStatus.FAILED
        assert payment.transaction_id is None
        assert payment.remarks == DECLINE_REMARKS
        assert json.loads(producer.sent_to(SETTLED)[0].value)["status"] == "FAILED"

    async def test_lost_insert_race_is_a_silent_no_op(self, service, payment_sessions, producer):
        _simulate_lost_race(service, payment_sessions, order_id=3)

        assert await service.process_order_payment(_order_placed(3)) is None

        payment = await service.get_payment_by_order(3)
        assert payment.transaction_id == "TXN-WINNER"
        assert producer.sent_to(SETTLED) == []

    async def test_works_without_publisher(self, payment_sessions):
        service = PaymentService(payment_sessions, FixedGateway(True))

        payment = await service.process_order_payment(_order_placed(4))

        assert payment.status == PaymentStatus.SUCCESS


class TestDirectPayment:
    async def test_process_payment(self, service, producer):
        payment = await service.process_payment(
            PaymentRequest(order_id=10, amount=Decimal("19.99"), payment_method="PAYPAL")
        )

        assert payment.status == PaymentStatus.SUCCESS
        assert payment.payment_method == "PAYPAL"
        assert payment.remarks == "Payment processed successfully"
        assert producer.sent == []

    async def test_second_payment_for_order_is_rejected(self, service):
        await service.process_payment(PaymentRequest(order_id=10, amount=Decimal("19.99")))

        with pytest.raises(DuplicatePayment) as exc_info:
            await service.process_payment(PaymentRequest(order_id=10, amount=Decimal("19.99")))
        assert str(exc_info.value) == "Payment already exists for order ID: 10"

    async def test_lost_insert_race_is_rejected(self, service, payment_sessions):
        _simulate_lost_race(service, payment_sessions, order_id=11)

        with pytest.raises(DuplicatePayment):
            await service.process_payment(PaymentRequest(order_id=11, amount=Decimal("75.00")))


class TestRefund:
    async def test_refund_successful_payment(self, service):
        payment = await service.process_order_payment(_order_placed(1))

        refunded = await service.refund_payment(payment.id)

        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.remarks == "Payment refunded successfully"
        assert (await service.get_payment(payment.id)).status == PaymentStatus.REFUNDED

    async def test_refund_twice_is_rejected(self, service):
        payment = await service.process_order_payment(_order_placed(1))
        await service.refund_payment(payment.id)

        with pytest.raises(InvalidStateTransition, match="Payment already refunded"):
            await service.refund_payment(payment.id)

    async def test_failed_payment_cannot_be_refunded(self, payment_sessions):
        service = PaymentService(payment_sessions, FixedGateway(False))
        payment = await service.process_order_payment(_order_placed(1))

        with pytest.raises(InvalidStateTransition, match="Only successful payments can be refunded"):
            await service.refund_payment(payment.id)

    async def test_refund_missing_payment(self, service):
        with pytest.raises(NotFound):
            await service.refund_payment(99)


class TestReads:
    async def test_get_by_order_missing(self, service):
        with pytest.raises(NotFound) as exc_info:
            await service.get_payment_by_order(5)
        assert str(exc_info.value) == "Payment not found with orderId: 5"

    async def test_list_by_status(self, payment_sessions):
        service = PaymentService(payment_sessions, FixedGateway(True, False, True))
        for order_id in (1, 2, 3):
            await service.process_order_payment(_order_placed(order_id))

        succeeded = await service.list_payments_by_status(PaymentStatus.SUCCESS)
        failed = await service.list_payments_by_status(PaymentStatus.FAILED)

        assert [p.order_id for p in succeeded] == [1, 3]
        assert [p.order_id for p in failed] == [2]


class TestSimulatedGateway:
    @pytest.mark.parametrize("rate, expected", [(1.0, True), (0.0, False)])
    async def test_extreme_rates_are_deterministic(self, rate, expected):
        gateway = SimulatedGateway(success_rate=rate)

        decisions = [await gateway.settle(1, Decimal("1.00")) for _ in range(20)]

        assert {d.success for d in decisions} == {expected}

    async def test_seeded_rng_is_reproducible(self):
        first = SimulatedGateway(0.5, rng=random.Random(7))
        second = SimulatedGateway(0.5, rng=random.Random(7))

        a = [(await first.settle(1, Decimal("1"))).success for _ in range(10)]
        b = [(await second.settle(1, Decimal("1"))).success for _ in range(10)]

        assert a == b

    @pytest.mark.parametrize("rate", [-0.1, 1.5])
    def test_rate_outside_unit_interval_is_rejected(self, rate):
        with pytest.raises(ValueError):
            SimulatedGateway(success_rate=rate)

    def test_transaction_ids_are_unique(self):
        ids = {generate_transaction_id() for _ in range(100)}

        assert len(ids) == 100
        assert all(re.fullmatch(r"TXN-[0-9A-F-]{18}", i) for i in ids)
