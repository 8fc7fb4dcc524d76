"""
Payment processing.

Guarantees:
  - At most one Payment per order id. The pre-insert lookup is a fast path;
    the UNIQUE constraint on payments.order_id is the real guard, and losing
    that race to a concurrent duplicate delivery is handled like the fast path.
  - The event path is idempotent (a replay is a silent no-op); the direct
    path rejects a second payment with DuplicatePayment.
  - PaymentSettled is published only by the call that created the row, so a
    replay never emits a second event or a different transaction id.
"""

import logging
import time
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_service.gateway import PaymentGateway, SettlementDecision
from payment_service.metrics import PAYMENT_OUTCOMES, PROCESSING_TIME, REFUNDS
from payment_service.models import Payment, PaymentStatus
from payment_service.schemas import PaymentRequest
from shared.channel import EventPublisher
from shared.errors import DuplicatePayment, InvalidStateTransition, NotFound
from shared.events import OrderPlacedEvent, PaymentSettledEvent

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
DEFAULT_EVENT_PAYMENT_METHOD = "CARD"


class PaymentService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        publisher: EventPublisher | None = None,
        settled_topic: str = "payment-completed-topic",
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._publisher = publisher
        self._settled_topic = settled_topic

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    async def _find_by_order(db: AsyncSession, order_id: int) -> Payment | None:
        result = await db.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalars().first()

    async def _settle_and_store(
        self,
        db: AsyncSession,
        order_id: int,
        amount: Decimal,
        payment_method: str,
        success_remarks: str,
        source: str,
    ) -> Payment | None:
        """Returns the new Payment, or None if another delivery already stored one."""
        start = time.monotonic()
        decision: SettlementDecision = await self._gateway.settle(order_id, amount)

        payment = Payment(
            order_id=order_id,
            amount=amount,
            status=PaymentStatus.SUCCESS if decision.success else PaymentStatus.FAILED,
            transaction_id=decision.transaction_id if decision.success else None,
            payment_method=payment_method,
            remarks=success_remarks if decision.success else decision.reason,
        )
        db.add(payment)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if await self._find_by_order(db, order_id) is None:
                raise
            PAYMENT_OUTCOMES.labels(source, "duplicate").inc()
            logger.info("Lost insert race to a concurrent delivery", extra={"order_id": order_id})
            return None

        PROCESSING_TIME.observe(time.monotonic() - start)
        PAYMENT_OUTCOMES.labels(source, "success" if decision.success else "failed").inc()
        logger.info(
            "Payment %s",
            payment.status.value,
            extra={
                "order_id": order_id,
                "payment_id": payment.id,
                "transaction_id": payment.transaction_id,
                "source": source,
            },
        )
        return payment

    # -----------------------------------------------------------------------
    # Event entry point
    # -----------------------------------------------------------------------

    async def process_order_payment(self, event: OrderPlacedEvent) -> Payment | None:
        order_id = event.order_id
        logger.info(
            "Processing payment for OrderPlaced",
            extra={"order_id": order_id, "amount": event.amount},
        )

        async with self._session_factory() as db:
            if await self._find_by_order(db, order_id) is not None:
                PAYMENT_OUTCOMES.labels("event", "duplicate").inc()
                logger.info("Payment already exists, skipping", extra={"order_id": order_id})
                return None

            payment = await self._settle_and_store(
                db,
                order_id,
                Decimal(str(event.amount)).quantize(CENTS),
                DEFAULT_EVENT_PAYMENT_METHOD,
                "Payment processed successfully via Kafka event",
                source="event",
            )

        if payment is not None and self._publisher is not None:
            # Not awaited: the channel's completion callback records the outcome.
            await self._publisher.publish(
                self._settled_topic,
                str(order_id),
                PaymentSettledEvent(
                    order_id=order_id,
                    status=payment.status.value,
                    transaction_id=payment.transaction_id,
                ),
            )
        return payment

    # -----------------------------------------------------------------------
    # Direct entry points
    # -----------------------------------------------------------------------

    async def process_payment(self, request: PaymentRequest) -> Payment:
        logger.info("Processing payment request", extra={"order_id": request.order_id})
        async with self._session_factory() as db:
            if await self._find_by_order(db, request.order_id) is not None:
                PAYMENT_OUTCOMES.labels("direct", "duplicate").inc()
                raise DuplicatePayment(request.order_id)

            payment = await self._settle_and_store(
                db,
                request.order_id,
                request.amount.quantize(CENTS),
                request.payment_method,
                "Payment processed successfully",
                source="direct",
            )
        if payment is None:
            raise DuplicatePayment(request.order_id)
        return payment

    async def refund_payment(self, payment_id: int) -> Payment:
        logger.info("Processing refund", extra={"payment_id": payment_id})
        async with self._session_factory() as db:
            payment = await db.get(Payment, payment_id)
            if payment is None:
                raise NotFound("Payment", payment_id)

            if payment.status == PaymentStatus.REFUNDED:
                REFUNDS.labels("rejected").inc()
                raise InvalidStateTransition("Payment already refunded")
            if payment.status != PaymentStatus.SUCCESS:
                REFUNDS.labels("rejected").inc()
                raise InvalidStateTransition("Only successful payments can be refunded")

            payment.status = PaymentStatus.REFUNDED
            payment.remarks = "Payment refunded successfully"
            await db.commit()

        REFUNDS.labels("refunded").inc()
        logger.info("Payment refunded", extra={"payment_id": payment_id, "order_id": payment.order_id})
        return payment

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_payment(self, payment_id: int) -> Payment:
        async with self._session_factory() as db:
            payment = await db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment", payment_id)
        return payment

    async def get_payment_by_order(self, order_id: int) -> Payment:
        async with self._session_factory() as db:
            payment = await self._find_by_order(db, order_id)
        if payment is None:
            raise NotFound("Payment", order_id, field="orderId")
        return payment

    async def list_payments(self) -> list[Payment]:
        async with self._session_factory() as db:
            result = await db.execute(select(Payment).order_by(Payment.id))
            return list(result.scalars().all())

    async def list_payments_by_status(self, status: PaymentStatus) -> list[Payment]:
        async with self._session_factory() as db:
            result = await db.execute(select(Payment).where(Payment.status == status).order_by(Payment.id))
            return list(result.scalars().all())
