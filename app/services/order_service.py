import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients import CatalogClient, IdentityClient
from app.config import settings
from app.metrics import ORDERS_PLACED
from app.models.order import TERMINAL_STATUSES, Order, OrderStatus
from app.models.outbox import OutboxEvent
from app.schemas.order import OrderCreate
from shared.errors import (
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    StockReservationFailed,
    UpstreamUnavailable,
)
from shared.events import OrderPlacedEvent

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _fetch_order(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


def _order_placed_outbox(order: Order) -> OutboxEvent:
    event = OrderPlacedEvent(
        order_id=order.id,
        user_id=order.user_id,
        product_id=order.product_id,
        amount=float(order.total_amount),
        quantity=order.quantity,
    )
    return OutboxEvent(
        topic=settings.order_placed_topic,
        key=str(order.id),
        event_type="OrderPlaced",
        payload=event.model_dump(by_alias=True),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def place_order(
    db: AsyncSession,
    order_data: OrderCreate,
    identity: IdentityClient,
    catalog: CatalogClient,
    request_id: str = "unknown",
) -> Order:
    logger.info(
        "Creating order",
        extra={
            "request_id": request_id,
            "user_id": order_data.user_id,
            "product_id": order_data.product_id,
            "quantity": order_data.quantity,
        },
    )

    # 1-3. Synchronous pre-checks; nothing is written if any of them fails
    try:
        await identity.verify_user(order_data.user_id)
        product = await catalog.get_product(order_data.product_id)
        if not await catalog.check_stock(order_data.product_id, order_data.quantity):
            raise InsufficientStock(product.name, order_data.quantity)
    except UpstreamUnavailable:
        ORDERS_PLACED.labels("upstream_unavailable").inc()
        raise
    except (NotFound, InsufficientStock):
        ORDERS_PLACED.labels("rejected").inc()
        raise

    # 4. Price is fixed at creation
    total = (product.price * order_data.quantity).quantize(CENTS, rounding=ROUND_HALF_UP)

    # 5. Durability point: the order id exists from here on
    order = Order(
        user_id=order_data.user_id,
        product_id=order_data.product_id,
        quantity=order_data.quantity,
        total_amount=total,
        status=OrderStatus.PENDING,
    )
    db.add(order)
    await db.commit()

    # 6. Reserve stock. On failure the PENDING row stays for the reconciliation sweep.
    try:
        await catalog.reserve_stock(order_data.product_id, order_data.quantity)
    except StockReservationFailed:
        ORDERS_PLACED.labels("reservation_failed").inc()
        logger.error(
            "Stock reservation failed, order left PENDING",
            extra={"order_id": order.id, "request_id": request_id},
        )
        raise

    # 7. CONFIRMED and OrderPlaced are committed together; the outbox relay publishes
    order.status = OrderStatus.CONFIRMED
    db.add(_order_placed_outbox(order))
    await db.commit()
    await db.refresh(order)

    ORDERS_PLACED.labels("confirmed").inc()
    logger.info(
        "Order confirmed, OrderPlaced queued in outbox",
        extra={
            "order_id": order.id,
            "request_id": request_id,
            "amount": float(total),
        },
    )
    return order


async def get_order(db: AsyncSession, order_id: int) -> Order:
    return await _fetch_order(db, order_id)


async def list_orders_by_user(db: AsyncSession, user_id: int) -> list[Order]:
    result = await db.execute(select(Order).where(Order.user_id == user_id).order_by(Order.id))
    return list(result.scalars().all())


async def list_orders(db: AsyncSession) -> list[Order]:
    result = await db.execute(select(Order).order_by(Order.id))
    return list(result.scalars().all())


async def update_order_status(db: AsyncSession, order_id: int, status: OrderStatus) -> Order:
    logger.info("Updating order status", extra={"order_id": order_id, "status": status.value})
    order = await _fetch_order(db, order_id)
    order.status = status
    await db.commit()
    await db.refresh(order)
    return order


async def cancel_order(db: AsyncSession, order_id: int) -> Order:
    logger.info("Cancelling order", extra={"order_id": order_id})
    order = await _fetch_order(db, order_id)
    if order.status in TERMINAL_STATUSES:
        raise InvalidStateTransition(f"Cannot cancel order in {order.status.value} status")

    order.status = OrderStatus.CANCELLED
    await db.commit()
    await db.refresh(order)
    return order
