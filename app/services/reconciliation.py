"""
Background sweep for orders stuck in PENDING.

An order stays PENDING when the stock reservation failed (or the process died
between the reservation and the CONFIRMED write). Once it is older than
`stale_after` seconds it can no longer be confirmed and is cancelled.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.metrics import ORDERS_RECONCILED
from app.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)


class ReconciliationSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stale_after: float = 300.0,
        interval: float = 60.0,
    ):
        self._session_factory = session_factory
        self.stale_after = timedelta(seconds=stale_after)
        self.interval = interval
        self._running = False

    async def _find_stale(self, db: AsyncSession, cutoff: datetime):
        result = await db.execute(
            select(Order.id, Order.product_id, Order.quantity, Order.created_at).where(
                Order.status == OrderStatus.PENDING, Order.created_at < cutoff
            )
        )
        return result.all()

    async def sweep_once(self, now: datetime | None = None) -> int:
        cutoff = (now or datetime.utcnow()) - self.stale_after
        cancelled = 0
        async with self._session_factory() as db:
            for order in await self._find_stale(db, cutoff):
                # Only a row still PENDING is cancelled; a concurrent confirm wins.
                result = await db.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
                    .values(status=OrderStatus.CANCELLED)
                )
                if result.rowcount == 0:
                    logger.info("Stale order left PENDING before it was swept", extra={"order_id": order.id})
                    continue
                cancelled += 1
                # No release-stock call exists upstream; a reservation that did
                # succeed before a crash has to be corrected by hand.
                logger.warning(
                    "Cancelled stale PENDING order",
                    extra={
                        "order_id": order.id,
                        "product_id": order.product_id,
                        "quantity": order.quantity,
                        "created_at": order.created_at.isoformat(),
                    },
                )
            await db.commit()

        if cancelled:
            ORDERS_RECONCILED.inc(cancelled)
        return cancelled

    async def run(self) -> None:
        self._running = True
        logger.info("Reconciliation sweeper started", extra={"stale_after_s": self.stale_after.total_seconds()})
        try:
            while self._running:
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("Reconciliation sweep failed")
                await asyncio.sleep(self.interval)
        finally:
            logger.info("Reconciliation sweeper stopped")

    def stop(self) -> None:
        self._running = False
