"""
Outbox relay: publishes rows written by the order service to the event channel.

A row is marked PUBLISHED only after the broker acknowledged it. Rows whose
publish failed stay PENDING with the error recorded and are picked up again
on the next pass, so a row can be published more than once; consumers are
idempotent on order id.
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.metrics import OUTBOX_BACKLOG, OUTBOX_RELAYED
from app.models.outbox import OutboxEvent, OutboxStatus
from shared.channel import EventPublisher
from shared.errors import PublishFailed
from shared.events import EVENT_TYPES

logger = logging.getLogger(__name__)


class OutboxRelay:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: EventPublisher,
        batch_size: int = 100,
        poll_interval: float = 1.0,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._running = False
        self._wakeup = asyncio.Event()

    async def _fetch_pending(self, db: AsyncSession) -> list[OutboxEvent]:
        result = await db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.PENDING)
            .order_by(OutboxEvent.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def relay_once(self) -> int:
        """Publish one batch of pending rows. Returns how many were acknowledged."""
        async with self._session_factory() as db:
            rows = await self._fetch_pending(db)
            if not rows:
                OUTBOX_BACKLOG.set(0)
                return 0

            # Hand every record to the producer first, then collect the acks.
            # A row that cannot be decoded or handed over is recorded and skipped.
            deliveries = []
            for row in rows:
                try:
                    event = EVENT_TYPES[row.event_type].model_validate(row.payload)
                    deliveries.append(await self._publisher.publish(row.topic, row.key, event))
                except Exception as exc:
                    logger.exception("Outbox row could not be handed to the producer", extra={"outbox_id": row.id})
                    self._record_failure(row, f"{type(exc).__name__}: {exc}")
                    deliveries.append(None)

            published = 0
            for row, delivery in zip(rows, deliveries):
                if delivery is None:
                    continue
                try:
                    result = await delivery
                except PublishFailed as exc:
                    self._record_failure(row, exc.reason)
                    continue

                row.attempts += 1
                row.status = OutboxStatus.PUBLISHED
                row.published_at = datetime.utcnow()
                row.last_error = None
                published += 1
                OUTBOX_RELAYED.labels("published").inc()
                logger.info(
                    "Outbox event published",
                    extra={
                        "outbox_id": row.id,
                        "event_type": row.event_type,
                        "key": row.key,
                        "partition": result.partition,
                        "offset": result.offset,
                    },
                )

            await db.commit()
            OUTBOX_BACKLOG.set(len(rows) - published)
            return published

    def _record_failure(self, row: OutboxEvent, reason: str) -> None:
        row.attempts += 1
        row.last_error = reason
        OUTBOX_RELAYED.labels("failed").inc()
        logger.error(
            "Outbox publish failed, will retry",
            extra={"outbox_id": row.id, "key": row.key, "attempts": row.attempts, "error": reason},
        )

    async def pending_count(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status == OutboxStatus.PENDING)
            )
            return result.scalar_one()

    def wake(self) -> None:
        self._wakeup.set()

    async def run(self) -> None:
        """Poll the outbox until stop() is called."""
        self._running = True
        logger.info("Outbox relay started", extra={"batch_size": self.batch_size})
        try:
            while self._running:
                try:
                    published = await self.relay_once()
                except Exception:
                    logger.exception("Outbox relay pass failed")
                    published = 0

                if published >= self.batch_size:
                    continue
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
        finally:
            logger.info("Outbox relay stopped")

    def stop(self) -> None:
        self._running = False
        self._wakeup.set()
