"""
Payment gateway seam.

The service never decides on its own whether a charge settles: it asks a
PaymentGateway. SimulatedGateway stands in for a real provider with a
Bernoulli trial that ignores the order content entirely; tests inject their
own gateway to get deterministic outcomes.
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger(__name__)

DECLINE_REMARKS = "Payment failed due to insufficient funds or invalid card"


def generate_transaction_id() -> str:
    return "TXN-" + str(uuid.uuid4())[:18].upper()


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SettlementDecision:
    success: bool
    transaction_id: str | None = None
    reason: str | None = None

    @classmethod
    def approved(cls) -> "SettlementDecision":
        return cls(success=True, transaction_id=generate_transaction_id())

    @classmethod
    def declined(cls, reason: str = DECLINE_REMARKS) -> "SettlementDecision":
        return cls(success=False, reason=reason)


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


class PaymentGateway(Protocol):
    async def settle(self, order_id: int, amount: Decimal) -> SettlementDecision: ...


class SimulatedGateway:
    def __init__(
        self,
        success_rate: float = 0.8,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
        rng: random.Random | None = None,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError(f"success_rate must be within [0, 1], got {success_rate}")
        self.success_rate = success_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self._rng = rng or random.Random()

    async def settle(self, order_id: int, amount: Decimal) -> SettlementDecision:
        if self.max_latency > 0:
            latency = self._rng.uniform(self.min_latency, self.max_latency)
            logger.debug(
                "Calling simulated gateway",
                extra={"order_id": order_id, "simulated_latency_s": round(latency, 2)},
            )
            await asyncio.sleep(latency)

        if self._rng.random() < self.success_rate:
            return SettlementDecision.approved()
        return SettlementDecision.declined()
