from prometheus_client import Counter, Gauge

ORDERS_PLACED = Counter(
    "orders_placed_total",
    "place_order outcomes",
    ["outcome"],  # confirmed | rejected | reservation_failed | upstream_unavailable
)

OUTBOX_RELAYED = Counter(
    "outbox_events_relayed_total",
    "Outbox rows handed to the event channel",
    ["outcome"],  # published | failed
)

OUTBOX_BACKLOG = Gauge(
    "outbox_events_pending",
    "Outbox rows still waiting for a broker ack after the last relay pass",
)

ORDERS_RECONCILED = Counter(
    "orders_reconciled_total",
    "Stale PENDING orders moved to CANCELLED by the reconciliation sweep",
)
