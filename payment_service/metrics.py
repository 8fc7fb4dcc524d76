from prometheus_client import Counter, Histogram

PROCESSING_TIME = Histogram(
    "payment_processing_duration_seconds",
    "Time spent settling one payment, gateway call included",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

PAYMENT_OUTCOMES = Counter(
    "payment_outcomes_total",
    "Payment outcomes by type",
    ["source", "outcome"],  # source: event | direct; outcome: success | failed | duplicate
)

REFUNDS = Counter(
    "payment_refunds_total",
    "Refund attempts",
    ["outcome"],  # refunded | rejected
)
