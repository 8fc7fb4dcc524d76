from prometheus_client import Counter

EVENTS_PUBLISHED = Counter(
    "events_published_total",
    "Records handed to the event channel, by broker outcome",
    ["topic", "outcome"],  # acked | failed
)

EVENTS_CONSUMED = Counter(
    "events_consumed_total",
    "Records taken off the event channel, by handling outcome",
    ["topic", "outcome"],  # processed | retried | dlq | redelivered
)
