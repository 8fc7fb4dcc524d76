from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/orders"
    log_level: str = "INFO"

    # Upstream collaborators
    auth_service_url: str = "http://auth-service:8081"
    product_service_url: str = "http://product-service:8082"
    upstream_timeout: float = 5.0

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    order_placed_topic: str = "order-created-topic"

    # Outbox relay
    outbox_batch_size: int = 100
    outbox_poll_interval: float = 1.0

    # Reconciliation of orders stuck in PENDING
    reconciliation_stale_after: float = 300.0
    reconciliation_interval: float = 60.0

    # Observability
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"
    tracing_enabled: bool = True
    trace_sample_ratio: float = 1.0

    model_config = {"env_file": ".env"}


settings = Settings()
