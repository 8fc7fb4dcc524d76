from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/payments"
    db_pool_size: int = 5
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_consumer_group: str = "ecommerce_payment_group"
    order_placed_topic: str = "order-created-topic"
    payment_settled_topic: str = "payment-completed-topic"

    # Consumer retry before dead-lettering
    consumer_max_attempts: int = 3
    consumer_backoff_base: float = 1.0
    consumer_backoff_max: float = 30.0

    # Simulated payment gateway
    payment_success_rate: float = 0.8
    payment_min_latency: float = 0.5
    payment_max_latency: float = 1.5

    # Observability
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"
    tracing_enabled: bool = True
    trace_sample_ratio: float = 1.0

    model_config = {"env_file": ".env"}


settings = Settings()
