from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/marketplace"
    log_level: str = "INFO"

    # Fapshi mobile-money gateway
    fapshi_api_user: str = ""
    fapshi_api_key: str = ""
    fapshi_sandbox: bool = True
    fapshi_base_url: str | None = None

    gateway_timeout: float = 10.0
    gateway_max_retries: int = 3
    gateway_backoff_base: float = 1.0

    # Circuit breaker
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 30.0

    # Background reconciliation of pending payments (0 disables)
    reconcile_interval: float = 0.0
    reconcile_batch_size: int = 50

    # Kafka (empty disables event publishing)
    kafka_bootstrap_servers: str = ""

    # Observability (empty disables tracing)
    otlp_endpoint: str = ""

    model_config = {"env_file": ".env"}

    @property
    def gateway_base_url(self) -> str:
        if self.fapshi_base_url:
            return self.fapshi_base_url
        if self.fapshi_sandbox:
            return "https://sandbox.fapshi.com"
        return "https://live.fapshi.com"


settings = Settings()
