"""Central environment-driven settings for the deposit service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "deposits"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # Ledger indexer (TronScan-compatible API).
    indexer_base_url: str = "https://apilist.tronscanapi.com"
    indexer_api_key: str = ""
    indexer_api_key_header: str = "TRON-PRO-API-KEY"
    indexer_timeout_seconds: float = 30.0
    usdt_contract_address: str = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
    usdt_decimals: int = 6
    polling_window_minutes: int = 10
    polling_page_limit: int = 50
    rate_limit_cooldown_ms: int = 1500

    # Card issuer API.
    issuer_base_url: str = "https://issuer.invalid"
    issuer_secret_key: str = ""
    issuer_license_key: str = ""
    issuer_private_key_path: str = "issuer.pem"
    issuer_timeout_seconds: float = 5.0
    issuer_application_page_limit: int = 5

    # Scheduling and batching.
    monitor_interval_seconds: int = 60
    sweep_interval_seconds: int = 900
    monitor_batch_size: int = 4
    monitor_lanes: int = 1
    monitor_lane_delay_ms: int = 12_000
    account_chunk_size: int = 5
    account_chunk_delay_ms: int = 2_000

    # Queue.
    monitor_batch_attempts: int = 3
    monitor_batch_backoff_ms: int = 5_000
    monitor_batch_concurrency: int = 3
    reconcile_attempts: int = 5
    reconcile_backoff_ms: int = 2_000
    reconcile_delay_ms: int = 1_000
    reconcile_concurrency: int = 5
    accept_attempts: int = 5
    accept_backoff_ms: int = 5_000
    accept_delay_ms: int = 30_000
    accept_concurrency: int = 2
    job_timeout_seconds: float = 60.0
    job_visibility_timeout_seconds: int = 300
    job_poll_interval_seconds: float = 0.5
    # Settled monitor-batch and accept-application rows kept per status.
    job_retention_count: int = 100

    # Expiry and fees.
    pending_max_age_hours: int = 24
    deposit_fee_type: str = "FIXED"
    deposit_fee_rate: str = "0"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
