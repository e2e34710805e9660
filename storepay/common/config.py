"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    public_base_url: str = "http://localhost:8000"

    telegram_bot_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    init_data_max_age_seconds: int = 3600

    cryptobot_api_token: str = ""
    cryptobot_api_url: str = "https://pay.crypt.bot/api"
    xrocket_api_token: str = ""
    xrocket_api_url: str = "https://pay.xrocket.tg"
    invoice_expires_in_seconds: int = 3600
    invoice_asset: str = "USDT"
    exchange_rate_ttl_seconds: int = 300
    fallback_usdt_rub_rate: str = "90"
    gateway_timeout_seconds: float = 10.0

    price_tolerance_kopecks: int = 100
    rate_limit_per_minute: int = 30

    reminder_delay_minutes: int = 60
    reminder_interval_seconds: int = 300
    reminder_send_delay_seconds: float = 0.1
    reminder_max_lines: int = 5
    storefront_cart_url: str = "https://t.me/Temka_Store_Bot/app?startapp=cart"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
