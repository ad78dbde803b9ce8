from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    provider: str = "mercadopago"
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"

    # Mercado Pago config
    mp_access_token: str = ""
    mp_api_base: str = "https://api.mercadopago.com"
    mp_timeout_seconds: float = 10.0
    # Shared secret appended to the notification_url as ?secret=...
    mp_webhook_secret: str = ""
    # Secret used to verify the x-signature header (optional)
    mp_signature_secret: str = ""
    sync_secret: str = ""
    log_provider_events: bool = False

    # Orders table vocabulary: "en" (PAYMENT_PENDING, PAID, ...) or "es" (PENDIENTE_PAGO, PAGADO, ...)
    order_status_dialect: str = "en"

    # Receipts / notifications
    receipt_service_url: str = ""
    receipt_service_token: str = ""
    notification_batch_size: int = 20
    notification_max_attempts: int = 5
    notification_poll_seconds: float = 5.0

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "public"

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
