from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    BILLING_ENV: str = "development"
    BILLING_MODE: str = "cron"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    BILLING_STORE: str = "supabase"
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    SUPABASE_TIMEOUT_SECONDS: float = 10.0
    BILLING_BATCH_RPC: str = "billing_apply_operations"
    BILLING_TIME_BUDGET_SECONDS: float = 28.0
    BILLING_CHUNK_SIZE: int = 10
    BILLING_DUE_LIMIT: int = 1000
    BILLING_MAX_BATCH_SIZE: int = 25
    BILLING_BREAKER_MIN_PROCESSED: int = 20
    BILLING_DEFAULT_MAX_RETRIES: int = 3
    BILLING_MAX_RECORDED_ERRORS: int = 100
    BILLING_SETTLEMENT_CURRENCY: str = "IRT"
    APP_URL: str = "http://localhost:3000"
    ZARINPAL_MERCHANT_ID: str | None = None
    ZARINPAL_BASE_URL: str = "https://api.zarinpal.com"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    CURRENCY_API_BASE_URL: str = "https://services.chatqt.com/public"
    CURRENCY_TIMEOUT_SECONDS: float = 5.0
    CURRENCY_CACHE_SECONDS: int = 600
    BILLING_ALERT_WEBHOOK_URL: str | None = None
    ALERT_WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    BILLING_CRON_SECRET: str | None = None

    @model_validator(mode="after")
    def validate_billing_settings(self) -> "Settings":
        store = self.BILLING_STORE.strip().lower()
        if store not in {"supabase", "memory"}:
            raise ValueError("BILLING_STORE must be 'supabase' or 'memory'")
        if store == "supabase":
            if not self.SUPABASE_URL.strip():
                raise ValueError("SUPABASE_URL must be configured")
            if not (self.SUPABASE_SERVICE_ROLE_KEY or "").strip():
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY must be configured")

        if self.BILLING_CHUNK_SIZE < 1:
            raise ValueError("BILLING_CHUNK_SIZE must be positive")
        if self.BILLING_DUE_LIMIT < 1:
            raise ValueError("BILLING_DUE_LIMIT must be positive")
        if self.BILLING_MAX_BATCH_SIZE < 1:
            raise ValueError("BILLING_MAX_BATCH_SIZE must be positive")
        if self.BILLING_TIME_BUDGET_SECONDS < 0:
            raise ValueError("BILLING_TIME_BUDGET_SECONDS must not be negative")

        if self.BILLING_ENV.strip().lower() == "production":
            if not (self.ZARINPAL_MERCHANT_ID or "").strip():
                raise ValueError("ZARINPAL_MERCHANT_ID must be configured in production")
        return self

    @property
    def gateway_callback_url(self) -> str:
        return f"{self.APP_URL.rstrip('/')}/api/webhooks/zarinpal"


@lru_cache
def get_settings() -> Settings:
    return Settings()
