from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from balancebook.money import Currency, safe_normalize_currency


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "balancebook"
    database_url: str = "sqlite+aiosqlite:///./balancebook.db"
    frontend_origin: str = "http://localhost:3000"
    default_currency: Currency = Currency.USD
    reference_timezone: str = "UTC"
    log_level: str = "INFO"

    dashboard_cache_ttl_seconds: int = 5 * 60
    max_cache_payload_bytes: int = 512 * 1024
    history_months: int = 6

    rate_provider: str = "frankfurter"
    frankfurter_base_url: str = "https://api.frankfurter.app"
    exchange_rate_ttl_hours: int = 24
    rate_fetch_timeout_seconds: float = 8.0

    quote_freshness_minutes: int = 15
    stock_min_call_interval_seconds: float = 12.0
    stock_refresh_time_budget_seconds: float = 25.0
    alpha_vantage_api_key: str = ""
    alpha_vantage_base_url: str = "https://www.alphavantage.co/query"

    @field_validator("default_currency", mode="before")
    @classmethod
    def _fallback_currency(cls, value: object) -> Currency:
        return safe_normalize_currency(value if isinstance(value, str) else None, Currency.USD)

    @field_validator("rate_provider")
    @classmethod
    def _validate_rate_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"frankfurter", "static"}:
            raise ValueError("rate_provider must be 'frankfurter' or 'static'.")
        return normalized


@lru_cache
def get_settings() -> Settings:
    return Settings()
