import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """A required secret or setting is missing or malformed. Never retried."""


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/adpulse"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql://, asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    public_url: str = "http://localhost:8000"

    # 64-char hex string (32 bytes) for AES-256-GCM token encryption
    token_encryption_key: str = ""

    # Meta Marketing API
    meta_app_id: str = ""
    meta_app_secret: str = ""
    meta_api_version: str = "v21.0"
    meta_timeout: float = 30.0
    meta_max_retries: int = 5
    meta_backoff_base: float = 2.0
    meta_page_size: int = 500
    token_refresh_threshold_days: int = 7
    thumbnail_lookup_limit: int = 50
    default_conversion_event: str = "offsite_conversion.fb_pixel_purchase"

    # Sync window used by the scheduled per-account job
    sync_lookback_days: int = 30
    report_timezone: str = "America/Sao_Paulo"

    # Decision engine defaults (per-account rows in account_settings override these)
    cpa_target: float = 50.0
    cpl_target: float = 15.0
    ctr_benchmark: float = 1.0
    min_spend: float = 20.0
    frequency_warn: float = 2.2
    frequency_kill: float = 2.8
    cost_kill_multiplier: float = 1.3
    currency_symbol: str = "$"

    # Alert detector
    alert_spend_threshold: float = 50.0
    alert_ctr_drop_pct: float = 30.0
    alert_ctr_critical_drop_pct: float = 50.0
    alert_min_impressions: int = 100

    # GA4 Data API (service account JSON, as a string)
    ga4_service_account_json: str = ""

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.cron_secret:
                raise ValueError("CRON_SECRET must be set in production.")
            if not self.token_encryption_key:
                raise ValueError(
                    "TOKEN_ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def meta_base_url(self) -> str:
        return f"https://graph.facebook.com/{self.meta_api_version}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
