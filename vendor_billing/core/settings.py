from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    VENDOR_BILLING_ENV: str = "development"
    VENDOR_BILLING_MODE: str = "worker"
    LOG_LEVEL: str = "INFO"
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str
    STORE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_SECRET_KEY: str | None = None
    EMAIL_FROM: str | None = None
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    DASHBOARD_URL: str = "https://www.spiriverse.com/dashboard/subscription"
    BILLING_TIMEZONE: str = "Australia/Sydney"
    BILLING_RUN_HOURS: str = "6,18"
    BILLING_RENEWAL_LOOKAHEAD_DAYS: int = 3
    BILLING_ATTEMPT_COOLDOWN_MINUTES: int = 60
    BILLING_PASS_LIMIT: int = 500
    BILLING_ACTOR: str = "BILLING_PROCESSOR"
    FEE_CONFIG_CACHE_TTL_SECONDS: int = 300
    FEE_CONFIG_FAIL_OPEN: bool = True
    WORKER_HEARTBEAT_ENABLED: bool = True

    @model_validator(mode="after")
    def validate_billing_settings(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.SUPABASE_SERVICE_ROLE_KEY.strip():
            raise ValueError("SUPABASE_SERVICE_ROLE_KEY must be configured")

        try:
            ZoneInfo(self.BILLING_TIMEZONE.strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"BILLING_TIMEZONE is not a known timezone: {self.BILLING_TIMEZONE}") from exc

        if self.VENDOR_BILLING_MODE.strip().lower() not in {"worker", "once"}:
            raise ValueError("VENDOR_BILLING_MODE must be 'worker' or 'once'")

        hours = self.run_hours_list
        if not hours:
            raise ValueError("BILLING_RUN_HOURS must list at least one hour")

        if self.VENDOR_BILLING_ENV.strip().lower() == "production":
            if not (self.EMAIL_FROM or "").strip():
                raise ValueError("EMAIL_FROM must be configured in production")
            if not (self.STRIPE_SECRET_KEY or "").strip():
                raise ValueError("STRIPE_SECRET_KEY must be configured in production")
        return self

    @property
    def billing_tz(self) -> ZoneInfo:
        return ZoneInfo(self.BILLING_TIMEZONE.strip())

    @property
    def run_hours_list(self) -> list[int]:
        hours: set[int] = set()
        for raw in self.BILLING_RUN_HOURS.split(","):
            value = raw.strip()
            if not value:
                continue
            try:
                hour = int(value)
            except ValueError as exc:
                raise ValueError(f"BILLING_RUN_HOURS contains a non-integer hour: {value}") from exc
            if hour < 0 or hour > 23:
                raise ValueError(f"BILLING_RUN_HOURS contains an out-of-range hour: {hour}")
            hours.add(hour)
        return sorted(hours)


@lru_cache
def get_settings() -> Settings:
    return Settings()
