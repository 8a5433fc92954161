from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./merchant.db"
    log_level: str = "INFO"

    # Tracing
    tracing_enabled: bool = False
    otel_traces_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Internal API security
    internal_api_secret: str = ""

    # Magic rules engine
    magic_rules_candidate_limit: int = Field(default=500, ge=1)
    magic_rules_timezone: str = "UTC"
    magic_rules_coupon_code_length: int = Field(default=8, ge=4, le=32)
    magic_rules_coupon_code_attempts: int = Field(default=25, ge=1)

    @field_validator("magic_rules_timezone", mode="before")
    @classmethod
    def _normalize_timezone(cls, value: object) -> str:
        if value is None:
            return "UTC"
        text = str(value).strip()
        return text or "UTC"

    # Notification outbox
    notification_outbox_max_attempts: int = Field(default=8, ge=1)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
