from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    database_url: str = "sqlite+aiosqlite:///./stampcard.db"
    database_echo: bool = False

    # Card levels
    stamps_per_level: int = Field(10, ge=1)

    # Code registry
    code_length: int = Field(12, ge=8, le=64)
    code_mint_attempts: int = Field(5, ge=1)
    stamp_code_default_ttl_days: int | None = None
    redemption_code_ttl_hours: int = Field(72, ge=0)

    # Optimistic concurrency retry budget
    cas_max_attempts: int = Field(8, ge=1)
    cas_base_backoff_seconds: float = Field(0.01, ge=0)
    cas_backoff_multiplier: float = Field(2.0, ge=1)
    cas_max_backoff_seconds: float = Field(0.5, ge=0)
    cas_jitter_seconds: float = Field(0.01, ge=0)
    operation_timeout_seconds: float | None = None

    # Default subscription plan limits (None = unlimited)
    plan_max_clients: int | None = None
    plan_max_stamps_per_month: int | None = None
    plan_max_active_rewards: int | None = None

    # Expiry sweep worker
    expiry_sweep_enabled: bool = False
    expiry_sweep_interval_seconds: int = 15 * 60
    expiry_sweep_batch_size: int = 500

    @field_validator(
        "stamp_code_default_ttl_days",
        "operation_timeout_seconds",
        "plan_max_clients",
        "plan_max_stamps_per_month",
        "plan_max_active_rewards",
        mode="before",
    )
    @classmethod
    def _blank_as_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
