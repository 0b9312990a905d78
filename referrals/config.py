from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settlement job configuration, read from the environment or `.env`."""

    log_format: Literal["console", "json"] = "console"
    log_level: str = "INFO"

    # Bearer credential the scheduler presents; unset rejects every call
    service_role_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("service_role_key", "SUPABASE_SERVICE_ROLE_KEY", "SERVICE_ROLE_KEY"),
    )

    # Unset selects the in-memory store
    database_url: Optional[str] = None

    reward_threshold: Decimal = Decimal("100000")
    reward_amount: Decimal = Decimal("1000")
    settlement_workers: int = Field(default=1, ge=1)

    # Scheduler
    reward_api_url: str = "http://localhost:8000/reward-referrals"
    request_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    @field_validator("reward_threshold", "reward_amount")
    @classmethod
    def must_be_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v: Optional[str]) -> Optional[str]:
        if v and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
