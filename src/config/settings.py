"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Backend
    backend_base_url: str = Field(
        default="http://localhost:3000/api",
        description="Base URL of the matchmaking/moderation backend.",
    )
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    access_token: str | None = Field(
        default=None,
        description="Bearer token used by the command-line probe only.",
    )
    user_id: str | None = Field(default=None)

    # Matchmaking queue polling
    queue_initial_poll_delay_seconds: float = Field(default=3.0, gt=0)
    queue_poll_growth_factor: float = Field(default=1.2)
    queue_max_poll_delay_seconds: float = Field(default=10.0, gt=0)
    queue_max_poll_attempts: int = Field(default=15, ge=1)

    # Call lifecycle
    call_join_retry_delay_seconds: float = Field(default=1.2, ge=0)
    peer_left_debounce_seconds: float = Field(default=2.0, ge=0)
    call_left_debounce_seconds: float = Field(default=1.0, ge=0)
    time_up_notice_seconds: float = Field(default=3.0, ge=0)

    # Call duration and extension
    base_call_duration_seconds: int = Field(default=300, gt=0)
    extended_call_duration_seconds: int = Field(default=600, gt=0)
    duration_warning_lead_seconds: int = Field(default=60, ge=0)
    watchdog_tick_seconds: float = Field(default=1.0, gt=0)
    extension_cost: int = Field(default=10, ge=0, description="Stars debited per extension.")
    extension_min_balance: int = Field(default=10, ge=0)
    extension_broadcast_retry_delay_seconds: float = Field(default=1.0, ge=0)

    # Penalty / moderation
    early_exit_threshold_seconds: int = Field(default=60, ge=0)
    report_warning_limit: int = Field(
        default=3,
        ge=1,
        description="Report count at which a warning turns into a ban.",
    )

    @field_validator("queue_poll_growth_factor")
    @classmethod
    def growth_factor_above_one(cls, value: float) -> float:
        if value <= 1.0:
            raise ValueError("queue_poll_growth_factor must be greater than 1.")
        return value

    @field_validator("backend_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def check_consistency(self) -> Settings:
        if self.queue_initial_poll_delay_seconds > self.queue_max_poll_delay_seconds:
            raise ValueError("Initial poll delay may not exceed the maximum poll delay.")
        if self.extended_call_duration_seconds <= self.base_call_duration_seconds:
            raise ValueError("Extended call duration must be longer than the base duration.")
        if self.duration_warning_lead_seconds >= self.base_call_duration_seconds:
            raise ValueError("Duration warning lead must be shorter than the base duration.")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
