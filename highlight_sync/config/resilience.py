from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _parse_float, _parse_int


class RateLimitConfig(BaseModel):
    """Outbound request budget shared by every upload task."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_requests: int = Field(default=240, validation_alias="RATE_LIMIT_MAX_REQUESTS")
    window_seconds: float = Field(default=60.0, validation_alias="RATE_LIMIT_WINDOW_SECONDS")

    @field_validator("max_requests", mode="before")
    @classmethod
    def _validate_max_requests(cls, value: Any) -> int:
        return _parse_int(
            value, name="Rate limit max requests", default=240, minimum=1, maximum=100000
        )

    @field_validator("window_seconds", mode="before")
    @classmethod
    def _validate_window(cls, value: Any) -> float:
        return _parse_float(
            value, name="Rate limit window", default=60.0, minimum=0.001, maximum=86400.0
        )


class RetryConfig(BaseModel):
    """Per-operation retry policy."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_retries: int = Field(default=3, validation_alias="RETRY_MAX_RETRIES")
    initial_delay_seconds: float = Field(
        default=1.0, validation_alias="RETRY_INITIAL_DELAY_SECONDS"
    )
    max_delay_seconds: float = Field(default=30.0, validation_alias="RETRY_MAX_DELAY_SECONDS")
    backoff_multiplier: float = Field(default=2.0, validation_alias="RETRY_BACKOFF_MULTIPLIER")
    jitter: bool = Field(default=True, validation_alias="RETRY_JITTER")
    attempt_timeout_seconds: float | None = Field(
        default=60.0, validation_alias="RETRY_ATTEMPT_TIMEOUT_SECONDS"
    )

    @field_validator("max_retries", mode="before")
    @classmethod
    def _validate_max_retries(cls, value: Any) -> int:
        return _parse_int(value, name="Retry max retries", default=3, minimum=0, maximum=20)

    @field_validator(
        "initial_delay_seconds", "max_delay_seconds", "backoff_multiplier", mode="before"
    )
    @classmethod
    def _validate_non_negative(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        return _parse_float(
            value,
            name=info.field_name.replace("_", " ").capitalize(),
            default=default,
            minimum=0.0,
            maximum=3600.0,
        )

    @field_validator("attempt_timeout_seconds", mode="before")
    @classmethod
    def _validate_attempt_timeout(cls, value: Any) -> float | None:
        if isinstance(value, str) and value.strip().lower() in ("none", "off", "0"):
            return None
        if value == 0:
            return None
        return _parse_float(
            value, name="Retry attempt timeout", default=60.0, minimum=0.001, maximum=3600.0
        )
