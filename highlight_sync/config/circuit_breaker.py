from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from ._validators import _parse_float, _parse_int

if TYPE_CHECKING:
    from typing import Self


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration for remote calls."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    failure_threshold: int = Field(
        default=5,
        validation_alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD",
        description="Consecutive failures before opening the circuit",
    )
    reset_timeout_seconds: float = Field(
        default=60.0,
        validation_alias="CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS",
        description="Seconds after the last failure before a half-open trial",
    )
    half_open_max_attempts: int = Field(
        default=3,
        validation_alias="CIRCUIT_BREAKER_HALF_OPEN_MAX_ATTEMPTS",
        description="Trial calls admitted while half-open",
    )
    success_threshold: int = Field(
        default=2,
        validation_alias="CIRCUIT_BREAKER_SUCCESS_THRESHOLD",
        description="Consecutive half-open successes needed to close",
    )

    @field_validator(
        "failure_threshold", "half_open_max_attempts", "success_threshold", mode="before"
    )
    @classmethod
    def _validate_threshold(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        return _parse_int(
            value,
            name=info.field_name.replace("_", " ").capitalize(),
            default=default,
            minimum=1,
            maximum=100,
        )

    @field_validator("reset_timeout_seconds", mode="before")
    @classmethod
    def _validate_timeout(cls, value: Any) -> float:
        return _parse_float(
            value, name="Circuit breaker reset timeout", default=60.0, minimum=0.0, maximum=3600.0
        )

    @model_validator(mode="after")
    def _check_half_open_budget(self) -> Self:
        if self.success_threshold > self.half_open_max_attempts:
            msg = "Circuit breaker success threshold cannot exceed half-open max attempts"
            raise ValueError(msg)
        return self
