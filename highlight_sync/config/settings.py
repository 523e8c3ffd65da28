from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .circuit_breaker import CircuitBreakerConfig
from .engine import SyncEngineConfig
from .integrations import ReadwiseConfig
from .resilience import RateLimitConfig, RetryConfig

logger = logging.getLogger(__name__)


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    log_json: bool = Field(default=True, validation_alias="LOG_JSON")

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> str:
        log_level = str(value or "INFO").upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if log_level not in valid_levels:
            msg = f"Invalid log level: {value}. Must be one of {valid_levels}"
            raise ValueError(msg)
        return log_level

    @field_validator("log_file", mode="before")
    @classmethod
    def _validate_log_file(cls, value: Any) -> str | None:
        if value is None:
            return None
        trimmed = str(value).strip()
        return trimmed or None


@dataclass(frozen=True)
class AppConfig:
    readwise: ReadwiseConfig
    rate_limit: RateLimitConfig
    retry: RetryConfig
    circuit_breaker: CircuitBreakerConfig
    sync: SyncEngineConfig
    runtime: RuntimeConfig


class Settings(BaseSettings):
    """Settings loaded from environment variables and an optional ``.env`` file.

    Nested sections are populated by matching the ``validation_alias`` of each
    of their fields against the flat environment.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    readwise: ReadwiseConfig = Field(default_factory=ReadwiseConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    sync: SyncEngineConfig = Field(default_factory=SyncEngineConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="before")
    @classmethod
    def _build_nested_from_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Build nested sections from flat environment variables.

        Constructor arguments take precedence over the environment.
        """
        if not isinstance(data, dict):
            return data

        result = dict(data)
        env_data: dict[str, Any] = dict(os.environ)
        merged_source = {**env_data, **data}

        for field_name, field_info in cls.model_fields.items():
            annotation = field_info.annotation
            if not isinstance(annotation, type) or not issubclass(annotation, BaseModel):
                continue

            nested_data: dict[str, Any] = {}
            nested_model: type[BaseModel] = annotation

            for nested_field_name, nested_field in nested_model.model_fields.items():
                env_value = cls._resolve_env_value(merged_source, nested_field)
                if env_value is not None:
                    nested_data[nested_field_name] = env_value

            if nested_data:
                if field_name in result and isinstance(result[field_name], dict):
                    result[field_name] = {**nested_data, **result[field_name]}
                else:
                    result[field_name] = nested_data

        return result

    @staticmethod
    def _resolve_env_value(data: dict[str, Any], field: Any) -> Any | None:
        """Resolve the environment value for a field using its aliases."""
        aliases: list[str] = []
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            for choice in alias.choices:
                if isinstance(choice, str):
                    aliases.append(choice)
        elif isinstance(alias, str):
            aliases.append(alias)
        if field.alias:
            aliases.append(field.alias)

        for name in aliases:
            if name in data:
                return data[name]
        return None

    def as_app_config(self) -> AppConfig:
        return AppConfig(
            readwise=self.readwise,
            rate_limit=self.rate_limit,
            retry=self.retry,
            circuit_breaker=self.circuit_breaker,
            sync=self.sync,
            runtime=self.runtime,
        )


def load_config(**overrides: Any) -> AppConfig:
    """Load configuration from the environment (and ``.env``).

    Keyword overrides are section dictionaries, e.g.
    ``load_config(sync={"batch_size": 10})``; they win over the environment.

    Raises:
        RuntimeError: If configuration validation fails.
    """
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        msg = f"Configuration validation failed: {exc}"
        raise RuntimeError(msg) from exc

    if not settings.readwise.api_token:
        logger.warning("readwise_api_token_missing")

    return settings.as_app_config()
