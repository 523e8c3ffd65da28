from __future__ import annotations

from .circuit_breaker import CircuitBreakerConfig
from .engine import SyncEngineConfig
from .integrations import ReadwiseConfig
from .resilience import RateLimitConfig, RetryConfig
from .settings import AppConfig, RuntimeConfig, Settings, load_config

__all__ = [
    "AppConfig",
    "CircuitBreakerConfig",
    "RateLimitConfig",
    "ReadwiseConfig",
    "RetryConfig",
    "RuntimeConfig",
    "Settings",
    "SyncEngineConfig",
    "load_config",
]
