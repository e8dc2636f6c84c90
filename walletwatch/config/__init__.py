"""Configuration for walletwatch."""

from .logging_config import configure_logging
from .settings import (
    CircuitBreakerConfig,
    HealthScoreConfig,
    LoggingConfig,
    PollerConfig,
    PoolConfig,
    RateLimiterConfig,
    SchedulerConfig,
    Settings,
    is_valid_endpoint_url,
)

__all__ = [
    'CircuitBreakerConfig',
    'HealthScoreConfig',
    'LoggingConfig',
    'PollerConfig',
    'PoolConfig',
    'RateLimiterConfig',
    'SchedulerConfig',
    'Settings',
    'configure_logging',
    'is_valid_endpoint_url',
]
