"""
Runtime Settings for walletwatch
================================
Single source of truth for every tunable of the RPC access layer and the
wallet poller. Values come from the environment (optionally a .env file);
each section is a dataclass whose defaults read the matching variable.

Usage:
    from walletwatch.config.settings import Settings
    settings = Settings.from_env()
    settings.validate()

    capacity = settings.rate_limiter.capacity
    endpoints = settings.pool.endpoints
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import structlog
from dotenv import load_dotenv

from walletwatch.utils.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_FALLBACK_ENDPOINTS = (
    "https://api.mainnet-beta.solana.com,"
    "https://solana-api.projectserum.com"
)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _primary_endpoints_from_env() -> List[str]:
    """Collect primary endpoints, preserving order and dropping duplicates."""
    candidates = _env_list("RPC_ENDPOINTS")
    for name in ("QUICKNODE_RPC_URL", "HELIUS_RPC_URL"):
        value = os.getenv(name, "").strip()
        if value:
            candidates.append(value)

    seen = set()
    endpoints = []
    for url in candidates:
        if url not in seen:
            seen.add(url)
            endpoints.append(url)
    return endpoints


def is_valid_endpoint_url(url: Optional[str]) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


@dataclass
class RateLimiterConfig:
    """Token bucket shared by the wallet poller."""

    capacity: float = field(default_factory=lambda: float(os.getenv('RATE_LIMIT_CAPACITY', 15)))
    refill_rate: float = field(default_factory=lambda: float(os.getenv('RATE_LIMIT_REFILL_RATE', 1.0)))
    base_delay: float = field(default_factory=lambda: float(os.getenv('RATE_LIMIT_BASE_DELAY', 2.0)))
    max_delay: float = field(default_factory=lambda: float(os.getenv('RATE_LIMIT_MAX_DELAY', 30.0)))


@dataclass
class CircuitBreakerConfig:
    """Per-endpoint circuit breaker thresholds."""

    failure_threshold: int = field(default_factory=lambda: int(os.getenv('CIRCUIT_FAILURE_THRESHOLD', 3)))
    # Backup endpoints get a single strike
    fallback_failure_threshold: int = field(
        default_factory=lambda: int(os.getenv('CIRCUIT_FALLBACK_FAILURE_THRESHOLD', 1))
    )
    reset_interval: float = field(default_factory=lambda: float(os.getenv('CIRCUIT_RESET_INTERVAL', 180)))


@dataclass
class HealthScoreConfig:
    """Weights and reference values for endpoint health scoring."""

    strategy: str = field(default_factory=lambda: os.getenv('HEALTH_SCORE_STRATEGY', 'weighted'))
    success_weight: float = field(default_factory=lambda: float(os.getenv('HEALTH_SUCCESS_WEIGHT', 0.4)))
    latency_weight: float = field(default_factory=lambda: float(os.getenv('HEALTH_LATENCY_WEIGHT', 0.3)))
    rate_limit_weight: float = field(default_factory=lambda: float(os.getenv('HEALTH_RATE_LIMIT_WEIGHT', 0.3)))
    reference_latency_ms: float = field(
        default_factory=lambda: float(os.getenv('HEALTH_REFERENCE_LATENCY_MS', 1000))
    )
    reference_rate_limit_count: float = field(
        default_factory=lambda: float(os.getenv('HEALTH_REFERENCE_RATE_LIMITS', 10))
    )
    latency_alpha: float = field(default_factory=lambda: float(os.getenv('HEALTH_LATENCY_ALPHA', 0.5)))

    # Metric alert thresholds
    alert_rate_limit_hits: int = field(default_factory=lambda: int(os.getenv('ALERT_RATE_LIMIT_HITS', 3)))
    alert_failure_rate: float = field(default_factory=lambda: float(os.getenv('ALERT_FAILURE_RATE', 0.15)))
    alert_latency_ms: float = field(default_factory=lambda: float(os.getenv('ALERT_LATENCY_MS', 800)))
    alert_consecutive_failures: int = field(
        default_factory=lambda: int(os.getenv('ALERT_CONSECUTIVE_FAILURES', 2))
    )


@dataclass
class PoolConfig:
    """Endpoint pool: configured providers, cooldowns and probing."""

    endpoints: List[str] = field(default_factory=_primary_endpoints_from_env)
    fallback_endpoints: List[str] = field(
        default_factory=lambda: _env_list('RPC_FALLBACK_ENDPOINTS', DEFAULT_FALLBACK_ENDPOINTS)
    )
    cooldown_duration: float = field(default_factory=lambda: float(os.getenv('RPC_COOLDOWN_SECONDS', 60)))
    settle_interval: float = field(default_factory=lambda: float(os.getenv('RPC_SETTLE_SECONDS', 30)))
    health_check_interval: float = field(
        default_factory=lambda: float(os.getenv('RPC_HEALTH_CHECK_INTERVAL', 30))
    )
    probe_timeout: float = field(default_factory=lambda: float(os.getenv('RPC_PROBE_TIMEOUT', 5)))


@dataclass
class SchedulerConfig:
    """Request queue batching and retry policy."""

    batch_size: int = field(default_factory=lambda: int(os.getenv('QUEUE_BATCH_SIZE', 2)))
    batch_interval: float = field(default_factory=lambda: float(os.getenv('QUEUE_BATCH_INTERVAL', 8)))
    tick_interval: float = field(default_factory=lambda: float(os.getenv('QUEUE_TICK_INTERVAL', 0.1)))
    stale_after: float = field(default_factory=lambda: float(os.getenv('QUEUE_STALE_AFTER', 60)))
    request_timeout: float = field(default_factory=lambda: float(os.getenv('RPC_REQUEST_TIMEOUT', 30)))
    reschedule_delay: float = field(default_factory=lambda: float(os.getenv('QUEUE_RESCHEDULE_DELAY', 10)))
    max_attempts: int = field(default_factory=lambda: int(os.getenv('QUEUE_MAX_ATTEMPTS', 3)))
    retry_base_delay: float = field(default_factory=lambda: float(os.getenv('QUEUE_RETRY_BASE_DELAY', 2)))
    retry_max_delay: float = field(default_factory=lambda: float(os.getenv('QUEUE_RETRY_MAX_DELAY', 30)))
    adaptive_interval: bool = field(default_factory=lambda: _env_bool('QUEUE_ADAPTIVE_INTERVAL', 'true'))


@dataclass
class PollerConfig:
    """Wallet poller admission control and dedup window."""

    wallets_file: str = field(default_factory=lambda: os.getenv('TRACKED_WALLETS_FILE', 'tracked-wallets.json'))
    min_check_interval: float = field(default_factory=lambda: float(os.getenv('WALLET_MIN_CHECK_INTERVAL', 30)))
    lookback_seconds: float = field(default_factory=lambda: float(os.getenv('WALLET_LOOKBACK_SECONDS', 1800)))
    signature_limit: int = field(default_factory=lambda: int(os.getenv('WALLET_SIGNATURE_LIMIT', 10)))
    signature_ttl: float = field(default_factory=lambda: float(os.getenv('WALLET_SIGNATURE_TTL', 1800)))
    poll_interval: float = field(default_factory=lambda: float(os.getenv('WALLET_POLL_INTERVAL', 5)))
    error_backoff: float = field(default_factory=lambda: float(os.getenv('WALLET_ERROR_BACKOFF', 10)))
    max_poll_interval: float = field(default_factory=lambda: float(os.getenv('WALLET_MAX_POLL_INTERVAL', 30)))
    status_interval: float = field(default_factory=lambda: float(os.getenv('WALLET_STATUS_INTERVAL', 60)))
    fetch_balance: bool = field(default_factory=lambda: _env_bool('WALLET_FETCH_BALANCE', 'true'))


@dataclass
class LoggingConfig:
    level: str = field(default_factory=lambda: os.getenv('LOG_LEVEL', 'INFO'))
    json_output: bool = field(default_factory=lambda: _env_bool('LOG_JSON', 'true'))


@dataclass
class Settings:
    """All walletwatch settings."""

    rate_limiter: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    health: HealthScoreConfig = field(default_factory=HealthScoreConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Load settings, reading a .env file first if one exists."""
        if env_file:
            load_dotenv(env_file)
        elif Path(".env").exists():
            load_dotenv(".env")
        return cls()

    def validate(self) -> "Settings":
        """
        Check the configuration and drop unusable endpoints.

        Raises:
            ConfigurationError: no valid primary endpoint, or a bad numeric value
        """
        valid = []
        for url in self.pool.endpoints:
            if is_valid_endpoint_url(url):
                valid.append(url)
            else:
                logger.warning("invalid_endpoint_ignored", endpoint=url)
        if not valid:
            raise ConfigurationError(
                "At least one valid RPC endpoint (RPC_ENDPOINTS, HELIUS_RPC_URL or "
                "QUICKNODE_RPC_URL) must be provided"
            )
        self.pool.endpoints = valid
        self.pool.fallback_endpoints = [
            url for url in self.pool.fallback_endpoints if is_valid_endpoint_url(url)
        ]

        positive = {
            "rate_limiter.capacity": self.rate_limiter.capacity,
            "rate_limiter.refill_rate": self.rate_limiter.refill_rate,
            "circuit_breaker.failure_threshold": self.circuit_breaker.failure_threshold,
            "circuit_breaker.fallback_failure_threshold": self.circuit_breaker.fallback_failure_threshold,
            "health.reference_latency_ms": self.health.reference_latency_ms,
            "health.reference_rate_limit_count": self.health.reference_rate_limit_count,
            "scheduler.batch_size": self.scheduler.batch_size,
            "scheduler.request_timeout": self.scheduler.request_timeout,
            "scheduler.max_attempts": self.scheduler.max_attempts,
            "poller.signature_limit": self.poller.signature_limit,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive (got {value})")

        if not 0 < self.health.latency_alpha <= 1:
            raise ConfigurationError("health.latency_alpha must be in (0, 1]")
        if self.health.strategy not in ("weighted", "ema"):
            raise ConfigurationError(f"Unknown health score strategy: {self.health.strategy}")

        return self
