"""Tests for environment-driven settings and logging setup."""

import pytest
import structlog

from walletwatch.config import Settings, configure_logging, is_valid_endpoint_url
from walletwatch.config.settings import DEFAULT_FALLBACK_ENDPOINTS
from walletwatch.utils.errors import ConfigurationError

ENDPOINT_VARS = ("RPC_ENDPOINTS", "HELIUS_RPC_URL", "QUICKNODE_RPC_URL", "RPC_FALLBACK_ENDPOINTS")


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENDPOINT_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestEndpointUrls:

    @pytest.mark.parametrize(
        "url, valid",
        [
            ("https://mainnet.helius-rpc.com/?api-key=abc", True),
            ("http://localhost:8899", True),
            ("wss://api.mainnet-beta.solana.com", False),
            ("api.mainnet-beta.solana.com", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_valid_endpoint_url(self, url, valid):
        assert is_valid_endpoint_url(url) is valid


class TestSettings:

    def test_defaults(self, clean_env):
        settings = Settings()
        assert settings.rate_limiter.capacity == 15
        assert settings.circuit_breaker.failure_threshold == 3
        assert settings.circuit_breaker.reset_interval == 180
        assert settings.scheduler.batch_size == 2
        assert settings.scheduler.batch_interval == 8
        assert settings.pool.cooldown_duration == 60
        assert settings.poller.min_check_interval == 30
        assert settings.pool.fallback_endpoints == DEFAULT_FALLBACK_ENDPOINTS.split(",")

    def test_endpoints_collected_in_order_without_duplicates(self, clean_env):
        clean_env.setenv("RPC_ENDPOINTS", "https://a.example, https://b.example")
        clean_env.setenv("HELIUS_RPC_URL", "https://b.example")
        clean_env.setenv("QUICKNODE_RPC_URL", "https://q.example")

        assert Settings().pool.endpoints == [
            "https://a.example",
            "https://b.example",
            "https://q.example",
        ]

    def test_numeric_overrides(self, clean_env):
        clean_env.setenv("QUEUE_BATCH_SIZE", "4")
        clean_env.setenv("CIRCUIT_RESET_INTERVAL", "90")
        clean_env.setenv("QUEUE_ADAPTIVE_INTERVAL", "false")

        settings = Settings()
        assert settings.scheduler.batch_size == 4
        assert settings.circuit_breaker.reset_interval == 90
        assert settings.scheduler.adaptive_interval is False

    def test_validate_drops_invalid_endpoints(self, clean_env):
        clean_env.setenv("RPC_ENDPOINTS", "not-a-url,https://a.example")
        clean_env.setenv("RPC_FALLBACK_ENDPOINTS", "https://f.example,junk")

        settings = Settings().validate()
        assert settings.pool.endpoints == ["https://a.example"]
        assert settings.pool.fallback_endpoints == ["https://f.example"]

    def test_validate_requires_an_endpoint(self, clean_env):
        clean_env.setenv("RPC_ENDPOINTS", "not-a-url")
        with pytest.raises(ConfigurationError):
            Settings().validate()

    def test_validate_rejects_bad_numbers(self, clean_env):
        clean_env.setenv("RPC_ENDPOINTS", "https://a.example")
        clean_env.setenv("QUEUE_BATCH_SIZE", "0")
        with pytest.raises(ConfigurationError):
            Settings().validate()

    def test_validate_rejects_unknown_strategy(self, clean_env):
        clean_env.setenv("RPC_ENDPOINTS", "https://a.example")
        clean_env.setenv("HEALTH_SCORE_STRATEGY", "neural")
        with pytest.raises(ConfigurationError):
            Settings().validate()

    def test_from_env_reads_dotenv_file(self, clean_env, tmp_path):
        # Registered so monkeypatch removes whatever load_dotenv sets
        clean_env.setenv("QUEUE_STALE_AFTER", "placeholder")
        clean_env.delenv("QUEUE_STALE_AFTER")

        env_file = tmp_path / ".env"
        env_file.write_text("QUEUE_STALE_AFTER=45\n")

        assert Settings.from_env(str(env_file)).scheduler.stale_after == 45


class TestLogging:

    @pytest.fixture(autouse=True)
    def reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_console_renderer(self):
        configure_logging("DEBUG", json_output=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_renderer(self):
        configure_logging("warning")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        structlog.get_logger("walletwatch.test").info("suppressed_below_warning")
