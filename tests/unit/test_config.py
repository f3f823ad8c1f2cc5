"""Unit tests for configuration loading and the status command."""

from click.testing import CliRunner
import pytest

from marketpulse.config.settings import CacheConfig, get_config, reset_config
from marketpulse.main import cli
from marketpulse.orchestration.fallback import FallbackStrategy


@pytest.fixture
def fresh_config(monkeypatch):
    for name in ("ALPHA_VANTAGE_API_KEYS", "ALPHA_VANTAGE_API_KEY", "TWELVE_DATA_API_KEYS",
                 "TWELVE_DATA_API_KEY", "FINNHUB_API_KEYS", "FINNHUB_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield monkeypatch
    reset_config()


class TestConfig:
    """Test environment-driven settings."""

    def test_key_lists_split_on_commas(self, fresh_config):
        fresh_config.setenv("ALPHA_VANTAGE_API_KEYS", " key-one , key-two,, ")
        fresh_config.setenv("FINNHUB_API_KEY", "single-key")

        config = get_config()
        assert config.api.alpha_vantage_keys == ["key-one", "key-two"]
        assert config.api.finnhub_keys == ["single-key"]
        assert config.api.twelve_data_keys == []

    def test_numeric_overrides(self, fresh_config):
        fresh_config.setenv("PRICE_TTL", "15")
        fresh_config.setenv("CIRCUIT_FAILURE_THRESHOLD", "3")
        fresh_config.setenv("ENABLE_REDIS", "false")

        config = get_config()
        assert config.resolver.price_ttl == 15
        assert config.reliability.circuit_failure_threshold == 3
        assert config.cache.enable_redis is False

    def test_singleton(self, fresh_config):
        config = get_config()
        assert get_config() is config
        reset_config()
        assert get_config() is not config

    def test_backoff_multiplier_reaches_retry_policy(self, fresh_config):
        fresh_config.setenv("RETRY_BACKOFF_MULTIPLIER", "3")
        fresh_config.setenv("RETRY_MAX_DELAY", "5")

        policy = FallbackStrategy.from_config(get_config().reliability).to_retry_policy()
        assert [policy.compute_delay(n) for n in range(1, 4)] == [1.0, 3.0, 5.0]

    def test_redis_url_building(self):
        assert CacheConfig(redis_url="redis://cache:6380/2").build_redis_url() == "redis://cache:6380/2"
        assert CacheConfig(redis_password="pw", redis_db=1).build_redis_url() == "redis://:pw@localhost:6379/1"


class TestStatusCommand:
    """Test the CLI status command."""

    def test_reports_key_pools(self, fresh_config):
        fresh_config.setenv("TWELVE_DATA_API_KEYS", "a-key,b-key")

        result = CliRunner().invoke(cli, ["status"])
        assert result.exit_code == 0
        assert "Twelve Data: ✅ 2 key(s)" in result.output
        assert "Finnhub: ❌ Missing" in result.output
