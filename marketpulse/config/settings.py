"""
Configuration management for MarketPulse
Loads environment variables and provides centralized settings
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv
import logging

# Load environment variables
env_path = Path(__file__).parent.parent.parent / '.env'
load_dotenv(dotenv_path=env_path)


def _split_keys(*names: str) -> List[str]:
    """Read the first non-empty variable and split it on commas"""
    for name in names:
        raw = os.getenv(name, "")
        keys = [k.strip() for k in raw.split(",") if k.strip()]
        if keys:
            return keys
    return []


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class APIConfig:
    """Provider API keys and request budgets"""
    alpha_vantage_keys: List[str] = field(default_factory=list)
    twelve_data_keys: List[str] = field(default_factory=list)
    finnhub_keys: List[str] = field(default_factory=list)
    enable_yahoo_finance: bool = True

    request_timeout: float = 10.0

    # Local request budget, per provider
    requests_per_minute: int = 60
    requests_per_hour: int = 1000


@dataclass
class CacheConfig:
    """Two-tier cache settings"""
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    enable_redis: bool = True

    max_entries: int = 1000
    default_ttl: int = 300
    sweep_interval: int = 60
    health_timeout: float = 2.0

    def build_redis_url(self) -> str:
        """Explicit REDIS_URL wins over host/port parts"""
        if self.redis_url:
            return self.redis_url
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@dataclass
class ReliabilityConfig:
    """Key rotation, circuit breaker and retry parameters"""
    key_rotation_threshold: int = 5
    key_max_errors: int = 10
    key_cooldown_seconds: float = 300.0

    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0

    retry_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay: float = 30.0


@dataclass
class ResolverConfig:
    """Freshness windows (seconds) and batch behaviour"""
    asset_ttl: int = 3600
    price_ttl: int = 30
    historical_ttl: int = 3600
    search_ttl: int = 300

    resolve_timeout: float = 30.0
    batch_chunk_size: int = 5
    batch_chunk_delay: float = 0.1
    search_local_threshold: int = 10


@dataclass
class SystemConfig:
    """System-level configuration"""
    log_level: str = "INFO"

    # Paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent.parent)
    database_path: Optional[Path] = None
    data_dir: Path = field(init=False)
    logs_dir: Path = field(init=False)

    def __post_init__(self):
        self.data_dir = self.project_root / "data"
        self.logs_dir = self.project_root / "logs"
        if self.database_path is None:
            self.database_path = self.data_dir / "marketpulse.db"


@dataclass
class Config:
    """Main configuration container"""
    api: APIConfig
    cache: CacheConfig
    reliability: ReliabilityConfig
    resolver: ResolverConfig
    system: SystemConfig


# Singleton instance
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """Get or create the configuration singleton"""
    global _config_instance

    if _config_instance is None:
        api_config = APIConfig(
            alpha_vantage_keys=_split_keys("ALPHA_VANTAGE_API_KEYS", "ALPHA_VANTAGE_API_KEY"),
            twelve_data_keys=_split_keys("TWELVE_DATA_API_KEYS", "TWELVE_DATA_API_KEY"),
            finnhub_keys=_split_keys("FINNHUB_API_KEYS", "FINNHUB_API_KEY"),
            enable_yahoo_finance=_env_bool("ENABLE_YAHOO_FINANCE", "true"),
            request_timeout=float(os.getenv("API_TIMEOUT", "10")),
            requests_per_minute=int(os.getenv("REQUESTS_PER_MINUTE", "60")),
            requests_per_hour=int(os.getenv("REQUESTS_PER_HOUR", "1000"))
        )

        cache_config = CacheConfig(
            redis_url=os.getenv("REDIS_URL") or None,
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_db=int(os.getenv("REDIS_DB", "0")),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            enable_redis=_env_bool("ENABLE_REDIS", "true"),
            max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "1000")),
            default_ttl=int(os.getenv("CACHE_DEFAULT_TTL", "300")),
            sweep_interval=int(os.getenv("CACHE_SWEEP_INTERVAL", "60")),
            health_timeout=float(os.getenv("CACHE_HEALTH_TIMEOUT", "2"))
        )

        reliability_config = ReliabilityConfig(
            key_rotation_threshold=int(os.getenv("KEY_ROTATION_THRESHOLD", "5")),
            key_max_errors=int(os.getenv("KEY_MAX_ERRORS", "10")),
            key_cooldown_seconds=float(os.getenv("KEY_COOLDOWN_SECONDS", "300")),
            circuit_failure_threshold=int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5")),
            circuit_recovery_seconds=float(os.getenv("CIRCUIT_RECOVERY_SECONDS", "60")),
            retry_max_retries=int(os.getenv("RETRY_MAX_RETRIES", "3")),
            retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
            retry_backoff_multiplier=float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0")),
            retry_max_delay=float(os.getenv("RETRY_MAX_DELAY", "30.0"))
        )

        resolver_config = ResolverConfig(
            asset_ttl=int(os.getenv("ASSET_TTL", "3600")),
            price_ttl=int(os.getenv("PRICE_TTL", "30")),
            historical_ttl=int(os.getenv("HISTORICAL_TTL", "3600")),
            search_ttl=int(os.getenv("SEARCH_TTL", "300")),
            resolve_timeout=float(os.getenv("RESOLVE_TIMEOUT", "30")),
            batch_chunk_size=int(os.getenv("BATCH_CHUNK_SIZE", "5")),
            batch_chunk_delay=float(os.getenv("BATCH_CHUNK_DELAY", "0.1")),
            search_local_threshold=int(os.getenv("SEARCH_LOCAL_THRESHOLD", "10"))
        )

        db_path = os.getenv("DATABASE_PATH")
        system_config = SystemConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            database_path=Path(db_path) if db_path else None
        )

        _config_instance = Config(
            api=api_config,
            cache=cache_config,
            reliability=reliability_config,
            resolver=resolver_config,
            system=system_config
        )

        # Validate critical settings
        if not (api_config.alpha_vantage_keys or api_config.twelve_data_keys or api_config.finnhub_keys):
            logging.warning("No provider API keys set - only Yahoo Finance will be queried")

    return _config_instance


def reset_config():
    """Reset the configuration singleton (mainly for testing)"""
    global _config_instance
    _config_instance = None
