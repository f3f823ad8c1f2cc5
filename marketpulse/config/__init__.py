"""
Configuration module for MarketPulse
"""

from .settings import (
    Config,
    APIConfig,
    CacheConfig,
    ReliabilityConfig,
    ResolverConfig,
    SystemConfig,
    get_config,
    reset_config
)

__all__ = [
    "Config",
    "APIConfig",
    "CacheConfig",
    "ReliabilityConfig",
    "ResolverConfig",
    "SystemConfig",
    "get_config",
    "reset_config"
]
