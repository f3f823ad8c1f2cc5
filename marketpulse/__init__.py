"""
MarketPulse
Multi-provider market data resolution with caching and failover
"""

__version__ = "0.1.0"
__author__ = "MarketPulse Team"

from . import config, data, orchestration, persistence, utils

__all__ = ["config", "data", "orchestration", "persistence", "utils"]
