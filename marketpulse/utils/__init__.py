"""
Utility modules for MarketPulse
"""

from .logger import setup_logger, get_logger, log_async_performance, StructuredLogger
from .errors import (
    ErrorKind,
    MarketDataError,
    classify_error,
    is_rate_limit_error,
    wrap_error
)
from .timers import Clock, ManualClock, TimerRegistry
from .retry import RetryPolicy, RetryManager
from .quota import QuotaGuard, QuotaPeriod

__all__ = [
    "setup_logger",
    "get_logger",
    "log_async_performance",
    "StructuredLogger",
    "ErrorKind",
    "MarketDataError",
    "classify_error",
    "is_rate_limit_error",
    "wrap_error",
    "Clock",
    "ManualClock",
    "TimerRegistry",
    "RetryPolicy",
    "RetryManager",
    "QuotaGuard",
    "QuotaPeriod"
]
