"""Orchestration layer: circuit breaking, provider fallback and resolution."""
from .circuit_breaker import BreakerState, CircuitBreaker, CircuitState
from .fallback import (
    FallbackManager,
    FallbackSource,
    FallbackStrategy,
    ProviderResult,
    SourceHealth
)
from .resolver import MarketDataResolver, ResolveOptions, create_resolver


__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "CircuitState",
    "FallbackManager",
    "FallbackSource",
    "FallbackStrategy",
    "ProviderResult",
    "SourceHealth",
    "MarketDataResolver",
    "ResolveOptions",
    "create_resolver"
]
