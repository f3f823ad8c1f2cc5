"""
Error taxonomy for the resolution pipeline
Every reliability failure is a MarketDataError tagged with an ErrorKind
"""

from enum import Enum
from typing import Optional

import httpx


class ErrorKind(Enum):
    """Reliability categories the pipeline dispatches on"""
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    TRANSIENT = "transient"
    EXHAUSTED = "exhausted"
    VALIDATION = "validation"
    TIMEOUT = "timeout"


# Kinds that say nothing about a provider's health
NON_RETRYABLE_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.CIRCUIT_OPEN})

RATE_LIMIT_STATUS_CODES = frozenset({429, 403})

RATE_LIMIT_PHRASES = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "throttled",
    "rate exceeded",
    "api limit reached",
)


class MarketDataError(Exception):
    """Raised for every failure that crosses a pipeline boundary"""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        provider: Optional[str] = None,
        symbol: Optional[str] = None,
        status_code: Optional[int] = None,
        attempt: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        self.kind = kind
        self.message = message
        self.provider = provider
        self.symbol = symbol
        self.status_code = status_code
        self.attempt = attempt
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'message': self.message,
            'provider': self.provider,
            'symbol': self.symbol,
            'status_code': self.status_code,
            'attempt': self.attempt,
        }

    def __repr__(self) -> str:
        return f"MarketDataError({self.kind.value}, {self.message!r}, provider={self.provider!r})"


def _mentions_rate_limit(message: str) -> bool:
    lowered = message.lower()
    return any(phrase in lowered for phrase in RATE_LIMIT_PHRASES)


def is_rate_limit_error(exc: BaseException) -> bool:
    """
    Decide whether a failure means "this key is throttled"

    Status codes are authoritative when present; the message check
    only applies when the error carries no status code.
    """
    if isinstance(exc, MarketDataError):
        if exc.kind == ErrorKind.RATE_LIMITED:
            return True
        if exc.status_code is not None:
            return exc.status_code in RATE_LIMIT_STATUS_CODES
        return _mentions_rate_limit(exc.message)

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RATE_LIMIT_STATUS_CODES

    return _mentions_rate_limit(str(exc))


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto an ErrorKind"""
    if isinstance(exc, MarketDataError):
        return exc.kind

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RATE_LIMIT_STATUS_CODES:
            return ErrorKind.RATE_LIMITED
        if status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.VALIDATION

    if isinstance(exc, httpx.TimeoutException):
        return ErrorKind.TRANSIENT

    if isinstance(exc, httpx.TransportError):
        return ErrorKind.TRANSIENT

    if _mentions_rate_limit(str(exc)):
        return ErrorKind.RATE_LIMITED

    return ErrorKind.TRANSIENT


def wrap_error(
    exc: BaseException,
    provider: Optional[str] = None,
    symbol: Optional[str] = None
) -> MarketDataError:
    """Convert a raw exception into a MarketDataError, keeping existing ones"""
    if isinstance(exc, MarketDataError):
        if provider and exc.provider is None:
            exc.provider = provider
        if symbol and exc.symbol is None:
            exc.symbol = symbol
        return exc

    status_code = None
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code

    return MarketDataError(
        classify_error(exc),
        str(exc) or exc.__class__.__name__,
        provider=provider,
        symbol=symbol,
        status_code=status_code
    )
