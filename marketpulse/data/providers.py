"""
Shared HTTP plumbing for keyed REST providers
Key selection, rate-limit rotation and error classification live here
"""

from typing import Any, Dict, Optional, Tuple

import httpx

from ..utils import get_logger
from ..utils.errors import (
    ErrorKind,
    MarketDataError,
    RATE_LIMIT_STATUS_CODES,
    is_rate_limit_error,
    wrap_error
)
from ..utils.quota import QuotaGuard
from .base import DataProvider, MarketDataProvider
from .key_manager import ApiKeyManager

logger = get_logger(__name__)


def to_float(value: Any) -> Optional[float]:
    """Vendors send numbers as strings, percentages with a trailing %"""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    return int(number) if number is not None else None


class HttpProvider(MarketDataProvider):
    """
    Base class for REST providers that authenticate with rotating API keys

    A rate-limited call rotates to the next key and is retried once.
    Other failures are recorded against the current key and re-raised
    as MarketDataError.
    """

    base_url = ""

    def __init__(
        self,
        provider: DataProvider,
        key_manager: ApiKeyManager,
        priority: int = 0,
        timeout: float = 10.0,
        circuit_breaker=None,
        quota_guard: Optional[QuotaGuard] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(provider, priority, circuit_breaker)
        self.key_manager = key_manager
        self.timeout = timeout
        self.quota_guard = quota_guard
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def connect(self):
        """Initialize HTTP client"""
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport
            )
            logger.debug(f"{self.name} HTTP client initialized")

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def _auth(self, key: str) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Extra (params, headers) carrying the key"""
        return {"apikey": key}, {}

    def _check_payload(self, payload: Any):
        """Raise MarketDataError when a 200 response carries a vendor error"""

    async def _send(self, path: str, params: Dict[str, Any], key: str) -> Any:
        if self.client is None:
            await self.connect()

        auth_params, headers = self._auth(key)
        response = await self.client.get(path, params={**params, **auth_params}, headers=headers)

        if response.status_code in RATE_LIMIT_STATUS_CODES:
            raise MarketDataError(
                ErrorKind.RATE_LIMITED,
                f"{self.name} returned HTTP {response.status_code}",
                provider=self.name,
                status_code=response.status_code
            )
        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as e:
            raise MarketDataError(
                ErrorKind.TRANSIENT,
                f"{self.name} returned a non-JSON body",
                provider=self.name,
                status_code=response.status_code
            ) from e

        self._check_payload(payload)
        return payload

    def _consume_quota(self):
        if self.quota_guard is not None:
            self.quota_guard.consume(self.name)

    def _record_failure(self, error: MarketDataError):
        # The key is not at fault for bad input
        if error.kind != ErrorKind.VALIDATION:
            self.key_manager.record_error(error.message)

    async def _request_with_rotation(self, path: str, params: Dict[str, Any], symbol: Optional[str]) -> Any:
        self._consume_quota()
        key = self.key_manager.get_current_key()

        try:
            payload = await self._send(path, params, key)
        except Exception as e:
            error = wrap_error(e, provider=self.name, symbol=symbol)
            if not is_rate_limit_error(error):
                self._record_failure(error)
                raise error from e

            new_key = self.key_manager.rotate_key()
            if new_key == key:
                raise error from e

            logger.warning(f"{self.name} rate limited for {symbol or path}, retrying with rotated key")
            self._consume_quota()
            try:
                payload = await self._send(path, params, new_key)
            except Exception as retry_exc:
                retry_error = wrap_error(retry_exc, provider=self.name, symbol=symbol)
                if is_rate_limit_error(retry_error):
                    # Cool the second key down too, without charging it an error
                    self.key_manager.rotate_key()
                else:
                    self._record_failure(retry_error)
                raise retry_error from retry_exc

        self.key_manager.record_success()
        return payload

    async def request(self, path: str, params: Optional[Dict[str, Any]] = None, symbol: Optional[str] = None) -> Any:
        """GET path through the circuit breaker with key rotation"""
        params = params or {}
        return await self._guarded(lambda: self._request_with_rotation(path, params, symbol))

    def get_api_key_rotation(self) -> Dict[str, Any]:
        return {
            **self.key_manager.get_stats(),
            'keys': self.key_manager.get_key_statuses(),
        }
