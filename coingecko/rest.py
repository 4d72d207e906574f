"""
CoinGecko v3 REST API Client.
Handles authentication headers, per-attempt timeouts, rate limiting and
retry with exponential backoff.
"""

from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote
import aiohttp
import logging

from coingecko.errors import (
    AuthError,
    DataShapeError,
    HttpStatusError,
    RateLimitExhausted,
    TransientNetworkError,
)
from coingecko.retry import RetryPolicy, parse_retry_after

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# Only market data is needed from /coins/{id}
COIN_QUERY = {
    "localization": "false",
    "tickers": "false",
    "market_data": "true",
    "community_data": "false",
    "developer_data": "false",
    "sparkline": "false",
}


class CoinGeckoRestClient:
    """Async CoinGecko REST wrapper."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        retry_policy: Optional[RetryPolicy] = None,
        api_key_header: str = "x-cg-demo-api-key",
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_key_header = api_key_header
        self.retry_policy = retry_policy or RetryPolicy()
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers[self.api_key_header] = self.api_key
        return headers

    async def _request(
        self,
        endpoint: str,
        params: Optional[Dict[str, str]] = None,
        require_json: bool = True,
    ) -> Any:
        """
        Make one logical GET request, retrying per the retry policy.
        With require_json=False a 2xx whose body is not JSON returns None.

        429 and timeouts/connection errors are retried. 401/403 raise
        AuthError at once; any other non-2xx raises HttpStatusError at once.
        """
        policy = self.retry_policy
        url = f"{self.base_url}{endpoint}"
        timeout = aiohttp.ClientTimeout(total=policy.timeout_sec)

        last_exc: Optional[BaseException] = None
        last_message = ""
        rate_limited = False

        for attempt in range(1, policy.max_attempts + 1):
            retry_after: Optional[float] = None
            logger.debug(f"[REST] GET {endpoint} (attempt {attempt}/{policy.max_attempts})")

            try:
                session = await self._get_session()
                async with session.get(
                    url, params=params, headers=self._headers(), timeout=timeout
                ) as resp:
                    status = resp.status
                    if 200 <= status < 300:
                        logger.debug(f"[REST] GET {endpoint} -> {status}")
                        return await self._read_json(resp, endpoint, require_json)

                    if policy.is_auth_failure(status):
                        logger.error(f"[REST] GET {endpoint} rejected: status={status}")
                        raise AuthError(
                            "Authentication failed. Please check your CoinGecko API key.",
                            status=status,
                        )

                    if not policy.is_rate_limited(status):
                        upstream_error = await self._read_upstream_error(resp)
                        logger.error(
                            f"[REST] GET {endpoint} failed: status={status}, error={upstream_error}"
                        )
                        raise HttpStatusError(
                            f"HTTP {status} from {endpoint}",
                            status=status,
                            upstream_error=upstream_error,
                        )

                    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                    rate_limited = True
                    last_exc = None
                    last_message = f"HTTP 429 from {endpoint}"
                    logger.warning(
                        f"[REST] GET {endpoint} rate limited: status=429, "
                        f"retry_after={resp.headers.get('Retry-After')}"
                    )

            except asyncio.TimeoutError as e:
                rate_limited = False
                last_exc = e
                last_message = f"Request timeout after {policy.timeout_sec:g}s"
                logger.warning(f"[REST] GET {endpoint} timed out (attempt {attempt})")

            except aiohttp.ClientError as e:
                rate_limited = False
                last_exc = e
                last_message = str(e) or type(e).__name__
                logger.warning(
                    f"[REST] GET {endpoint} network error (attempt {attempt}): "
                    f"{type(e).__name__}: {last_message}"
                )

            if attempt > policy.max_retries:
                break

            backoff = policy.backoff_delay(attempt)
            wait = retry_after if retry_after is not None else backoff
            logger.info(
                f"[REST] Retrying {endpoint} in {wait:.2f}s. "
                f"Retries left: {policy.max_retries - attempt + 1}"
            )
            await self._sleep(wait)

        logger.error(
            f"[REST] GET {endpoint} gave up after {policy.max_attempts} attempts: {last_message}"
        )
        if rate_limited:
            raise RateLimitExhausted(
                "Rate limit exceeded. Please wait a moment and try again.", status=429
            )
        raise TransientNetworkError(last_message) from last_exc

    async def _read_json(self, resp: aiohttp.ClientResponse, endpoint: str, require_json: bool = True) -> Any:
        try:
            return await resp.json(content_type=None)
        except ValueError as e:
            if not require_json:
                logger.debug(f"[REST] GET {endpoint} returned a non-JSON body")
                return None
            logger.error(f"[REST] GET {endpoint} returned invalid JSON: {e}")
            raise DataShapeError(f"Invalid JSON from {endpoint}", status=resp.status) from e

    async def _read_upstream_error(self, resp: aiohttp.ClientResponse) -> Optional[str]:
        """Pull the error text out of an error body, if there is one."""
        try:
            body = await resp.json(content_type=None)
        except (ValueError, aiohttp.ClientError):
            return None
        if not isinstance(body, dict):
            return None
        if body.get("error"):
            return str(body["error"])
        status_block = body.get("status")
        if isinstance(status_block, dict) and status_block.get("error_message"):
            return str(status_block["error_message"])
        return None

    # ==================== Endpoints ====================

    async def ping(self) -> Any:
        """Liveness probe. Any 2xx means the API is up."""
        return await self._request("/ping", require_json=False)

    async def get_coin(self, coin_id: str) -> Any:
        """Coin metadata including market_data.current_price.usd."""
        return await self._request(f"/coins/{quote(coin_id, safe='')}", dict(COIN_QUERY))

    async def get_market_chart(self, coin_id: str, days: int, interval: str) -> Any:
        """
        Historical prices for a coin.
        Returns {"prices": [[timestamp_ms, price_usd], ...], ...} oldest first.
        """
        return await self._request(
            f"/coins/{quote(coin_id, safe='')}/market_chart",
            {"vs_currency": "usd", "days": str(days), "interval": interval},
        )
