"""
Price Fetcher — Runs the two dependent CoinGecko calls behind one refresh.

Sequence per refresh (sequential, never parallel):
  1. GET /coins/{id}                 -> QuoteSnapshot
  2. wait call_spacing_sec           -> keeps both calls out of one rate-limit window
  3. GET /coins/{id}/market_chart    -> raw [timestamp, price] samples
  4. keep prices, downsample to the timeframe's point count

Any failure aborts the whole refresh, so the quote and the series are
always produced together.
"""

from __future__ import annotations
import asyncio
import math
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, TYPE_CHECKING
import logging

from coingecko.errors import DataShapeError
from coingecko.models import Asset, QuoteSnapshot, RefreshResult, Timeframe
from core.downsampler import downsample

if TYPE_CHECKING:
    from coingecko.rest import CoinGeckoRestClient

logger = logging.getLogger(__name__)


def _require_number(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DataShapeError(f"Missing or non-numeric field: {field_name}")
    if isinstance(value, float) and not math.isfinite(value):
        raise DataShapeError(f"Non-finite value for field: {field_name}")
    return Decimal(str(value))


def parse_quote(body: Any) -> QuoteSnapshot:
    """Validate a /coins/{id} body and build the quote from it."""
    if not isinstance(body, dict):
        raise DataShapeError("Coin response is not a JSON object")

    symbol = body.get("symbol")
    if not isinstance(symbol, str) or not symbol:
        raise DataShapeError("Missing field: symbol")

    market_data = body.get("market_data")
    if not isinstance(market_data, dict):
        raise DataShapeError("Missing field: market_data")

    current_price = market_data.get("current_price")
    usd = current_price.get("usd") if isinstance(current_price, dict) else None

    name = body.get("name")
    return QuoteSnapshot(
        symbol_display=symbol.upper(),
        price_usd=_require_number(usd, "market_data.current_price.usd"),
        change_percent_24h=_require_number(
            market_data.get("price_change_percentage_24h"),
            "market_data.price_change_percentage_24h",
        ),
        name=name if isinstance(name, str) else "",
    )


def parse_prices(body: Any) -> List[Decimal]:
    """
    Extract the price of each [timestamp_ms, price] sample.
    A missing or empty `prices` list is an empty series, not an error.
    """
    if not isinstance(body, dict):
        raise DataShapeError("Chart response is not a JSON object")

    samples = body.get("prices")
    if samples is None:
        return []
    if not isinstance(samples, list):
        raise DataShapeError("Field 'prices' is not a list")

    prices = []
    for i, sample in enumerate(samples):
        if not isinstance(sample, (list, tuple)) or len(sample) < 2:
            raise DataShapeError(f"Malformed price sample at index {i}")
        prices.append(_require_number(sample[1], f"prices[{i}][1]"))
    return prices


class PriceFetcher:
    """Fetches a quote and a display-ready price series for one asset."""

    def __init__(
        self,
        client: "CoinGeckoRestClient",
        call_spacing_sec: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.call_spacing_sec = call_spacing_sec
        self._sleep = sleep

    async def refresh(self, asset: Asset, timeframe: Timeframe) -> RefreshResult:
        """
        Fetch quote + series for `asset` over `timeframe`.
        Raises FetchError (or a subclass) if either call fails.
        """
        logger.info(f"[FETCH] {asset.symbol}: Refreshing ({timeframe.label})")

        coin_body = await self.client.get_coin(asset.id)
        quote = parse_quote(coin_body)

        if self.call_spacing_sec > 0:
            await self._sleep(self.call_spacing_sec)

        chart_body = await self.client.get_market_chart(
            asset.id,
            days=timeframe.days,
            interval=timeframe.sampling_interval.value,
        )
        raw_prices = parse_prices(chart_body)
        series = tuple(downsample(raw_prices, timeframe.target_point_count))

        logger.info(
            f"[FETCH] {asset.symbol}: {quote.symbol_display} @ ${quote.price_usd}, "
            f"{len(raw_prices)} raw points -> {len(series)} shown"
        )
        return RefreshResult(quote=quote, series=series)
