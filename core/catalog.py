"""
Asset and Timeframe catalogs.
Both are static and ordered as shown to the user.
"""

from __future__ import annotations
from typing import Optional, Tuple

from coingecko.models import Asset, SamplingInterval, Timeframe

ASSETS: Tuple[Asset, ...] = (
    Asset(symbol="BTC", id="bitcoin"),
    Asset(symbol="ETH", id="ethereum"),
    Asset(symbol="SOL", id="solana"),
    Asset(symbol="BNB", id="binancecoin"),
    Asset(symbol="XRP", id="ripple"),
    Asset(symbol="ADA", id="cardano"),
    Asset(symbol="DOGE", id="dogecoin"),
    Asset(symbol="DOT", id="polkadot"),
    Asset(symbol="AVAX", id="avalanche-2"),
    Asset(symbol="USDT", id="tether"),
)

TIMEFRAMES: Tuple[Timeframe, ...] = (
    Timeframe(label="1W", days=7, sampling_interval=SamplingInterval.DAILY, target_point_count=7),
    Timeframe(label="1M", days=30, sampling_interval=SamplingInterval.DAILY, target_point_count=30),
    Timeframe(label="6M", days=180, sampling_interval=SamplingInterval.DAILY, target_point_count=180),
    Timeframe(label="1Y", days=365, sampling_interval=SamplingInterval.DAILY, target_point_count=365),
    Timeframe(label="5Y", days=1825, sampling_interval=SamplingInterval.DAILY, target_point_count=1825),
)

DEFAULT_ASSET = ASSETS[0]           # BTC
DEFAULT_TIMEFRAME = TIMEFRAMES[1]   # 1M


def find_asset(symbol: str) -> Optional[Asset]:
    wanted = symbol.strip().upper()
    for asset in ASSETS:
        if asset.symbol == wanted:
            return asset
    return None


def find_timeframe(label: str) -> Optional[Timeframe]:
    wanted = label.strip().upper()
    for timeframe in TIMEFRAMES:
        if timeframe.label == wanted:
            return timeframe
    return None


def asset_from_input(text: str) -> Asset:
    """
    Build an Asset from free-text input.
    Known symbols resolve to the registry entry. Anything else becomes an
    ad-hoc asset (symbol upper-cased, id lower-cased) with no validation
    against the upstream.
    """
    cleaned = text.strip()
    if not cleaned:
        raise ValueError("Asset symbol must not be blank")

    known = find_asset(cleaned)
    if known is not None:
        return known
    return Asset(symbol=cleaned.upper(), id=cleaned.lower())
