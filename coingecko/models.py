"""
Data models for the price tracker.
Uses Decimal for all prices — no floating point errors.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Tuple


class SamplingInterval(Enum):
    MINUTELY = "minutely"
    HOURLY = "hourly"
    DAILY = "daily"


@dataclass(frozen=True)
class Asset:
    """Tracked instrument: display symbol + upstream lookup id."""
    symbol: str             # e.g., "BTC"
    id: str                 # e.g., "bitcoin"


@dataclass(frozen=True)
class Timeframe:
    """Named chart window with its sampling granularity and display size."""
    label: str              # e.g., "1M"
    days: int
    sampling_interval: SamplingInterval
    target_point_count: int

    def __post_init__(self):
        if self.days <= 0:
            raise ValueError(f"Timeframe {self.label}: days must be > 0")
        if self.target_point_count <= 0:
            raise ValueError(f"Timeframe {self.label}: target_point_count must be > 0")


@dataclass(frozen=True)
class QuoteSnapshot:
    """Current quote from the coin metadata call."""
    symbol_display: str     # Upper-cased upstream symbol
    price_usd: Decimal
    change_percent_24h: Decimal
    name: str = ""


# Chronological USD prices, already downsampled
PriceSeries = Tuple[Decimal, ...]


@dataclass(frozen=True)
class RefreshResult:
    """Quote and series from one refresh. Always produced together."""
    quote: QuoteSnapshot
    series: PriceSeries = field(default_factory=tuple)
