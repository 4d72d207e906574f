"""
Retry policy for CoinGecko requests.

Exponential backoff: the n-th retry waits base_delay_sec * 2^(n-1).
A 429 may override the wait with the server's Retry-After hint, but the
backoff schedule still advances.
"""

from __future__ import annotations
import random
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3                # Retries after the first attempt
    base_delay_sec: float = 2.0         # Wait before the first retry
    timeout_sec: float = 10.0           # Per attempt
    jitter: float = 0.0                 # Max extra fraction added to each wait

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_sec <= 0:
            raise ValueError(f"base_delay_sec must be > 0, got {self.base_delay_sec}")
        if self.timeout_sec <= 0:
            raise ValueError(f"timeout_sec must be > 0, got {self.timeout_sec}")
        if self.jitter < 0:
            raise ValueError(f"jitter must be >= 0, got {self.jitter}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_delay(self, retry_number: int) -> float:
        """Wait in seconds before retry number `retry_number` (1-based)."""
        if retry_number < 1:
            raise ValueError(f"retry_number is 1-based, got {retry_number}")
        delay = self.base_delay_sec * (2 ** (retry_number - 1))
        if self.jitter:
            delay += delay * random.uniform(0, self.jitter)
        return delay

    @staticmethod
    def is_auth_failure(status: int) -> bool:
        return status in (401, 403)

    @staticmethod
    def is_rate_limited(status: int) -> bool:
        return status == 429


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header given in seconds.
    Fractions are truncated. HTTP-date values, garbage and non-positive
    numbers return None so the caller falls back to its backoff delay.
    """
    if value is None:
        return None
    try:
        seconds = int(float(value.strip()))
    except (ValueError, OverflowError):
        return None
    return float(seconds) if seconds > 0 else None
