"""
Crypto Price Tracker — Configuration
All tunable parameters in one place.
"""

import os
from dataclasses import dataclass, field

from coingecko.retry import RetryPolicy


@dataclass
class ApiConfig:
    api_key: str = ""                   # Never hardcoded, comes from env
    api_key_header: str = "x-cg-demo-api-key"
    base_url: str = "https://api.coingecko.com/api/v3"
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class FetchConfig:
    call_spacing_sec: float = 2.0       # Between the coin and chart calls
    debounce_sec: float = 1.0           # After an asset/timeframe change
    default_asset: str = "BTC"
    default_timeframe: str = "1M"


@dataclass
class DashboardConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class TrackerConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    log_level: str = "INFO"
    log_file: str = "data/tracker.log"

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.api.api_key = os.getenv("COINGECKO_API_KEY", "")
        config.api.api_key_header = os.getenv("COINGECKO_API_KEY_HEADER", config.api.api_key_header)
        config.api.base_url = os.getenv("COINGECKO_BASE_URL", config.api.base_url)
        config.api.retry = RetryPolicy(
            max_retries=int(os.getenv("MAX_RETRIES", str(config.api.retry.max_retries))),
            base_delay_sec=float(os.getenv("RETRY_BASE_DELAY_SEC", str(config.api.retry.base_delay_sec))),
            timeout_sec=float(os.getenv("REQUEST_TIMEOUT_SEC", str(config.api.retry.timeout_sec))),
            jitter=float(os.getenv("RETRY_JITTER", str(config.api.retry.jitter))),
        )
        config.fetch.call_spacing_sec = float(os.getenv("CALL_SPACING_SEC", str(config.fetch.call_spacing_sec)))
        config.fetch.debounce_sec = float(os.getenv("DEBOUNCE_SEC", str(config.fetch.debounce_sec)))
        config.fetch.default_asset = os.getenv("DEFAULT_ASSET", config.fetch.default_asset)
        config.fetch.default_timeframe = os.getenv("DEFAULT_TIMEFRAME", config.fetch.default_timeframe)
        config.dashboard.enabled = os.getenv("DASHBOARD_ENABLED", "true").lower() == "true"
        config.dashboard.host = os.getenv("DASHBOARD_HOST", config.dashboard.host)
        config.dashboard.port = int(os.getenv("DASHBOARD_PORT", str(config.dashboard.port)))
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        config.log_file = os.getenv("LOG_FILE", config.log_file)
        return config
