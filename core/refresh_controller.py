"""
Refresh Controller — Owns the displayed market state and decides when to refresh.

States: IDLE -> FETCHING -> IDLE (success) or ERROR (failure).
Any asset/timeframe change or manual retry re-enters FETCHING.

Rules:
- The upstream is probed (GET /ping) before the first refresh. If the probe
  fails the refresh is skipped and the state goes straight to ERROR.
- Changes are debounced: a refresh still waiting out its debounce window is
  cancelled when a newer change arrives.
- Every refresh captures a generation number when it is scheduled. Only the
  refresh holding the latest generation may commit; older completions,
  successful or not, are dropped.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set, TYPE_CHECKING
import logging

from coingecko.errors import (
    AuthError,
    DataShapeError,
    FetchError,
    HttpStatusError,
    RateLimitExhausted,
    UpstreamUnavailable,
)
from coingecko.models import Asset, PriceSeries, QuoteSnapshot, RefreshResult, Timeframe
from core.catalog import DEFAULT_ASSET, DEFAULT_TIMEFRAME

if TYPE_CHECKING:
    from coingecko.rest import CoinGeckoRestClient
    from core.price_fetcher import PriceFetcher

logger = logging.getLogger(__name__)

FETCH_FAILED = "Failed to fetch cryptocurrency data. "
UNAVAILABLE_MESSAGE = "CoinGecko API appears to be unavailable. Please try again later."
INVALID_RESPONSE_MESSAGE = "Invalid response from CoinGecko API"


class RefreshStatus(Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RefreshState:
    in_flight: bool = False
    last_error: Optional[str] = None


@dataclass(frozen=True)
class MarketState:
    """Everything the display needs. Replaced, never mutated."""
    asset: Asset
    timeframe: Timeframe
    status: RefreshStatus = RefreshStatus.IDLE
    refresh: RefreshState = field(default_factory=RefreshState)
    quote: Optional[QuoteSnapshot] = None
    series: PriceSeries = ()
    generation: int = 0
    updated_at: Optional[datetime] = None


# Async observer: receives the new state after each transition
StateCallback = Callable[[MarketState], Coroutine[Any, Any, None]]


def describe_error(exc: BaseException) -> str:
    """Map a terminal error to the message shown to the user."""
    if isinstance(exc, UpstreamUnavailable):
        return UNAVAILABLE_MESSAGE
    if isinstance(exc, DataShapeError):
        return INVALID_RESPONSE_MESSAGE
    if isinstance(exc, AuthError):
        return FETCH_FAILED + "Authentication failed. Please check your CoinGecko API key."
    if isinstance(exc, RateLimitExhausted):
        return FETCH_FAILED + "Rate limit exceeded. Please wait a moment and try again."
    if isinstance(exc, HttpStatusError) and exc.upstream_error:
        return FETCH_FAILED + exc.upstream_error
    if isinstance(exc, FetchError):
        return FETCH_FAILED + f"Error: {exc.message}"
    return FETCH_FAILED + f"Error: {str(exc) or type(exc).__name__}"


class RefreshController:
    """Single-flight refresh runner over one selected asset/timeframe pair."""

    def __init__(
        self,
        fetcher: "PriceFetcher",
        client: "CoinGeckoRestClient",
        asset: Asset = DEFAULT_ASSET,
        timeframe: Timeframe = DEFAULT_TIMEFRAME,
        debounce_sec: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.client = client
        self.debounce_sec = debounce_sec
        self._sleep = sleep

        self._state = MarketState(asset=asset, timeframe=timeframe)
        self._generation = 0
        self._upstream_ok = False
        self._debouncing: Optional[asyncio.Task] = None
        self._probing: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: List[StateCallback] = []

    @property
    def state(self) -> MarketState:
        return self._state

    @property
    def upstream_available(self) -> bool:
        return self._upstream_ok

    def on_change(self, callback: StateCallback):
        """Register an async callback for state transitions."""
        self._callbacks.append(callback)

    # ==================== Commands ====================

    async def start(self) -> bool:
        """
        Probe the upstream, then run the first refresh without debounce.
        Returns False (state ERROR, no refresh) if the probe failed.
        """
        generation = self._generation
        self._state = replace(self._state, status=RefreshStatus.FETCHING, refresh=RefreshState(in_flight=True))
        await self._notify()

        available = await self._check_upstream(generation)
        if available and generation == self._generation:
            await self._request_refresh(delay=0)
        return available

    async def set_asset(self, asset: Asset):
        if asset == self._state.asset:
            logger.debug(f"[REFRESH] {asset.symbol} already selected")
            return
        logger.info(f"[REFRESH] Asset -> {asset.symbol} ({asset.id})")
        await self._request_refresh(delay=self.debounce_sec, asset=asset)

    async def set_timeframe(self, timeframe: Timeframe):
        if timeframe == self._state.timeframe:
            logger.debug(f"[REFRESH] {timeframe.label} already selected")
            return
        logger.info(f"[REFRESH] Timeframe -> {timeframe.label}")
        await self._request_refresh(delay=self.debounce_sec, timeframe=timeframe)

    async def retry(self):
        """Manual refresh of the current selection."""
        logger.info(f"[REFRESH] Manual retry for {self._state.asset.symbol}")
        await self._request_refresh(delay=0)

    async def stop(self):
        """Cancel pending and in-flight refreshes."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._debouncing = None
        self._probing = None

    async def wait_settled(self):
        """Wait until no refresh is pending or in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==================== Internals ====================

    async def _request_refresh(self, delay: float, **changes):
        self._generation += 1
        generation = self._generation

        if self._debouncing is not None and not self._debouncing.done():
            self._debouncing.cancel()
            logger.debug("[REFRESH] Superseded pending refresh before it started")

        self._state = replace(
            self._state,
            status=RefreshStatus.FETCHING,
            refresh=RefreshState(in_flight=True),
            generation=generation,
            **changes,
        )
        task = asyncio.create_task(
            self._run(generation, self._state.asset, self._state.timeframe, delay)
        )
        self._debouncing = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        await self._notify()

    async def _run(self, generation: int, asset: Asset, timeframe: Timeframe, delay: float):
        if delay > 0:
            await self._sleep(delay)
        # Past the debounce window, newer commands no longer cancel this run
        if self._debouncing is asyncio.current_task():
            self._debouncing = None

        try:
            if not await self._check_upstream(generation):
                return
            result = await self.fetcher.refresh(asset, timeframe)
        except FetchError as e:
            logger.error(f"[REFRESH] {asset.symbol}/{timeframe.label}: {type(e).__name__}: {e}")
            await self._commit_failure(generation, e)
            return
        except Exception as e:
            logger.error(f"[REFRESH] {asset.symbol}/{timeframe.label}: Unexpected error: {e}", exc_info=True)
            await self._commit_failure(generation, e)
            return

        await self._commit_success(generation, result)

    async def _check_upstream(self, generation: int) -> bool:
        if self._upstream_ok:
            return True

        # Concurrent callers share one in-flight ping
        if self._probing is None or self._probing.done():
            self._probing = asyncio.create_task(self._probe())
            self._tasks.add(self._probing)
            self._probing.add_done_callback(self._tasks.discard)

        error = await asyncio.shield(self._probing)
        if error is None:
            return True

        await self._commit_failure(
            generation,
            UpstreamUnavailable(f"CoinGecko API unavailable: {error}", status=error.status),
        )
        return False

    async def _probe(self) -> Optional[FetchError]:
        """Ping the upstream once. Returns the failure, or None when it is up."""
        logger.info("[REFRESH] Checking CoinGecko API status...")
        try:
            await self.client.ping()
        except FetchError as e:
            logger.error(f"[REFRESH] CoinGecko API status check failed: {e}")
            return e

        self._upstream_ok = True
        logger.info("[REFRESH] CoinGecko API is available")
        return None

    def _is_stale(self, generation: int) -> bool:
        if generation != self._generation:
            logger.debug(
                f"[REFRESH] Dropping result of generation {generation} "
                f"(current: {self._generation})"
            )
            return True
        return False

    async def _commit_success(self, generation: int, result: RefreshResult):
        if self._is_stale(generation):
            return
        self._state = replace(
            self._state,
            status=RefreshStatus.IDLE,
            refresh=RefreshState(),
            quote=result.quote,
            series=result.series,
            updated_at=datetime.utcnow(),
        )
        await self._notify()

    async def _commit_failure(self, generation: int, error: BaseException):
        if self._is_stale(generation):
            return
        self._state = replace(
            self._state,
            status=RefreshStatus.ERROR,
            refresh=RefreshState(in_flight=False, last_error=describe_error(error)),
            quote=None,
            series=(),
            updated_at=datetime.utcnow(),
        )
        await self._notify()

    async def _notify(self):
        state = self._state
        for callback in list(self._callbacks):
            try:
                await callback(state)
            except Exception as e:
                logger.error(f"[REFRESH] State callback error: {e}", exc_info=True)
