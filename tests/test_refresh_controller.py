"""
Unit tests for the refresh controller

Tests cover:
- Liveness probe before the first refresh
- State transitions (IDLE / FETCHING / ERROR)
- Debounce of rapid parameter changes
- Superseded refreshes never overwrite newer state
- Quote and series committed or cleared together
- Error message mapping
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from coingecko.errors import (
    AuthError,
    DataShapeError,
    HttpStatusError,
    RateLimitExhausted,
    TransientNetworkError,
    UpstreamUnavailable,
)
from coingecko.models import Asset, QuoteSnapshot, RefreshResult
from core.catalog import ASSETS, TIMEFRAMES
from core.price_fetcher import PriceFetcher
from core.refresh_controller import (
    INVALID_RESPONSE_MESSAGE,
    UNAVAILABLE_MESSAGE,
    RefreshController,
    RefreshStatus,
    describe_error,
)
from coingecko.rest import CoinGeckoRestClient
from fakes import FakeClock, FakeResponse, FakeSession

BTC, ETH, SOL = ASSETS[0], ASSETS[1], ASSETS[2]
ONE_WEEK, ONE_MONTH, SIX_MONTHS = TIMEFRAMES[0], TIMEFRAMES[1], TIMEFRAMES[2]


def result_for(asset: Asset, price="100", points=3) -> RefreshResult:
    return RefreshResult(
        quote=QuoteSnapshot(
            symbol_display=asset.symbol,
            price_usd=Decimal(price),
            change_percent_24h=Decimal("1.5"),
        ),
        series=tuple(Decimal(price) + i for i in range(points)),
    )


class GatedFetcher:
    """Fetcher whose refreshes finish only when the test releases them."""

    def __init__(self):
        self.calls = []
        self.gates = []

    async def refresh(self, asset, timeframe):
        gate = asyncio.get_running_loop().create_future()
        self.calls.append((asset, timeframe))
        self.gates.append(gate)
        return await gate


class InstantFetcher:
    """Fetcher that answers immediately from a per-asset script."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    async def refresh(self, asset, timeframe):
        self.calls.append((asset, timeframe))
        outcome = self.outcomes.get(asset.symbol, result_for(asset))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_client(ping_error=None):
    client = AsyncMock()
    if ping_error is not None:
        client.ping.side_effect = ping_error
    else:
        client.ping.return_value = {"gecko_says": "(V3) To the Moon!"}
    return client


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestStartup:
    """Test the liveness probe and first refresh"""

    @pytest.mark.asyncio
    async def test_probe_then_refresh(self):
        fetcher = InstantFetcher()
        client = make_client()
        controller = RefreshController(fetcher, client, debounce_sec=0)

        assert await controller.start() is True
        await controller.wait_settled()

        client.ping.assert_awaited_once()
        assert fetcher.calls == [(BTC, ONE_MONTH)]
        state = controller.state
        assert state.status == RefreshStatus.IDLE
        assert state.refresh.in_flight is False
        assert state.refresh.last_error is None
        assert state.quote.symbol_display == "BTC"
        assert len(state.series) == 3
        assert state.updated_at is not None

    @pytest.mark.asyncio
    async def test_first_refresh_skips_debounce(self):
        clock = FakeClock()
        controller = RefreshController(InstantFetcher(), make_client(), debounce_sec=1.0, sleep=clock.sleep)

        await controller.start()
        await controller.wait_settled()

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_failed_probe_skips_refresh(self):
        fetcher = InstantFetcher()
        client = make_client(ping_error=TransientNetworkError("Connection refused"))
        controller = RefreshController(fetcher, client, debounce_sec=0)

        assert await controller.start() is False
        await controller.wait_settled()

        assert fetcher.calls == []
        assert controller.state.status == RefreshStatus.ERROR
        assert controller.state.refresh.last_error == UNAVAILABLE_MESSAGE
        assert controller.state.refresh.in_flight is False
        assert controller.upstream_available is False

    @pytest.mark.asyncio
    async def test_retry_after_failed_probe(self):
        fetcher = InstantFetcher()
        client = make_client()
        client.ping.side_effect = [TransientNetworkError("down"), {"gecko_says": "ok"}]
        controller = RefreshController(fetcher, client, debounce_sec=0)

        await controller.start()
        await controller.retry()
        await controller.wait_settled()

        assert client.ping.await_count == 2
        assert fetcher.calls == [(BTC, ONE_MONTH)]
        assert controller.state.status == RefreshStatus.IDLE

    @pytest.mark.asyncio
    async def test_probe_runs_once(self):
        client = make_client()
        controller = RefreshController(InstantFetcher(), client, debounce_sec=0)

        await controller.start()
        await controller.wait_settled()
        await controller.set_asset(ETH)
        await controller.wait_settled()

        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_plain_text_ping_counts_as_up(self):
        session = FakeSession(FakeResponse(200, raw="OK"))
        client = CoinGeckoRestClient("https://api.coingecko.com/api/v3", session=session)
        fetcher = InstantFetcher()
        controller = RefreshController(fetcher, client, debounce_sec=0)

        assert await controller.start() is True
        await controller.wait_settled()

        assert controller.upstream_available is True
        assert fetcher.calls == [(BTC, ONE_MONTH)]
        assert controller.state.status == RefreshStatus.IDLE

    @pytest.mark.asyncio
    async def test_concurrent_commands_share_one_probe(self):
        gate = None
        client = AsyncMock()

        async def slow_ping():
            nonlocal gate
            gate = asyncio.get_running_loop().create_future()
            return await gate

        client.ping.side_effect = slow_ping
        fetcher = InstantFetcher()
        controller = RefreshController(fetcher, client, debounce_sec=0)

        starting = asyncio.create_task(controller.start())
        await settle()
        await controller.set_asset(ETH)
        await controller.retry()
        await settle()

        assert client.ping.await_count == 1
        gate.set_result({"gecko_says": "ok"})
        assert await starting is True
        await controller.wait_settled()

        assert client.ping.await_count == 1
        assert fetcher.calls == [(ETH, ONE_MONTH)]
        assert controller.state.asset == ETH
        assert controller.state.status == RefreshStatus.IDLE

    @pytest.mark.asyncio
    async def test_shared_probe_failure_reported_once(self):
        gate = None
        client = AsyncMock()

        async def slow_ping():
            nonlocal gate
            gate = asyncio.get_running_loop().create_future()
            return await gate

        client.ping.side_effect = slow_ping
        fetcher = InstantFetcher()
        controller = RefreshController(fetcher, client, debounce_sec=0)

        starting = asyncio.create_task(controller.start())
        await settle()
        await controller.retry()
        await settle()

        gate.set_exception(TransientNetworkError("Connection refused"))
        assert await starting is False
        await controller.wait_settled()

        assert client.ping.await_count == 1
        assert fetcher.calls == []
        assert controller.state.status == RefreshStatus.ERROR
        assert controller.state.refresh.last_error == UNAVAILABLE_MESSAGE


class TestTransitions:
    """Test state changes on commands"""

    @pytest.mark.asyncio
    async def test_change_enters_fetching(self):
        fetcher = GatedFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await settle()
        fetcher.gates[0].set_result(result_for(BTC))
        await settle()

        await controller.set_asset(ETH)

        state = controller.state
        assert state.status == RefreshStatus.FETCHING
        assert state.refresh.in_flight is True
        assert state.asset == ETH
        # Previous pair stays displayed until the new one commits
        assert state.quote.symbol_display == "BTC"
        await controller.stop()

    @pytest.mark.asyncio
    async def test_error_then_recover(self):
        fetcher = InstantFetcher({"ETH": AuthError("Authentication failed", status=401)})
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await controller.wait_settled()

        await controller.set_asset(ETH)
        await controller.wait_settled()
        assert controller.state.status == RefreshStatus.ERROR
        assert "Authentication failed" in controller.state.refresh.last_error

        await controller.set_asset(SOL)
        await controller.wait_settled()
        assert controller.state.status == RefreshStatus.IDLE
        assert controller.state.refresh.last_error is None
        assert controller.state.quote.symbol_display == "SOL"

    @pytest.mark.asyncio
    async def test_same_selection_is_noop(self):
        fetcher = InstantFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await controller.wait_settled()

        await controller.set_asset(BTC)
        await controller.set_timeframe(ONE_MONTH)
        await controller.wait_settled()

        assert len(fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_timeframe_change(self):
        fetcher = InstantFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await controller.wait_settled()

        await controller.set_timeframe(SIX_MONTHS)
        await controller.wait_settled()

        assert fetcher.calls[-1] == (BTC, SIX_MONTHS)
        assert controller.state.timeframe == SIX_MONTHS

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_error_state(self):
        fetcher = InstantFetcher({"ETH": RuntimeError("boom")})
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await controller.wait_settled()

        await controller.set_asset(ETH)
        await controller.wait_settled()

        assert controller.state.status == RefreshStatus.ERROR
        assert controller.state.refresh.last_error.endswith("Error: boom")


class TestDebounce:
    """Test collapsing of rapid changes"""

    @pytest.mark.asyncio
    async def test_same_tick_changes_spawn_one_request(self):
        fetcher = InstantFetcher()
        clock = FakeClock()
        controller = RefreshController(fetcher, make_client(), debounce_sec=1.0, sleep=clock.sleep)
        await controller.start()
        await controller.wait_settled()

        await controller.set_asset(ETH)
        await controller.set_asset(SOL)
        await controller.set_timeframe(ONE_WEEK)
        await controller.wait_settled()

        assert fetcher.calls[1:] == [(SOL, ONE_WEEK)]
        assert clock.sleeps == [1.0]
        assert controller.state.quote.symbol_display == "SOL"

    @pytest.mark.asyncio
    async def test_change_during_debounce_cancels_pending(self):
        fetcher = InstantFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0.05)
        await controller.start()
        await controller.wait_settled()

        await controller.set_asset(ETH)
        await asyncio.sleep(0.01)       # ETH refresh is now waiting out its debounce
        await controller.set_asset(SOL)
        await controller.wait_settled()

        assert fetcher.calls[1:] == [(SOL, ONE_MONTH)]


class TestSupersededRefresh:
    """Test that stale completions never overwrite newer state"""

    @pytest.mark.asyncio
    async def test_stale_success_discarded(self):
        """refresh(A,T1) resolves after refresh(B,T2): state reflects (B,T2)"""
        fetcher = GatedFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await settle()
        assert fetcher.calls == [(BTC, ONE_MONTH)]

        await controller.set_asset(ETH)
        await controller.set_timeframe(ONE_WEEK)
        await settle()
        assert fetcher.calls[1:] == [(ETH, ONE_WEEK)]

        fetcher.gates[1].set_result(result_for(ETH, price="3000"))
        await settle()
        fetcher.gates[0].set_result(result_for(BTC, price="67000"))
        await controller.wait_settled()

        state = controller.state
        assert state.status == RefreshStatus.IDLE
        assert state.asset == ETH
        assert state.timeframe == ONE_WEEK
        assert state.quote.symbol_display == "ETH"
        assert state.quote.price_usd == Decimal("3000")
        assert state.series[0] == Decimal("3000")

    @pytest.mark.asyncio
    async def test_stale_failure_discarded(self):
        fetcher = GatedFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await settle()

        await controller.set_asset(ETH)
        await settle()

        fetcher.gates[1].set_result(result_for(ETH))
        await settle()
        fetcher.gates[0].set_exception(RateLimitExhausted("Rate limit exceeded", status=429))
        await controller.wait_settled()

        assert controller.state.status == RefreshStatus.IDLE
        assert controller.state.refresh.last_error is None
        assert controller.state.quote.symbol_display == "ETH"

    @pytest.mark.asyncio
    async def test_stale_result_keeps_newer_refresh_loading(self):
        fetcher = GatedFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await settle()

        await controller.set_asset(ETH)
        await settle()
        fetcher.gates[0].set_result(result_for(BTC))
        await settle()

        assert controller.state.status == RefreshStatus.FETCHING
        assert controller.state.refresh.in_flight is True
        assert controller.state.quote is None
        await controller.stop()


class TestAtomicPairing:
    """Test quote and series move together"""

    @pytest.mark.asyncio
    async def test_chart_failure_clears_both(self):
        client = make_client()
        client.get_coin.return_value = {
            "symbol": "eth",
            "market_data": {
                "current_price": {"usd": 3000},
                "price_change_percentage_24h": 2.0,
            },
        }
        client.get_market_chart.side_effect = RateLimitExhausted("Rate limit exceeded", status=429)
        fetcher = PriceFetcher(client, call_spacing_sec=0)
        controller = RefreshController(fetcher, client, asset=ETH, debounce_sec=0)

        await controller.start()
        await controller.wait_settled()

        state = controller.state
        assert state.status == RefreshStatus.ERROR
        assert state.quote is None
        assert state.series == ()
        assert "Rate limit exceeded" in state.refresh.last_error

    @pytest.mark.asyncio
    async def test_failure_after_success_clears_previous_pair(self):
        fetcher = InstantFetcher({"ETH": DataShapeError("Missing field: symbol")})
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await controller.wait_settled()
        assert controller.state.quote is not None

        await controller.set_asset(ETH)
        await controller.wait_settled()

        assert controller.state.quote is None
        assert controller.state.series == ()
        assert controller.state.refresh.last_error == INVALID_RESPONSE_MESSAGE


class TestObservers:
    """Test on_change callbacks"""

    @pytest.mark.asyncio
    async def test_callbacks_see_transitions(self):
        seen = []

        async def record(state):
            seen.append(state.status)

        controller = RefreshController(InstantFetcher(), make_client(), debounce_sec=0)
        controller.on_change(record)

        await controller.start()
        await controller.wait_settled()

        assert seen[0] == RefreshStatus.FETCHING
        assert seen[-1] == RefreshStatus.IDLE

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self):
        seen = []

        async def broken(state):
            raise ValueError("bad listener")

        async def record(state):
            seen.append(state.status)

        controller = RefreshController(InstantFetcher(), make_client(), debounce_sec=0)
        controller.on_change(broken)
        controller.on_change(record)

        await controller.start()
        await controller.wait_settled()

        assert seen[-1] == RefreshStatus.IDLE


class TestStop:
    """Test shutdown"""

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight(self):
        fetcher = GatedFetcher()
        controller = RefreshController(fetcher, make_client(), debounce_sec=0)
        await controller.start()
        await settle()

        await controller.stop()

        assert fetcher.gates[0].cancelled()
        assert controller.state.status == RefreshStatus.FETCHING


class TestDescribeError:
    """Test user-facing messages"""

    @pytest.mark.parametrize("error,expected", [
        (AuthError("x", status=401),
         "Failed to fetch cryptocurrency data. Authentication failed. Please check your CoinGecko API key."),
        (RateLimitExhausted("x", status=429),
         "Failed to fetch cryptocurrency data. Rate limit exceeded. Please wait a moment and try again."),
        (TransientNetworkError("Request timeout after 10s"),
         "Failed to fetch cryptocurrency data. Error: Request timeout after 10s"),
        (DataShapeError("Missing field: symbol"), INVALID_RESPONSE_MESSAGE),
        (UpstreamUnavailable("down"), UNAVAILABLE_MESSAGE),
        (HttpStatusError("HTTP 404 from /coins/x", status=404, upstream_error="coin not found"),
         "Failed to fetch cryptocurrency data. coin not found"),
        (HttpStatusError("HTTP 500 from /ping", status=500),
         "Failed to fetch cryptocurrency data. Error: HTTP 500 from /ping"),
    ])
    def test_messages(self, error, expected):
        assert describe_error(error) == expected
