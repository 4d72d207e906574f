"""
Dashboard — Lightweight web server exposing the tracker state.
Uses aiohttp.web (already a dependency) to serve a JSON API that a
front-end polls for the current quote, series and refresh status, and
to accept asset/timeframe selections.
"""

from __future__ import annotations
import json
from decimal import Decimal
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING
from aiohttp import web
import logging

from core.catalog import ASSETS, TIMEFRAMES, asset_from_input, find_timeframe

if TYPE_CHECKING:
    from coingecko.models import Timeframe
    from core.refresh_controller import MarketState, RefreshController

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime and Enum types."""
    def default(self, o):
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def json_response(data, status=200):
    return web.Response(
        text=json.dumps(data, cls=DecimalEncoder),
        content_type="application/json",
        status=status,
    )


def timeframe_payload(timeframe: "Timeframe") -> Dict[str, Any]:
    return {
        "label": timeframe.label,
        "days": timeframe.days,
        "interval": timeframe.sampling_interval,
        "points": timeframe.target_point_count,
    }


def state_payload(state: "MarketState") -> Dict[str, Any]:
    quote = state.quote
    return {
        "asset": {"symbol": state.asset.symbol, "id": state.asset.id},
        "timeframe": timeframe_payload(state.timeframe),
        "status": state.status,
        "loading": state.refresh.in_flight,
        "error": state.refresh.last_error,
        "quote": None if quote is None else {
            "symbol": quote.symbol_display,
            "name": quote.name,
            "price_usd": quote.price_usd,
            "change_percent_24h": quote.change_percent_24h,
        },
        "prices": list(state.series),
        "generation": state.generation,
        "updated_at": state.updated_at,
    }


class Dashboard:
    """Web dashboard server."""

    def __init__(self, controller: "RefreshController", host: str = "0.0.0.0", port: int = 8080):
        self.controller = controller
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/api/state", self._api_state)
        self.app.router.add_get("/api/catalog", self._api_catalog)
        self.app.router.add_post("/api/asset", self._api_set_asset)
        self.app.router.add_post("/api/timeframe", self._api_set_timeframe)
        self.app.router.add_post("/api/retry", self._api_retry)

    async def start(self):
        """Start the dashboard web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"[DASHBOARD] Running on http://{self.host}:{self.port}")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ─── Routes ───

    async def _api_state(self, request: web.Request) -> web.Response:
        """Current quote, series and refresh status in one call."""
        try:
            return json_response(state_payload(self.controller.state))
        except Exception as e:
            logger.error(f"[DASHBOARD] State API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_catalog(self, request: web.Request) -> web.Response:
        return json_response({
            "assets": [{"symbol": a.symbol, "id": a.id} for a in ASSETS],
            "timeframes": [timeframe_payload(tf) for tf in TIMEFRAMES],
        })

    async def _api_set_asset(self, request: web.Request) -> web.Response:
        """Select a registry asset, or an ad-hoc one from free text."""
        body = await self._read_body(request)
        if body is None:
            return json_response({"error": "Invalid JSON body"}, status=400)

        symbol = body.get("symbol")
        if not isinstance(symbol, str) or not symbol.strip():
            return json_response({"error": "Field 'symbol' is required"}, status=400)

        try:
            await self.controller.set_asset(asset_from_input(symbol))
            return json_response(state_payload(self.controller.state))
        except Exception as e:
            logger.error(f"[DASHBOARD] Asset API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_set_timeframe(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if body is None:
            return json_response({"error": "Invalid JSON body"}, status=400)

        label = body.get("label")
        timeframe = find_timeframe(label) if isinstance(label, str) else None
        if timeframe is None:
            return json_response({"error": f"Unknown timeframe: {label}"}, status=404)

        try:
            await self.controller.set_timeframe(timeframe)
            return json_response(state_payload(self.controller.state))
        except Exception as e:
            logger.error(f"[DASHBOARD] Timeframe API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_retry(self, request: web.Request) -> web.Response:
        try:
            await self.controller.retry()
            return json_response(state_payload(self.controller.state))
        except Exception as e:
            logger.error(f"[DASHBOARD] Retry API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _read_body(self, request: web.Request) -> Optional[Dict[str, Any]]:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None
