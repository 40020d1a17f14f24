"""Spot price feeds for the underlying asset.

``BinanceTradeFeed`` streams the Binance ``@trade`` channel over a
reconnecting WebSocket and fills the shared ``TradeFlowTape``.
``ReferencePriceFeed`` polls a REST ticker and acts as the slower anchor
used for cross-feed disagreement checks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx
import websockets

from updown_bot.models import FeedSnapshot, FlowTrade
from updown_bot.signal_history import TradeFlowTape

LOGGER = logging.getLogger(__name__)


class SpotFeed(ABC):
    name: str
    is_stream: bool = False

    @abstractmethod
    def snapshot(self, now: float) -> FeedSnapshot:
        raise NotImplementedError

    async def start(self) -> None:
        return None

    async def poll(self, now: float) -> None:
        """Called on every spot cadence tick."""
        return None

    async def stop(self) -> None:
        return None


class BinanceTradeFeed(SpotFeed):
    """Binance trade stream.

    Parameters
    ----------
    url:
        Trade stream endpoint, e.g. ``wss://stream.binance.com:9443/ws/btcusdt@trade``.
    tape:
        Trade tape that receives every parsed trade.
    stale_seconds:
        The feed is reported disconnected after this long without a message.
    """

    name = "binance_ws"
    is_stream = True

    def __init__(self, url: str, tape: TradeFlowTape | None = None, stale_seconds: float = 5.0) -> None:
        self._url = url
        self._tape = tape
        self._stale_seconds = stale_seconds
        self._price: float | None = None
        self._timestamp: float | None = None
        self._last_message_at: float | None = None
        self._connected = False
        self._error: str | None = None
        self._running = False
        self._ws_task: Optional[asyncio.Task[None]] = None

    @property
    def tape(self) -> TradeFlowTape | None:
        return self._tape

    def snapshot(self, now: float) -> FeedSnapshot:
        connected = self._connected
        error = self._error
        if connected and self._last_message_at is not None and now - self._last_message_at > self._stale_seconds:
            connected = False
            error = f"stale (>{self._stale_seconds:g}s)"
        return FeedSnapshot(
            name=self.name,
            price=self._price,
            timestamp=self._timestamp,
            connected=connected,
            error=error,
        )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._ws_task = asyncio.create_task(self._ws_loop())
        LOGGER.info("BinanceTradeFeed: started (%s)", self._url)

    async def stop(self) -> None:
        self._running = False
        if self._ws_task is not None:
            self._ws_task.cancel()
            try:
                await self._ws_task
            except asyncio.CancelledError:
                pass
            self._ws_task = None
        self._connected = False
        LOGGER.info("BinanceTradeFeed: stopped")

    async def _ws_loop(self) -> None:
        while self._running:
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._connected = False
                self._error = str(exc) or type(exc).__name__
                LOGGER.warning("BinanceTradeFeed: WS error: %s, reconnecting in 5s", exc)
                await asyncio.sleep(5)

    async def _connect_and_stream(self) -> None:
        async with websockets.connect(self._url, ping_interval=20, ping_timeout=10) as ws:
            self._connected = True
            self._error = None
            LOGGER.info("BinanceTradeFeed: connected")
            while self._running:
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=30.0)
                except asyncio.TimeoutError:
                    await ws.ping()
                    continue
                self.handle_message(raw)
        self._connected = False
        self._error = self._error or "closed"

    def handle_message(self, raw: str | bytes, received_at: float | None = None) -> FlowTrade | None:
        """Parse one trade message. Returns the trade, or None if unusable."""
        self._last_message_at = time.time() if received_at is None else received_at
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(msg, dict):
            return None
        try:
            price = float(msg["p"])
        except (KeyError, ValueError, TypeError):
            return None
        if not math.isfinite(price) or price <= 0:
            return None

        try:
            ts = float(msg["T"]) / 1000.0
        except (KeyError, ValueError, TypeError):
            ts = self._last_message_at
        try:
            qty = float(msg.get("q"))
        except (ValueError, TypeError):
            qty = 0.0

        self._price = price
        self._timestamp = ts
        self._connected = True
        self._error = None

        if not (math.isfinite(qty) and qty > 0):
            return None
        # m=True: buyer is maker, so the aggressor sold.
        trade = FlowTrade(timestamp=ts, price=price, qty=qty, is_buyer_maker=bool(msg.get("m")))
        if self._tape is not None:
            self._tape.add(trade)
        return trade


class ReferencePriceFeed(SpotFeed):
    """REST ticker polled on the spot cadence."""

    name = "reference"

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._price: float | None = None
        self._timestamp: float | None = None
        self._error: str | None = None

    def snapshot(self, now: float) -> FeedSnapshot:
        return FeedSnapshot(
            name=self.name,
            price=self._price,
            timestamp=self._timestamp,
            connected=self._price is not None,
            error=self._error,
        )

    async def poll(self, now: float) -> None:
        try:
            response = await self._client.get(self._url)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._error = str(exc) or type(exc).__name__
            LOGGER.warning("ReferencePriceFeed: fetch failed: %s", exc)
            return

        price = self._parse_price(payload)
        if price is None:
            self._error = "no price in ticker payload"
            LOGGER.warning("ReferencePriceFeed: %s", self._error)
            return
        self._price = price
        self._timestamp = self._parse_time(payload) or now
        self._error = None

    @staticmethod
    def _parse_price(payload: Any) -> float | None:
        if not isinstance(payload, dict):
            return None
        for key in ("price", "last", "amount"):
            try:
                value = float(payload[key])
            except (KeyError, TypeError, ValueError):
                continue
            if math.isfinite(value) and value > 0:
                return value
        data = payload.get("data")
        if isinstance(data, dict):
            return ReferencePriceFeed._parse_price(data)
        return None

    @staticmethod
    def _parse_time(payload: Any) -> float | None:
        if not isinstance(payload, dict):
            return None
        raw = payload.get("time")
        if not isinstance(raw, str) or not raw:
            return None
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None

    async def stop(self) -> None:
        await self._client.aclose()
