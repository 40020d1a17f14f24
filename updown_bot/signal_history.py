"""Rolling market history used by the lag and certainty strategies.

- ``SpotHistory``: de-duplicated spot samples over a rolling horizon.
- ``CandleTracker``: one live 1-minute OHLC candle plus a short archive.
- ``TradeFlowTape``: recent exchange trades for volume and taker-flow metrics.

Timestamps are unix seconds (float) throughout.
"""

from __future__ import annotations

import math
from collections import deque
from typing import Deque, List, Optional

from updown_bot.models import Candle, FlowMetrics, FlowTrade, SpotSample

# Samples closer together than this are dropped.
_DEDUP_SECONDS = 0.25
_MIN_HORIZON_SECONDS = 5.0
_MIN_DELTA_WINDOW_SECONDS = 0.5
_MIN_FLOW_TRADES = 5


class SpotHistory:
    """Append-only spot samples pruned to ``horizon`` seconds."""

    def __init__(self, horizon: float = 120.0) -> None:
        self._horizon = max(_MIN_HORIZON_SECONDS, horizon)
        self._samples: Deque[SpotSample] = deque()

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def latest(self) -> Optional[SpotSample]:
        return self._samples[-1] if self._samples else None

    def push(self, price: float | None, timestamp: float) -> bool:
        """Record a sample. Returns False when it was ignored."""
        if price is None or not math.isfinite(price) or price <= 0:
            return False
        last = self.latest
        if last is not None and abs(timestamp - last.timestamp) < _DEDUP_SECONDS:
            return False
        self._samples.append(SpotSample(timestamp=timestamp, price=price))
        cutoff = timestamp - self._horizon
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()
        return True

    def delta_over_seconds(self, window: float, now: float | None = None) -> float | None:
        """Latest price minus the latest price at or before ``now - window``.

        ``now`` defaults to the latest sample time. A latest sample older
        than the window itself yields None.
        """
        if len(self._samples) < 2:
            return None
        latest = self._samples[-1]
        window = max(_MIN_DELTA_WINDOW_SECONDS, window)
        anchor = latest.timestamp if now is None else now
        target = anchor - window
        if latest.timestamp <= target:
            return None
        for sample in reversed(self._samples):
            if sample.timestamp <= target:
                return latest.price - sample.price
        return None


class CandleTracker:
    """1-minute OHLC candles for a single outcome token."""

    def __init__(self, archive: int = 5) -> None:
        self._archive_size = max(1, archive)
        self.current: Optional[Candle] = None
        self.history: List[Candle] = []

    def update(self, price: float, now: float) -> Candle:
        minute = int(now // 60)
        if self.current is None or self.current.minute != minute:
            if self.current is not None:
                self.history.append(self.current)
                if len(self.history) > self._archive_size:
                    self.history.pop(0)
            self.current = Candle(
                minute=minute, open=price, high=price, low=price, close=price, start_time=now,
            )
        candle = self.current
        candle.close = price
        candle.high = max(candle.high, price)
        candle.low = min(candle.low, price)
        return candle

    def is_bullish(self, eps: float = 0.001) -> bool:
        """Green candle, or holding at/above the previous minute's close."""
        candle = self.current
        if candle is None:
            return False
        if candle.close >= candle.open - eps:
            return True
        if self.history and candle.close >= self.history[-1].close - eps:
            return True
        return False

    def is_warmed_up(self, now: float, min_seconds: float = 5.0) -> bool:
        if self.current is None:
            return False
        return (now - self.current.start_time) > min_seconds


class TradeFlowTape:
    """Bounded tape of exchange trades, oldest first."""

    def __init__(self, retention: float = 120.0, max_trades: int = 5000) -> None:
        self._retention = retention
        self._trades: Deque[FlowTrade] = deque(maxlen=max_trades)

    def __len__(self) -> int:
        return len(self._trades)

    def add(self, trade: FlowTrade) -> None:
        self._trades.append(trade)
        cutoff = trade.timestamp - self._retention
        while self._trades and self._trades[0].timestamp < cutoff:
            self._trades.popleft()

    def metrics(
        self,
        now: float | None = None,
        window: float = 10.0,
        baseline: float = 60.0,
    ) -> FlowMetrics | None:
        """Volume ratio and taker imbalance of ``window`` against ``baseline``.

        ``now`` defaults to the latest trade's timestamp. Returns None with
        fewer than five trades or when nothing traded inside the window.
        """
        if len(self._trades) < _MIN_FLOW_TRADES:
            return None
        if now is None:
            now = self._trades[-1].timestamp
        window = max(1.0, window)
        baseline = max(window, baseline)
        window_cut = now - window
        baseline_cut = now - baseline

        window_quote = 0.0
        buy_quote = 0.0
        sell_quote = 0.0
        baseline_quote = 0.0
        first_price: float | None = None
        last_price: float | None = None

        for trade in reversed(self._trades):
            if trade.timestamp < baseline_cut:
                break
            if trade.price <= 0 or trade.qty <= 0:
                continue
            quote = trade.quote_volume
            baseline_quote += quote
            if trade.timestamp >= window_cut:
                window_quote += quote
                # Buyer is maker means the taker sold.
                if trade.is_buyer_maker:
                    sell_quote += quote
                else:
                    buy_quote += quote
                if last_price is None:
                    last_price = trade.price
                first_price = trade.price

        if window_quote <= 0 or first_price is None or last_price is None:
            return None

        taker_total = buy_quote + sell_quote
        imbalance = (buy_quote - sell_quote) / taker_total if taker_total > 0 else 0.0
        window_rate = window_quote / window
        baseline_rate = baseline_quote / baseline
        vol_ratio = window_rate / baseline_rate if baseline_rate > 0 else None

        return FlowMetrics(
            window_volume=window_quote,
            baseline_volume=baseline_quote,
            vol_ratio=vol_ratio,
            imbalance=imbalance,
            price_delta=last_price - first_price,
        )
