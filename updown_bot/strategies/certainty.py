"""Late-interval high-probability strategy.

In the last minutes of an interval, buy whichever outcome is trading in
the 80-82c band with bullish 1-minute momentum, then ride it to the
96-99c take-profit zone or cut it at 75c. After a stop-out the next
entry must land near the realized stop price, on either side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from updown_bot.book_math import best_bid_within, max_shares_for_budget, proceeds_from_sell
from updown_bot.config import CertaintySettings
from updown_bot.execution import OrderSubmitter
from updown_bot.fee_model import FeeModel, FeeSchedule
from updown_bot.models import (
    Action,
    BuyFill,
    CertaintyPosition,
    Decision,
    OrderSide,
    Outcome,
    RejectReason,
    SellFill,
    TradeRecord,
    TradeStatus,
    WorldState,
)
from updown_bot.signal_history import CandleTracker
from updown_bot.strategies.base import Strategy

LOGGER = logging.getLogger(__name__)

TAKE_PROFIT = "take-profit"
STOP_LOSS = "stop-loss"


@dataclass
class IntervalState:
    """Per-interval bookkeeping, reset whenever the market id changes.

    ``require_reentry`` is the exception: it carries across intervals and is
    cleared only by a successful entry.
    """

    market_id: Optional[str] = None
    last_exit_type: Optional[str] = None
    entry_count: int = 0
    beat_price: Optional[float] = None
    last_stop_exit_price: Optional[float] = None
    require_reentry: bool = False


class CertaintyStrategy(Strategy):
    """Buy near-certain outcomes late in the interval.

    Parameters
    ----------
    settings:
        Bands, take-profit zone, stop price, gas and confirmation knobs.
    submitter:
        Paper or live fill-or-kill order route.
    """

    name = "certainty"

    def __init__(self, settings: CertaintySettings, submitter: OrderSubmitter) -> None:
        super().__init__(submitter)
        self._settings = settings
        self._fees = FeeModel(FeeSchedule.PRICE_SCALED)
        self.candles: Dict[Outcome, CandleTracker] = {
            Outcome.UP: CandleTracker(archive=settings.candle_archive),
            Outcome.DOWN: CandleTracker(archive=settings.candle_archive),
        }
        self.interval = IntervalState()
        self.position: Optional[CertaintyPosition] = None
        self.last_trade_at: Optional[float] = None
        self._confirm_side: Optional[Outcome] = None
        self._confirm_ticks = 0
        self._tp_ticks = 0
        self._stop_ticks = 0

    # ── Interval state ─────────────────────────────────────────────

    def sync_interval(self, world: WorldState) -> None:
        market_id = world.interval.market_id if world.interval else None
        if market_id == self.interval.market_id:
            return
        beat = None
        if world.interval is not None:
            beat = world.interval.entry_spot or world.interval.reference_price
        self.interval = IntervalState(
            market_id=market_id, beat_price=beat, require_reentry=self.interval.require_reentry,
        )
        if beat is not None:
            LOGGER.debug("certainty: beat price $%.2f for %s", beat, market_id)

    def entry_range(self) -> Tuple[float, float]:
        """Band the best ask must sit in for the next entry."""
        s = self._settings
        if self.interval.require_reentry or self.interval.last_exit_type == STOP_LOSS:
            anchor = self.interval.last_stop_exit_price
            if anchor is not None:
                return max(0.01, anchor - s.stop_buffer), anchor + s.stop_buffer
            return s.reentry_price_min, s.reentry_price_max
        return s.entry_price_min, s.entry_price_max

    # ── Tick ───────────────────────────────────────────────────────

    def on_tick(self, world: WorldState) -> Decision:
        for side, tracker in self.candles.items():
            ask = world.book(side).best_ask
            if ask is not None and ask > 0:
                tracker.update(ask, world.now)

        if self.position is not None:
            return self._exit_decision(world)

        self._tp_ticks = 0
        self._stop_ticks = 0
        if world.interval is None or world.tokens is None:
            self._clear_confirm()
            return self._skip(RejectReason.NO_MARKET)
        self.sync_interval(world)
        if world.now >= world.interval.end:
            self._clear_confirm()
            return self._skip(RejectReason.STALE_INTERVAL, world.interval.slug)

        band = self.entry_range()
        reentry = self.interval.require_reentry
        checks = {side: self._can_enter(world, side, band, reentry) for side in (Outcome.UP, Outcome.DOWN)}
        candidates = [(side, fill) for side, (fill, _, _) in checks.items() if fill is not None]
        if not candidates:
            self._clear_confirm()
            _, reason, detail = checks[Outcome.UP]
            return self._skip(reason or RejectReason.NO_EDGE, detail)
        # Ties go to UP.
        side, fill = max(candidates, key=lambda item: (item[1].shares, item[0] is Outcome.UP))

        if not self._cooldown_ok(world.now):
            return self._skip(RejectReason.COOLDOWN)
        if self._confirm_side is side:
            self._confirm_ticks += 1
        else:
            self._confirm_side = side
            self._confirm_ticks = 1
        if self._confirm_ticks < self._settings.confirm_ticks:
            return self._skip(
                RejectReason.AWAITING_CONFIRMATION, f"{side.value} {self._confirm_ticks}/{self._settings.confirm_ticks}",
            )

        return self._accept(
            Decision(
                action=Action.ENTER,
                side=side,
                shares=fill.shares,
                limit_price=band[1],
                expected_cost=fill.cost,
                metadata={"fill": fill, "band": band},
            )
        )

    def _can_enter(
        self,
        world: WorldState,
        side: Outcome,
        band: Tuple[float, float],
        reentry: bool,
    ) -> Tuple[Optional[BuyFill], Optional[RejectReason], str]:
        s = self._settings
        eps = s.price_eps
        tracker = self.candles[side]
        if not reentry and not tracker.is_warmed_up(world.now, s.warmup_seconds):
            return None, RejectReason.WARMING_UP, side.value

        remaining = world.seconds_to_end
        if not reentry and (remaining is None or remaining > s.entry_window_seconds):
            left = f"{remaining:.0f}s left" if remaining is not None else "no end time"
            return None, RejectReason.OUTSIDE_WINDOW, left

        book = world.book(side)
        ask = book.best_ask
        bid = book.best_bid
        if ask is None or ask <= 0:
            return None, RejectReason.NO_BOOK, side.value
        if bid is None or bid <= 0 or ask - bid > s.max_spread + 1e-12:
            return None, RejectReason.SPREAD_TOO_WIDE, side.value

        lo, hi = band
        if ask > hi + eps or ask < lo - eps:
            return None, RejectReason.OUTSIDE_BAND, f"{side.value} ask {ask:.3f} not in [{lo:.3f}, {hi:.3f}]"

        if not reentry and not tracker.is_bullish(eps):
            return None, RejectReason.NOT_BULLISH, side.value

        capital = self._capital()
        if capital is None or capital <= 0:
            return None, RejectReason.BUDGET_TOO_SMALL, "no capital"
        budget = capital - s.order_gas_usdc if self.is_paper else capital
        if budget <= 0:
            return None, RejectReason.BUDGET_TOO_SMALL, "capital too small"

        fill = max_shares_for_budget(
            book.asks, None, budget, s.min_shares, max_price=hi, fees=self._fees, price_eps=eps,
        )
        if fill is None:
            return None, RejectReason.INSUFFICIENT_DEPTH, side.value
        return fill, None, ""

    def _exit_decision(self, world: WorldState) -> Decision:
        s = self._settings
        eps = s.price_eps
        position = self.position
        assert position is not None
        if world.now >= position.settle_at:
            return self._skip(RejectReason.AWAITING_RESOLUTION, position.market_id)
        current_token = world.token_for(position.side)
        if current_token is not None and current_token != position.token_id:
            return self._skip(RejectReason.TOKEN_MISMATCH, "interval rolled")
        if world.interval is not None and world.interval.market_id != position.market_id:
            return self._skip(RejectReason.STALE_INTERVAL, "interval rolled")

        book = world.book(position.side)
        px = book.mark if book.mark > 0 else book.best_bid
        if px is None or px <= 0:
            return self._skip(RejectReason.NO_BOOK, position.side.value)

        if s.take_profit_min - eps <= px <= s.take_profit_max + eps:
            self._tp_ticks += 1
            if self._tp_ticks < s.confirm_ticks:
                return self._skip(RejectReason.AWAITING_CONFIRMATION, "take-profit")
            if not self._cooldown_ok(world.now):
                return self._skip(RejectReason.COOLDOWN)
            min_price = s.take_profit_min - s.take_profit_buffer
            fill = proceeds_from_sell(book.bids, position.shares, None, min_price, fees=self._fees)
            if fill is None:
                if self.last_reason is not RejectReason.INSUFFICIENT_DEPTH:
                    LOGGER.warning("TAKE-PROFIT blocked: no fill at >=%.3f", min_price)
                return self._skip(RejectReason.INSUFFICIENT_DEPTH, "take-profit")
            return self._exit(TAKE_PROFIT, fill, min_price)
        self._tp_ticks = 0

        age = world.now - position.opened_at
        if age >= s.min_position_age_seconds and px <= s.stop_price + eps:
            self._stop_ticks += 1
        else:
            self._stop_ticks = 0
            return self._skip(RejectReason.POSITION_OPEN, f"{position.side.value} @ {px:.3f}")

        if self._stop_ticks < s.confirm_ticks:
            return self._skip(RejectReason.AWAITING_CONFIRMATION, "stop-loss")
        if not self._cooldown_ok(world.now):
            return self._skip(RejectReason.COOLDOWN)
        best_available = best_bid_within(book.bids, s.stop_price, s.stop_buffer, eps)
        if best_available is None:
            if self.last_reason is not RejectReason.INSUFFICIENT_DEPTH:
                LOGGER.warning(
                    "STOP-LOSS blocked: no bids available in range %.3f-%.3f",
                    s.stop_price - s.stop_buffer, s.stop_price,
                )
            return self._skip(RejectReason.INSUFFICIENT_DEPTH, "stop-loss")
        fill = proceeds_from_sell(book.bids, position.shares, None, best_available, fees=self._fees)
        if fill is None:
            if self.last_reason is not RejectReason.INSUFFICIENT_DEPTH:
                LOGGER.warning("STOP-LOSS blocked: cannot fill %d shares at %.3f", position.shares, best_available)
            return self._skip(RejectReason.INSUFFICIENT_DEPTH, "stop-loss")
        return self._exit(STOP_LOSS, fill, best_available)

    def _exit(self, kind: str, fill: SellFill, min_price: float) -> Decision:
        position = self.position
        assert position is not None
        return self._accept(
            Decision(
                action=Action.EXIT,
                side=position.side,
                shares=position.shares,
                limit_price=min_price,
                expected_cost=fill.proceeds,
                metadata={"kind": kind, "fill": fill},
            )
        )

    def _cooldown_ok(self, now: float) -> bool:
        return self.last_trade_at is None or now - self.last_trade_at >= self._settings.cooldown_seconds

    def _clear_confirm(self) -> None:
        self._confirm_side = None
        self._confirm_ticks = 0

    # ── Execution ──────────────────────────────────────────────────

    async def execute(self, world: WorldState, decision: Decision) -> bool:
        if decision.action is Action.ENTER:
            return await self._buy(world, decision)
        if decision.action is Action.EXIT:
            return await self._sell(world, decision)
        return False

    async def _buy(self, world: WorldState, decision: Decision) -> bool:
        s = self._settings
        if self.position is not None or world.interval is None or decision.side is None:
            return False
        token_id = world.token_for(decision.side)
        if token_id is None:
            return False
        fill: BuyFill = decision.metadata["fill"]
        band_max = decision.metadata["band"][1]
        capital_before = self._capital()
        if self.is_paper and (capital_before is None or fill.cost + s.order_gas_usdc > capital_before + 1e-9):
            return False

        trade_id = self._allocate_trade_id()
        self.opportunities_found += 1
        remaining = world.seconds_to_end or 0.0
        LOGGER.info(
            "ENTRY #%d: %s | sh=%d @<=%.3f (maxFill %.3f) | cost=$%.3f fee=$%.4f gas=$%.2f | t=%ds",
            trade_id, decision.side.value.upper(), fill.shares, band_max, fill.worst_price,
            fill.cost, fill.fee, s.order_gas_usdc, int(remaining),
        )
        result = await self._submitter.fill_or_kill(token_id, OrderSide.BUY, fill.shares, band_max, fill.cost)
        if not result.success:
            self.last_reason = RejectReason.ORDER_REJECTED
            self.last_detail = result.error or ""
            return False
        self._submitter.record_cash(-s.order_gas_usdc)

        self.position = CertaintyPosition(
            side=decision.side,
            token_id=token_id,
            market_id=world.interval.market_id,
            shares=fill.shares,
            entry_price=fill.avg_price,
            entry_cost=fill.cost,
            fee=fill.fee,
            gas=s.order_gas_usdc,
            opened_at=world.now,
            settle_at=world.interval.end,
            trade_id=trade_id,
        )
        self.trades.append(
            TradeRecord(
                trade_id=trade_id,
                strategy=self.name,
                side=decision.side,
                market_id=world.interval.market_id,
                shares=fill.shares,
                entry_price=fill.avg_price,
                entry_cost=fill.cost,
                entry_fee=fill.fee,
                capital_before=capital_before,
                opened_at=world.now,
                gas=s.order_gas_usdc,
            )
        )
        self.interval.entry_count += 1
        self.interval.require_reentry = False
        self.interval.last_exit_type = None
        self.last_trade_at = world.now
        self._clear_confirm()
        LOGGER.info(
            "%s BUY #%d: %s %d sh @<=%.3f | cost=$%.3f | cap=$%s",
            "PAPER" if self.is_paper else "LIVE", trade_id, decision.side.value.upper(), fill.shares,
            band_max, fill.cost, _fmt_money(self._capital()),
        )
        return True

    async def _sell(self, world: WorldState, decision: Decision) -> bool:
        s = self._settings
        position = self.position
        if position is None:
            return False
        kind: str = decision.metadata["kind"]
        fill: SellFill = decision.metadata["fill"]
        result = await self._submitter.fill_or_kill(
            position.token_id, OrderSide.SELL, position.shares, decision.limit_price or 0.0, fill.proceeds,
        )
        if not result.success:
            self.last_reason = RejectReason.ORDER_REJECTED
            self.last_detail = result.error or ""
            return False
        self._submitter.record_cash(-s.order_gas_usdc)

        record = next((t for t in self.trades if t.trade_id == position.trade_id), None)
        if record is not None:
            self._replace_trade(
                record.closed(
                    TradeStatus.PROFIT if kind == TAKE_PROFIT else TradeStatus.STOPPED,
                    exit_price=fill.avg_price,
                    proceeds=fill.proceeds,
                    exit_fee=fill.fee,
                    extra_gas=s.order_gas_usdc,
                    closed_at=world.now,
                    capital_after=self._capital(),
                )
            )

        self.interval.last_exit_type = kind
        if kind == STOP_LOSS:
            self.interval.last_stop_exit_price = fill.avg_price
            self.interval.require_reentry = True
        self.last_trade_at = world.now
        self._clear_confirm()
        self._tp_ticks = 0
        self._stop_ticks = 0
        self.position = None

        label = "TAKE-PROFIT" if kind == TAKE_PROFIT else "STOP-LOSS"
        LOGGER.info(
            "%s %s #%d: %s %d sh @%.3f | proceeds=$%.3f fee=$%.4f gas=$%.2f | cap=$%s",
            "PAPER" if self.is_paper else "LIVE", label, position.trade_id, position.side.value.upper(),
            position.shares, fill.worst_price, fill.proceeds, fill.fee, s.order_gas_usdc,
            _fmt_money(self._capital()),
        )
        if kind == STOP_LOSS:
            LOGGER.info("STOP-LOSS executed at %.4f (re-entry will target this price)", fill.avg_price)
        return True

    # ── Settlement ─────────────────────────────────────────────────

    def pending_settlement(self, now: float) -> Optional[str]:
        if self.position is not None and now >= self.position.settle_at:
            return self.position.market_id
        return None

    def settle(self, winner: Outcome, now: float) -> None:
        position = self.position
        if position is None:
            return
        gas = self._settings.settle_gas_usdc
        payout = float(position.shares) if winner is position.side else 0.0
        self._submitter.record_cash(payout - gas)
        record = next((t for t in self.trades if t.trade_id == position.trade_id), None)
        if record is not None:
            self._replace_trade(
                record.closed(
                    TradeStatus.SETTLED,
                    exit_price=1.0 if winner is position.side else 0.0,
                    proceeds=payout,
                    extra_gas=gas,
                    closed_at=now,
                    capital_after=self._capital(),
                    winner=winner,
                )
            )
        LOGGER.info(
            "%s SETTLED #%d: %s %d sh | winner=%s | payout=$%.2f gas=$%.2f",
            "PAPER" if self.is_paper else "LIVE", position.trade_id, position.side.value.upper(),
            position.shares, winner.value, payout, gas,
        )
        self.position = None

    def state(self) -> Dict[str, Any]:
        snapshot = super().state()
        lo, hi = self.entry_range()
        snapshot.update(
            {
                "open": self.position is not None,
                "entry_range": (lo, hi),
                "require_reentry": self.interval.require_reentry,
                "last_exit_type": self.interval.last_exit_type,
                "entry_count": self.interval.entry_count,
                "beat_price": self.interval.beat_price,
                "up_bullish": self.candles[Outcome.UP].is_bullish(self._settings.price_eps),
                "down_bullish": self.candles[Outcome.DOWN].is_bullish(self._settings.price_eps),
            }
        )
        return snapshot


def _fmt_money(value: float | None) -> str:
    return f"{value:.3f}" if value is not None else "?"
