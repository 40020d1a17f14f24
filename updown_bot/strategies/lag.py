"""Spot-to-market lag strategy.

When the underlying moves sharply but neither outcome token has repriced
yet, buy the side the move favours and exit on a small take-profit or a
confirmed stop. The expected repricing comes from an online calibrator
(cents per USD of spot move) blended with a small linear model; both are
trained from every response the market actually makes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from updown_bot.book_math import (
    book_pressure,
    cost_to_buy,
    max_shares_for_budget,
    proceeds_from_sell,
)
from updown_bot.calibration import LatencyTracker, OnlineCalibrator, OnlineLinearModel, build_features
from updown_bot.config import LagSettings
from updown_bot.execution import OrderSubmitter
from updown_bot.fee_model import FeeModel, FeeSchedule
from updown_bot.models import (
    Action,
    Decision,
    LagPosition,
    OrderSide,
    Outcome,
    RejectReason,
    SellFill,
    TradeRecord,
    TradeStatus,
    WorldState,
)
from updown_bot.signal_history import SpotHistory
from updown_bot.strategies.base import Strategy

LOGGER = logging.getLogger(__name__)

PRICE_CAP = 0.99
PRICE_FLOOR = 0.001
PRIMARY_FEED = "binance_ws"
REFERENCE_FEED = "reference"


# ── Sizing math ────────────────────────────────────────────────────


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def profit_cents_for_entry(
    settings: LagSettings,
    entry_price: float,
    spot_delta: float | None,
    side_market_move: float | None,
) -> float:
    """Take-profit distance in cents for an entry at ``entry_price``."""
    min_profit = max(0.0, settings.min_profit_cents)
    mode = settings.take_profit_mode
    pct = settings.take_profit_pct

    if mode == "fixed":
        return max(min_profit, settings.take_profit_cents)
    if mode == "percent":
        if pct is not None and pct > 0 and entry_price > 0:
            return max(min_profit, entry_price * 100.0 * pct)
        return max(min_profit, settings.take_profit_cents)

    forecast = abs(spot_delta or 0.0) * max(0.0, settings.tp_cents_per_usd)
    realized = max(0.0, side_market_move or 0.0) * 100.0
    remaining = max(0.0, forecast - realized)
    return max(min_profit, max(settings.tp_min_cents, min(settings.tp_max_cents, remaining)))


def target_sell_price(entry_price: float, profit_cents: float, fee_bps: float | None, fees: FeeModel) -> float | None:
    """Sell price that nets ``profit_cents`` per share after both fees.

    None when the target sits at or above the 99c cap or does not clear
    the entry price.
    """
    sell_mult = fees.sell_multiplier(entry_price, fee_bps)
    if not sell_mult > 0:
        return None
    raw = (entry_price * fees.buy_multiplier(entry_price, fee_bps) + profit_cents / 100.0) / sell_mult
    if not math.isfinite(raw) or raw >= PRICE_CAP:
        return None
    target = _clamp(raw, PRICE_FLOOR, PRICE_CAP)
    if not target > entry_price:
        return None
    return target


def stop_price_for_entry(settings: LagSettings, entry_price: float, profit_cents: float) -> float | None:
    if not entry_price > 0:
        return None
    pct_stop = entry_price * (1.0 - settings.stop_loss_pct)
    loss_cents = max(settings.sl_min_cents, min(settings.sl_max_cents, profit_cents * settings.sl_risk_frac))
    dyn_stop = entry_price - loss_cents / 100.0
    if settings.stop_loss_mode == "percent":
        return _clamp(pct_stop, PRICE_FLOOR, PRICE_CAP)
    if settings.stop_loss_mode == "dynamic":
        return _clamp(dyn_stop, PRICE_FLOOR, PRICE_CAP)
    # strict: the higher stop triggers sooner
    return _clamp(max(pct_stop, dyn_stop), PRICE_FLOOR, PRICE_CAP)


def loss_per_share_at_stop(entry_price: float, stop_price: float, fee_bps: float | None, fees: FeeModel) -> float:
    buy = entry_price * fees.buy_multiplier(entry_price, fee_bps)
    sell = stop_price * fees.sell_multiplier(stop_price, fee_bps)
    return max(0.0, buy - sell)


def max_profit_cents_at_cap(entry_price: float, fee_bps: float | None, fees: FeeModel) -> float:
    buy = entry_price * fees.buy_multiplier(entry_price, fee_bps)
    sell = PRICE_CAP * fees.sell_multiplier(PRICE_CAP, fee_bps)
    return (sell - buy) * 100.0


# ── State ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LagSignal:
    side: Outcome
    token_id: str
    shares: int
    limit_price: float
    avg_price: float
    expected_cost: float
    entry_fee: float
    target_price: float
    stop_price: float
    profit_cents: float
    spot_delta: float
    spend_cap: float


@dataclass
class _Anchor:
    spot: float
    up_mark: float
    down_mark: float


@dataclass
class _PendingEntry:
    side: Outcome
    limit_price: float
    hits: int = 1


class LagStrategy(Strategy):
    """Trade the gap between a spot move and the outcome tokens' response.

    Parameters
    ----------
    settings:
        Detection thresholds, take-profit/stop modes, risk caps and the
        online-learning knobs.
    submitter:
        Paper or live fill-or-kill order route.
    """

    name = "lag"

    def __init__(self, settings: LagSettings, submitter: OrderSubmitter) -> None:
        super().__init__(submitter)
        self._settings = settings
        self._fees = FeeModel(FeeSchedule.FLAT_BPS)
        self.history = SpotHistory(horizon=settings.history_seconds)
        self.calibrator = OnlineCalibrator(
            alpha=settings.calibrate_alpha,
            min_cents_per_usd=settings.calibrate_min_cents_per_usd,
            max_cents_per_usd=settings.calibrate_max_cents_per_usd,
            min_samples=settings.calibrate_min_samples,
            fallback=settings.fallback_cents_per_usd,
            enabled=settings.calibrate,
        )
        self.model = OnlineLinearModel(
            lr=settings.ai_lr,
            l2=settings.ai_l2,
            max_abs_weight=settings.ai_max_abs_weight,
            min_samples=settings.ai_min_samples,
            blend_weight=settings.ai_blend,
            enabled=settings.ai_enabled,
            learn=settings.ai_learn,
        )
        self.latency = LatencyTracker(alpha=settings.calibrate_alpha)

        self.position: Optional[LagPosition] = None
        self.signal: Optional[LagSignal] = None
        self.last_trade_at: Optional[float] = None
        self.last_stop_at: Optional[float] = None
        self.feed_disagreement: Optional[float] = None
        self._anchor: Optional[_Anchor] = None
        self._pending: Optional[_PendingEntry] = None
        self._last_features: Optional[Tuple[Outcome, np.ndarray]] = None

    # ── Tick ───────────────────────────────────────────────────────

    def on_tick(self, world: WorldState) -> Decision:
        signal, reason, detail = self._evaluate(world)
        self.signal = signal
        if self.position is not None:
            return self._exit_decision(world)
        if signal is None:
            self._pending = None
            return self._skip(reason or RejectReason.NO_LAG, detail)
        return self._entry_decision(world, signal)

    def _evaluate(self, world: WorldState) -> Tuple[Optional[LagSignal], Optional[RejectReason], str]:
        s = self._settings
        now = world.now
        if world.interval is None or world.tokens is None:
            return None, RejectReason.NO_MARKET, ""
        spot = world.spot_price
        up_mark = world.book(Outcome.UP).mark
        down_mark = world.book(Outcome.DOWN).mark
        if spot is None or not (up_mark > 0 and down_mark > 0):
            return None, RejectReason.NO_BOOK, ""

        self.history.push(spot, now)

        self.feed_disagreement = self._feed_disagreement(world)
        if self.feed_disagreement is not None and self.feed_disagreement > s.feed_disagree_hard_usd:
            return None, RejectReason.FEED_DISAGREEMENT, f"${self.feed_disagreement:.1f}"

        remaining = world.seconds_to_end
        if remaining is not None and remaining <= s.no_entry_before_end_seconds:
            return None, RejectReason.NEAR_EXPIRY, f"{remaining:.0f}s left"

        anchor = self._anchor
        if anchor is None:
            self._anchor = _Anchor(spot=spot, up_mark=up_mark, down_mark=down_mark)
            return None, RejectReason.WARMING_UP, ""

        baseline = spot - anchor.spot
        fast = self.history.delta_over_seconds(s.fast_seconds, now)
        slow = self.history.delta_over_seconds(s.slow_seconds, now)
        spot_delta = fast if fast is not None else baseline
        spike = fast is not None and abs(fast) >= s.spike_usd
        up_delta = up_mark - anchor.up_mark
        down_delta = down_mark - anchor.down_mark

        if max(abs(up_delta), abs(down_delta)) >= s.min_market_move:
            self._learn_from_response(now, baseline, up_delta, down_delta)
            self._anchor = _Anchor(spot=spot, up_mark=up_mark, down_mark=down_mark)
            return None, RejectReason.NO_LAG, "market responded"

        if abs(spot_delta) < s.spot_move_usd:
            return None, RejectReason.NO_LAG, f"spot {spot_delta:+.2f}"

        side = Outcome.UP if spot_delta > 0 else Outcome.DOWN
        self.latency.open_window(side, now, spot_delta)
        spike_disagree = (
            spike and fast is not None and slow is not None and (fast > 0) != (slow > 0) and slow != 0
        )

        fee_bps = world.fee_bps(side)
        token_id = world.token_for(side)
        if fee_bps is None or token_id is None:
            return None, RejectReason.UNKNOWN_FEE, side.value

        spend_cap = self._budget_cap(s.budget_cap)
        if spend_cap < s.min_usdc:
            return None, RejectReason.BUDGET_TOO_SMALL, f"${spend_cap:.2f}"

        book = world.book(side)
        fill_budget = max_shares_for_budget(book.asks, fee_bps, spend_cap, 1, fees=self._fees)
        if fill_budget is None:
            return None, RejectReason.INSUFFICIENT_DEPTH, side.value

        pressure = book_pressure(book.bids, book.asks, s.imbalance_levels)
        flow = None
        if s.use_flow and world.trade_tape is not None:
            flow = world.trade_tape.metrics(now, s.flow_window_seconds, s.flow_baseline_seconds)
        features = build_features(fast, slow, baseline, pressure, flow)
        self._last_features = (side, features)

        side_mark = up_mark if side is Outcome.UP else down_mark
        anchor_mark = anchor.up_mark if side is Outcome.UP else anchor.down_mark

        if s.entry_model == "micro":
            if pressure is None:
                return None, RejectReason.NO_BOOK, "no book pressure"
            if pressure.spread_cents > s.max_spread_cents:
                return None, RejectReason.SPREAD_TOO_WIDE, f"{pressure.spread_cents:.2f}c"

            pressure_ok = pressure.imbalance >= s.imbalance_min or pressure.micro_pressure > 0
            pressure_against = pressure.imbalance <= -abs(s.imbalance_min) and pressure.micro_pressure < 0

            quote = world.quote_up_buy if side is Outcome.UP else world.quote_down_buy
            effective_ask = fill_budget.worst_price
            if quote is not None and quote > 0:
                effective_ask = max(effective_ask, quote)
            breakeven = self._fees.breakeven_delta_cents(effective_ask, fee_bps) or 0.0

            heuristic = abs(spot_delta) * self.calibrator.cents_per_usd
            predicted = self.model.blend(heuristic, features)
            observed = max(0.0, side_mark - anchor_mark) * 100.0
            lag_cents = max(0.0, predicted - observed)

            penalties = 0.0
            if not pressure_ok:
                penalties += s.weak_pressure_extra_edge_cents
            if pressure_against:
                penalties += s.against_pressure_extra_edge_cents
            if spike_disagree:
                penalties += s.spike_disagree_extra_edge_cents
            bonus = 0.0
            if flow is not None:
                flow_ok, flow_against = self._flow_alignment(side, flow.vol_ratio, flow.imbalance, flow.price_delta)
                if flow_ok:
                    bonus = max(0.0, s.flow_bonus_edge_cents)
                else:
                    penalties += s.flow_weak_extra_edge_cents
                if flow_against:
                    penalties += s.flow_against_extra_edge_cents

            needed = max(
                0.0,
                breakeven
                + pressure.spread_cents
                + s.edge_min_cents
                + (s.spike_extra_edge_cents if spike else 0.0)
                + penalties
                - bonus,
            )
            if lag_cents < needed:
                tag = ""
                if not pressure_ok:
                    tag = " | PRESSURE_AGAINST" if pressure_against else " | PRESSURE_WEAK"
                return None, RejectReason.EDGE_TOO_SMALL, f"lag {lag_cents:.2f}c < need {needed:.2f}c{tag}"

        side_move = max(0.0, up_delta if side is Outcome.UP else down_delta)

        # First pass sizes risk off the budget-sized entry price.
        entry0 = fill_budget.worst_price
        profit0 = profit_cents_for_entry(s, entry0, spot_delta, side_move)
        stop0 = stop_price_for_entry(s, entry0, profit0)
        loss0 = loss_per_share_at_stop(entry0, stop0, fee_bps, self._fees) if stop0 else 0.0
        risk_budget = self._risk_budget()
        risk_shares = math.floor(risk_budget / loss0) if risk_budget > 0 and loss0 > 0 else 0
        shares = min(fill_budget.shares, risk_shares)
        if shares < 1:
            return None, RejectReason.RISK_CAP_BLOCKS_TRADE, f"risk ${risk_budget:.2f}"

        fill = cost_to_buy(book.asks, shares, fee_bps, fees=self._fees)
        if fill is None:
            return None, RejectReason.INSUFFICIENT_DEPTH, f"{shares} sh"

        entry = fill.worst_price
        profit = profit_cents_for_entry(s, entry, spot_delta, side_move)
        target = target_sell_price(entry, profit, fee_bps, self._fees)
        if target is None:
            return None, RejectReason.TARGET_UNREACHABLE, "tp unreachable"

        stop = stop_price_for_entry(s, entry, profit)
        loss_cents = loss_per_share_at_stop(entry, stop, fee_bps, self._fees) * 100.0 if stop else 0.0
        if not (loss_cents > 0 and profit >= s.min_rr * loss_cents):
            return None, RejectReason.RR_TOO_LOW, f"tp {profit:.2f}c vs sl {loss_cents:.2f}c"

        if max_profit_cents_at_cap(entry, fee_bps, self._fees) + 1e-6 < profit:
            return None, RejectReason.TARGET_UNREACHABLE, "no room to profit (near cap)"

        signal = LagSignal(
            side=side,
            token_id=token_id,
            shares=shares,
            limit_price=entry,
            avg_price=fill.avg_price,
            expected_cost=fill.cost,
            entry_fee=fill.fee,
            target_price=target,
            stop_price=stop,
            profit_cents=profit,
            spot_delta=spot_delta,
            spend_cap=spend_cap,
        )
        return signal, None, ""

    def _learn_from_response(self, now: float, baseline: float, up_delta: float, down_delta: float) -> None:
        self.latency.record_response(now)
        self.calibrator.update(baseline, up_delta, down_delta)
        if self._last_features is not None:
            side, features = self._last_features
            response = up_delta if side is Outcome.UP else down_delta
            self.model.update(features, max(0.0, response) * 100.0)
        self._last_features = None

    def _flow_alignment(
        self, side: Outcome, vol_ratio: float | None, imbalance: float, price_delta: float,
    ) -> Tuple[bool, bool]:
        s = self._settings
        ratio_ok = vol_ratio is None or vol_ratio >= s.flow_min_ratio
        imb_min = abs(s.flow_imbalance_min)
        sign = 1.0 if side is Outcome.UP else -1.0
        aligned_imb = imbalance * sign >= imb_min
        against_imb = imbalance * sign <= -imb_min
        aligned_px = price_delta * sign >= 0
        against_px = price_delta * sign < 0
        return ratio_ok and (aligned_imb or aligned_px), ratio_ok and against_imb and against_px

    def _feed_disagreement(self, world: WorldState) -> Optional[float]:
        s = self._settings
        primary = world.feeds.get(PRIMARY_FEED)
        reference = world.feeds.get(REFERENCE_FEED)
        if primary is None or reference is None or primary.price is None or reference.price is None:
            return None
        if primary.age(world.now) > s.primary_feed_max_age_seconds:
            return None
        if reference.age(world.now) > s.reference_feed_max_age_seconds:
            return None
        gap = abs(primary.price - reference.price)
        if gap > s.feed_disagree_usd:
            LOGGER.debug("lag: feeds disagree by $%.1f", gap)
        return gap

    def _risk_budget(self) -> float:
        s = self._settings
        pct = s.risk_pct_balance
        if pct is not None and pct > 0:
            balance = self._capital()
            if balance is not None and balance > 0:
                return max(0.0, balance * pct)
        return max(0.0, s.max_risk_usdc)

    # ── Entry ──────────────────────────────────────────────────────

    def _entry_decision(self, world: WorldState, signal: LagSignal) -> Decision:
        s = self._settings
        pending = self._pending
        if (
            pending is None
            or pending.side is not signal.side
            or abs(pending.limit_price - signal.limit_price) > 1e-9
        ):
            pending = _PendingEntry(side=signal.side, limit_price=signal.limit_price)
            self._pending = pending
        else:
            pending.hits += 1
        if pending.hits < max(1, s.entry_confirm_ticks):
            return self._skip(RejectReason.AWAITING_CONFIRMATION, f"{pending.hits}/{s.entry_confirm_ticks}")

        now = world.now
        if self.last_trade_at is not None and now - self.last_trade_at < s.cooldown_seconds:
            return self._skip(RejectReason.COOLDOWN, "trade")
        if self.last_stop_at is not None and now - self.last_stop_at < s.stop_cooldown_seconds:
            return self._skip(RejectReason.COOLDOWN, "stop")
        if not signal.limit_price < PRICE_CAP:
            return self._skip(RejectReason.TARGET_UNREACHABLE, "limit at cap")

        return self._accept(
            Decision(
                action=Action.ENTER,
                side=signal.side,
                shares=signal.shares,
                limit_price=signal.limit_price,
                expected_cost=signal.expected_cost,
                metadata={"signal": signal},
            )
        )

    # ── Exit ───────────────────────────────────────────────────────

    def _exit_decision(self, world: WorldState) -> Decision:
        s = self._settings
        position = self.position
        assert position is not None
        if world.now >= position.settle_at:
            return self._skip(RejectReason.AWAITING_RESOLUTION, position.market_id)

        current_token = world.token_for(position.side)
        if current_token is not None and current_token != position.token_id:
            if not position.token_mismatch_logged:
                position.token_mismatch_logged = True
                LOGGER.warning(
                    "LAG open position token mismatch vs current interval; skipping exit evaluation (%s)",
                    position.market_id,
                )
            return self._skip(RejectReason.TOKEN_MISMATCH, position.market_id)

        book = world.book(position.side)
        best_bid = book.best_bid
        if best_bid is None or best_bid <= 0:
            return self._skip(RejectReason.NO_BOOK, position.side.value)

        take_profit = best_bid >= position.target_price
        # Stop reference is the mark; it flickers less than the bid.
        stop_ref = book.mark if book.mark > 0 else best_bid
        stop_raw = stop_ref <= position.stop_price
        armed = world.now - position.opened_at >= s.stop_grace_seconds
        if stop_raw and armed:
            position.stop_hits += 1
        else:
            position.stop_hits = 0
        stop = stop_raw and armed and position.stop_hits >= max(1, s.stop_confirm_ticks)

        if not take_profit and not stop:
            return self._skip(RejectReason.POSITION_OPEN, position.side.value)

        fee_bps = world.fee_bps(position.side)
        min_exit = position.target_price if take_profit else 0.0
        fill = proceeds_from_sell(book.bids, position.shares, fee_bps, min_exit, fees=self._fees)
        if fill is None:
            return self._skip(RejectReason.INSUFFICIENT_DEPTH, "exit")

        return self._accept(
            Decision(
                action=Action.EXIT,
                side=position.side,
                shares=position.shares,
                limit_price=position.target_price if take_profit else fill.worst_price,
                expected_cost=fill.proceeds,
                metadata={"kind": "take_profit" if take_profit else "stop_loss", "fill": fill},
            )
        )

    # ── Execution ──────────────────────────────────────────────────

    async def execute(self, world: WorldState, decision: Decision) -> bool:
        if decision.action is Action.ENTER:
            return await self._enter(world, decision.metadata["signal"])
        if decision.action is Action.EXIT:
            return await self._exit(world, decision)
        return False

    async def _enter(self, world: WorldState, signal: LagSignal) -> bool:
        if self.position is not None or world.interval is None:
            return False
        mode = "PAPER" if self.is_paper else "LIVE"
        self.opportunities_found += 1
        LOGGER.info(
            "LAG signal: buy %s %d sh @ %.3f (tp %.3f | sl %.3f)",
            signal.side.value.upper(), signal.shares, signal.limit_price, signal.target_price, signal.stop_price,
        )
        capital_before = self._capital()
        result = await self._submitter.fill_or_kill(
            signal.token_id, OrderSide.BUY, signal.shares, signal.limit_price, signal.expected_cost,
        )
        if not result.success:
            self.last_reason = RejectReason.ORDER_REJECTED
            self.last_detail = result.error or ""
            return False

        trade_id = self._allocate_trade_id()
        self.position = LagPosition(
            side=signal.side,
            token_id=signal.token_id,
            market_id=world.interval.market_id,
            shares=signal.shares,
            entry_price=signal.limit_price,
            entry_cost=signal.expected_cost,
            target_price=signal.target_price,
            stop_price=signal.stop_price,
            opened_at=world.now,
            settle_at=world.interval.end,
            trade_id=trade_id,
        )
        self.trades.append(
            TradeRecord(
                trade_id=trade_id,
                strategy=self.name,
                side=signal.side,
                market_id=world.interval.market_id,
                shares=signal.shares,
                entry_price=signal.avg_price,
                entry_cost=signal.expected_cost,
                entry_fee=signal.entry_fee,
                capital_before=capital_before,
                opened_at=world.now,
            )
        )
        self.last_trade_at = world.now
        self._pending = None
        LOGGER.info(
            "%s LAG ENTRY: %s %d sh | entry %.3f | tp %.3f | sl %.3f | cost=$%.3f",
            mode, signal.side.value.upper(), signal.shares, signal.limit_price,
            signal.target_price, signal.stop_price, signal.expected_cost,
        )
        return True

    async def _exit(self, world: WorldState, decision: Decision) -> bool:
        position = self.position
        if position is None:
            return False
        fill: SellFill = decision.metadata["fill"]
        take_profit = decision.metadata["kind"] == "take_profit"
        result = await self._submitter.fill_or_kill(
            position.token_id, OrderSide.SELL, position.shares, decision.limit_price or 0.0, fill.proceeds,
        )
        if not result.success:
            self.last_reason = RejectReason.ORDER_REJECTED
            self.last_detail = result.error or ""
            return False

        record = next((t for t in self.trades if t.trade_id == position.trade_id), None)
        if record is not None:
            self._replace_trade(
                record.closed(
                    TradeStatus.PROFIT if take_profit else TradeStatus.STOPPED,
                    exit_price=fill.avg_price,
                    proceeds=fill.proceeds,
                    exit_fee=fill.fee,
                    closed_at=world.now,
                    capital_after=self._capital(),
                )
            )
        if not take_profit:
            self.last_stop_at = world.now
        why = f"TP (>= {position.target_price:.3f})" if take_profit else f"STOP (<= {position.stop_price:.3f})"
        LOGGER.info(
            "%s LAG EXIT: %s %d sh | entry %.3f | exit %.3f | %s | +$%.3f",
            "PAPER" if self.is_paper else "LIVE", position.side.value.upper(), position.shares,
            position.entry_price, fill.worst_price, why, fill.proceeds,
        )
        self.position = None
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
        payout = float(position.shares) if winner is position.side else 0.0
        self._submitter.record_cash(payout)
        record = next((t for t in self.trades if t.trade_id == position.trade_id), None)
        if record is not None:
            self._replace_trade(
                record.closed(
                    TradeStatus.SETTLED,
                    exit_price=1.0 if winner is position.side else 0.0,
                    proceeds=payout,
                    closed_at=now,
                    capital_after=self._capital(),
                    winner=winner,
                )
            )
        LOGGER.info(
            "%s LAG SETTLED: %s %d sh | winner=%s | payout=$%.2f",
            "PAPER" if self.is_paper else "LIVE", position.side.value.upper(), position.shares,
            winner.value, payout,
        )
        self.position = None

    def state(self) -> Dict[str, Any]:
        snapshot = super().state()
        snapshot.update(
            {
                "open": self.position is not None,
                "signal": self.signal,
                "feed_disagreement": self.feed_disagreement,
                "calibration": self.calibrator.state(),
                "model": self.model.state(),
                "latency": self.latency.state(),
            }
        )
        return snapshot
