"""Tests for the spot-to-market lag strategy."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

import pytest

from updown_bot.config import LagSettings
from updown_bot.execution import PaperLedger, PaperSubmitter
from updown_bot.fee_model import FeeModel
from updown_bot.models import (
    Action,
    BookSnapshot,
    Decision,
    FeedSnapshot,
    IntervalInfo,
    OrderBookLevel,
    Outcome,
    OutcomeTokens,
    RejectReason,
    TradeStatus,
    WorldState,
)
from updown_bot.strategies.lag import (
    LagStrategy,
    loss_per_share_at_stop,
    max_profit_cents_at_cap,
    profit_cents_for_entry,
    stop_price_for_entry,
    target_sell_price,
)


# ── Helpers ────────────────────────────────────────────────────────

START = 1_700_000_100.0
END = START + 900.0
T0 = START + 100.0
FLAT = FeeModel()


def _make_world(
    now: float,
    spot: float,
    up: tuple[float, float] = (0.49, 0.50),
    down: tuple[float, float] = (0.49, 0.50),
    up_sizes: tuple[float, float] = (200.0, 200.0),
    end: float = END,
    up_token: str = "up-tok",
    feeds: Optional[Dict[str, FeedSnapshot]] = None,
) -> WorldState:
    return WorldState(
        now=now,
        spot_price=spot,
        feeds=feeds or {},
        interval=IntervalInfo(slug="btc-updown-15m-1700000100", start=end - 900, end=end, market_id="512"),
        tokens=OutcomeTokens(up_token_id=up_token, down_token_id="down-tok", up_fee_bps=0.0, down_fee_bps=0.0),
        books={
            Outcome.UP: BookSnapshot(
                bids=(OrderBookLevel(up[0], up_sizes[0]),), asks=(OrderBookLevel(up[1], up_sizes[1]),),
            ),
            Outcome.DOWN: BookSnapshot(
                bids=(OrderBookLevel(down[0], 200.0),), asks=(OrderBookLevel(down[1], 200.0),),
            ),
        },
    )


def _make_strategy(balance: float = 100.0, **overrides) -> tuple[LagStrategy, PaperSubmitter]:
    defaults = dict(entry_model="basic")
    defaults.update(overrides)
    submitter = PaperSubmitter(PaperLedger(balance))
    return LagStrategy(LagSettings(**defaults), submitter), submitter


def _tick(strategy: LagStrategy, now: float, spot: float, **kwargs) -> tuple[WorldState, Decision]:
    world = _make_world(now, spot, **kwargs)
    return world, strategy.on_tick(world)


def _enter(strategy: LagStrategy) -> WorldState:
    """Anchor at $97,000, then a +$100 move the UP book ignores for two ticks."""
    _tick(strategy, T0, 97_000.0)
    _tick(strategy, T0 + 1, 97_100.0)
    world, decision = _tick(strategy, T0 + 2, 97_100.0)
    assert decision.action is Action.ENTER
    assert asyncio.run(strategy.execute(world, decision)) is True
    return world


# ── Sizing math ────────────────────────────────────────────────────

class TestLagMath:
    def test_profit_cents_modes(self) -> None:
        fixed = LagSettings(take_profit_mode="fixed", take_profit_cents=2.0)
        assert profit_cents_for_entry(fixed, 0.5, 100.0, 0.0) == 2.0

        percent = LagSettings(take_profit_mode="percent", take_profit_pct=0.05)
        assert profit_cents_for_entry(percent, 0.5, 100.0, 0.0) == pytest.approx(2.5)

        dynamic = LagSettings(take_profit_mode="dynamic", tp_cents_per_usd=0.05)
        # Forecast 5c, of which 1c has already happened.
        assert profit_cents_for_entry(dynamic, 0.5, 100.0, 0.01) == pytest.approx(4.0)
        assert profit_cents_for_entry(dynamic, 0.5, 1000.0, 0.0) == pytest.approx(10.0)
        assert profit_cents_for_entry(dynamic, 0.5, 1.0, 0.0) == pytest.approx(1.0)

    def test_target_sell_price(self) -> None:
        assert target_sell_price(0.50, 5.0, 0.0, FLAT) == pytest.approx(0.55)
        assert target_sell_price(0.50, 5.0, 100.0, FLAT) == pytest.approx(0.555 / 0.99)
        assert target_sell_price(0.97, 5.0, 0.0, FLAT) is None

    def test_stop_price_modes(self) -> None:
        assert stop_price_for_entry(LagSettings(stop_loss_mode="percent"), 0.5, 5.0) == pytest.approx(0.495)
        assert stop_price_for_entry(LagSettings(stop_loss_mode="dynamic"), 0.5, 5.0) == pytest.approx(0.475)
        assert stop_price_for_entry(LagSettings(stop_loss_mode="strict"), 0.5, 5.0) == pytest.approx(0.495)
        assert stop_price_for_entry(LagSettings(), 0.0, 5.0) is None

    def test_loss_and_cap_room(self) -> None:
        assert loss_per_share_at_stop(0.50, 0.495, 0.0, FLAT) == pytest.approx(0.005)
        assert loss_per_share_at_stop(0.50, 0.60, 0.0, FLAT) == 0.0
        assert max_profit_cents_at_cap(0.50, 0.0, FLAT) == pytest.approx(49.0)


# ── Gating ─────────────────────────────────────────────────────────

class TestLagGating:
    def test_cold_start_never_enters(self) -> None:
        strategy, _ = _make_strategy()
        _, decision = _tick(strategy, T0, 97_000.0)
        assert decision.action is Action.NONE
        assert decision.reason is RejectReason.WARMING_UP

    def test_cold_start_without_fast_history_stays_flat(self) -> None:
        strategy, _ = _make_strategy()
        reasons = []
        for offset in (0.0, 0.5, 1.0, 1.5):
            _, decision = _tick(strategy, T0 + offset, 97_000.0)
            assert decision.action is Action.NONE
            assert strategy.history.delta_over_seconds(2.0, T0 + offset) is None
            reasons.append(decision.reason)

        assert reasons == [RejectReason.WARMING_UP] + [RejectReason.NO_LAG] * 3
        assert strategy.signal is None
        assert strategy.position is None
        assert strategy.trades == []

    def test_baseline_move_signals_before_fast_window_fills(self) -> None:
        strategy, _ = _make_strategy()
        _tick(strategy, T0, 97_000.0)
        _, decision = _tick(strategy, T0 + 1, 97_100.0)

        assert strategy.history.delta_over_seconds(2.0, T0 + 1) is None
        assert strategy.signal is not None
        assert strategy.signal.side is Outcome.UP
        assert strategy.signal.spot_delta == pytest.approx(100.0)
        assert decision.reason is RejectReason.AWAITING_CONFIRMATION

    def test_small_move_is_no_lag(self) -> None:
        strategy, _ = _make_strategy()
        _tick(strategy, T0, 97_000.0)
        _, decision = _tick(strategy, T0 + 1, 97_005.0)
        assert decision.reason is RejectReason.NO_LAG

    def test_market_response_trains_calibrator(self) -> None:
        strategy, _ = _make_strategy()
        _tick(strategy, T0, 97_000.0)
        _, decision = _tick(strategy, T0 + 1, 97_100.0, up=(0.50, 0.51))
        assert decision.reason is RejectReason.NO_LAG
        assert decision.detail == "market responded"
        assert strategy.calibrator.samples == 1

    def test_feed_disagreement_blocks(self) -> None:
        strategy, _ = _make_strategy()
        feeds = {
            "binance_ws": FeedSnapshot(name="binance_ws", price=97_000.0, timestamp=T0, connected=True),
            "reference": FeedSnapshot(name="reference", price=96_800.0, timestamp=T0 - 10, connected=True),
        }
        _, decision = _tick(strategy, T0, 97_000.0, feeds=feeds)
        assert decision.reason is RejectReason.FEED_DISAGREEMENT
        assert strategy.feed_disagreement == pytest.approx(200.0)

    def test_stale_reference_is_not_compared(self) -> None:
        strategy, _ = _make_strategy()
        feeds = {
            "binance_ws": FeedSnapshot(name="binance_ws", price=97_000.0, timestamp=T0, connected=True),
            "reference": FeedSnapshot(name="reference", price=96_000.0, timestamp=T0 - 600, connected=True),
        }
        _, decision = _tick(strategy, T0, 97_000.0, feeds=feeds)
        assert decision.reason is RejectReason.WARMING_UP
        assert strategy.feed_disagreement is None

    def test_near_expiry(self) -> None:
        strategy, _ = _make_strategy()
        _, decision = _tick(strategy, END - 30, 97_000.0)
        assert decision.reason is RejectReason.NEAR_EXPIRY

    def test_missing_market(self) -> None:
        strategy, _ = _make_strategy()
        assert strategy.on_tick(WorldState(now=T0, spot_price=97_000.0)).reason is RejectReason.NO_MARKET

    def test_risk_cap_blocks_trade(self) -> None:
        strategy, _ = _make_strategy(max_risk_usdc=0.001)
        _tick(strategy, T0, 97_000.0)
        _, decision = _tick(strategy, T0 + 1, 97_100.0)
        assert decision.reason is RejectReason.RISK_CAP_BLOCKS_TRADE

    def test_budget_too_small(self) -> None:
        strategy, _ = _make_strategy(balance=2.0)
        _tick(strategy, T0, 97_000.0)
        _, decision = _tick(strategy, T0 + 1, 97_100.0)
        assert decision.reason is RejectReason.BUDGET_TOO_SMALL

    def test_micro_model_needs_enough_edge(self) -> None:
        strategy, _ = _make_strategy(entry_model="micro")
        _tick(strategy, T0, 97_000.0)
        # $20 * 0.05c/$ = 1c of expected lag, below spread 1c + 0.25c minimum edge.
        _, decision = _tick(strategy, T0 + 1, 97_020.0)
        assert decision.reason is RejectReason.EDGE_TOO_SMALL

    def test_micro_model_accepts_large_lag(self) -> None:
        strategy, _ = _make_strategy(entry_model="micro")
        _tick(strategy, T0, 97_000.0, up_sizes=(300.0, 100.0))
        _, decision = _tick(strategy, T0 + 1, 97_100.0, up_sizes=(300.0, 100.0))
        assert decision.reason is RejectReason.AWAITING_CONFIRMATION
        assert strategy.signal is not None
        assert strategy.signal.side is Outcome.UP

    def test_micro_model_rejects_wide_spread(self) -> None:
        strategy, _ = _make_strategy(entry_model="micro")
        _tick(strategy, T0, 97_000.0, up=(0.45, 0.50))
        _, decision = _tick(strategy, T0 + 1, 97_100.0, up=(0.45, 0.50))
        assert decision.reason is RejectReason.SPREAD_TOO_WIDE


# ── Entry and exit ─────────────────────────────────────────────────

class TestLagTrading:
    def test_entry_needs_confirmation(self) -> None:
        strategy, _ = _make_strategy()
        _tick(strategy, T0, 97_000.0)
        _, decision = _tick(strategy, T0 + 1, 97_100.0)
        assert decision.reason is RejectReason.AWAITING_CONFIRMATION

        signal = strategy.signal
        assert signal is not None
        assert signal.side is Outcome.UP
        assert signal.shares == 20
        assert signal.limit_price == pytest.approx(0.50)
        assert signal.target_price == pytest.approx(0.55)
        assert signal.stop_price == pytest.approx(0.495)

    def test_spot_drop_buys_down(self) -> None:
        strategy, _ = _make_strategy()
        _tick(strategy, T0, 97_000.0)
        _tick(strategy, T0 + 1, 96_900.0)
        _, decision = _tick(strategy, T0 + 2, 96_900.0)
        assert decision.action is Action.ENTER
        assert decision.side is Outcome.DOWN

    def test_take_profit(self) -> None:
        strategy, submitter = _make_strategy()
        _enter(strategy)
        assert submitter.available_budget() == pytest.approx(90.0)

        _, decision = _tick(strategy, T0 + 3, 97_100.0, up=(0.52, 0.53))
        assert decision.reason is RejectReason.POSITION_OPEN

        world, decision = _tick(strategy, T0 + 4, 97_100.0, up=(0.56, 0.57))
        assert decision.action is Action.EXIT
        assert decision.metadata["kind"] == "take_profit"
        assert decision.limit_price == pytest.approx(0.55)

        assert asyncio.run(strategy.execute(world, decision)) is True
        record = strategy.trades[0]
        assert record.status is TradeStatus.PROFIT
        assert record.pnl == pytest.approx(1.2)
        assert submitter.available_budget() == pytest.approx(101.2)
        assert strategy.position is None

    def test_stop_loss_after_grace_and_confirmation(self) -> None:
        strategy, _ = _make_strategy()
        _enter(strategy)

        # Inside the grace period the stop is not armed.
        _, decision = _tick(strategy, T0 + 3, 97_100.0, up=(0.48, 0.49))
        assert decision.reason is RejectReason.POSITION_OPEN
        _, decision = _tick(strategy, T0 + 6, 97_100.0, up=(0.48, 0.49))
        assert decision.reason is RejectReason.POSITION_OPEN
        world, decision = _tick(strategy, T0 + 7, 97_100.0, up=(0.48, 0.49))
        assert decision.action is Action.EXIT
        assert decision.metadata["kind"] == "stop_loss"
        assert decision.limit_price == pytest.approx(0.48)

        assert asyncio.run(strategy.execute(world, decision)) is True
        assert strategy.trades[0].status is TradeStatus.STOPPED
        assert strategy.trades[0].pnl == pytest.approx(-0.4)
        assert strategy.last_stop_at == T0 + 7

        # A fresh lag right after the stop waits out the stop cooldown.
        _, decision = _tick(strategy, T0 + 8, 97_200.0, up=(0.48, 0.49))
        assert decision.reason is RejectReason.AWAITING_CONFIRMATION
        _, decision = _tick(strategy, T0 + 9, 97_200.0, up=(0.48, 0.49))
        assert decision.reason is RejectReason.COOLDOWN
        assert decision.detail == "stop"

    def test_open_position_never_enters_again(self) -> None:
        strategy, _ = _make_strategy()
        _enter(strategy)
        for offset in range(3, 8):
            _, decision = _tick(strategy, T0 + offset, 97_300.0 + offset * 50)
            assert decision.action is not Action.ENTER
        assert len(strategy.trades) == 1

    def test_token_mismatch_skips_exit(self) -> None:
        strategy, _ = _make_strategy()
        _enter(strategy)
        _, decision = _tick(strategy, T0 + 5, 97_100.0, up=(0.60, 0.61), up_token="next-up")
        assert decision.reason is RejectReason.TOKEN_MISMATCH
        assert strategy.position.token_mismatch_logged is True

    def test_settlement(self) -> None:
        strategy, submitter = _make_strategy()
        _enter(strategy)
        assert strategy.pending_settlement(END) == "512"

        strategy.settle(Outcome.UP, END + 2)

        assert strategy.position is None
        assert submitter.available_budget() == pytest.approx(110.0)
        record = strategy.trades[0]
        assert record.status is TradeStatus.SETTLED
        assert record.winner is Outcome.UP
        assert record.pnl == pytest.approx(10.0)

    def test_state_snapshot(self) -> None:
        strategy, _ = _make_strategy()
        _enter(strategy)
        state = strategy.state()
        assert state["name"] == "lag"
        assert state["open"] is True
        assert state["trades"] == 1
        assert state["calibration"].cents_per_usd == pytest.approx(0.05)
