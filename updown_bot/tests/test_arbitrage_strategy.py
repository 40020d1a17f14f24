"""Tests for the synthetic-arbitrage straddle strategy."""

from __future__ import annotations

import asyncio

import pytest

from updown_bot.config import ArbitrageSettings
from updown_bot.execution import PaperLedger, PaperSubmitter
from updown_bot.models import (
    Action,
    BookSnapshot,
    IntervalInfo,
    OrderBookLevel,
    OrderResult,
    OrderSide,
    Outcome,
    OutcomeTokens,
    RejectReason,
    TradeStatus,
    WorldState,
)
from updown_bot.strategies.arbitrage import ArbitrageStrategy, plan_straddle


# ── Helpers ────────────────────────────────────────────────────────

START = 1_700_000_100.0
END = START + 900.0


def _levels(*pairs: tuple[float, float]) -> tuple[OrderBookLevel, ...]:
    return tuple(OrderBookLevel(price=p, size=s) for p, s in pairs)


def _make_world(
    up_asks=((0.40, 100),),
    down_asks=((0.55, 100),),
    up_bids=((0.38, 100),),
    down_bids=((0.53, 100),),
    fees=(0.0, 0.0),
    now: float = START + 60.0,
) -> WorldState:
    return WorldState(
        now=now,
        interval=IntervalInfo(slug="btc-updown-15m-1700000100", start=START, end=END, market_id="512",
                              condition_id="0xcond"),
        tokens=OutcomeTokens(up_token_id="up-tok", down_token_id="down-tok", up_fee_bps=fees[0],
                             down_fee_bps=fees[1]),
        books={
            Outcome.UP: BookSnapshot(bids=_levels(*up_bids), asks=_levels(*up_asks)),
            Outcome.DOWN: BookSnapshot(bids=_levels(*down_bids), asks=_levels(*down_asks)),
        },
    )


def _make_strategy(balance: float = 100.0, **overrides) -> tuple[ArbitrageStrategy, PaperSubmitter]:
    submitter = PaperSubmitter(PaperLedger(balance))
    return ArbitrageStrategy(ArbitrageSettings(**overrides), submitter), submitter


class _RejectingSubmitter(PaperSubmitter):
    """Paper submitter that refuses buys of one token."""

    def __init__(self, ledger: PaperLedger, reject_token: str) -> None:
        super().__init__(ledger)
        self.reject_token = reject_token
        self.orders: list[tuple[str, OrderSide, int]] = []

    async def submit_fok(self, token_id, side, shares, limit_price, expected_amount) -> OrderResult:
        self.orders.append((token_id, side, shares))
        if token_id == self.reject_token and side is OrderSide.BUY:
            return OrderResult(success=False, order_id=None, requested_shares=shares, filled_shares=0,
                               error="FOK not filled")
        return await super().submit_fok(token_id, side, shares, limit_price, expected_amount)


# ── plan_straddle ──────────────────────────────────────────────────

class TestPlanStraddle:
    def test_sizes_to_budget(self) -> None:
        plan = plan_straddle(_levels((0.40, 100)), _levels((0.55, 100)), 0.0, 0.0, 10.0, 1, 0.25)
        assert plan is not None
        assert plan.shares == 10
        assert plan.cost == pytest.approx(9.5)
        assert plan.profit_cents_each == pytest.approx(5.0)

    def test_stops_where_deeper_levels_kill_the_edge(self) -> None:
        plan = plan_straddle(_levels((0.40, 3), (0.60, 100)), _levels((0.55, 100)), 0.0, 0.0, 50.0, 1, 0.25)
        assert plan is not None
        assert plan.shares == 3

    def test_fees_count_against_profit(self) -> None:
        # 0.49 + 0.50 = 0.99, but 2% fees on each leg push the pair above $1.
        assert plan_straddle(_levels((0.49, 100)), _levels((0.50, 100)), 200.0, 200.0, 10.0, 1, 0.25) is None

    def test_no_edge(self) -> None:
        assert plan_straddle(_levels((0.50, 100)), _levels((0.52, 100)), 0.0, 0.0, 10.0, 1, 0.25) is None


# ── Decisions ──────────────────────────────────────────────────────

class TestArbitrageDecisions:
    def test_enters_when_pair_is_cheap(self) -> None:
        strategy, _ = _make_strategy()
        decision = strategy.on_tick(_make_world())

        assert decision.action is Action.ENTER
        assert decision.shares == 10
        assert decision.expected_cost == pytest.approx(9.5)
        assert strategy.last_pair_cost == pytest.approx(0.95)
        assert strategy.last_profit_cents == pytest.approx(5.0)

    def test_no_edge(self) -> None:
        strategy, _ = _make_strategy()
        decision = strategy.on_tick(_make_world(up_asks=((0.50, 100),), down_asks=((0.52, 100),)))
        assert decision.action is Action.NONE
        assert decision.reason is RejectReason.NO_EDGE

    def test_unknown_fee(self) -> None:
        strategy, _ = _make_strategy()
        decision = strategy.on_tick(_make_world(fees=(None, 0.0)))
        assert decision.reason is RejectReason.UNKNOWN_FEE

    def test_missing_book(self) -> None:
        strategy, _ = _make_strategy()
        decision = strategy.on_tick(_make_world(down_asks=()))
        assert decision.reason is RejectReason.NO_BOOK

    def test_no_market(self) -> None:
        strategy, _ = _make_strategy()
        assert strategy.on_tick(WorldState()).reason is RejectReason.NO_MARKET

    def test_paper_balance_below_minimum(self) -> None:
        strategy, _ = _make_strategy(balance=3.0)
        decision = strategy.on_tick(_make_world())
        assert decision.reason is RejectReason.BUDGET_TOO_SMALL


# ── Execution and settlement ───────────────────────────────────────

class TestArbitrageExecution:
    def test_opens_both_legs_and_settles(self) -> None:
        strategy, submitter = _make_strategy()
        world = _make_world()
        decision = strategy.on_tick(world)

        assert asyncio.run(strategy.execute(world, decision)) is True
        assert strategy.position is not None
        assert strategy.position.shares == 10
        assert submitter.available_budget() == pytest.approx(90.5)
        assert [t.side for t in strategy.trades] == [Outcome.UP, Outcome.DOWN]
        assert all(t.status is TradeStatus.OPEN for t in strategy.trades)

        assert strategy.pending_settlement(END - 1) is None
        assert strategy.pending_settlement(END) == "512"

        strategy.settle(Outcome.UP, END + 5)

        assert strategy.position is None
        assert submitter.available_budget() == pytest.approx(100.5)
        up, down = strategy.trades
        assert up.status is TradeStatus.SETTLED and down.status is TradeStatus.SETTLED
        assert up.exit_proceeds == 10.0
        assert down.exit_proceeds == 0.0
        assert up.pnl + down.pnl == pytest.approx(0.5)
        assert up.winner is Outcome.UP

    def test_open_position_blocks_second_entry(self) -> None:
        strategy, _ = _make_strategy()
        world = _make_world()
        asyncio.run(strategy.execute(world, strategy.on_tick(world)))

        for _ in range(3):
            decision = strategy.on_tick(world)
            assert decision.action is Action.NONE
            assert decision.reason is RejectReason.POSITION_OPEN
        assert asyncio.run(strategy.execute(world, strategy.on_tick(world))) is False
        assert len(strategy.trades) == 2

    def test_cooldown_after_straddle(self) -> None:
        strategy, _ = _make_strategy()
        world = _make_world()
        asyncio.run(strategy.execute(world, strategy.on_tick(world)))
        strategy.settle(Outcome.DOWN, world.now + 1.0)

        world.now += 1.0
        assert strategy.on_tick(world).reason is RejectReason.COOLDOWN
        world.now += 5.0
        assert strategy.on_tick(world).action is Action.ENTER

    def test_failed_second_leg_flattens_first(self) -> None:
        submitter = _RejectingSubmitter(PaperLedger(100.0), reject_token="down-tok")
        strategy = ArbitrageStrategy(ArbitrageSettings(), submitter)
        world = _make_world()

        assert asyncio.run(strategy.execute(world, strategy.on_tick(world))) is False

        assert strategy.position is None
        assert strategy.trades == []
        assert strategy.last_reason is RejectReason.ORDER_REJECTED
        assert submitter.orders == [
            ("up-tok", OrderSide.BUY, 10),
            ("down-tok", OrderSide.BUY, 10),
            ("up-tok", OrderSide.SELL, 10),
        ]
        # Bought 10 @ 0.40, sold back into the 0.38 bid.
        assert submitter.available_budget() == pytest.approx(100.0 - 4.0 + 3.8)

    def test_unflattened_leg_is_held_to_settlement(self) -> None:
        submitter = _RejectingSubmitter(PaperLedger(100.0), reject_token="down-tok")
        strategy = ArbitrageStrategy(ArbitrageSettings(), submitter)
        world = _make_world(up_bids=())

        assert asyncio.run(strategy.execute(world, strategy.on_tick(world))) is False

        assert strategy.position is None
        assert submitter.available_budget() == pytest.approx(96.0)
        assert len(strategy.orphans) == 1
        (record,) = strategy.trades
        assert record.side is Outcome.UP
        assert record.shares == 10
        assert record.entry_cost == pytest.approx(4.0)
        assert record.status is TradeStatus.OPEN
        assert strategy.state()["orphan_legs"] == 1

        assert strategy.pending_settlement(END - 1) is None
        assert strategy.pending_settlement(END) == "512"
        strategy.settle(Outcome.UP, END + 2)

        assert strategy.orphans == []
        assert strategy.pending_settlement(END + 2) is None
        assert submitter.available_budget() == pytest.approx(106.0)
        settled = strategy.trades[0]
        assert settled.status is TradeStatus.SETTLED
        assert settled.exit_proceeds == 10.0
        assert settled.pnl == pytest.approx(6.0)

    def test_stale_decision_for_rolled_market_is_ignored(self) -> None:
        strategy, submitter = _make_strategy()
        world = _make_world()
        decision = strategy.on_tick(world)
        world.interval = IntervalInfo(slug="next", start=END, end=END + 900, market_id="513")

        assert asyncio.run(strategy.execute(world, decision)) is False
        assert submitter.available_budget() == 100.0
