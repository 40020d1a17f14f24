"""Tests for order-book sweep and sizing math."""

from __future__ import annotations

import pytest

from updown_bot.book_math import (
    best_bid_within,
    book_pressure,
    cost_to_buy,
    largest_feasible,
    max_shares_for_budget,
    proceeds_from_sell,
    snapshot_from_levels,
)
from updown_bot.fee_model import FeeModel, FeeSchedule
from updown_bot.models import OrderBookLevel


# ── Helpers ────────────────────────────────────────────────────────

def _levels(*pairs: tuple[float, float]) -> tuple[OrderBookLevel, ...]:
    return tuple(OrderBookLevel(price=p, size=s) for p, s in pairs)


# ── cost_to_buy ────────────────────────────────────────────────────

class TestCostToBuy:
    def test_sweeps_levels_in_order(self) -> None:
        asks = _levels((0.40, 5), (0.42, 5), (0.45, 5))
        fill = cost_to_buy(asks, 8, 0.0)
        assert fill is not None
        assert fill.notional == pytest.approx(5 * 0.40 + 3 * 0.42)
        assert fill.avg_price == pytest.approx(fill.notional / 8)
        assert fill.worst_price == 0.42
        assert fill.fee == 0.0

    def test_flat_fee_added_to_cost(self) -> None:
        fill = cost_to_buy(_levels((0.50, 100)), 10, 200.0)
        assert fill is not None
        assert fill.fee == pytest.approx(5.0 * 0.02)
        assert fill.cost == pytest.approx(5.10)

    def test_insufficient_depth_fails(self) -> None:
        assert cost_to_buy(_levels((0.40, 5)), 6, 0.0) is None

    def test_max_price_stops_sweep(self) -> None:
        asks = _levels((0.80, 3), (0.81, 3), (0.90, 10))
        assert cost_to_buy(asks, 6, None, max_price=0.82) is not None
        assert cost_to_buy(asks, 7, None, max_price=0.82) is None

    def test_cost_is_monotone_in_shares(self) -> None:
        asks = _levels((0.30, 4), (0.35, 4), (0.50, 4))
        costs = [cost_to_buy(asks, n, 100.0).cost for n in range(1, 13)]
        assert costs == sorted(costs)

    def test_empty_or_zero_shares(self) -> None:
        assert cost_to_buy((), 1, 0.0) is None
        assert cost_to_buy(_levels((0.5, 1)), 0, 0.0) is None


# ── proceeds_from_sell ─────────────────────────────────────────────

class TestProceedsFromSell:
    def test_sweeps_bids_and_nets_fee(self) -> None:
        bids = _levels((0.60, 3), (0.58, 4), (0.55, 10))
        fill = proceeds_from_sell(bids, 6, 100.0)
        assert fill is not None
        gross = 3 * 0.60 + 3 * 0.58
        assert fill.gross == pytest.approx(gross)
        assert fill.proceeds == pytest.approx(gross * 0.99)
        assert fill.worst_price == 0.58

    def test_min_price_stops_sweep(self) -> None:
        bids = _levels((0.97, 2), (0.95, 5))
        assert proceeds_from_sell(bids, 2, 0.0, 0.96) is not None
        assert proceeds_from_sell(bids, 3, 0.0, 0.96) is None

    def test_price_scaled_fee(self) -> None:
        fees = FeeModel(FeeSchedule.PRICE_SCALED)
        fill = proceeds_from_sell(_levels((0.90, 10)), 10, None, fees=fees)
        assert fill is not None
        assert fill.fee == pytest.approx(9.0 * 0.10 * 0.02)


# ── Sizing ─────────────────────────────────────────────────────────

class TestMaxSharesForBudget:
    def test_largest_fill_within_budget(self) -> None:
        asks = _levels((0.40, 10), (0.50, 10))
        fill = max_shares_for_budget(asks, 0.0, 6.0)
        assert fill is not None
        # 10 @ 0.40 = 4.00, then 4 @ 0.50 = 2.00
        assert fill.shares == 14
        assert fill.cost <= 6.0 + 1e-9
        assert cost_to_buy(asks, 15, 0.0).cost > 6.0

    def test_respects_depth(self) -> None:
        fill = max_shares_for_budget(_levels((0.10, 5)), 0.0, 100.0)
        assert fill is not None
        assert fill.shares == 5

    def test_min_shares_not_met(self) -> None:
        assert max_shares_for_budget(_levels((0.50, 10)), 0.0, 0.4) is None
        assert max_shares_for_budget(_levels((0.50, 3)), 0.0, 100.0, min_shares=4) is None

    def test_best_ask_above_max_price(self) -> None:
        assert max_shares_for_budget(_levels((0.85, 10)), None, 100.0, max_price=0.82) is None

    def test_price_scaled_fee_included(self) -> None:
        fees = FeeModel(FeeSchedule.PRICE_SCALED)
        fill = max_shares_for_budget(_levels((0.80, 100)), None, 8.0, fees=fees)
        assert fill is not None
        # 0.80 * 1.004 = 0.8032 per share
        assert fill.shares == 9
        assert fill.cost == pytest.approx(9 * 0.8032)


def test_largest_feasible_binary_search() -> None:
    calls = []

    def fits(n: int):
        calls.append(n)
        return n if n <= 37 else None

    assert largest_feasible(1, 100, fits) == (37, 37)
    assert len(calls) <= 8
    assert largest_feasible(5, 4, fits) is None


def test_best_bid_within_range() -> None:
    bids = _levels((0.80, 5), (0.745, 2), (0.74, 10), (0.70, 10))
    assert best_bid_within(bids, 0.75, 0.015) == 0.745
    assert best_bid_within(_levels((0.70, 10)), 0.75, 0.015) is None


def test_book_pressure() -> None:
    bids = _levels((0.49, 30), (0.48, 10))
    asks = _levels((0.51, 10), (0.52, 10))
    pressure = book_pressure(bids, asks)
    assert pressure is not None
    assert pressure.spread_cents == pytest.approx(2.0)
    assert pressure.imbalance == pytest.approx((40 - 20) / 60)
    # Heavier bid queue pulls the microprice toward the ask.
    assert pressure.micro_pressure > 0
    assert book_pressure((), asks) is None


def test_snapshot_from_levels_sorts_and_filters() -> None:
    snapshot = snapshot_from_levels(
        [{"price": "0.30", "size": "11"}, {"price": "0.52", "size": "3"}, {"price": "bad", "size": "1"}],
        [{"price": "0.99", "size": "10"}, {"price": "0.45", "size": "7"}, {"price": "0.63", "size": "0"}],
    )
    assert snapshot.best_bid == 0.52
    assert snapshot.best_ask == 0.45
    assert [level.price for level in snapshot.asks] == [0.45, 0.99]
    assert snapshot.mark == pytest.approx((0.52 + 0.45) / 2)
