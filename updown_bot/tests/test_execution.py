"""Tests for paper and live fill-or-kill order submission."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from updown_bot.execution import (
    MIN_LIVE_BALANCE,
    LiveSubmitter,
    PaperLedger,
    PaperSubmitter,
    live_can_spend,
)
from updown_bot.models import Collateral, OrderResult, OrderSide


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _accepted(order_id: str = "0xabc", filled: int = 0) -> OrderResult:
    return OrderResult(success=True, order_id=order_id, requested_shares=10, filled_shares=filled)


def _live(collateral: Collateral | None, gateway: MagicMock | None = None) -> LiveSubmitter:
    gateway = gateway or MagicMock()
    submitter = LiveSubmitter(gateway)
    submitter.collateral = collateral
    return submitter


# ---------------------------------------------------------------------------
# live_can_spend
# ---------------------------------------------------------------------------


class TestLiveCanSpend:
    def test_unknown_collateral(self) -> None:
        ok, reason = live_can_spend(None, 5.0)
        assert ok is False
        assert "unknown" in reason

    def test_balance_below_minimum(self) -> None:
        ok, reason = live_can_spend(Collateral(balance=MIN_LIVE_BALANCE / 2, allowance=100.0), 0.1)
        assert ok is False
        assert "too low" in reason

    def test_insufficient_balance(self) -> None:
        ok, reason = live_can_spend(Collateral(balance=4.0, allowance=100.0), 5.0)
        assert ok is False
        assert "balance" in reason

    def test_insufficient_allowance(self) -> None:
        ok, reason = live_can_spend(Collateral(balance=50.0, allowance=2.0), 5.0)
        assert ok is False
        assert "allowance" in reason

    def test_covered(self) -> None:
        assert live_can_spend(Collateral(balance=50.0, allowance=50.0), 5.0) == (True, None)

    def test_nothing_required(self) -> None:
        assert live_can_spend(None, 0.0) == (True, None)


# ---------------------------------------------------------------------------
# PaperSubmitter
# ---------------------------------------------------------------------------


class TestPaperSubmitter:
    def test_buy_debits_and_sell_credits(self) -> None:
        submitter = PaperSubmitter(PaperLedger(100.0))

        buy = asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))
        assert buy.success is True
        assert buy.order_id == "paper-1"
        assert buy.filled_shares == 10
        assert submitter.available_budget() == pytest.approx(95.45)

        sell = asyncio.run(submitter.fill_or_kill("up", OrderSide.SELL, 10, 0.50, 4.95))
        assert sell.success is True
        assert sell.order_id == "paper-2"
        assert submitter.available_budget() == pytest.approx(100.40)

    def test_buy_beyond_balance_is_rejected_without_change(self) -> None:
        submitter = PaperSubmitter(PaperLedger(3.0))
        result = asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))
        assert result.success is False
        assert "insufficient paper balance" in result.error
        assert submitter.available_budget() == 3.0

    def test_record_cash(self) -> None:
        submitter = PaperSubmitter(PaperLedger(10.0))
        submitter.record_cash(-0.25)
        submitter.record_cash(5.0)
        assert submitter.available_budget() == pytest.approx(14.75)

    def test_ledger_rejects_non_finite(self) -> None:
        ledger = PaperLedger(10.0)
        assert ledger.delta(float("inf")) is False
        assert ledger.balance == 10.0


# ---------------------------------------------------------------------------
# LiveSubmitter
# ---------------------------------------------------------------------------


class TestLiveSubmitter:
    def test_buy_blocked_by_collateral_never_reaches_gateway(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock()
        submitter = _live(Collateral(balance=1.0, allowance=100.0), gateway)

        result = asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))

        assert result.success is False
        gateway.place_fok.assert_not_called()

    def test_confirmed_by_size_matched(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(return_value=_accepted())
        gateway.get_order = AsyncMock(return_value={"size_matched": "10", "original_size": "10"})
        submitter = _live(Collateral(balance=50.0, allowance=50.0), gateway)

        result = asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))

        assert result.success is True
        gateway.place_fok.assert_awaited_once_with("up", OrderSide.BUY, 10, 0.45)
        gateway.get_order.assert_awaited_once_with("0xabc")

    def test_partial_match_is_not_a_fill(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(return_value=_accepted())
        gateway.get_order = AsyncMock(return_value={"size_matched": "4", "original_size": "10"})
        submitter = _live(Collateral(balance=50.0, allowance=50.0), gateway)

        result = asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))

        assert result.success is False
        assert result.error == "not filled"

    def test_sell_skips_collateral_check(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(return_value=_accepted(filled=10))
        gateway.get_order = AsyncMock(return_value=None)
        submitter = _live(None, gateway)

        result = asyncio.run(submitter.fill_or_kill("up", OrderSide.SELL, 10, 0.60, 5.9))

        assert result.success is True
        gateway.place_fok.assert_awaited_once()

    def test_rejected_order(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(
            return_value=OrderResult(
                success=False, order_id=None, requested_shares=10, filled_shares=0, error="FOK not filled",
            )
        )
        gateway.get_order = AsyncMock()
        submitter = _live(Collateral(balance=50.0, allowance=50.0), gateway)

        result = asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))

        assert result.success is False
        gateway.get_order.assert_not_called()

    def test_available_budget_tracks_collateral(self) -> None:
        submitter = _live(None)
        assert submitter.available_budget() is None
        submitter.collateral = Collateral(balance=12.5, allowance=0.0)
        assert submitter.available_budget() == 12.5

    def test_buy_fill_debits_cached_collateral(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(return_value=_accepted())
        gateway.get_order = AsyncMock(return_value={"size_matched": "10", "original_size": "10"})
        submitter = _live(Collateral(balance=50.0, allowance=40.0), gateway)

        asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))

        assert submitter.collateral.balance == pytest.approx(45.45)
        assert submitter.collateral.allowance == pytest.approx(35.45)

    def test_sell_proceeds_are_spendable_before_next_poll(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(return_value=_accepted(filled=10))
        gateway.get_order = AsyncMock(return_value=None)
        submitter = _live(Collateral(balance=2.0, allowance=100.0), gateway)

        asyncio.run(submitter.fill_or_kill("up", OrderSide.SELL, 10, 0.60, 5.9))

        assert submitter.available_budget() == pytest.approx(7.9)
        assert submitter.collateral.allowance == 100.0
        ok, _ = live_can_spend(submitter.collateral, 7.0)
        assert ok is True

    def test_failed_fill_leaves_collateral_alone(self) -> None:
        gateway = MagicMock()
        gateway.place_fok = AsyncMock(return_value=_accepted())
        gateway.get_order = AsyncMock(return_value={"size_matched": "4", "original_size": "10"})
        collateral = Collateral(balance=50.0, allowance=50.0)
        submitter = _live(collateral, gateway)

        asyncio.run(submitter.fill_or_kill("up", OrderSide.BUY, 10, 0.45, 4.55))

        assert submitter.collateral is collateral
