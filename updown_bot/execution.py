"""Order submission for paper and live trading.

Strategies never talk to the venue directly: they hand fill-or-kill
orders to an ``OrderSubmitter``. ``PaperSubmitter`` fills everything
against a simulated ``PaperLedger``. ``LiveSubmitter`` checks collateral,
posts through a ``MarketGateway`` and confirms the fill by polling the
order's matched size.
"""

from __future__ import annotations

import itertools
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace

from updown_bot.exchanges.base import MarketGateway
from updown_bot.models import Collateral, OrderResult, OrderSide

LOGGER = logging.getLogger(__name__)

# Smallest live balance worth trading against (USDC).
MIN_LIVE_BALANCE = 0.5
_EPS = 1e-9


def live_can_spend(collateral: Collateral | None, required: float) -> tuple[bool, str | None]:
    """Whether live balance and allowance both cover ``required`` USDC."""
    if not required > 0:
        return True, None
    balance = collateral.balance if collateral else None
    allowance = collateral.allowance if collateral else None
    if balance is None or allowance is None:
        return False, "balance/allowance unknown (still loading)"
    if balance < MIN_LIVE_BALANCE:
        return False, f"balance too low: ${balance:.2f} (minimum ${MIN_LIVE_BALANCE:.2f})"
    if balance + _EPS < required:
        return False, f"insufficient USDC balance (${balance:.2f} < ${required:.2f})"
    if allowance + _EPS < required:
        return False, f"insufficient allowance (${allowance:.2f} < ${required:.2f})"
    return True, None


class PaperLedger:
    """Simulated USDC balance."""

    def __init__(self, balance: float = 100.0) -> None:
        self._balance = float(balance)

    @property
    def balance(self) -> float:
        return self._balance

    def delta(self, amount: float) -> bool:
        updated = self._balance + amount
        if not math.isfinite(updated):
            return False
        self._balance = updated
        return True


class OrderSubmitter(ABC):
    is_paper: bool

    @abstractmethod
    def available_budget(self) -> float | None:
        raise NotImplementedError

    @abstractmethod
    async def submit_fok(
        self,
        token_id: str,
        side: OrderSide,
        shares: int,
        limit_price: float,
        expected_amount: float,
    ) -> OrderResult:
        """Post one fill-or-kill order.

        ``expected_amount`` is the fee-inclusive cost of a BUY or the net
        proceeds of a SELL, as estimated from the book.
        """
        raise NotImplementedError

    async def confirm_fill(self, result: OrderResult, expected_shares: int) -> bool:
        return result.success and result.filled_shares >= expected_shares

    def record_cash(self, amount: float) -> None:
        """Book a cash movement outside an order (gas, settlement payout)."""
        return None

    async def fill_or_kill(
        self,
        token_id: str,
        side: OrderSide,
        shares: int,
        limit_price: float,
        expected_amount: float,
    ) -> OrderResult:
        """Submit and confirm. A result with ``success=False`` means nothing changed."""
        result = await self.submit_fok(token_id, side, shares, limit_price, expected_amount)
        if not result.success:
            LOGGER.warning(
                "%s %s %d @ %.3f rejected: %s", side.value, token_id, shares, limit_price, result.error,
            )
            return result
        if not await self.confirm_fill(result, shares):
            LOGGER.warning(
                "%s %s %d @ %.3f not filled (order %s)", side.value, token_id, shares, limit_price, result.order_id,
            )
            return OrderResult(
                success=False,
                order_id=result.order_id,
                requested_shares=shares,
                filled_shares=result.filled_shares,
                avg_price=result.avg_price,
                error="not filled",
                raw=result.raw,
            )
        return result


class PaperSubmitter(OrderSubmitter):
    is_paper = True

    def __init__(self, ledger: PaperLedger) -> None:
        self.ledger = ledger
        self._ids = itertools.count(1)

    def available_budget(self) -> float:
        return self.ledger.balance

    async def submit_fok(
        self,
        token_id: str,
        side: OrderSide,
        shares: int,
        limit_price: float,
        expected_amount: float,
    ) -> OrderResult:
        if side is OrderSide.BUY:
            if expected_amount > self.ledger.balance + _EPS:
                return OrderResult(
                    success=False,
                    order_id=None,
                    requested_shares=shares,
                    filled_shares=0,
                    error=f"insufficient paper balance (${self.ledger.balance:.2f} < ${expected_amount:.2f})",
                )
            applied = self.ledger.delta(-expected_amount)
        else:
            applied = self.ledger.delta(expected_amount)
        if not applied:
            return OrderResult(
                success=False, order_id=None, requested_shares=shares, filled_shares=0,
                error="non-finite paper amount",
            )
        return OrderResult(
            success=True,
            order_id=f"paper-{next(self._ids)}",
            requested_shares=shares,
            filled_shares=shares,
            avg_price=limit_price,
        )

    def record_cash(self, amount: float) -> None:
        self.ledger.delta(amount)


class LiveSubmitter(OrderSubmitter):
    """Routes orders to the venue. ``collateral`` is refreshed by the engine."""

    is_paper = False

    def __init__(self, gateway: MarketGateway) -> None:
        self._gateway = gateway
        self.collateral: Collateral | None = None

    def available_budget(self) -> float | None:
        return self.collateral.balance if self.collateral else None

    async def submit_fok(
        self,
        token_id: str,
        side: OrderSide,
        shares: int,
        limit_price: float,
        expected_amount: float,
    ) -> OrderResult:
        if side is OrderSide.BUY:
            ok, reason = live_can_spend(self.collateral, expected_amount)
            if not ok:
                return OrderResult(
                    success=False, order_id=None, requested_shares=shares, filled_shares=0, error=reason,
                )
        return await self._gateway.place_fok(token_id, side, shares, limit_price)

    async def fill_or_kill(
        self,
        token_id: str,
        side: OrderSide,
        shares: int,
        limit_price: float,
        expected_amount: float,
    ) -> OrderResult:
        """As the base route, then books the fill against the cached collateral.

        The next collateral poll replaces the estimate with the venue's figure.
        """
        result = await super().fill_or_kill(token_id, side, shares, limit_price, expected_amount)
        if result.success and self.collateral is not None and self.collateral.balance is not None:
            if side is OrderSide.BUY:
                allowance = self.collateral.allowance
                self.collateral = Collateral(
                    balance=self.collateral.balance - expected_amount,
                    allowance=allowance - expected_amount if allowance is not None else None,
                )
            else:
                self.collateral = replace(self.collateral, balance=self.collateral.balance + expected_amount)
        return result

    async def confirm_fill(self, result: OrderResult, expected_shares: int) -> bool:
        if not result.success or not result.order_id:
            return False
        order = await self._gateway.get_order(result.order_id)
        if order is None:
            return result.filled_shares + _EPS >= expected_shares
        try:
            matched = float(order.get("size_matched") or 0)
        except (TypeError, ValueError):
            matched = 0.0
        try:
            target = float(order["original_size"])
        except (KeyError, TypeError, ValueError):
            target = float(expected_shares)
        return matched + _EPS >= target
