"""Synthetic arbitrage: buy both outcomes when the pair costs under $1.

Each share of UP plus one share of DOWN pays exactly $1 at resolution,
so a pair bought for less than that (fees included) locks in the
difference. The strategy sizes the largest equal share count the books
and budget allow, opens both legs or neither, and holds to settlement.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from updown_bot.book_math import cost_to_buy, largest_feasible, proceeds_from_sell, total_size
from updown_bot.config import ArbitrageSettings
from updown_bot.execution import OrderSubmitter
from updown_bot.models import (
    Action,
    BuyFill,
    Decision,
    OrderBookLevel,
    OrderSide,
    OrphanLeg,
    Outcome,
    RejectReason,
    StraddlePosition,
    TradeRecord,
    TradeStatus,
    WorldState,
)
from updown_bot.strategies.base import Strategy

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StraddlePlan:
    shares: int
    up: BuyFill
    down: BuyFill

    @property
    def cost(self) -> float:
        return self.up.cost + self.down.cost

    @property
    def profit_cents_each(self) -> float:
        return (self.shares - self.cost) / self.shares * 100.0


def plan_straddle(
    up_asks: tuple[OrderBookLevel, ...],
    down_asks: tuple[OrderBookLevel, ...],
    up_fee_bps: float,
    down_fee_bps: float,
    budget: float,
    min_shares: int,
    min_profit_cents: float,
) -> Optional[StraddlePlan]:
    """Largest equal-share straddle within ``budget`` clearing ``min_profit_cents``.

    Profit per pair only falls as the sweep walks deeper into either
    ladder, so feasibility is monotone in the share count.
    """
    if not up_asks or not down_asks or budget <= 0:
        return None
    depth = math.floor(min(total_size(up_asks), total_size(down_asks)))
    if depth < min_shares:
        return None

    up_best = up_asks[0].price
    down_best = down_asks[0].price
    if not (up_best > 0 and down_best > 0):
        return None
    approx_pair = up_best * (1 + up_fee_bps / 10000.0) + down_best * (1 + down_fee_bps / 10000.0)
    budget_bound = math.floor(budget / approx_pair) if approx_pair > 0 else 0
    hi = max(0, min(depth, budget_bound))
    if hi < min_shares:
        return None

    def _fits(n: int) -> Optional[StraddlePlan]:
        up_fill = cost_to_buy(up_asks, n, up_fee_bps)
        down_fill = cost_to_buy(down_asks, n, down_fee_bps)
        if up_fill is None or down_fill is None:
            return None
        plan = StraddlePlan(shares=n, up=up_fill, down=down_fill)
        if plan.cost > budget + 1e-9 or plan.profit_cents_each < min_profit_cents:
            return None
        return plan

    found = largest_feasible(min_shares, hi, _fits)
    return found[1] if found else None


class ArbitrageStrategy(Strategy):
    """Straddle both outcomes of the current interval.

    Parameters
    ----------
    settings:
        Budget, profit floor, cooldown and minimum share count.
    submitter:
        Paper or live fill-or-kill order route.
    """

    name = "arbitrage"

    def __init__(self, settings: ArbitrageSettings, submitter: OrderSubmitter) -> None:
        super().__init__(submitter)
        self._settings = settings
        self.position: Optional[StraddlePosition] = None
        self.last_trade_at: Optional[float] = None
        self.last_pair_cost: Optional[float] = None
        self.last_profit_cents: Optional[float] = None
        self.suggested: Optional[StraddlePlan] = None
        self._leg_trade_ids: Dict[Outcome, int] = {}
        self.orphans: List[OrphanLeg] = []

    # ── Evaluation ─────────────────────────────────────────────────

    def on_tick(self, world: WorldState) -> Decision:
        if self.position is not None:
            return self._skip(RejectReason.POSITION_OPEN, self.position.interval_slug)
        if world.interval is None or world.tokens is None:
            return self._skip(RejectReason.NO_MARKET)
        if world.now >= world.interval.end:
            return self._skip(RejectReason.STALE_INTERVAL, world.interval.slug)

        up_book = world.book(Outcome.UP)
        down_book = world.book(Outcome.DOWN)
        up_ask = up_book.best_ask
        down_ask = down_book.best_ask
        if up_ask is None or down_ask is None or up_ask <= 0 or down_ask <= 0:
            return self._skip(RejectReason.NO_BOOK)

        up_fee = world.fee_bps(Outcome.UP)
        down_fee = world.fee_bps(Outcome.DOWN)
        if up_fee is None or down_fee is None:
            self.suggested = None
            return self._skip(RejectReason.UNKNOWN_FEE)

        self.last_pair_cost = up_ask * (1 + up_fee / 10000.0) + down_ask * (1 + down_fee / 10000.0)
        self.last_profit_cents = (1.0 - self.last_pair_cost) * 100.0

        budget = self._budget_cap(self._settings.budget_cap)
        if budget < self._settings.min_usdc:
            return self._skip(RejectReason.BUDGET_TOO_SMALL, f"${budget:.2f}")

        plan = plan_straddle(
            up_book.asks,
            down_book.asks,
            up_fee,
            down_fee,
            budget,
            self._settings.min_shares,
            self._settings.min_profit_cents,
        )
        self.suggested = plan
        if plan is None:
            return self._skip(RejectReason.NO_EDGE, f"pair {self.last_pair_cost:.4f}")

        if self.last_trade_at is not None and world.now - self.last_trade_at < self._settings.cooldown_seconds:
            return self._skip(RejectReason.COOLDOWN)

        return self._accept(
            Decision(
                action=Action.ENTER,
                shares=plan.shares,
                expected_cost=plan.cost,
                metadata={"plan": plan, "market_id": world.interval.market_id},
            )
        )

    # ── Execution ──────────────────────────────────────────────────

    async def execute(self, world: WorldState, decision: Decision) -> bool:
        if decision.action is not Action.ENTER or self.position is not None:
            return False
        plan: StraddlePlan = decision.metadata["plan"]
        if world.interval is None or world.tokens is None:
            return False
        if world.interval.market_id != decision.metadata.get("market_id"):
            return False

        self.opportunities_found += 1
        LOGGER.info(
            "ARB straddle: %d sh/side | cost=$%.3f | profit=%.2fc each",
            plan.shares, plan.cost, plan.profit_cents_each,
        )

        capital_before = self._capital()
        if self.is_paper and (capital_before is None or plan.cost > capital_before + 1e-9):
            return False

        up_token = world.tokens.up_token_id
        down_token = world.tokens.down_token_id
        up_result = await self._submitter.fill_or_kill(
            up_token, OrderSide.BUY, plan.shares, plan.up.worst_price, plan.up.cost,
        )
        if not up_result.success:
            self.last_reason = RejectReason.ORDER_REJECTED
            return False

        down_result = await self._submitter.fill_or_kill(
            down_token, OrderSide.BUY, plan.shares, plan.down.worst_price, plan.down.cost,
        )
        if not down_result.success:
            self.last_reason = RejectReason.ORDER_REJECTED
            LOGGER.warning("ARB orphan leg: UP %d sh filled, DOWN leg failed; flattening", plan.shares)
            await self._flatten_leg(world, Outcome.UP, plan.up)
            return False

        interval = world.interval
        self.position = StraddlePosition(
            market_id=interval.market_id,
            interval_slug=interval.slug,
            shares=plan.shares,
            cost=plan.cost,
            up_cost=plan.up.cost,
            down_cost=plan.down.cost,
            opened_at=world.now,
            settle_at=interval.end,
        )
        self.last_trade_at = world.now
        for side, fill in ((Outcome.UP, plan.up), (Outcome.DOWN, plan.down)):
            trade_id = self._allocate_trade_id()
            self._leg_trade_ids[side] = trade_id
            self.trades.append(
                TradeRecord(
                    trade_id=trade_id,
                    strategy=self.name,
                    side=side,
                    market_id=interval.market_id,
                    shares=plan.shares,
                    entry_price=fill.avg_price,
                    entry_cost=fill.cost,
                    entry_fee=fill.fee,
                    capital_before=None,
                    opened_at=world.now,
                )
            )

        LOGGER.info(
            "%s STRADDLE OPEN: %d sh/side | Cost=$%.3f | settles @ %.0f",
            "PAPER" if self.is_paper else "LIVE", plan.shares, plan.cost, interval.end,
        )
        return True

    async def _flatten_leg(self, world: WorldState, side: Outcome, bought: BuyFill) -> None:
        shares = bought.shares
        token_id = world.token_for(side)
        assert token_id is not None
        fill = proceeds_from_sell(world.book(side).bids, shares, world.fee_bps(side))
        if fill is None:
            LOGGER.error("ARB orphan %s leg (%d sh) could not be flattened: no bids", side.value, shares)
            self._track_orphan(world, side, token_id, bought)
            return
        result = await self._submitter.fill_or_kill(
            token_id, OrderSide.SELL, shares, fill.worst_price, fill.proceeds,
        )
        if result.success:
            LOGGER.info("ARB orphan %s leg flattened: %d sh for $%.3f", side.value, shares, fill.proceeds)
            return
        LOGGER.error("ARB orphan %s leg still held: %d sh", side.value, shares)
        self._track_orphan(world, side, token_id, bought)

    def _track_orphan(self, world: WorldState, side: Outcome, token_id: str, bought: BuyFill) -> None:
        """Hold an unflattened leg to resolution like any other position."""
        interval = world.interval
        assert interval is not None
        trade_id = self._allocate_trade_id()
        self.orphans.append(
            OrphanLeg(
                side=side,
                token_id=token_id,
                market_id=interval.market_id,
                shares=bought.shares,
                cost=bought.cost,
                settle_at=interval.end,
                trade_id=trade_id,
            )
        )
        self.trades.append(
            TradeRecord(
                trade_id=trade_id,
                strategy=self.name,
                side=side,
                market_id=interval.market_id,
                shares=bought.shares,
                entry_price=bought.avg_price,
                entry_cost=bought.cost,
                entry_fee=bought.fee,
                capital_before=None,
                opened_at=world.now,
            )
        )

    # ── Settlement ─────────────────────────────────────────────────

    def pending_settlement(self, now: float) -> Optional[str]:
        for orphan in self.orphans:
            if now >= orphan.settle_at:
                return orphan.market_id
        if self.position is not None and now >= self.position.settle_at:
            return self.position.market_id
        return None

    def settle(self, winner: Outcome, now: float) -> None:
        """Apply ``winner`` to whatever ``pending_settlement`` reported."""
        due = next((o.market_id for o in self.orphans if now >= o.settle_at), None)
        if due is not None:
            self._settle_orphans(due, winner, now)
            return
        position = self.position
        if position is None:
            return
        payout = float(position.shares)
        self._submitter.record_cash(payout)
        for side, trade_id in self._leg_trade_ids.items():
            record = next((t for t in self.trades if t.trade_id == trade_id), None)
            if record is None:
                continue
            leg_payout = float(position.shares) if side is winner else 0.0
            self._replace_trade(
                record.closed(
                    TradeStatus.SETTLED,
                    exit_price=1.0 if side is winner else 0.0,
                    proceeds=leg_payout,
                    closed_at=now,
                    winner=winner,
                )
            )
        LOGGER.info(
            "%s STRADDLE SETTLED: winner=%s | payout=$%.2f | pnl=$%.3f",
            "PAPER" if self.is_paper else "LIVE", winner.value, payout, payout - position.cost,
        )
        self.position = None
        self._leg_trade_ids = {}

    def _settle_orphans(self, market_id: str, winner: Outcome, now: float) -> None:
        held = [o for o in self.orphans if o.market_id == market_id]
        self.orphans = [o for o in self.orphans if o.market_id != market_id]
        for orphan in held:
            payout = float(orphan.shares) if orphan.side is winner else 0.0
            self._submitter.record_cash(payout)
            record = next((t for t in self.trades if t.trade_id == orphan.trade_id), None)
            if record is not None:
                self._replace_trade(
                    record.closed(
                        TradeStatus.SETTLED,
                        exit_price=1.0 if orphan.side is winner else 0.0,
                        proceeds=payout,
                        closed_at=now,
                        winner=winner,
                    )
                )
            LOGGER.info(
                "%s ORPHAN SETTLED: %s %d sh | winner=%s | payout=$%.2f | pnl=$%.3f",
                "PAPER" if self.is_paper else "LIVE", orphan.side.value.upper(), orphan.shares,
                winner.value, payout, payout - orphan.cost,
            )

    def state(self) -> Dict[str, Any]:
        snapshot = super().state()
        snapshot.update(
            {
                "open": self.position is not None,
                "orphan_legs": len(self.orphans),
                "last_pair_cost": self.last_pair_cost,
                "last_profit_cents": self.last_profit_cents,
                "suggested_shares": self.suggested.shares if self.suggested else None,
                "suggested_cost": self.suggested.cost if self.suggested else None,
            }
        )
        return snapshot
