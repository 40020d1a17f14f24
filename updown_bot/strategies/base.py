from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from updown_bot.execution import OrderSubmitter
from updown_bot.models import Decision, Outcome, RejectReason, TradeRecord, WorldState

LOGGER = logging.getLogger(__name__)


class Strategy(ABC):
    """One trading mode driven by the engine's order-book cadence.

    ``on_tick`` evaluates a consistent ``WorldState`` and returns a
    ``Decision``. ``execute`` acts on an actionable decision through the
    injected ``OrderSubmitter`` and only mutates position state once the
    order is confirmed. A strategy is the single writer of its own
    position, ledger and model state.
    """

    name: str = "strategy"

    def __init__(self, submitter: OrderSubmitter) -> None:
        self._submitter = submitter
        self.last_reason: Optional[RejectReason] = None
        self.last_detail: str = ""
        self.trades: List[TradeRecord] = []
        self.opportunities_found = 0
        self._next_trade_id = 1

    @property
    def is_paper(self) -> bool:
        return self._submitter.is_paper

    @abstractmethod
    def on_tick(self, world: WorldState) -> Decision:
        raise NotImplementedError

    @abstractmethod
    async def execute(self, world: WorldState, decision: Decision) -> bool:
        """Carry out ``decision``. Returns True when state changed."""
        raise NotImplementedError

    def pending_settlement(self, now: float) -> Optional[str]:
        """Market id of a held position whose interval has ended, if any."""
        return None

    def settle(self, winner: Outcome, now: float) -> None:
        return None

    def state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "last_reason": self.last_reason.value if self.last_reason else None,
            "last_detail": self.last_detail,
            "trades": len(self.trades),
            "opportunities_found": self.opportunities_found,
        }

    # ── Helpers ────────────────────────────────────────────────────

    def _skip(self, reason: RejectReason, detail: str = "") -> Decision:
        if reason is not self.last_reason or detail != self.last_detail:
            LOGGER.debug("%s: skip %s %s", self.name, reason.value, detail)
        self.last_reason = reason
        self.last_detail = detail
        return Decision.skip(reason, detail)

    def _accept(self, decision: Decision) -> Decision:
        self.last_reason = None
        self.last_detail = ""
        return decision

    def _budget_cap(self, cap: float) -> float:
        """Paper trades are capped by the simulated balance as well."""
        if self.is_paper:
            available = self._submitter.available_budget()
            return min(available if available is not None else 0.0, cap)
        return cap

    def _capital(self) -> Optional[float]:
        return self._submitter.available_budget()

    def _allocate_trade_id(self) -> int:
        trade_id = self._next_trade_id
        self._next_trade_id += 1
        return trade_id

    def _replace_trade(self, record: TradeRecord) -> None:
        for index, existing in enumerate(self.trades):
            if existing.trade_id == record.trade_id:
                self.trades[index] = record
                return
        self.trades.append(record)
