from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from updown_bot.models import (
    BookSnapshot,
    Collateral,
    IntervalInfo,
    OrderResult,
    OrderSide,
    Outcome,
    OutcomeTokens,
)


class MarketGateway(ABC):
    """Venue access used by the engine and the live order submitter.

    Implementations raise ``GatewayError`` for transport failures and
    malformed payloads. ``place_fok`` reports rejections through
    ``OrderResult.success`` instead of raising.
    """

    venue: str

    @abstractmethod
    async def resolve_interval(self, slug: str, start: float, end: float) -> IntervalInfo | None:
        raise NotImplementedError

    @abstractmethod
    async def fetch_tokens(self, interval: IntervalInfo) -> OutcomeTokens:
        raise NotImplementedError

    @abstractmethod
    async def fetch_book(self, token_id: str, depth: int | None = None) -> BookSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def fetch_fee_bps(self, token_id: str) -> float | None:
        raise NotImplementedError

    @abstractmethod
    async def fetch_quote(self, token_id: str, side: OrderSide = OrderSide.BUY) -> float | None:
        raise NotImplementedError

    @abstractmethod
    async def fetch_winner(self, market_id: str) -> Outcome | None:
        raise NotImplementedError

    @abstractmethod
    async def place_fok(
        self, token_id: str, side: OrderSide, shares: int, limit_price: float,
    ) -> OrderResult:
        raise NotImplementedError

    async def fetch_collateral(self) -> Collateral | None:
        """Live balance and allowance. Returns None if not supported."""
        return None

    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        """Raw order status. Returns None if not supported."""
        return None

    async def aclose(self) -> None:
        return None
