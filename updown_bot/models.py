from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from updown_bot.signal_history import TradeFlowTape


class Outcome(str, Enum):
    UP = "up"
    DOWN = "down"

    @property
    def opposite(self) -> "Outcome":
        return Outcome.DOWN if self is Outcome.UP else Outcome.UP


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Action(str, Enum):
    NONE = "none"
    ENTER = "enter"
    EXIT = "exit"


class RejectReason(str, Enum):
    INSUFFICIENT_DEPTH = "insufficient_depth"
    UNKNOWN_FEE = "unknown_fee"
    BUDGET_TOO_SMALL = "budget_too_small"
    RISK_CAP_BLOCKS_TRADE = "risk_cap_blocks_trade"
    EDGE_TOO_SMALL = "edge_too_small"
    RR_TOO_LOW = "rr_too_low"
    TARGET_UNREACHABLE = "target_unreachable"
    FEED_DISAGREEMENT = "feed_disagreement"
    STALE_INTERVAL = "stale_interval"
    TOKEN_MISMATCH = "token_mismatch"
    ORDER_REJECTED = "order_rejected"
    # Routine "nothing to do" states.
    NO_MARKET = "no_market"
    NO_BOOK = "no_book"
    NO_EDGE = "no_edge"
    POSITION_OPEN = "position_open"
    COOLDOWN = "cooldown"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    WARMING_UP = "warming_up"
    NO_LAG = "no_lag"
    NEAR_EXPIRY = "near_expiry"
    OUTSIDE_WINDOW = "outside_window"
    OUTSIDE_BAND = "outside_band"
    NOT_BULLISH = "not_bullish"
    SPREAD_TOO_WIDE = "spread_too_wide"
    PRESSURE_AGAINST = "pressure_against"
    AWAITING_RESOLUTION = "awaiting_resolution"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    PROFIT = "PROFIT"
    STOPPED = "STOPPED"
    SETTLED = "SETTLED"


class GatewayError(RuntimeError):
    """A venue or feed call failed: HTTP error, rejected order or bad payload."""


# ---------------------------------------------------------------------------
# Order books and fills
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    size: float


@dataclass(frozen=True)
class BookSnapshot:
    """Both sides of one outcome book, each sorted best-first."""

    bids: tuple[OrderBookLevel, ...] = ()
    asks: tuple[OrderBookLevel, ...] = ()
    updated_at: float = 0.0

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def mark(self) -> float:
        bid = self.best_bid
        ask = self.best_ask
        if bid is not None and ask is not None:
            return (bid + ask) / 2.0
        if bid is not None:
            return bid
        if ask is not None:
            return ask
        return 0.0

    @property
    def spread(self) -> float | None:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid


@dataclass(frozen=True)
class BuyFill:
    shares: int
    notional: float
    fee: float
    cost: float
    avg_price: float
    worst_price: float


@dataclass(frozen=True)
class SellFill:
    shares: int
    gross: float
    fee: float
    proceeds: float
    avg_price: float
    worst_price: float


@dataclass(frozen=True)
class BookPressure:
    spread_cents: float
    imbalance: float
    micro_pressure: float


# ---------------------------------------------------------------------------
# Spot, candles, trade flow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SpotSample:
    timestamp: float
    price: float


@dataclass
class Candle:
    minute: int
    open: float
    high: float
    low: float
    close: float
    start_time: float


@dataclass(frozen=True)
class FlowTrade:
    timestamp: float
    price: float
    qty: float
    is_buyer_maker: bool

    @property
    def quote_volume(self) -> float:
        return self.price * self.qty


@dataclass(frozen=True)
class FlowMetrics:
    window_volume: float
    baseline_volume: float
    vol_ratio: float | None
    imbalance: float
    price_delta: float


@dataclass(frozen=True)
class FeedSnapshot:
    name: str
    price: float | None = None
    timestamp: float | None = None
    connected: bool = False
    error: str | None = None

    def age(self, now: float) -> float:
        if self.timestamp is None:
            return math.inf
        return max(0.0, now - self.timestamp)


# ---------------------------------------------------------------------------
# Interval and account
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntervalInfo:
    slug: str
    start: float
    end: float
    market_id: str
    condition_id: str | None = None
    reference_price: float | None = None
    outcomes: tuple[str, ...] = ("Up", "Down")
    entry_spot: float | None = None


@dataclass(frozen=True)
class OutcomeTokens:
    up_token_id: str
    down_token_id: str
    up_fee_bps: float | None = None
    down_fee_bps: float | None = None

    def token_for(self, side: Outcome) -> str:
        return self.up_token_id if side is Outcome.UP else self.down_token_id

    def fee_for(self, side: Outcome) -> float | None:
        return self.up_fee_bps if side is Outcome.UP else self.down_fee_bps


@dataclass(frozen=True)
class Collateral:
    balance: float | None
    allowance: float | None


@dataclass
class WorldState:
    """Shared snapshot. Only the engine writes it; strategies read it."""

    now: float = 0.0
    paper_mode: bool = True
    spot_price: float | None = None
    spot_timestamp: float | None = None
    spot_source: str | None = None
    feeds: Dict[str, FeedSnapshot] = field(default_factory=dict)
    interval: IntervalInfo | None = None
    tokens: OutcomeTokens | None = None
    books: Dict[Outcome, BookSnapshot] = field(default_factory=dict)
    quote_up_buy: float | None = None
    quote_down_buy: float | None = None
    collateral: Collateral | None = None
    trade_tape: Optional["TradeFlowTape"] = None
    last_error: str | None = None

    def book(self, side: Outcome) -> BookSnapshot:
        return self.books.get(side) or BookSnapshot()

    def fee_bps(self, side: Outcome) -> float | None:
        if self.tokens is None:
            return None
        return self.tokens.fee_for(side)

    def token_for(self, side: Outcome) -> str | None:
        if self.tokens is None:
            return None
        return self.tokens.token_for(side)

    @property
    def seconds_to_end(self) -> float | None:
        if self.interval is None:
            return None
        return self.interval.end - self.now


# ---------------------------------------------------------------------------
# Positions, ledger, decisions
# ---------------------------------------------------------------------------


@dataclass
class StraddlePosition:
    market_id: str
    interval_slug: str
    shares: int
    cost: float
    up_cost: float
    down_cost: float
    opened_at: float
    settle_at: float


@dataclass
class OrphanLeg:
    """A straddle leg that filled alone and could not be sold back."""

    side: Outcome
    token_id: str
    market_id: str
    shares: int
    cost: float
    settle_at: float
    trade_id: int


@dataclass
class LagPosition:
    side: Outcome
    token_id: str
    market_id: str
    shares: int
    entry_price: float
    entry_cost: float
    target_price: float
    stop_price: float
    opened_at: float
    settle_at: float
    trade_id: int
    stop_hits: int = 0
    token_mismatch_logged: bool = False


@dataclass
class CertaintyPosition:
    side: Outcome
    token_id: str
    market_id: str
    shares: int
    entry_price: float
    entry_cost: float
    fee: float
    gas: float
    opened_at: float
    settle_at: float
    trade_id: int


@dataclass(frozen=True)
class TradeRecord:
    trade_id: int
    strategy: str
    side: Outcome
    market_id: str
    shares: int
    entry_price: float
    entry_cost: float
    entry_fee: float
    capital_before: float | None
    opened_at: float
    gas: float = 0.0
    status: TradeStatus = TradeStatus.OPEN
    exit_price: float | None = None
    exit_proceeds: float | None = None
    exit_fee: float = 0.0
    capital_after: float | None = None
    closed_at: float | None = None
    pnl: float | None = None
    roi: float | None = None
    winner: Outcome | None = None

    def closed(
        self,
        status: TradeStatus,
        *,
        exit_price: float,
        proceeds: float,
        closed_at: float,
        exit_fee: float = 0.0,
        extra_gas: float = 0.0,
        capital_after: float | None = None,
        winner: Outcome | None = None,
    ) -> "TradeRecord":
        gas = self.gas + extra_gas
        pnl = proceeds - self.entry_cost - gas
        if capital_after is not None and self.capital_before:
            roi = (capital_after - self.capital_before) / self.capital_before
        elif self.entry_cost > 0:
            roi = pnl / self.entry_cost
        else:
            roi = None
        return replace(
            self,
            status=status,
            exit_price=exit_price,
            exit_proceeds=proceeds,
            exit_fee=exit_fee,
            gas=gas,
            capital_after=capital_after,
            closed_at=closed_at,
            pnl=pnl,
            roi=roi,
            winner=winner,
        )


@dataclass(frozen=True)
class Decision:
    action: Action = Action.NONE
    side: Outcome | None = None
    shares: int = 0
    limit_price: float | None = None
    expected_cost: float | None = None
    reason: RejectReason | None = None
    detail: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skip(cls, reason: RejectReason, detail: str = "") -> "Decision":
        return cls(action=Action.NONE, reason=reason, detail=detail)

    @property
    def is_actionable(self) -> bool:
        return self.action is not Action.NONE


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: str | None
    requested_shares: int
    filled_shares: int
    avg_price: float | None = None
    error: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)
