"""Order-book sweep and sizing math for outcome tokens.

All functions are pure. Ladders are sorted best-first: asks ascending,
bids descending. A sweep must consume the full requested size or it
fails with ``None``; partial fills are never reported as success.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple, TypeVar

from updown_bot.fee_model import FeeModel
from updown_bot.models import BookPressure, BookSnapshot, BuyFill, OrderBookLevel, SellFill

T = TypeVar("T")

_FLAT = FeeModel()
_REMAINING_EPS = 1e-9


def largest_feasible(lo: int, hi: int, fits: Callable[[int], Optional[T]]) -> Optional[Tuple[int, T]]:
    """Largest ``n`` in ``[lo, hi]`` for which ``fits(n)`` is not None.

    ``fits`` must be monotone: once it fails for ``n`` it fails for every
    larger ``n``. Returns ``(n, fits(n))`` or None when nothing fits.
    """
    best: Optional[Tuple[int, T]] = None
    while lo <= hi:
        mid = (lo + hi) // 2
        result = fits(mid)
        if result is None:
            hi = mid - 1
        else:
            best = (mid, result)
            lo = mid + 1
    return best


def total_size(levels: Sequence[OrderBookLevel]) -> float:
    return sum(level.size for level in levels if level.size > 0)


def cost_to_buy(
    asks: Sequence[OrderBookLevel],
    shares: int,
    fee_bps: float | None,
    *,
    max_price: float | None = None,
    fees: FeeModel | None = None,
    price_eps: float = 0.001,
) -> BuyFill | None:
    """Fee-inclusive cost of buying *shares* by sweeping *asks*.

    When *max_price* is given the sweep stops at the first level priced
    above ``max_price + price_eps``.
    """
    if not asks or shares <= 0:
        return None
    model = fees or _FLAT

    remaining = float(shares)
    notional = 0.0
    worst = 0.0
    for level in asks:
        if remaining <= 0:
            break
        if level.price <= 0 or level.size <= 0:
            continue
        if max_price is not None and level.price > max_price + price_eps:
            break
        take = min(remaining, level.size)
        notional += take * level.price
        worst = level.price
        remaining -= take

    if remaining > _REMAINING_EPS:
        return None

    avg_price = notional / shares
    fee = model.fee(notional, avg_price, fee_bps)
    return BuyFill(
        shares=shares,
        notional=notional,
        fee=fee,
        cost=notional + fee,
        avg_price=avg_price,
        worst_price=worst,
    )


def proceeds_from_sell(
    bids: Sequence[OrderBookLevel],
    shares: int,
    fee_bps: float | None,
    min_price: float = 0.0,
    *,
    fees: FeeModel | None = None,
    price_eps: float = 0.0,
) -> SellFill | None:
    """Fee-net proceeds of selling *shares* into *bids*.

    Bids are sorted descending, so the sweep stops (rather than skips)
    at the first level below ``min_price - price_eps``.
    """
    if not bids or shares <= 0:
        return None
    model = fees or _FLAT

    remaining = float(shares)
    gross = 0.0
    worst = 0.0
    for level in bids:
        if remaining <= 0:
            break
        if level.price < min_price - price_eps:
            break
        if level.size <= 0:
            continue
        take = min(remaining, level.size)
        gross += take * level.price
        worst = level.price
        remaining -= take

    if remaining > _REMAINING_EPS:
        return None

    avg_price = gross / shares
    fee = model.fee(gross, avg_price, fee_bps)
    return SellFill(
        shares=shares,
        gross=gross,
        fee=fee,
        proceeds=gross - fee,
        avg_price=avg_price,
        worst_price=worst,
    )


def max_shares_for_budget(
    asks: Sequence[OrderBookLevel],
    fee_bps: float | None,
    budget: float,
    min_shares: int = 1,
    *,
    max_price: float | None = None,
    fees: FeeModel | None = None,
    price_eps: float = 0.001,
) -> BuyFill | None:
    """Largest whole-share fill whose fee-inclusive cost fits in *budget*.

    Relies on ``cost_to_buy`` being non-decreasing in shares.
    """
    if not asks or budget <= 0:
        return None
    model = fees or _FLAT

    best = asks[0].price
    if best <= 0:
        return None
    if max_price is not None and best > max_price + price_eps:
        return None

    depth = math.floor(total_size(asks))
    if depth < min_shares:
        return None

    per_share = best * model.buy_multiplier(best, fee_bps)
    budget_bound = math.floor(budget / per_share) if per_share > 0 else 0
    hi = max(0, min(depth, budget_bound))
    if hi < min_shares:
        return None

    def _fits(n: int) -> BuyFill | None:
        fill = cost_to_buy(asks, n, fee_bps, max_price=max_price, fees=model, price_eps=price_eps)
        if fill is None or fill.cost > budget + _REMAINING_EPS:
            return None
        return fill

    found = largest_feasible(min_shares, hi, _fits)
    return found[1] if found else None


def best_bid_within(
    bids: Sequence[OrderBookLevel],
    target: float,
    buffer: float,
    price_eps: float = 0.001,
) -> float | None:
    """Highest resting bid inside ``[target - buffer, target]`` (with eps)."""
    floor_price = target - buffer
    best: float | None = None
    for level in bids:
        if level.size <= 0:
            continue
        if floor_price - price_eps <= level.price <= target + price_eps:
            if best is None or level.price > best:
                best = level.price
    return best


def book_pressure(
    bids: Sequence[OrderBookLevel],
    asks: Sequence[OrderBookLevel],
    levels: int = 5,
) -> BookPressure | None:
    """Spread, depth imbalance and microprice pressure for one outcome book."""
    if not bids or not asks:
        return None
    best_bid = bids[0].price
    best_ask = asks[0].price
    if best_bid <= 0 or best_ask <= 0:
        return None

    n = max(1, int(levels))
    bid_size = sum(level.size for level in bids[:n])
    ask_size = sum(level.size for level in asks[:n])
    denom = bid_size + ask_size
    imbalance = (bid_size - ask_size) / denom if denom > 0 else 0.0

    top_bid = bids[0].size
    top_ask = asks[0].size
    mid = (best_bid + best_ask) / 2.0
    if top_bid + top_ask > 0:
        micro = (best_ask * top_bid + best_bid * top_ask) / (top_bid + top_ask)
    else:
        micro = mid

    return BookPressure(
        spread_cents=(best_ask - best_bid) * 100.0,
        imbalance=imbalance,
        micro_pressure=micro - mid,
    )


def _parse_level(raw: Any) -> OrderBookLevel | None:
    if isinstance(raw, OrderBookLevel):
        return raw
    if isinstance(raw, dict):
        price, size = raw.get("price"), raw.get("size")
    elif isinstance(raw, (list, tuple)) and len(raw) >= 2:
        price, size = raw[0], raw[1]
    else:
        price, size = getattr(raw, "price", None), getattr(raw, "size", None)
    try:
        p = float(price)
        s = float(size)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(p) and math.isfinite(s)) or p <= 0 or s <= 0:
        return None
    return OrderBookLevel(price=p, size=s)


def normalize_levels(raw_levels: Iterable[Any] | None, *, descending: bool) -> tuple[OrderBookLevel, ...]:
    parsed = [level for level in (_parse_level(raw) for raw in (raw_levels or ())) if level is not None]
    parsed.sort(key=lambda level: level.price, reverse=descending)
    return tuple(parsed)


def snapshot_from_levels(
    raw_bids: Iterable[Any] | None,
    raw_asks: Iterable[Any] | None,
    depth: int | None = None,
    updated_at: float = 0.0,
) -> BookSnapshot:
    """Normalise raw venue levels into a sorted ``BookSnapshot``.

    Venues sometimes return levels in arbitrary order; after sorting the
    best ask is the lowest ask and the best bid the highest bid.
    """
    bids = normalize_levels(raw_bids, descending=True)
    asks = normalize_levels(raw_asks, descending=False)
    if depth:
        bids = bids[:depth]
        asks = asks[:depth]
    return BookSnapshot(bids=bids, asks=asks, updated_at=updated_at)
