"""Taker-fee accounting for outcome-token fills.

Two schedules are supported:

* ``FLAT_BPS``: ``fee = notional * bps / 10000`` using the per-token rate
  reported by the venue.
* ``PRICE_SCALED``: ``fee = notional * (1 - price) * rate``. The fee grows
  with the distance of the execution price from certainty, so a fill at
  80c pays 0.4% while a fill at 20c pays 1.6%.

Usage::

    fees = FeeModel(FeeSchedule.PRICE_SCALED)
    cost = fees.apply_on_buy(notional=8.0, price=0.80, fee_bps=None)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any


class FeeSchedule(Enum):
    FLAT_BPS = "flat_bps"
    PRICE_SCALED = "price_scaled"


# Polymarket taker rate applied to the unfavoured side of the price.
PRICE_SCALED_RATE = 0.02


def normalize_fee_bps(raw: Any) -> float | None:
    """Coerce a venue fee value to basis points.

    Some endpoints report a fraction (0.02 for 2%), others report bps.
    Values in (0, 1) are treated as fractions. Negative, non-numeric and
    non-finite values return None, meaning the fee is unknown.
    """
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    if 0 < value < 1:
        return value * 10000.0
    return value


@dataclass(frozen=True)
class FeeModel:
    """Fee arithmetic for one schedule.

    Parameters
    ----------
    schedule:
        Which fee formula applies. Default ``FLAT_BPS``.
    rate:
        Rate used by ``PRICE_SCALED``. Default 0.02.
    """

    schedule: FeeSchedule = FeeSchedule.FLAT_BPS
    rate: float = PRICE_SCALED_RATE

    def fee(self, notional: float, price: float, fee_bps: float | None = None) -> float:
        if self.schedule is FeeSchedule.PRICE_SCALED:
            return notional * max(0.0, 1.0 - price) * self.rate
        bps = fee_bps if fee_bps is not None else 0.0
        return notional * bps / 10000.0

    def apply_on_buy(self, notional: float, price: float, fee_bps: float | None = None) -> float:
        return notional + self.fee(notional, price, fee_bps)

    def apply_on_sell(self, gross: float, price: float, fee_bps: float | None = None) -> float:
        return gross - self.fee(gross, price, fee_bps)

    def buy_multiplier(self, price: float, fee_bps: float | None = None) -> float:
        """Cost per dollar of notional bought at *price*."""
        return 1.0 + self.fee(1.0, price, fee_bps)

    def sell_multiplier(self, price: float, fee_bps: float | None = None) -> float:
        return 1.0 - self.fee(1.0, price, fee_bps)

    def breakeven_delta_cents(self, entry_price: float, fee_bps: float | None = None) -> float | None:
        """Cents the price must rise after entry to cover the fee round-trip."""
        if not entry_price > 0:
            return None
        sell_mult = self.sell_multiplier(entry_price, fee_bps)
        if not sell_mult > 0:
            return None
        breakeven_sell = entry_price * self.buy_multiplier(entry_price, fee_bps) / sell_mult
        return max(0.0, (breakeven_sell - entry_price) * 100.0)
