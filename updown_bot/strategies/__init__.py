from updown_bot.config import UpDownSettings
from updown_bot.execution import OrderSubmitter

from .arbitrage import ArbitrageStrategy
from .base import Strategy
from .certainty import CertaintyStrategy
from .lag import LagStrategy


def build_strategy(settings: UpDownSettings, submitter: OrderSubmitter) -> Strategy:
    if settings.strategy == "lag":
        return LagStrategy(settings.lag, submitter)
    if settings.strategy == "certainty":
        return CertaintyStrategy(settings.certainty, submitter)
    return ArbitrageStrategy(settings.arbitrage, submitter)


__all__ = ["ArbitrageStrategy", "CertaintyStrategy", "LagStrategy", "Strategy", "build_strategy"]
