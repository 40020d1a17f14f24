from .base import MarketGateway
from .polymarket import PolymarketGateway
from .spot_feeds import BinanceTradeFeed, ReferencePriceFeed, SpotFeed

__all__ = ["BinanceTradeFeed", "MarketGateway", "PolymarketGateway", "ReferencePriceFeed", "SpotFeed"]
