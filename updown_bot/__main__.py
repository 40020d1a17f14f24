"""CLI entry point for the 15-minute up/down bot.

Usage::

    python3 -m updown_bot --strategy arbitrage --duration-minutes 60
    python3 -m updown_bot --strategy lag --paper-balance 50 --output trades.csv
    python3 -m updown_bot --strategy certainty --live
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace
from typing import List

from updown_bot.config import STRATEGIES, UpDownSettings, load_settings
from updown_bot.engine import UpDownEngine
from updown_bot.exchanges import BinanceTradeFeed, PolymarketGateway, ReferencePriceFeed, SpotFeed
from updown_bot.execution import LiveSubmitter, OrderSubmitter, PaperLedger, PaperSubmitter
from updown_bot.logging_setup import configure_logging
from updown_bot.signal_history import TradeFlowTape
from updown_bot.strategies import build_strategy

LOGGER = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python3 -m updown_bot",
        description="Trade Polymarket 15-minute BTC up/down markets",
    )
    parser.add_argument("--strategy", choices=STRATEGIES, default=None, help="Trading mode")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--paper", action="store_true", help="Simulated fills (default)")
    mode.add_argument("--live", action="store_true", help="Live orders (needs Polymarket credentials)")

    parser.add_argument("--paper-balance", type=float, default=None, help="Starting paper USDC")
    parser.add_argument(
        "--duration-minutes", type=float, default=0,
        help="How long to run in minutes (0 = indefinitely)",
    )
    parser.add_argument("--output", type=str, default=None, help="Path to write trades CSV on exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def _apply_overrides(settings: UpDownSettings, args: argparse.Namespace) -> UpDownSettings:
    engine_overrides = {}
    if args.live:
        engine_overrides["paper_mode"] = False
        engine_overrides["enable_live_orders"] = True
    elif args.paper:
        engine_overrides["paper_mode"] = True
    if args.paper_balance is not None:
        engine_overrides["paper_balance"] = args.paper_balance

    overrides = {}
    if engine_overrides:
        overrides["engine"] = replace(settings.engine, **engine_overrides)
    if args.strategy is not None:
        overrides["strategy"] = args.strategy
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return replace(settings, **overrides) if overrides else settings


def build_engine(settings: UpDownSettings) -> UpDownEngine:
    cfg = settings.engine
    gateway = PolymarketGateway(cfg)
    submitter: OrderSubmitter
    if cfg.paper_mode:
        submitter = PaperSubmitter(PaperLedger(cfg.paper_balance))
    else:
        if not gateway.live_ready:
            LOGGER.warning("Live trading requested but orders are unavailable: %s", gateway.live_error)
        submitter = LiveSubmitter(gateway)

    tape = TradeFlowTape(retention=cfg.trade_tape_seconds)
    feeds: List[SpotFeed] = [
        BinanceTradeFeed(cfg.binance_ws_url, tape=tape, stale_seconds=cfg.feed_stale_seconds),
        ReferencePriceFeed(cfg.reference_price_url, timeout_seconds=cfg.http_timeout_seconds),
    ]
    strategy = build_strategy(settings, submitter)
    return UpDownEngine(settings, gateway, strategy, feeds, submitter=submitter, trade_tape=tape)


async def _async_main(settings: UpDownSettings, args: argparse.Namespace) -> None:
    engine = build_engine(settings)
    try:
        await engine.run(duration_minutes=args.duration_minutes)
    finally:
        if args.output:
            with open(args.output, "w", newline="") as f:
                f.write(engine.export_trades_csv())
            LOGGER.info("Trades exported to %s", args.output)


def main() -> None:
    """CLI entry point."""
    args = _build_parser().parse_args()
    settings = _apply_overrides(load_settings(), args)
    configure_logging(settings.log_level, paper_mode=settings.engine.paper_mode)
    try:
        asyncio.run(_async_main(settings, args))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")


if __name__ == "__main__":
    main()
