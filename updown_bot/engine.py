"""Orchestrator for the 15-minute up/down bot.

``UpDownEngine`` owns the ``WorldState`` and refreshes it from independent
cadences (market, spot, order books, quotes, collateral). Each cadence
body runs under an in-flight flag: a timer firing while the previous
body is still awaiting I/O is dropped, not queued. The strategy runs
inside the order-book cadence, so it always sees one consistent snapshot.
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
import math
import time
from collections import Counter
from dataclasses import replace
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from updown_bot.config import UpDownSettings
from updown_bot.exchanges.base import MarketGateway
from updown_bot.exchanges.spot_feeds import SpotFeed
from updown_bot.execution import LiveSubmitter, OrderSubmitter, live_can_spend
from updown_bot.models import (
    FeedSnapshot,
    GatewayError,
    OrderSide,
    Outcome,
    OutcomeTokens,
    TradeRecord,
    TradeStatus,
    WorldState,
)
from updown_bot.signal_history import TradeFlowTape
from updown_bot.strategies.base import Strategy

LOGGER = logging.getLogger(__name__)

# Ranking penalties (seconds of age) for the auto spot source.
DISCONNECTED_PENALTY_SECONDS = 10.0
ERROR_PENALTY_SECONDS = 20.0


def pick_spot_feed(snapshots: Iterable[FeedSnapshot], mode: str, now: float) -> Optional[FeedSnapshot]:
    """Choose the spot feed to trust.

    ``binance_ws`` and ``reference`` pin a feed by name. ``auto`` takes
    the feed with the lowest age, penalised when it is disconnected or
    reporting an error.
    """
    usable = [snap for snap in snapshots if snap.price is not None and snap.price > 0]
    if mode != "auto":
        return next((snap for snap in usable if snap.name == mode), None)

    def _score(snap: FeedSnapshot) -> float:
        score = snap.age(now)
        if not snap.connected:
            score += DISCONNECTED_PENALTY_SECONDS
        if snap.error:
            score += ERROR_PENALTY_SECONDS
        return score

    return min(usable, key=_score, default=None)


class UpDownEngine:
    """Polls the venue and spot feeds and drives one strategy.

    Parameters
    ----------
    settings:
        Full bot settings; the engine reads ``settings.engine``.
    gateway:
        Venue adapter for intervals, books, quotes, winners and orders.
    strategy:
        The trading mode to run.
    spot_feeds:
        Underlying price sources, ranked by ``pick_spot_feed``.
    submitter:
        The strategy's order route. A ``LiveSubmitter`` receives the
        collateral snapshot on every collateral refresh.
    trade_tape:
        Shared exchange trade tape exposed to strategies via the world state.
    clock:
        Wall-clock source in unix seconds.
    """

    def __init__(
        self,
        settings: UpDownSettings,
        gateway: MarketGateway,
        strategy: Strategy,
        spot_feeds: Sequence[SpotFeed] = (),
        submitter: Optional[OrderSubmitter] = None,
        trade_tape: Optional[TradeFlowTape] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._engine = settings.engine
        self._gateway = gateway
        self._strategy = strategy
        self._spot_feeds = list(spot_feeds)
        self._submitter = submitter
        self._clock = clock
        self._world = WorldState(now=clock(), paper_mode=self._engine.paper_mode, trade_tape=trade_tape)

        self._running = False
        self._in_flight: Set[str] = set()
        self._pending: Set[asyncio.Task[None]] = set()
        self._next_winner_check = 0.0
        self._no_market_logged: Optional[float] = None
        self.dropped: Counter[str] = Counter()
        self.book_ticks = 0

    # ── Properties ─────────────────────────────────────────────────

    @property
    def world(self) -> WorldState:
        return self._world

    @property
    def strategy(self) -> Strategy:
        return self._strategy

    @property
    def trades(self) -> List[TradeRecord]:
        return list(self._strategy.trades)

    def live_can_spend(self, required: float) -> tuple[bool, str | None]:
        if isinstance(self._submitter, LiveSubmitter):
            return live_can_spend(self._submitter.collateral, required)
        return live_can_spend(self._world.collateral, required)

    # ── Main loop ──────────────────────────────────────────────────

    async def run(self, duration_minutes: float = 0) -> None:
        """Run all cadences until stopped.

        Parameters
        ----------
        duration_minutes:
            How long to run (0 = indefinitely until stopped).
        """
        self._running = True
        start = time.monotonic()
        cfg = self._engine
        LOGGER.info(
            "UpDownEngine: starting (strategy=%s, paper=%s, spot_source=%s, series=%s)",
            self._strategy.name, cfg.paper_mode, cfg.spot_source, cfg.series_slug_prefix,
        )

        cadences: List[asyncio.Task[None]] = []
        try:
            for feed in self._spot_feeds:
                await feed.start()
            await self.tick_market()
            await self.tick_spot()

            schedule: List[tuple[str, float, Callable[[], Awaitable[bool]]]] = [
                ("market", cfg.market_refresh_seconds, self.tick_market),
                ("spot", cfg.spot_poll_seconds, self.tick_spot),
                ("books", cfg.orderbook_poll_seconds, self.tick_books),
                ("quotes", cfg.quote_poll_seconds, self.tick_quotes),
            ]
            if not cfg.paper_mode:
                schedule.append(("collateral", cfg.balance_poll_seconds, self.tick_collateral))
            cadences = [
                asyncio.create_task(self._cadence(period, tick), name=f"updown-{name}")
                for name, period, tick in schedule
            ]

            while self._running:
                if duration_minutes > 0:
                    elapsed = (time.monotonic() - start) / 60.0
                    if elapsed >= duration_minutes:
                        LOGGER.info("UpDownEngine: duration limit reached (%.1f min)", elapsed)
                        break
                await asyncio.sleep(0.5)

        except asyncio.CancelledError:
            LOGGER.info("UpDownEngine: cancelled")
        finally:
            self._running = False
            for task in [*cadences, *self._pending]:
                task.cancel()
            await asyncio.gather(*cadences, *self._pending, return_exceptions=True)
            for feed in self._spot_feeds:
                await feed.stop()
            await self._gateway.aclose()
            self._log_summary()

    def stop(self) -> None:
        """Signal the engine to stop; cadences wind down on the next check."""
        self._running = False

    async def _cadence(self, period: float, tick: Callable[[], Awaitable[bool]]) -> None:
        while self._running:
            task = asyncio.create_task(tick())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            await asyncio.sleep(max(0.01, period))

    async def _guarded(self, name: str, step: Callable[[], Awaitable[None]]) -> bool:
        """Run ``step`` unless the same cadence is still in flight.

        Returns False when the firing was dropped.
        """
        if name in self._in_flight:
            self.dropped[name] += 1
            return False
        self._in_flight.add(name)
        try:
            await step()
        except GatewayError as exc:
            self._world.last_error = f"{name}: {exc}"
            LOGGER.warning("UpDownEngine: %s refresh failed: %s", name, exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._world.last_error = f"{name}: {exc}"
            LOGGER.exception("UpDownEngine: %s step crashed", name)
        finally:
            self._in_flight.discard(name)
        return True

    async def tick_market(self) -> bool:
        return await self._guarded("market", self._refresh_market)

    async def tick_spot(self) -> bool:
        return await self._guarded("spot", self._refresh_spot)

    async def tick_books(self) -> bool:
        return await self._guarded("books", self._refresh_books)

    async def tick_quotes(self) -> bool:
        return await self._guarded("quotes", self._refresh_quotes)

    async def tick_collateral(self) -> bool:
        return await self._guarded("collateral", self._refresh_collateral)

    # ── Cadence bodies ─────────────────────────────────────────────

    async def _refresh_market(self) -> None:
        cfg = self._engine
        world = self._world
        now = self._clock()
        period = cfg.interval_seconds
        start = math.floor(now / period) * period

        interval = None
        for candidate in (start, start - period, start + period):
            slug = f"{cfg.series_slug_prefix}{int(candidate)}"
            interval = await self._gateway.resolve_interval(slug, float(candidate), float(candidate + period))
            if interval is not None:
                break
        if interval is None:
            world.last_error = f"no market found for interval {int(start)}"
            if self._no_market_logged != start:
                self._no_market_logged = start
                LOGGER.warning("UpDownEngine: %s", world.last_error)
            return

        previous = world.interval
        entry_spot = None
        if previous is not None and previous.slug == interval.slug:
            entry_spot = previous.entry_spot
        else:
            LOGGER.info(
                "UpDownEngine: interval %s (market %s, ends %.0f, ref %s)",
                interval.slug, interval.market_id, interval.end, interval.reference_price,
            )
        if previous is None or previous.condition_id != interval.condition_id or previous.market_id != interval.market_id:
            world.tokens = None
            world.books = {}
            world.quote_up_buy = None
            world.quote_down_buy = None

        world.interval = replace(interval, entry_spot=entry_spot)
        if world.tokens is None:
            world.tokens = await self._gateway.fetch_tokens(world.interval)
            LOGGER.info(
                "UpDownEngine: tokens up=%s down=%s (fees %s/%s bps)",
                world.tokens.up_token_id, world.tokens.down_token_id,
                world.tokens.up_fee_bps, world.tokens.down_fee_bps,
            )
        elif world.tokens.up_fee_bps is None or world.tokens.down_fee_bps is None:
            await self._retry_fees()

    async def _retry_fees(self) -> None:
        """Fill in fee rates that failed to load with the tokens."""
        world = self._world
        tokens = world.tokens
        assert tokens is not None
        up_fee, down_fee = tokens.up_fee_bps, tokens.down_fee_bps
        if up_fee is None:
            up_fee = await self._gateway.fetch_fee_bps(tokens.up_token_id)
        if down_fee is None:
            down_fee = await self._gateway.fetch_fee_bps(tokens.down_token_id)
        if world.tokens is not tokens:
            return
        world.tokens = replace(tokens, up_fee_bps=up_fee, down_fee_bps=down_fee)
        if up_fee is not None and down_fee is not None:
            LOGGER.info("UpDownEngine: fee rates loaded (%s/%s bps)", up_fee, down_fee)

    async def _refresh_spot(self) -> None:
        world = self._world
        now = self._clock()
        for feed in self._spot_feeds:
            await feed.poll(now)
        snapshots = {feed.name: feed.snapshot(now) for feed in self._spot_feeds}
        world.feeds = snapshots

        chosen = pick_spot_feed(snapshots.values(), self._engine.spot_source, now)
        if chosen is None:
            return
        world.spot_price = chosen.price
        world.spot_timestamp = chosen.timestamp
        world.spot_source = chosen.name
        if world.interval is not None and world.interval.entry_spot is None:
            world.interval = replace(world.interval, entry_spot=chosen.price)
            LOGGER.info("UpDownEngine: interval entry spot $%.2f (%s)", chosen.price, chosen.name)

    async def _refresh_books(self) -> None:
        world = self._world
        now = self._clock()
        world.now = now

        market_id = self._strategy.pending_settlement(now)
        if market_id is not None and now >= self._next_winner_check:
            self._next_winner_check = now + self._engine.market_refresh_seconds
            await self._settle(market_id, now)

        tokens = world.tokens
        if tokens is None:
            return
        depth = self._engine.book_depth or None
        up_book, down_book = await asyncio.gather(
            self._gateway.fetch_book(tokens.up_token_id, depth),
            self._gateway.fetch_book(tokens.down_token_id, depth),
        )
        if not _same_tokens(world.tokens, tokens):
            # Market rolled while the books were in flight.
            return
        world.books = {Outcome.UP: up_book, Outcome.DOWN: down_book}

        limit = self._engine.both_asks_sanity_limit
        up_ask, down_ask = up_book.best_ask, down_book.best_ask
        if up_ask is not None and down_ask is not None and up_ask > limit and down_ask > limit:
            world.last_error = f"both asks above {limit:.2f} (up {up_ask:.3f}, down {down_ask:.3f})"
            LOGGER.error("UpDownEngine: orderbook sanity check failed: %s", world.last_error)
            return

        self.book_ticks += 1
        decision = self._strategy.on_tick(world)
        if decision.is_actionable:
            await self._strategy.execute(world, decision)

    async def _settle(self, market_id: str, now: float) -> None:
        winner = await self._gateway.fetch_winner(market_id)
        if winner is None:
            LOGGER.debug("UpDownEngine: awaiting resolution of %s", market_id)
            return
        self._strategy.settle(winner, now)

    async def _refresh_quotes(self) -> None:
        world = self._world
        tokens = world.tokens
        if tokens is None:
            return
        up, down = await asyncio.gather(
            self._gateway.fetch_quote(tokens.up_token_id, OrderSide.BUY),
            self._gateway.fetch_quote(tokens.down_token_id, OrderSide.BUY),
        )
        if _same_tokens(world.tokens, tokens):
            world.quote_up_buy = up
            world.quote_down_buy = down

    async def _refresh_collateral(self) -> None:
        collateral = await self._gateway.fetch_collateral()
        if collateral is None:
            return
        self._world.collateral = collateral
        if isinstance(self._submitter, LiveSubmitter):
            self._submitter.collateral = collateral

    # ── Reporting ──────────────────────────────────────────────────

    def _log_summary(self) -> None:
        """Log session summary on shutdown."""
        trades = self._strategy.trades
        closed = [t for t in trades if t.status is not TradeStatus.OPEN]
        if not trades:
            LOGGER.info("UpDownEngine: session ended, 0 trades (%d book ticks)", self.book_ticks)
            return
        wins = sum(1 for t in closed if (t.pnl or 0.0) > 0)
        losses = sum(1 for t in closed if (t.pnl or 0.0) < 0)
        net = sum(t.pnl or 0.0 for t in closed)
        balance = self._submitter.available_budget() if self._submitter is not None else None
        LOGGER.info(
            "UpDownEngine: session ended, %d trades (%d open), %d wins, %d losses, net_pnl=$%.2f, balance=%s",
            len(trades), len(trades) - len(closed), wins, losses, net,
            f"${balance:.2f}" if balance is not None else "unknown",
        )

    def export_trades_csv(self) -> str:
        """Export the strategy's trade ledger to a CSV string."""
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=[
            "trade_id", "strategy", "side", "market_id", "shares", "status",
            "entry_price", "entry_cost", "entry_fee", "gas", "exit_price",
            "exit_proceeds", "exit_fee", "pnl", "roi", "capital_before",
            "capital_after", "opened_at", "closed_at", "winner",
        ])
        writer.writeheader()
        for t in self._strategy.trades:
            writer.writerow({
                "trade_id": t.trade_id,
                "strategy": t.strategy,
                "side": t.side.value,
                "market_id": t.market_id,
                "shares": t.shares,
                "status": t.status.value,
                "entry_price": f"{t.entry_price:.4f}",
                "entry_cost": f"{t.entry_cost:.4f}",
                "entry_fee": f"{t.entry_fee:.4f}",
                "gas": f"{t.gas:.4f}",
                "exit_price": _fmt(t.exit_price),
                "exit_proceeds": _fmt(t.exit_proceeds),
                "exit_fee": f"{t.exit_fee:.4f}",
                "pnl": _fmt(t.pnl),
                "roi": _fmt(t.roi),
                "capital_before": _fmt(t.capital_before),
                "capital_after": _fmt(t.capital_after),
                "opened_at": f"{t.opened_at:.3f}",
                "closed_at": _fmt(t.closed_at, 3),
                "winner": t.winner.value if t.winner else "",
            })
        return output.getvalue()


def _fmt(value: Optional[float], digits: int = 4) -> str:
    return "" if value is None else f"{value:.{digits}f}"


def _same_tokens(current: Optional[OutcomeTokens], seen: OutcomeTokens) -> bool:
    return (
        current is not None
        and current.up_token_id == seen.up_token_id
        and current.down_token_id == seen.down_token_id
    )
