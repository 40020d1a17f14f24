"""Configuration for the 15-minute up/down trading bot.

All env vars are prefixed with ``UPDOWN_``.  A ``.env`` file in the working
directory is loaded first and never overrides variables already set.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


STRATEGIES = ("arbitrage", "lag", "certainty")
TAKE_PROFIT_MODES = ("fixed", "percent", "dynamic")
STOP_LOSS_MODES = ("percent", "dynamic", "strict")
ENTRY_MODELS = ("basic", "micro")
SPOT_SOURCES = ("auto", "binance_ws", "reference")


class ConfigError(ValueError):
    """Raised when an environment value is outside its allowed set."""


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_choice(value: str | None, default: str, choices: tuple[str, ...], name: str) -> str:
    if value is None or not value.strip():
        return default
    normalized = value.strip().lower()
    if normalized not in choices:
        raise ConfigError(f"{name}={value!r} is not one of {', '.join(choices)}")
    return normalized


# ── Strategy settings ──────────────────────────────────────────────


@dataclass(frozen=True)
class ArbitrageSettings:
    """Straddle (buy both outcomes) settings.

    Parameters
    ----------
    min_usdc:
        Smallest budget worth trading. Default 5.
    max_usdc:
        Budget cap per straddle; never below ``min_usdc``. Default 10.
    min_profit_cents:
        Required locked-in profit per share pair, in cents. Default 0.25.
    cooldown_seconds:
        Minimum time between straddles. Default 2.5.
    min_shares:
        Smallest share count per side. Default 1.
    """

    min_usdc: float = 5.0
    max_usdc: float = 10.0
    min_profit_cents: float = 0.25
    cooldown_seconds: float = 2.5
    min_shares: int = 1

    @property
    def budget_cap(self) -> float:
        return max(self.min_usdc, self.max_usdc)


@dataclass(frozen=True)
class LagSettings:
    """Settings for the spot-to-market lag strategy."""

    # ── Budget ─────────────────────────────────────────────────────
    min_usdc: float = 5.0
    max_usdc: float = 10.0

    # ── Lag detection ──────────────────────────────────────────────
    spot_move_usd: float = 15.0
    min_market_move: float = 0.005  # probability points (0.005 = 0.5c)

    # ── Take profit ────────────────────────────────────────────────
    take_profit_mode: str = "dynamic"  # "fixed" | "percent" | "dynamic"
    take_profit_cents: float = 1.0
    take_profit_pct: float | None = None
    min_profit_cents: float = 1.0
    tp_min_cents: float = 1.0
    tp_max_cents: float = 10.0
    tp_cents_per_usd: float = 0.05

    # ── Stop loss ──────────────────────────────────────────────────
    stop_loss_pct: float = 0.01
    stop_loss_mode: str = "strict"  # "percent" | "dynamic" | "strict"
    sl_min_cents: float = 1.0
    sl_max_cents: float = 3.0
    sl_risk_frac: float = 0.5
    stop_grace_seconds: float = 3.0
    stop_confirm_ticks: int = 2

    # ── Risk ───────────────────────────────────────────────────────
    max_risk_usdc: float = 1.0
    risk_pct_balance: float | None = None
    min_rr: float = 1.5
    stop_cooldown_seconds: float = 15.0
    cooldown_seconds: float = 1.5
    entry_confirm_ticks: int = 2
    no_entry_before_end_seconds: float = 60.0

    # ── Entry model ────────────────────────────────────────────────
    entry_model: str = "micro"  # "basic" | "micro"
    fast_seconds: float = 2.0
    slow_seconds: float = 30.0
    history_seconds: float = 120.0
    edge_min_cents: float = 0.25
    max_spread_cents: float = 3.0
    imbalance_min: float = 0.05
    imbalance_levels: int = 5
    spike_usd: float = 80.0
    spike_extra_edge_cents: float = 0.5
    weak_pressure_extra_edge_cents: float = 0.0
    against_pressure_extra_edge_cents: float = 0.0
    spike_disagree_extra_edge_cents: float = 0.0
    model_cents_per_usd: float | None = None  # falls back to tp_cents_per_usd

    # ── Trade flow ─────────────────────────────────────────────────
    use_flow: bool = True
    flow_window_seconds: float = 10.0
    flow_baseline_seconds: float = 60.0
    flow_min_ratio: float = 1.10
    flow_imbalance_min: float = 0.05
    flow_weak_extra_edge_cents: float = 0.0
    flow_against_extra_edge_cents: float = 0.25
    flow_bonus_edge_cents: float = 0.15

    # ── Online learning ────────────────────────────────────────────
    calibrate: bool = True
    calibrate_alpha: float = 0.15
    calibrate_min_samples: int = 8
    calibrate_min_cents_per_usd: float = 0.005
    calibrate_max_cents_per_usd: float = 0.25
    ai_enabled: bool = True
    ai_learn: bool = True
    ai_min_samples: int = 30
    ai_lr: float = 0.02
    ai_l2: float = 0.002
    ai_max_abs_weight: float = 5.0
    ai_blend: float = 0.5

    # ── Feed disagreement ──────────────────────────────────────────
    feed_disagree_usd: float = 20.0
    feed_disagree_hard_usd: float = 150.0
    primary_feed_max_age_seconds: float = 5.0
    reference_feed_max_age_seconds: float = 180.0

    @property
    def budget_cap(self) -> float:
        return max(self.min_usdc, self.max_usdc)

    @property
    def fallback_cents_per_usd(self) -> float:
        if self.model_cents_per_usd is not None:
            return self.model_cents_per_usd
        return self.tp_cents_per_usd


@dataclass(frozen=True)
class CertaintySettings:
    """Settings for the late-interval high-probability strategy.

    Prices are in dollars per share (0.80 = 80c).
    """

    entry_window_seconds: float = 600.0
    entry_price_min: float = 0.80
    entry_price_max: float = 0.82
    reentry_price_min: float = 0.75
    reentry_price_max: float = 0.77
    stop_price: float = 0.75
    take_profit_min: float = 0.96
    take_profit_max: float = 0.99
    stop_buffer: float = 0.015
    take_profit_buffer: float = 0.01
    max_spread: float = 0.02
    min_shares: int = 1
    order_gas_usdc: float = 0.0
    settle_gas_usdc: float = 0.0
    cooldown_seconds: float = 1.0
    confirm_ticks: int = 2
    price_eps: float = 0.001
    warmup_seconds: float = 5.0
    min_position_age_seconds: float = 2.0
    candle_archive: int = 5


# ── Engine settings ────────────────────────────────────────────────


@dataclass(frozen=True)
class EngineSettings:
    """Cadences, venue endpoints and account mode."""

    paper_mode: bool = True
    enable_live_orders: bool = False
    paper_balance: float = 100.0
    interval_seconds: int = 900
    series_slug_prefix: str = "btc-updown-15m-"
    gamma_base_url: str = "https://gamma-api.polymarket.com"
    clob_base_url: str = "https://clob.polymarket.com"
    chain_id: int = 137
    private_key: str | None = None
    funder: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    api_passphrase: str | None = None
    http_timeout_seconds: float = 10.0
    book_depth: int = 0  # 0 keeps the full ladder
    both_asks_sanity_limit: float = 0.90

    # ── Cadences (seconds) ─────────────────────────────────────────
    market_refresh_seconds: float = 2.0
    spot_poll_seconds: float = 1.0
    orderbook_poll_seconds: float = 0.1
    quote_poll_seconds: float = 1.0
    balance_poll_seconds: float = 10.0

    # ── Spot feeds ─────────────────────────────────────────────────
    spot_source: str = "auto"  # "auto" | "binance_ws" | "reference"
    binance_ws_url: str = "wss://stream.binance.com:9443/ws/btcusdt@trade"
    reference_price_url: str = "https://api.exchange.coinbase.com/products/BTC-USD/ticker"
    feed_stale_seconds: float = 5.0
    trade_tape_seconds: float = 120.0


@dataclass(frozen=True)
class UpDownSettings:
    strategy: str = "arbitrage"
    log_level: str = "INFO"
    engine: EngineSettings = field(default_factory=EngineSettings)
    arbitrage: ArbitrageSettings = field(default_factory=ArbitrageSettings)
    lag: LagSettings = field(default_factory=LagSettings)
    certainty: CertaintySettings = field(default_factory=CertaintySettings)


# ── Loaders ────────────────────────────────────────────────────────


def load_arbitrage_settings() -> ArbitrageSettings:
    return ArbitrageSettings(
        min_usdc=_as_float(os.getenv("UPDOWN_ARB_MIN_USDC"), 5.0),
        max_usdc=_as_float(os.getenv("UPDOWN_ARB_MAX_USDC"), 10.0),
        min_profit_cents=_as_float(os.getenv("UPDOWN_ARB_MIN_PROFIT_CENTS"), 0.25),
        cooldown_seconds=_as_float(os.getenv("UPDOWN_ARB_COOLDOWN_SECONDS"), 2.5),
        min_shares=_as_int(os.getenv("UPDOWN_ARB_MIN_SHARES"), 1),
    )


def load_lag_settings() -> LagSettings:
    """Build ``LagSettings`` from ``UPDOWN_LAG_*`` environment variables."""
    return LagSettings(
        min_usdc=_as_float(os.getenv("UPDOWN_LAG_MIN_USDC"), 5.0),
        max_usdc=_as_float(os.getenv("UPDOWN_LAG_MAX_USDC"), 10.0),
        spot_move_usd=_as_float(os.getenv("UPDOWN_LAG_SPOT_MOVE_USD"), 15.0),
        min_market_move=_as_float(os.getenv("UPDOWN_LAG_MIN_MARKET_MOVE"), 0.005),
        take_profit_mode=_as_choice(
            os.getenv("UPDOWN_LAG_TAKE_PROFIT_MODE"), "dynamic", TAKE_PROFIT_MODES,
            "UPDOWN_LAG_TAKE_PROFIT_MODE",
        ),
        take_profit_cents=_as_float(os.getenv("UPDOWN_LAG_TAKE_PROFIT_CENTS"), 1.0),
        take_profit_pct=_as_optional_float(os.getenv("UPDOWN_LAG_TAKE_PROFIT_PCT")),
        min_profit_cents=_as_float(os.getenv("UPDOWN_LAG_MIN_PROFIT_CENTS"), 1.0),
        tp_min_cents=_as_float(os.getenv("UPDOWN_LAG_TP_MIN_CENTS"), 1.0),
        tp_max_cents=_as_float(os.getenv("UPDOWN_LAG_TP_MAX_CENTS"), 10.0),
        tp_cents_per_usd=_as_float(os.getenv("UPDOWN_LAG_TP_CENTS_PER_USD"), 0.05),
        stop_loss_pct=_as_float(os.getenv("UPDOWN_LAG_STOP_LOSS_PCT"), 0.01),
        stop_loss_mode=_as_choice(
            os.getenv("UPDOWN_LAG_STOP_LOSS_MODE"), "strict", STOP_LOSS_MODES,
            "UPDOWN_LAG_STOP_LOSS_MODE",
        ),
        sl_min_cents=_as_float(os.getenv("UPDOWN_LAG_SL_MIN_CENTS"), 1.0),
        sl_max_cents=_as_float(os.getenv("UPDOWN_LAG_SL_MAX_CENTS"), 3.0),
        sl_risk_frac=_as_float(os.getenv("UPDOWN_LAG_SL_RISK_FRAC"), 0.5),
        stop_grace_seconds=_as_float(os.getenv("UPDOWN_LAG_STOP_GRACE_SECONDS"), 3.0),
        stop_confirm_ticks=_as_int(os.getenv("UPDOWN_LAG_STOP_CONFIRM_TICKS"), 2),
        max_risk_usdc=_as_float(os.getenv("UPDOWN_LAG_MAX_RISK_USDC"), 1.0),
        risk_pct_balance=_as_optional_float(os.getenv("UPDOWN_LAG_RISK_PCT_BALANCE")),
        min_rr=_as_float(os.getenv("UPDOWN_LAG_MIN_RR"), 1.5),
        stop_cooldown_seconds=_as_float(os.getenv("UPDOWN_LAG_STOP_COOLDOWN_SECONDS"), 15.0),
        cooldown_seconds=_as_float(os.getenv("UPDOWN_LAG_COOLDOWN_SECONDS"), 1.5),
        entry_confirm_ticks=_as_int(os.getenv("UPDOWN_LAG_ENTRY_CONFIRM_TICKS"), 2),
        no_entry_before_end_seconds=_as_float(os.getenv("UPDOWN_LAG_NO_ENTRY_BEFORE_END_SECONDS"), 60.0),
        entry_model=_as_choice(
            os.getenv("UPDOWN_LAG_ENTRY_MODEL"), "micro", ENTRY_MODELS, "UPDOWN_LAG_ENTRY_MODEL",
        ),
        fast_seconds=_as_float(os.getenv("UPDOWN_LAG_FAST_SECONDS"), 2.0),
        slow_seconds=_as_float(os.getenv("UPDOWN_LAG_SLOW_SECONDS"), 30.0),
        history_seconds=_as_float(os.getenv("UPDOWN_LAG_HISTORY_SECONDS"), 120.0),
        edge_min_cents=_as_float(os.getenv("UPDOWN_LAG_EDGE_MIN_CENTS"), 0.25),
        max_spread_cents=_as_float(os.getenv("UPDOWN_LAG_MAX_SPREAD_CENTS"), 3.0),
        imbalance_min=_as_float(os.getenv("UPDOWN_LAG_IMBALANCE_MIN"), 0.05),
        imbalance_levels=_as_int(os.getenv("UPDOWN_LAG_IMBALANCE_LEVELS"), 5),
        spike_usd=_as_float(os.getenv("UPDOWN_LAG_SPIKE_USD"), 80.0),
        spike_extra_edge_cents=_as_float(os.getenv("UPDOWN_LAG_SPIKE_EXTRA_EDGE_CENTS"), 0.5),
        weak_pressure_extra_edge_cents=_as_float(
            os.getenv("UPDOWN_LAG_WEAK_PRESSURE_EXTRA_EDGE_CENTS"), 0.0,
        ),
        against_pressure_extra_edge_cents=_as_float(
            os.getenv("UPDOWN_LAG_AGAINST_PRESSURE_EXTRA_EDGE_CENTS"), 0.0,
        ),
        spike_disagree_extra_edge_cents=_as_float(
            os.getenv("UPDOWN_LAG_SPIKE_DISAGREE_EXTRA_EDGE_CENTS"), 0.0,
        ),
        model_cents_per_usd=_as_optional_float(os.getenv("UPDOWN_LAG_MODEL_CENTS_PER_USD")),
        use_flow=_as_bool(os.getenv("UPDOWN_LAG_USE_FLOW"), True),
        flow_window_seconds=_as_float(os.getenv("UPDOWN_LAG_FLOW_WINDOW_SECONDS"), 10.0),
        flow_baseline_seconds=_as_float(os.getenv("UPDOWN_LAG_FLOW_BASELINE_SECONDS"), 60.0),
        flow_min_ratio=_as_float(os.getenv("UPDOWN_LAG_FLOW_MIN_RATIO"), 1.10),
        flow_imbalance_min=_as_float(os.getenv("UPDOWN_LAG_FLOW_IMBALANCE_MIN"), 0.05),
        flow_weak_extra_edge_cents=_as_float(os.getenv("UPDOWN_LAG_FLOW_WEAK_EXTRA_EDGE_CENTS"), 0.0),
        flow_against_extra_edge_cents=_as_float(
            os.getenv("UPDOWN_LAG_FLOW_AGAINST_EXTRA_EDGE_CENTS"), 0.25,
        ),
        flow_bonus_edge_cents=_as_float(os.getenv("UPDOWN_LAG_FLOW_BONUS_EDGE_CENTS"), 0.15),
        calibrate=_as_bool(os.getenv("UPDOWN_LAG_CALIBRATE"), True),
        calibrate_alpha=_as_float(os.getenv("UPDOWN_LAG_CALIBRATE_ALPHA"), 0.15),
        calibrate_min_samples=_as_int(os.getenv("UPDOWN_LAG_CALIBRATE_MIN_SAMPLES"), 8),
        calibrate_min_cents_per_usd=_as_float(os.getenv("UPDOWN_LAG_CALIBRATE_MIN_CENTS_PER_USD"), 0.005),
        calibrate_max_cents_per_usd=_as_float(os.getenv("UPDOWN_LAG_CALIBRATE_MAX_CENTS_PER_USD"), 0.25),
        ai_enabled=_as_bool(os.getenv("UPDOWN_LAG_AI_ENABLED"), True),
        ai_learn=_as_bool(os.getenv("UPDOWN_LAG_AI_LEARN"), True),
        ai_min_samples=_as_int(os.getenv("UPDOWN_LAG_AI_MIN_SAMPLES"), 30),
        ai_lr=_as_float(os.getenv("UPDOWN_LAG_AI_LR"), 0.02),
        ai_l2=_as_float(os.getenv("UPDOWN_LAG_AI_L2"), 0.002),
        ai_max_abs_weight=_as_float(os.getenv("UPDOWN_LAG_AI_MAX_ABS_WEIGHT"), 5.0),
        ai_blend=_as_float(os.getenv("UPDOWN_LAG_AI_BLEND"), 0.5),
        feed_disagree_usd=_as_float(os.getenv("UPDOWN_LAG_FEED_DISAGREE_USD"), 20.0),
        feed_disagree_hard_usd=_as_float(os.getenv("UPDOWN_LAG_FEED_DISAGREE_HARD_USD"), 150.0),
        primary_feed_max_age_seconds=_as_float(os.getenv("UPDOWN_LAG_PRIMARY_FEED_MAX_AGE_SECONDS"), 5.0),
        reference_feed_max_age_seconds=_as_float(
            os.getenv("UPDOWN_LAG_REFERENCE_FEED_MAX_AGE_SECONDS"), 180.0,
        ),
    )


def load_certainty_settings() -> CertaintySettings:
    return CertaintySettings(
        entry_window_seconds=_as_float(os.getenv("UPDOWN_CERT_ENTRY_WINDOW_SECONDS"), 600.0),
        entry_price_min=_as_float(os.getenv("UPDOWN_CERT_ENTRY_PRICE_MIN"), 0.80),
        entry_price_max=_as_float(os.getenv("UPDOWN_CERT_ENTRY_PRICE_MAX"), 0.82),
        reentry_price_min=_as_float(os.getenv("UPDOWN_CERT_REENTRY_PRICE_MIN"), 0.75),
        reentry_price_max=_as_float(os.getenv("UPDOWN_CERT_REENTRY_PRICE_MAX"), 0.77),
        stop_price=_as_float(os.getenv("UPDOWN_CERT_STOP_PRICE"), 0.75),
        take_profit_min=_as_float(os.getenv("UPDOWN_CERT_TAKE_PROFIT_MIN"), 0.96),
        take_profit_max=_as_float(os.getenv("UPDOWN_CERT_TAKE_PROFIT_MAX"), 0.99),
        stop_buffer=_as_float(os.getenv("UPDOWN_CERT_STOP_BUFFER"), 0.015),
        take_profit_buffer=_as_float(os.getenv("UPDOWN_CERT_TP_BUFFER"), 0.01),
        max_spread=_as_float(os.getenv("UPDOWN_CERT_MAX_SPREAD"), 0.02),
        min_shares=_as_int(os.getenv("UPDOWN_CERT_MIN_SHARES"), 1),
        order_gas_usdc=_as_float(os.getenv("UPDOWN_CERT_ORDER_GAS_USDC"), 0.0),
        settle_gas_usdc=_as_float(os.getenv("UPDOWN_CERT_SETTLE_GAS_USDC"), 0.0),
        cooldown_seconds=_as_float(os.getenv("UPDOWN_CERT_COOLDOWN_SECONDS"), 1.0),
        confirm_ticks=max(1, _as_int(os.getenv("UPDOWN_CERT_CONFIRM_TICKS"), 2)),
        price_eps=_as_float(os.getenv("UPDOWN_CERT_PRICE_EPS"), 0.001),
        warmup_seconds=_as_float(os.getenv("UPDOWN_CERT_WARMUP_SECONDS"), 5.0),
        min_position_age_seconds=_as_float(os.getenv("UPDOWN_CERT_MIN_POSITION_AGE_SECONDS"), 2.0),
        candle_archive=_as_int(os.getenv("UPDOWN_CERT_CANDLE_ARCHIVE"), 5),
    )


def load_engine_settings() -> EngineSettings:
    live_mode = _as_bool(os.getenv("UPDOWN_LIVE_MODE"), False)
    return EngineSettings(
        paper_mode=not live_mode,
        enable_live_orders=_as_bool(os.getenv("UPDOWN_ENABLE_LIVE_ORDERS"), False),
        paper_balance=_as_float(os.getenv("UPDOWN_PAPER_BALANCE"), 100.0),
        interval_seconds=_as_int(os.getenv("UPDOWN_INTERVAL_SECONDS"), 900),
        series_slug_prefix=os.getenv("UPDOWN_SERIES_SLUG_PREFIX", "btc-updown-15m-"),
        gamma_base_url=os.getenv("UPDOWN_GAMMA_BASE_URL", "https://gamma-api.polymarket.com"),
        clob_base_url=os.getenv("UPDOWN_CLOB_BASE_URL", "https://clob.polymarket.com"),
        chain_id=_as_int(os.getenv("UPDOWN_CHAIN_ID"), 137),
        private_key=os.getenv("POLYMARKET_PRIVATE_KEY") or None,
        funder=os.getenv("POLYMARKET_FUNDER") or None,
        api_key=os.getenv("POLYMARKET_API_KEY") or None,
        api_secret=os.getenv("POLYMARKET_API_SECRET") or None,
        api_passphrase=os.getenv("POLYMARKET_API_PASSPHRASE") or None,
        http_timeout_seconds=_as_float(os.getenv("UPDOWN_HTTP_TIMEOUT_SECONDS"), 10.0),
        book_depth=_as_int(os.getenv("UPDOWN_BOOK_DEPTH"), 0),
        both_asks_sanity_limit=_as_float(os.getenv("UPDOWN_BOTH_ASKS_SANITY_LIMIT"), 0.90),
        market_refresh_seconds=_as_float(os.getenv("UPDOWN_MARKET_REFRESH_SECONDS"), 2.0),
        spot_poll_seconds=_as_float(os.getenv("UPDOWN_SPOT_POLL_SECONDS"), 1.0),
        orderbook_poll_seconds=_as_float(os.getenv("UPDOWN_ORDERBOOK_POLL_SECONDS"), 0.1),
        quote_poll_seconds=_as_float(os.getenv("UPDOWN_QUOTE_POLL_SECONDS"), 1.0),
        balance_poll_seconds=_as_float(os.getenv("UPDOWN_BALANCE_POLL_SECONDS"), 10.0),
        spot_source=_as_choice(os.getenv("UPDOWN_SPOT_SOURCE"), "auto", SPOT_SOURCES, "UPDOWN_SPOT_SOURCE"),
        binance_ws_url=os.getenv(
            "UPDOWN_BINANCE_WS_URL", "wss://stream.binance.com:9443/ws/btcusdt@trade",
        ),
        reference_price_url=os.getenv(
            "UPDOWN_REFERENCE_PRICE_URL",
            "https://api.exchange.coinbase.com/products/BTC-USD/ticker",
        ),
        feed_stale_seconds=_as_float(os.getenv("UPDOWN_FEED_STALE_SECONDS"), 5.0),
        trade_tape_seconds=_as_float(os.getenv("UPDOWN_TRADE_TAPE_SECONDS"), 120.0),
    )


def load_settings() -> UpDownSettings:
    load_dotenv(override=False)

    return UpDownSettings(
        strategy=_as_choice(os.getenv("UPDOWN_STRATEGY"), "arbitrage", STRATEGIES, "UPDOWN_STRATEGY"),
        log_level=os.getenv("UPDOWN_LOG_LEVEL", "INFO"),
        engine=load_engine_settings(),
        arbitrage=load_arbitrage_settings(),
        lag=load_lag_settings(),
        certainty=load_certainty_settings(),
    )
