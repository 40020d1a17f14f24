from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
import math
import re
import time
from typing import Any, Iterable, Sequence

import httpx

from updown_bot.book_math import snapshot_from_levels
from updown_bot.config import EngineSettings
from updown_bot.fee_model import normalize_fee_bps
from updown_bot.models import (
    BookSnapshot,
    Collateral,
    GatewayError,
    IntervalInfo,
    OrderResult,
    OrderSide,
    Outcome,
    OutcomeTokens,
)

from .base import MarketGateway

LOGGER = logging.getLogger(__name__)

_REFERENCE_PRICE_PATTERNS = (
    re.compile(r"reference\s*price\s*[:\-]\s*\$\s*([0-9,]+(\.[0-9]+)?)", re.IGNORECASE),
    re.compile(r"starting\s*price\s*[:\-]\s*\$\s*([0-9,]+(\.[0-9]+)?)", re.IGNORECASE),
    re.compile(r"start\s*price\s*[:\-]\s*\$\s*([0-9,]+(\.[0-9]+)?)", re.IGNORECASE),
    re.compile(r"\$\s*([0-9,]+(\.[0-9]+)?)"),
)

_WINNER_FIELDS = (
    "outcome",
    "winningOutcome",
    "winning_outcome",
    "resolvedOutcome",
    "resolved_outcome",
    "result",
)
_TOKEN_LABEL_FIELDS = ("outcome", "outcome_name", "name", "label", "title")
_TOKEN_ID_FIELDS = ("token_id", "tokenId", "asset_id", "assetId")
_QUOTE_FIELDS = ("price", "p", "midpoint", "m")
_FEE_FIELDS = ("base_fee", "fee_rate_bps", "feeRateBps", "fee_rate", "fee")

# CLOB collateral balances are reported in USDC base units.
_USDC_DECIMALS = 6


def extract_reference_price(text: str | None) -> float | None:
    """Pull the interval's reference price out of a market description."""
    if not text:
        return None
    for pattern in _REFERENCE_PRICE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            try:
                return float(match.group(1).replace(",", ""))
            except ValueError:
                continue
    return None


def map_winner(raw: Any, outcomes: Sequence[Any] | None = None) -> Outcome | None:
    """Map a resolved-outcome label (or an index into ``outcomes``) to UP/DOWN."""
    if raw is None or isinstance(raw, bool):
        return None
    label = str(raw).strip().lower()
    if not label:
        return None
    if label == "up" or label.startswith("up "):
        return Outcome.UP
    if label == "down" or label.startswith("down "):
        return Outcome.DOWN
    if outcomes:
        try:
            index = int(label)
        except ValueError:
            return None
        if 0 <= index < len(outcomes) and outcomes[index]:
            return map_winner(outcomes[index], None)
    return None


def pick_number(payload: Any, keys: Iterable[str] = _QUOTE_FIELDS) -> float | None:
    """First finite number found under ``keys``, then under any other value."""
    if isinstance(payload, bool):
        return None
    if isinstance(payload, (int, float)):
        return float(payload) if math.isfinite(payload) else None
    if not isinstance(payload, dict):
        return None
    ordered = [payload.get(key) for key in keys] + list(payload.values())
    for value in ordered:
        if value is None or isinstance(value, bool):
            continue
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(numeric):
            return numeric
    return None


class PolymarketGateway(MarketGateway):
    venue = "polymarket"

    def __init__(
        self,
        settings: EngineSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._gamma = httpx.AsyncClient(
            base_url=settings.gamma_base_url.rstrip("/"),
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        self._clob = httpx.AsyncClient(
            base_url=settings.clob_base_url.rstrip("/"),
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

        self._live_client: Any = None
        self._order_args_cls: Any = None
        self._order_type_cls: Any = None
        self._api_creds_cls: Any = None
        self._balance_params_cls: Any = None
        self._asset_type_cls: Any = None
        self._buy_constant: Any = "BUY"
        self._sell_constant: Any = "SELL"
        self._live_error: str | None = None

        if not settings.paper_mode and settings.enable_live_orders:
            self._initialize_live_client()
        else:
            self._live_error = "live orders disabled"

    @property
    def live_ready(self) -> bool:
        return self._live_client is not None

    @property
    def live_error(self) -> str | None:
        return self._live_error

    # ── HTTP ───────────────────────────────────────────────────────

    async def _get_json(
        self, client: httpx.AsyncClient, path: str, params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GatewayError(f"GET {path} failed: {exc}") from exc

    # ── Interval discovery ─────────────────────────────────────────

    async def resolve_interval(self, slug: str, start: float, end: float) -> IntervalInfo | None:
        events = await self._get_json(self._gamma, "/events", params={"slug": slug})
        if isinstance(events, dict):
            events = [events]
        if not isinstance(events, list) or not events:
            return None
        event = events[0] if isinstance(events[0], dict) else {}
        markets = event.get("markets")
        if not isinstance(markets, list) or not markets or not isinstance(markets[0], dict):
            return None

        stub = markets[0]
        market_id = stub.get("id")
        if market_id is None:
            return None
        market = await self._get_json(self._gamma, f"/markets/{market_id}")
        if not isinstance(market, dict):
            raise GatewayError(f"unexpected market payload for {market_id}")

        condition_id = (
            market.get("condition_id")
            or market.get("conditionId")
            or stub.get("conditionId")
            or stub.get("condition_id")
        )
        question = market.get("question") or stub.get("question") or ""
        description = market.get("description") or ""
        outcomes = tuple(str(o) for o in self._parse_json_array(market.get("outcomes"))) or ("Up", "Down")

        return IntervalInfo(
            slug=slug,
            start=start,
            end=end,
            market_id=str(market.get("id", market_id)),
            condition_id=str(condition_id) if condition_id else None,
            reference_price=extract_reference_price(f"{description} {question}"),
            outcomes=outcomes,
        )

    async def fetch_tokens(self, interval: IntervalInfo) -> OutcomeTokens:
        if not interval.condition_id:
            raise GatewayError(f"market {interval.market_id} has no condition id")
        market = await self._get_json(self._clob, f"/markets/{interval.condition_id}")
        if not isinstance(market, dict):
            raise GatewayError("unexpected CLOB market payload")

        up_token = self._find_outcome_token(market, "up")
        down_token = self._find_outcome_token(market, "down")
        if not up_token or not down_token:
            raise GatewayError("CLOB market payload missing Up/Down token ids")

        up_fee: float | None = None
        down_fee: float | None = None
        try:
            up_fee, down_fee = await asyncio.gather(
                self.fetch_fee_bps(up_token), self.fetch_fee_bps(down_token),
            )
        except GatewayError as exc:
            LOGGER.error("polymarket fee rate fetch error: %s", exc)

        return OutcomeTokens(
            up_token_id=up_token,
            down_token_id=down_token,
            up_fee_bps=up_fee,
            down_fee_bps=down_fee,
        )

    @staticmethod
    def _find_outcome_token(market: dict[str, Any], wanted: str) -> str | None:
        candidates: list[Any] = []
        for key in ("tokens", "outcomes", "assets"):
            value = market.get(key)
            if isinstance(value, list):
                candidates.extend(value)
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            label = next(
                (str(candidate[field]) for field in _TOKEN_LABEL_FIELDS if candidate.get(field) is not None),
                "",
            )
            if label.strip().lower() != wanted:
                continue
            token_id = next(
                (candidate[field] for field in _TOKEN_ID_FIELDS if candidate.get(field)),
                None,
            )
            if token_id:
                return str(token_id)
        return None

    # ── Market data ────────────────────────────────────────────────

    async def fetch_book(self, token_id: str, depth: int | None = None) -> BookSnapshot:
        payload = await self._get_json(self._clob, "/book", params={"token_id": token_id})
        if not isinstance(payload, dict):
            raise GatewayError(f"unexpected /book payload for {token_id}")
        return snapshot_from_levels(
            payload.get("bids"), payload.get("asks"), depth=depth, updated_at=time.time(),
        )

    async def fetch_fee_bps(self, token_id: str) -> float | None:
        payload = await self._get_json(self._clob, "/fee-rate", params={"token_id": token_id})
        return normalize_fee_bps(pick_number(payload, _FEE_FIELDS))

    async def fetch_quote(self, token_id: str, side: OrderSide = OrderSide.BUY) -> float | None:
        payload = await self._get_json(
            self._clob, "/price", params={"token_id": token_id, "side": side.value},
        )
        return self._to_price(pick_number(payload))

    async def fetch_winner(self, market_id: str) -> Outcome | None:
        market = await self._get_json(self._gamma, f"/markets/{market_id}")
        if not isinstance(market, dict):
            return None
        raw = next((market[field] for field in _WINNER_FIELDS if market.get(field) not in (None, "")), None)
        return map_winner(raw, self._parse_json_array(market.get("outcomes")))

    async def fetch_collateral(self) -> Collateral | None:
        if self._live_client is None or self._balance_params_cls is None:
            return None
        params_kwargs: dict[str, Any] = {}
        if self._asset_type_cls is not None:
            params_kwargs["asset_type"] = getattr(self._asset_type_cls, "COLLATERAL", "COLLATERAL")
        try:
            result = await asyncio.to_thread(
                self._live_client.get_balance_allowance, self._balance_params_cls(**params_kwargs),
            )
        except Exception as exc:
            raise GatewayError(f"balance/allowance fetch failed: {exc}") from exc
        if not isinstance(result, dict):
            raise GatewayError("unexpected balance/allowance payload")
        return Collateral(
            balance=self._to_usdc(result.get("balance")),
            allowance=self._to_usdc(result.get("allowance")),
        )

    # ── Orders ─────────────────────────────────────────────────────

    async def place_fok(
        self, token_id: str, side: OrderSide, shares: int, limit_price: float,
    ) -> OrderResult:
        if self._live_client is None:
            return OrderResult(
                success=False,
                order_id=None,
                requested_shares=shares,
                filled_shares=0,
                error=self._live_error or "polymarket live client unavailable",
            )
        try:
            result = await asyncio.to_thread(self._submit_fok_order, token_id, side, limit_price, shares)
        except Exception as exc:
            return OrderResult(
                success=False,
                order_id=None,
                requested_shares=shares,
                filled_shares=0,
                error=str(exc),
            )
        return self._to_order_result(result, shares)

    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        if self._live_client is None:
            return None
        try:
            result = await asyncio.to_thread(self._live_client.get_order, order_id)
        except Exception as exc:
            LOGGER.warning("polymarket get_order failed for %s: %s", order_id, exc)
            return None
        return result if isinstance(result, dict) else None

    def _submit_fok_order(self, token_id: str, side: OrderSide, price: float, shares: int) -> Any:
        assert self._live_client is not None
        assert self._order_args_cls is not None

        args = self._order_args_cls(
            token_id=token_id,
            price=float(price),
            size=float(shares),
            side=self._buy_constant if side is OrderSide.BUY else self._sell_constant,
        )
        signed = self._live_client.create_order(args)
        if self._order_type_cls is not None and hasattr(self._order_type_cls, "FOK"):
            return self._live_client.post_order(signed, self._order_type_cls.FOK)
        return self._live_client.post_order(signed)

    def _initialize_live_client(self) -> None:
        if not self._settings.private_key:
            self._live_error = "POLYMARKET_PRIVATE_KEY missing"
            return

        try:
            client_mod = importlib.import_module("py_clob_client.client")
            types_mod = importlib.import_module("py_clob_client.clob_types")
            constants_mod = importlib.import_module("py_clob_client.order_builder.constants")

            clob_client_cls = getattr(client_mod, "ClobClient")
            self._order_args_cls = getattr(types_mod, "OrderArgs")
            self._order_type_cls = getattr(types_mod, "OrderType", None)
            self._api_creds_cls = getattr(types_mod, "ApiCreds", None)
            self._balance_params_cls = getattr(types_mod, "BalanceAllowanceParams", None)
            self._asset_type_cls = getattr(types_mod, "AssetType", None)
            self._buy_constant = getattr(constants_mod, "BUY", "BUY")
            self._sell_constant = getattr(constants_mod, "SELL", "SELL")

            kwargs: dict[str, Any] = {
                "key": self._settings.private_key,
                "chain_id": self._settings.chain_id,
            }
            if self._settings.funder:
                kwargs["funder"] = self._settings.funder

            signature = inspect.signature(clob_client_cls)
            if "host" in signature.parameters:
                kwargs["host"] = self._settings.clob_base_url

            self._live_client = clob_client_cls(**kwargs)

            settings = self._settings
            if settings.api_key and settings.api_secret and settings.api_passphrase and self._api_creds_cls:
                creds = self._api_creds_cls(
                    api_key=settings.api_key,
                    api_secret=settings.api_secret,
                    api_passphrase=settings.api_passphrase,
                )
                self._live_client.set_api_creds(creds)
            else:
                self._live_client.set_api_creds(self._live_client.create_or_derive_api_creds())
            LOGGER.info("polymarket live client ready (chain %d)", settings.chain_id)
        except Exception as exc:
            self._live_client = None
            self._live_error = str(exc)
            LOGGER.warning("polymarket live client unavailable: %s", exc)

    # ── Parsing helpers ────────────────────────────────────────────

    @staticmethod
    def _parse_json_array(value: Any) -> list[Any]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return []
            return parsed if isinstance(parsed, list) else []
        return []

    @staticmethod
    def _to_price(value: Any) -> float | None:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(numeric) or numeric <= 0:
            return None
        if numeric > 1:
            numeric /= 100.0
        return min(1.0, numeric)

    @staticmethod
    def _to_usdc(value: Any) -> float | None:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(numeric):
            return None
        return numeric / (10 ** _USDC_DECIMALS)

    @staticmethod
    def _to_order_result(result: Any, requested_shares: int) -> OrderResult:
        raw = result if isinstance(result, dict) else {"data": str(result)}
        order_id = raw.get("orderID") or raw.get("order_id") or raw.get("id")
        accepted = raw.get("success", True) is not False and bool(order_id)

        filled = raw.get("size_matched") or 0
        try:
            filled_shares = int(float(filled))
        except (TypeError, ValueError):
            filled_shares = 0

        return OrderResult(
            success=accepted,
            order_id=str(order_id) if order_id else None,
            requested_shares=requested_shares,
            filled_shares=filled_shares,
            error=None if accepted else str(raw.get("errorMsg") or "order rejected"),
            raw=raw,
        )

    async def aclose(self) -> None:
        await self._gamma.aclose()
        await self._clob.aclose()
