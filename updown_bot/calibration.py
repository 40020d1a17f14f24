"""Online learning for the lag strategy's response model.

Two estimators learn how far outcome tokens reprice per dollar of spot move:

- ``OnlineCalibrator``: EMA of observed response cents per USD, exposed
  once enough samples have been folded in.
- ``OnlineLinearModel``: a nine-feature linear regressor updated with one
  SGD step per observed response, blended with the calibrator's heuristic.

``LatencyTracker`` measures how long the market takes to respond after a
meaningful spot move. None of this state is persisted between runs; each
class exposes ``state()`` for inspection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from updown_bot.models import BookPressure, FlowMetrics, Outcome

LOGGER = logging.getLogger(__name__)

FEATURE_NAMES = ("d_fast", "d_slow", "d_base", "spread", "imb", "micro", "vr", "fimb", "fpx")

# Predictions are clamped to this range (cents).
PREDICTION_FLOOR_CENTS = 0.0
PREDICTION_CAP_CENTS = 20.0
_BIAS_LIMIT = 20.0


def _finite_or_zero(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return float(value)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def build_features(
    spot_delta_fast: float | None,
    spot_delta_slow: float | None,
    spot_delta_baseline: float | None,
    pressure: BookPressure | None,
    flow: FlowMetrics | None,
) -> np.ndarray:
    """Normalised feature vector in ``FEATURE_NAMES`` order."""
    vol_ratio = flow.vol_ratio if flow is not None else None
    if vol_ratio is not None and vol_ratio > 0:
        vr = _clamp(vol_ratio - 1.0, -5.0, 5.0)
    else:
        vr = 0.0
    return np.array(
        [
            _finite_or_zero(spot_delta_fast) / 50.0,
            _finite_or_zero(spot_delta_slow) / 200.0,
            _finite_or_zero(spot_delta_baseline) / 200.0,
            _finite_or_zero(pressure.spread_cents if pressure else None) / 5.0,
            _finite_or_zero(pressure.imbalance if pressure else None),
            _finite_or_zero(pressure.micro_pressure if pressure else None) * 100.0,
            vr,
            _finite_or_zero(flow.imbalance if flow else None),
            _finite_or_zero(flow.price_delta if flow else None) / 50.0,
        ],
        dtype=float,
    )


# ── Calibrator ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class CalibrationState:
    ema: float | None
    samples: int
    cents_per_usd: float


class OnlineCalibrator:
    """EMA of favoured-side response cents per USD of spot move.

    Parameters
    ----------
    alpha:
        EMA weight, clamped to [0.01, 0.75]. Default 0.15.
    min_cents_per_usd / max_cents_per_usd:
        Each observed ratio is clamped into this range before folding.
    min_samples:
        Observations required before the EMA replaces ``fallback``.
    fallback:
        Static rate used until the EMA is ready.
    """

    def __init__(
        self,
        alpha: float = 0.15,
        min_cents_per_usd: float = 0.005,
        max_cents_per_usd: float = 0.25,
        min_samples: int = 8,
        fallback: float = 0.05,
        enabled: bool = True,
    ) -> None:
        self._alpha = _clamp(alpha, 0.01, 0.75)
        self._min = min_cents_per_usd
        self._max = max_cents_per_usd
        self._min_samples = min_samples
        self._fallback = max(0.0, fallback)
        self._enabled = enabled
        self._ema: float | None = None
        self._samples = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def is_ready(self) -> bool:
        return self._ema is not None and self._samples >= self._min_samples

    @property
    def cents_per_usd(self) -> float:
        if self.is_ready and self._ema is not None and self._ema > 0:
            return self._ema
        return self._fallback

    def update(self, spot_delta: float, up_delta: float, down_delta: float) -> bool:
        """Fold one observed response. Deltas are token mark changes (0..1 units).

        Only the side favoured by the spot move counts: UP when spot rose,
        DOWN when it fell.
        """
        if not self._enabled:
            return False
        if not math.isfinite(spot_delta) or spot_delta == 0:
            return False
        if not (math.isfinite(up_delta) and math.isfinite(down_delta)):
            return False

        response = max(0.0, up_delta) if spot_delta > 0 else max(0.0, down_delta)
        ratio = response * 100.0 / abs(spot_delta)
        if not math.isfinite(ratio) or ratio <= 0:
            return False

        bounded = _clamp(ratio, self._min, self._max)
        self._samples += 1
        if self._ema is None:
            self._ema = bounded
        else:
            self._ema = (1.0 - self._alpha) * self._ema + self._alpha * bounded
        return True

    def state(self) -> CalibrationState:
        return CalibrationState(ema=self._ema, samples=self._samples, cents_per_usd=self.cents_per_usd)


# ── Linear model ───────────────────────────────────────────────────


@dataclass(frozen=True)
class LinearModelState:
    bias: float
    weights: Dict[str, float]
    samples: int


class OnlineLinearModel:
    """Tiny online regressor predicting response cents from lag features.

    Parameters
    ----------
    lr:
        Learning rate, clamped to [1e-4, 0.2].
    l2:
        Weight decay, clamped to [0, 0.1].
    max_abs_weight:
        Each weight is clamped to +/- this value after an update.
    min_samples:
        Updates required before ``blend`` mixes the prediction in.
    blend_weight:
        Fraction of the model prediction in the blended output.
    """

    def __init__(
        self,
        lr: float = 0.02,
        l2: float = 0.002,
        max_abs_weight: float = 5.0,
        min_samples: int = 30,
        blend_weight: float = 0.5,
        enabled: bool = True,
        learn: bool = True,
    ) -> None:
        self._lr = _clamp(lr, 1e-4, 0.2)
        self._l2 = _clamp(l2, 0.0, 0.1)
        self._max_abs_weight = abs(max_abs_weight)
        self._min_samples = min_samples
        self._blend_weight = _clamp(blend_weight, 0.0, 1.0)
        self._enabled = enabled
        self._learn = learn
        self._bias = 0.0
        self._weights = np.zeros(len(FEATURE_NAMES), dtype=float)
        self._samples = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def is_trained(self) -> bool:
        return self._enabled and self._samples >= self._min_samples

    def predict(self, features: np.ndarray | None) -> float | None:
        if not self._enabled or features is None:
            return None
        y = self._bias + float(np.dot(self._weights, features))
        if not math.isfinite(y):
            return None
        return _clamp(y, PREDICTION_FLOOR_CENTS, PREDICTION_CAP_CENTS)

    def update(self, features: np.ndarray | None, target_cents: float) -> bool:
        if not (self._enabled and self._learn) or features is None:
            return False
        if not math.isfinite(target_cents):
            return False
        prediction = self.predict(features)
        if prediction is None:
            return False

        err = target_cents - prediction
        self._bias = _clamp(self._bias + self._lr * err, -_BIAS_LIMIT, _BIAS_LIMIT)
        active = np.isfinite(features) & (features != 0)
        step = self._lr * (err * features - self._l2 * self._weights)
        updated = np.clip(self._weights + step, -self._max_abs_weight, self._max_abs_weight)
        self._weights = np.where(active, updated, self._weights)
        self._samples += 1
        return True

    def blend(self, heuristic_cents: float, features: np.ndarray | None) -> float:
        """Mix the heuristic with the model once it has enough samples."""
        if not self.is_trained:
            return heuristic_cents
        prediction = self.predict(features)
        if prediction is None:
            return heuristic_cents
        return (1.0 - self._blend_weight) * heuristic_cents + self._blend_weight * prediction

    def state(self) -> LinearModelState:
        return LinearModelState(
            bias=self._bias,
            weights={name: float(w) for name, w in zip(FEATURE_NAMES, self._weights)},
            samples=self._samples,
        )


# ── Latency ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LatencyState:
    ema_seconds: float | None
    last_seconds: float | None
    max_seconds: float | None
    count: int
    window_started_at: float | None
    window_side: Outcome | None


class LatencyTracker:
    """Time from the start of a lag window to the market's response."""

    def __init__(self, alpha: float = 0.15) -> None:
        self._alpha = alpha
        self.ema: float | None = None
        self.last: float | None = None
        self.max: float | None = None
        self.count = 0
        self.window_started_at: float | None = None
        self.window_side: Outcome | None = None
        self.window_spot_delta: float | None = None

    def open_window(self, side: Outcome, now: float, spot_delta: float) -> None:
        """Start a window unless one is already open for the same side."""
        if self.window_started_at is not None and self.window_side is side:
            return
        self.window_started_at = now
        self.window_side = side
        self.window_spot_delta = spot_delta

    def record_response(self, now: float) -> Optional[float]:
        started = self.window_started_at
        elapsed: float | None = None
        if started is not None and now >= started:
            elapsed = now - started
            self.count += 1
            self.last = elapsed
            self.max = elapsed if self.max is None else max(self.max, elapsed)
            self.ema = elapsed if self.ema is None else (1 - self._alpha) * self.ema + self._alpha * elapsed
            LOGGER.debug("lag window closed after %.2fs (ema %.2fs)", elapsed, self.ema)
        self.window_started_at = None
        self.window_side = None
        self.window_spot_delta = None
        return elapsed

    def state(self) -> LatencyState:
        return LatencyState(
            ema_seconds=self.ema,
            last_seconds=self.last,
            max_seconds=self.max,
            count=self.count,
            window_started_at=self.window_started_at,
            window_side=self.window_side,
        )
