"""
Rule-Based Signal Sources

    MomentumStrategy         volatility-scaled time-series momentum (trend source)
    MeanReversionStrategy    z-score entries gated by the Hurst exponent (reversion source)
    BollingerBounceStrategy  band-touch fades with RSI confirmation (static baseline)

Each strategy is a pure function of a close-price history and returns a
SourceSignal with a signed strength in [-1, 1] and a confidence in [0, 1].
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np

from .config import Action
from .technical_indicators import (
    calculate_rsi,
    hurst_exponent,
    latest_bollinger,
    rolling_zscore,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSignal:
    """
    One evidence source's opinion.

    Attributes:
        strength: Signed strength in [-1, 1], positive is bullish
        confidence: Confidence in [0, 1]
        action: Thresholded action
        reasons: Human-readable audit trail
        details: Source-specific diagnostics (plain data)
    """
    strength: float
    confidence: float
    action: Action
    reasons: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strength': self.strength,
            'confidence': self.confidence,
            'action': self.action.value,
            'reasons': list(self.reasons),
            'details': dict(self.details),
        }


def neutral_signal(reason: str) -> SourceSignal:
    return SourceSignal(strength=0.0, confidence=0.0, action=Action.HOLD, reasons=[reason])


def _closes(closes: Sequence[float]) -> np.ndarray:
    return np.asarray(closes, dtype=float)


# =============================================================================
# MOMENTUM
# =============================================================================

class MomentumStrategy:
    """
    Risk-managed time-series momentum.

    Direction comes from the lookback return; size is scaled by
    target_risk / realized volatility (capped at 2x) and confidence by the
    momentum z-score (|return| / volatility, saturating at 3).
    """

    name = 'momentum'

    def __init__(
        self,
        lookback: int = 30,
        vol_window: int = 20,
        target_risk: float = 0.02,
        entry_threshold: float = 0.0
    ):
        self.lookback = lookback
        self.vol_window = vol_window
        self.target_risk = target_risk
        self.entry_threshold = entry_threshold

    def generate_signal(self, closes: Sequence[float]) -> SourceSignal:
        prices = _closes(closes)
        if len(prices) < self.lookback + self.vol_window:
            return neutral_signal('Insufficient data')

        past = prices[-1 - self.lookback]
        momentum = (prices[-1] - past) / past if past != 0 else 0.0

        window = prices[-self.vol_window - 1:]
        returns = np.diff(window) / window[:-1]
        volatility = float(np.std(returns))

        vol_scale = min(self.target_risk / volatility, 2.0) if volatility > 0 else 1.0
        if momentum > self.entry_threshold:
            direction = 1.0
        elif momentum < -self.entry_threshold:
            direction = -1.0
        else:
            direction = 0.0
        scaled = direction * vol_scale

        z = abs(momentum) / volatility if volatility > 0 else 0.0
        confidence = min(z / 3.0, 1.0)

        sign = 'Positive' if momentum > 0 else 'Negative'
        reasons = [
            f"{sign} {self.lookback}-bar momentum: {momentum * 100:.2f}%",
            f"Volatility: {volatility * 100:.2f}%, scale: {vol_scale:.2f}",
        ]
        return SourceSignal(
            strength=float(np.clip(scaled, -1.0, 1.0)),
            confidence=float(confidence),
            action=Action.from_strength(scaled, 0.1, -0.1),
            reasons=reasons,
            details={'momentum': float(momentum), 'volatility': volatility, 'vol_scale': float(vol_scale)},
        )


# =============================================================================
# MEAN REVERSION
# =============================================================================

class MeanReversionStrategy:
    """
    Z-score mean reversion gated by the Hurst exponent.

    H < 0.5 trades at full confidence, 0.5 <= H < 0.6 at half confidence,
    and H >= 0.6 (clearly trending) stands aside. Entries at |z| >= entry,
    flat near the mean, and a stop that flattens beyond |z| >= stop.
    """

    name = 'mean_reversion'

    def __init__(
        self,
        zscore_period: int = 20,
        entry_zscore: float = 2.0,
        exit_zscore: float = 0.5,
        stop_zscore: float = 3.5,
        bb_period: int = 20,
        bb_std_dev: float = 2.0,
        hurst_max_lag: int = 20
    ):
        self.zscore_period = zscore_period
        self.entry_zscore = entry_zscore
        self.exit_zscore = exit_zscore
        self.stop_zscore = stop_zscore
        self.bb_period = bb_period
        self.bb_std_dev = bb_std_dev
        self.hurst_max_lag = hurst_max_lag

    def generate_signal(self, closes: Sequence[float]) -> SourceSignal:
        prices = _closes(closes)
        if len(prices) < max(self.zscore_period, self.bb_period) + 10:
            return neutral_signal('Insufficient data')

        z = float(rolling_zscore(prices, self.zscore_period).iloc[-1])
        bands = latest_bollinger(prices, self.bb_period, self.bb_std_dev)
        percent_b = bands.percent_b if bands is not None else None
        hurst = hurst_exponent(prices, max_lag=self.hurst_max_lag)

        details = {'zscore': z, 'hurst': hurst, 'percent_b': percent_b}
        mean_reverting = hurst is not None and hurst < 0.5
        borderline = hurst is not None and 0.5 <= hurst < 0.6
        if not (mean_reverting or borderline):
            shown = f"{hurst:.2f}" if hurst is not None else 'N/A'
            return SourceSignal(
                strength=0.0, confidence=0.0, action=Action.HOLD,
                reasons=[f"Hurst {shown} >= 0.6, trending: skip mean reversion"],
                details=details,
            )
        penalty = 1.0 if mean_reverting else 0.5

        reasons: List[str] = []
        strength = 0.0
        if z <= -self.entry_zscore:
            strength = 1.0
            reasons.append(f"Z-score {z:.2f} <= -{self.entry_zscore}: oversold")
        elif z >= self.entry_zscore:
            strength = -1.0
            reasons.append(f"Z-score {z:.2f} >= {self.entry_zscore}: overbought")
        elif abs(z) <= self.exit_zscore:
            reasons.append(f"Z-score {z:.2f} near mean")
        else:
            reasons.append(f"Z-score {z:.2f} in no-trade zone")

        if abs(z) >= self.stop_zscore:
            strength = 0.0
            reasons.append(f"Z-score {z:.2f} hit stop at {self.stop_zscore}")

        if percent_b is not None:
            if percent_b < 0 and strength > 0:
                reasons.append('Confirmed: below lower band')
            if percent_b > 1 and strength < 0:
                reasons.append('Confirmed: above upper band')

        abs_z = abs(z)
        if abs_z >= self.entry_zscore:
            raw = min((abs_z - self.entry_zscore) / (self.stop_zscore - self.entry_zscore), 0.95)
        else:
            raw = abs_z / self.entry_zscore * 0.3
        reasons.append(f"Hurst: {hurst:.2f} ({'mean-reverting' if mean_reverting else 'borderline, 50% penalty'})")

        return SourceSignal(
            strength=strength,
            confidence=float(raw * penalty),
            action=Action.from_strength(strength, 0.0, 0.0),
            reasons=reasons,
            details=details,
        )


# =============================================================================
# BOLLINGER BOUNCE
# =============================================================================

class BollingerBounceStrategy:
    """
    Buy lower-band touches, sell upper-band touches, with RSI confirmation.

    Confidence is 0.7 with RSI confirmation (0.4 without) plus a bonus for
    how far price sits beyond the trigger, capped at 0.95.
    """

    name = 'bollinger_bounce'

    def __init__(
        self,
        bb_period: int = 20,
        bb_std_dev: float = 2.0,
        rsi_period: int = 14,
        rsi_buy_threshold: float = 40.0,
        rsi_sell_threshold: float = 60.0,
        percent_b_buy: float = 0.05,
        percent_b_sell: float = 0.95,
        squeeze_bandwidth: float = 0.02
    ):
        self.bb_period = bb_period
        self.bb_std_dev = bb_std_dev
        self.rsi_period = rsi_period
        self.rsi_buy_threshold = rsi_buy_threshold
        self.rsi_sell_threshold = rsi_sell_threshold
        self.percent_b_buy = percent_b_buy
        self.percent_b_sell = percent_b_sell
        self.squeeze_bandwidth = squeeze_bandwidth

    @classmethod
    def conservative(cls) -> 'BollingerBounceStrategy':
        """Trade only outside the bands, with tighter RSI confirmation."""
        return cls(percent_b_buy=0.0, percent_b_sell=1.0, rsi_buy_threshold=35.0, rsi_sell_threshold=65.0)

    def generate_signal(self, closes: Sequence[float]) -> SourceSignal:
        prices = _closes(closes)
        if len(prices) < max(self.bb_period, self.rsi_period + 1) + 5:
            return neutral_signal('Insufficient data')

        bands = latest_bollinger(prices, self.bb_period, self.bb_std_dev)
        if bands is None:
            return neutral_signal('Bollinger computation failed')
        rsi_value = calculate_rsi(prices, self.rsi_period).iloc[-1]
        rsi = float(rsi_value) if np.isfinite(rsi_value) else None
        percent_b = bands.percent_b

        strength = 0.0
        confidence = 0.0
        reasons: List[str] = []

        if percent_b <= self.percent_b_buy:
            strength = 1.0
            confirmed = rsi is not None and rsi < self.rsi_buy_threshold
            confidence = 0.7 if confirmed else 0.4
            reasons.append(f"%B {percent_b:.3f} <= {self.percent_b_buy}: near lower band")
            if confirmed:
                reasons.append(f"RSI {rsi:.1f} confirms oversold")
        elif percent_b >= self.percent_b_sell:
            strength = -1.0
            confirmed = rsi is not None and rsi > self.rsi_sell_threshold
            confidence = 0.7 if confirmed else 0.4
            reasons.append(f"%B {percent_b:.3f} >= {self.percent_b_sell}: near upper band")
            if confirmed:
                reasons.append(f"RSI {rsi:.1f} confirms overbought")
        elif bands.bandwidth < self.squeeze_bandwidth:
            reasons.append(f"Band squeeze (bandwidth {bands.bandwidth:.4f}): stay flat")
        elif 0.4 < percent_b < 0.6:
            reasons.append(f"%B {percent_b:.3f} near middle: exit zone")
        else:
            reasons.append(f"%B {percent_b:.3f} in no-trade zone")

        if strength != 0.0:
            if strength > 0:
                span = self.percent_b_buy if self.percent_b_buy > 0 else 1.0
                extremity = (self.percent_b_buy - percent_b) / span
            else:
                span = 1.0 - self.percent_b_sell if self.percent_b_sell < 1 else 1.0
                extremity = (percent_b - self.percent_b_sell) / span
            confidence = min(confidence + extremity * 0.3, 0.95)

        return SourceSignal(
            strength=strength,
            confidence=float(max(confidence, 0.0)),
            action=Action.from_strength(strength, 0.0, 0.0),
            reasons=reasons,
            details={'percent_b': percent_b, 'bandwidth': bands.bandwidth, 'rsi': rsi},
        )
