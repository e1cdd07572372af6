"""
Feature Extraction for the Signal Predictor

Turns a trailing window of OHLCV bars into the fixed-length, normalized
FeatureVector consumed by the neural network, and builds labelled training
samples from a bar history by looking `horizon` bars into the future.

Every component of a FeatureVector lies in [0, 1]:

    0  rsi                  RSI / 100
    1  macd_histogram       histogram scaled by 1% of price, mapped to [0, 1]
    2  macd_signal          1 when MACD is above its signal line
    3  bollinger_position   %B clamped to [0, 1]
    4  bollinger_bandwidth  band width / middle, saturating at 20%
    5  volume_ratio         volume / 20-bar mean volume, saturating at 3x
    6  return_1p            1-bar return x10, mapped to [0, 1]
    7  return_5p            5-bar return x5, mapped to [0, 1]
    8  return_10p           10-bar return x3, mapped to [0, 1]
    9  sentiment            external score in [-1, 1], mapped to [0, 1]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import (
    DIRECTIONAL_LABELS,
    TERNARY_LABELS,
    LabelMode,
)
from .results import ConfigurationError
from .technical_indicators import (
    MACD_SLOW,
    calculate_macd,
    calculate_rsi,
    latest_bollinger,
)

logger = logging.getLogger(__name__)

BAR_COLUMNS = ('open', 'high', 'low', 'close', 'volume')

# Enough history for the slow MACD EMA
MIN_FEATURE_BARS: int = MACD_SLOW

VOLUME_WINDOW: int = 20

FEATURE_NAMES: List[str] = [
    'rsi', 'macd_histogram', 'macd_signal', 'bollinger_position',
    'bollinger_bandwidth', 'volume_ratio', 'return_1p', 'return_5p',
    'return_10p', 'sentiment',
]


def validate_bars(bars: pd.DataFrame) -> None:
    """Raise ConfigurationError when a bar frame lacks OHLCV columns."""
    if not isinstance(bars, pd.DataFrame):
        raise ConfigurationError(f"Bars must be a DataFrame, got {type(bars).__name__}")
    missing = [c for c in BAR_COLUMNS if c not in bars.columns]
    if missing:
        raise ConfigurationError(f"Bars are missing columns: {missing}")


def _clamp(value: float, low: float, high: float) -> float:
    return float(min(max(value, low), high))


def _to_unit(value: float) -> float:
    """Map a value in [-1, 1] onto [0, 1]."""
    return _clamp(value, -1.0, 1.0) * 0.5 + 0.5


def _trailing_return(closes: np.ndarray, periods: int) -> float:
    if len(closes) <= periods or closes[-1 - periods] == 0:
        return 0.0
    return float((closes[-1] - closes[-1 - periods]) / closes[-1 - periods])


# =============================================================================
# FEATURE VECTOR
# =============================================================================

def extract_features(
    bars: pd.DataFrame,
    sentiment_score: Optional[float] = None
) -> Optional[np.ndarray]:
    """
    Build a FeatureVector from the trailing window of bars.

    Args:
        bars: OHLCV frame, oldest first; only the window passed in is used
        sentiment_score: Optional external sentiment in [-1, 1]

    Returns:
        Read-only float array of length NUM_FEATURES, or None when fewer than
        MIN_FEATURE_BARS bars are supplied.
    """
    validate_bars(bars)
    if len(bars) < MIN_FEATURE_BARS:
        return None

    closes = bars['close'].to_numpy(dtype=float)
    volumes = bars['volume'].to_numpy(dtype=float)
    price = closes[-1]

    rsi = calculate_rsi(closes).iloc[-1]
    macd_line, signal_line, histogram = calculate_macd(closes)
    macd_now = float(macd_line.iloc[-1])
    signal_now = float(signal_line.iloc[-1])
    hist_now = float(histogram.iloc[-1])

    bollinger = latest_bollinger(closes)
    if bollinger is not None and bollinger.upper > bollinger.lower:
        band_position = (price - bollinger.lower) / (bollinger.upper - bollinger.lower)
        bandwidth = bollinger.bandwidth
    else:
        band_position = 0.5
        bandwidth = 0.0

    avg_volume = volumes[-VOLUME_WINDOW:].mean()
    volume_ratio = volumes[-1] / avg_volume if avg_volume > 0 else 1.0

    sentiment = 0.0 if sentiment_score is None else _clamp(sentiment_score, -1.0, 1.0)

    vector = np.array([
        rsi / 100.0 if np.isfinite(rsi) else 0.5,
        _to_unit(hist_now / (abs(price) * 0.01 + 1.0)),
        1.0 if macd_now > signal_now else 0.0,
        _clamp(band_position, 0.0, 1.0),
        _clamp(bandwidth, 0.0, 0.2) / 0.2,
        _clamp(volume_ratio / 3.0, 0.0, 1.0),
        _to_unit(_trailing_return(closes, 1) * 10.0),
        _to_unit(_trailing_return(closes, 5) * 5.0),
        _to_unit(_trailing_return(closes, 10) * 3.0),
        sentiment * 0.5 + 0.5,
    ], dtype=float)
    vector = np.nan_to_num(vector, nan=0.5, posinf=1.0, neginf=0.0)
    vector.setflags(write=False)
    return vector


# =============================================================================
# TRAINING DATA
# =============================================================================

@dataclass(frozen=True)
class TrainingSample:
    """
    One labelled example for the signal predictor.

    Attributes:
        features: FeatureVector at `bar_index`
        target: One-hot vector over the label set
        label: Class label name
        future_return: Return from bar_index to label_bar
        bar_index: Position of the decision bar in the source frame
        label_bar: Position of the bar the label depends on
    """
    features: np.ndarray
    target: np.ndarray
    label: str
    future_return: float
    bar_index: int
    label_bar: int


def _one_hot(index: int, size: int) -> np.ndarray:
    target = np.zeros(size)
    target[index] = 1.0
    target.setflags(write=False)
    return target


def label_future_return(
    future_return: float,
    buy_threshold: float,
    sell_threshold: float,
    mode: LabelMode
) -> Optional[str]:
    """
    Label a forward return.

    TERNARY: BUY above buy_threshold, SELL below sell_threshold, else HOLD.
    DIRECTIONAL: UP for positive, DOWN for negative, None for exactly zero.
    """
    if mode is LabelMode.DIRECTIONAL:
        if future_return > 0:
            return 'UP'
        if future_return < 0:
            return 'DOWN'
        return None
    if future_return > buy_threshold:
        return 'BUY'
    if future_return < sell_threshold:
        return 'SELL'
    return 'HOLD'


def generate_training_data(
    bars: pd.DataFrame,
    lookback: int = 30,
    horizon: int = 5,
    buy_threshold: float = 0.02,
    sell_threshold: float = -0.02,
    mode: LabelMode = LabelMode.TERNARY,
    sentiment: Optional[Sequence[float]] = None
) -> List[TrainingSample]:
    """
    Build labelled samples from a bar history.

    Sample i uses the window bars[i - lookback : i + 1] and is labelled from
    the return between close[i] and close[i + horizon], so every sample's
    label_bar is strictly inside the supplied frame.

    Args:
        bars: OHLCV frame
        lookback: Bars before the decision bar included in the window
        horizon: Forward bars used for the label
        buy_threshold, sell_threshold: TERNARY label cut-offs
        mode: TERNARY (BUY/HOLD/SELL) or DIRECTIONAL (UP/DOWN)
        sentiment: Optional per-bar sentiment scores aligned with `bars`

    Returns:
        Samples in chronological order
    """
    validate_bars(bars)
    if horizon < 1:
        raise ConfigurationError("horizon must be at least one bar")
    if sentiment is not None and len(sentiment) != len(bars):
        raise ConfigurationError("sentiment must align with bars")

    labels = DIRECTIONAL_LABELS if mode is LabelMode.DIRECTIONAL else TERNARY_LABELS
    closes = bars['close'].to_numpy(dtype=float)
    samples: List[TrainingSample] = []

    for i in range(lookback, len(bars) - horizon):
        current = closes[i]
        if current == 0:
            continue
        future_return = float((closes[i + horizon] - current) / current)
        label = label_future_return(future_return, buy_threshold, sell_threshold, mode)
        if label is None:
            continue

        score = None if sentiment is None else sentiment[i]
        features = extract_features(bars.iloc[i - lookback:i + 1], sentiment_score=score)
        if features is None:
            continue

        samples.append(TrainingSample(
            features=features,
            target=_one_hot(labels.index(label), len(labels)),
            label=label,
            future_return=future_return,
            bar_index=i,
            label_bar=i + horizon,
        ))

    logger.debug(f"Generated {len(samples)} {mode.value} samples from {len(bars)} bars")
    return samples


def class_distribution(samples: Sequence[TrainingSample]) -> dict:
    """Count samples per label."""
    counts: dict = {}
    for sample in samples:
        counts[sample.label] = counts.get(sample.label, 0) + 1
    return counts
