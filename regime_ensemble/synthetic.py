"""
Synthetic regime-switching OHLCV bars.

Geometric Brownian motion through five consecutive segments (bull trend,
high volatility, range, bear trend, recovery) so that a regime detector has
known structure to find.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegimeSegment:
    name: str
    drift: float
    vol: float
    share: float


DEFAULT_SEGMENTS: Tuple[RegimeSegment, ...] = (
    RegimeSegment('bull_trend', drift=0.003, vol=0.015, share=0.25),
    RegimeSegment('high_vol', drift=-0.001, vol=0.04, share=0.20),
    RegimeSegment('range_bound', drift=0.0001, vol=0.01, share=0.25),
    RegimeSegment('bear_trend', drift=-0.002, vol=0.025, share=0.15),
    RegimeSegment('recovery', drift=0.002, vol=0.02, share=0.15),
)


def _segment_lengths(n_bars: int, segments: Sequence[RegimeSegment]) -> list:
    lengths = [int(round(n_bars * s.share)) for s in segments]
    # rounding drift goes to the last segment
    lengths[-1] += n_bars - sum(lengths)
    return lengths


def generate_regime_bars(
    n_bars: int = 500,
    start_price: float = 50_000.0,
    seed: Optional[Union[int, np.random.Generator]] = None,
    segments: Sequence[RegimeSegment] = DEFAULT_SEGMENTS,
    start: str = '2020-01-01',
    freq: str = 'D'
) -> pd.DataFrame:
    """
    Generate a regime-switching bar frame.

    Args:
        n_bars: Number of bars
        start_price: First open
        seed: Seed or Generator for reproducibility
        segments: Regime segments in order; shares are fractions of n_bars
        start: First timestamp
        freq: Bar frequency

    Returns:
        DataFrame indexed by timestamp with open, high, low, close, volume
        and the generating regime name.
    """
    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
    lengths = _segment_lengths(n_bars, segments)

    drift = np.concatenate([np.full(n, s.drift) for s, n in zip(segments, lengths)])
    vol = np.concatenate([np.full(n, s.vol) for s, n in zip(segments, lengths)])
    regime = np.concatenate([np.full(n, s.name, dtype=object) for s, n in zip(segments, lengths)])

    log_returns = drift + vol * rng.standard_normal(n_bars)
    close = start_price * np.exp(np.cumsum(log_returns))
    open_ = np.concatenate([[start_price], close[:-1]])

    bar_range = close * vol * (0.5 + rng.random(n_bars))
    high = np.maximum(open_, close) + bar_range * rng.random(n_bars)
    low = np.maximum(np.minimum(open_, close) - bar_range * rng.random(n_bars), 0.01)
    volume = np.round(1_000_000 * (0.5 + 2.0 * rng.random(n_bars)))

    index = pd.date_range(start=start, periods=n_bars, freq=freq, name='timestamp')
    bars = pd.DataFrame({
        'open': open_,
        'high': high,
        'low': low,
        'close': close,
        'volume': volume,
        'regime': regime,
    }, index=index)
    logger.debug(f"Generated {n_bars} synthetic bars across {len(segments)} segments")
    return bars
