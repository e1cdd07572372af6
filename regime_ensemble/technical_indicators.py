"""
Technical Indicator Primitives
==============================

Pandas implementations of the indicators consumed by feature extraction,
the rule strategies and the fallback regime heuristic.

INDICATOR FAMILIES
------------------
    Momentum:    RSI (Wilder smoothing)
    Trend:       MACD line / signal / histogram
    Volatility:  Bollinger Bands, realized volatility
    Statistical: rolling z-score, Hurst exponent (rescaled range)

All calculators accept a pd.Series of closes (or anything pd.Series accepts)
and return Series aligned to the input index, except the scalar helpers at
the bottom of the module which summarise the latest bar.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)

ArrayLike = Union[pd.Series, np.ndarray, Sequence[float]]


# =============================================================================
# CONSTANTS
# =============================================================================

# RSI parameters
RSI_PERIOD: int = 14
RSI_NEUTRAL: float = 50.0

# MACD parameters
MACD_FAST: int = 12
MACD_SLOW: int = 26
MACD_SIGNAL: int = 9

# Bollinger Bands parameters
BB_PERIOD: int = 20
BB_STD_DEV: float = 2.0

# Volatility / z-score windows
VOL_WINDOW: int = 20
ZSCORE_PERIOD: int = 20

# Hurst exponent (R/S) lag grid
HURST_MIN_LAG: int = 10
HURST_MAX_LAG: int = 20
HURST_LAG_STEP: int = 2


def _as_series(values: ArrayLike) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float)
    return pd.Series(np.asarray(values, dtype=float))


# =============================================================================
# RETURNS AND VOLATILITY
# =============================================================================

def simple_returns(close: ArrayLike) -> pd.Series:
    """Bar-over-bar simple returns; the first element is NaN."""
    return _as_series(close).pct_change()


def realized_volatility(close: ArrayLike, window: int = VOL_WINDOW) -> pd.Series:
    """
    Rolling population standard deviation of simple returns.

    Args:
        close: Closing prices
        window: Number of returns in each window

    Returns:
        Series of per-bar (not annualized) volatility
    """
    returns = simple_returns(close)
    return returns.rolling(window=window, min_periods=window).std(ddof=0)


# =============================================================================
# MOMENTUM INDICATORS
# =============================================================================

class MomentumIndicators:
    """Momentum oscillators."""

    @staticmethod
    def calculate_rsi(close: ArrayLike, period: int = RSI_PERIOD) -> pd.Series:
        """
        Calculate Relative Strength Index using Wilder's smoothing.

        RSI = 100 - (100 / (1 + RS)), RS = average gain / average loss

        Parameters
        ----------
        close : pd.Series
            Closing prices
        period : int
            Lookback period (default: 14)

        Returns
        -------
        pd.Series
            RSI values in [0, 100]; NaN until `period` changes are available
        """
        close = _as_series(close)
        delta = close.diff()

        gains = delta.where(delta > 0, 0.0)
        losses = (-delta).where(delta < 0, 0.0)

        alpha = 1.0 / period
        avg_gain = gains.ewm(alpha=alpha, adjust=False, min_periods=period).mean()
        avg_loss = losses.ewm(alpha=alpha, adjust=False, min_periods=period).mean()

        rs = avg_gain / avg_loss.replace(0, np.nan)
        rsi = 100.0 - (100.0 / (1.0 + rs))

        # No losses in the window: fully overbought unless price was flat
        flat = (avg_loss == 0) & (avg_gain == 0)
        rsi = rsi.mask((avg_loss == 0) & ~flat, 100.0)
        rsi = rsi.mask(flat, RSI_NEUTRAL)
        return rsi


# =============================================================================
# TREND INDICATORS
# =============================================================================

class TrendIndicators:
    """Trend-following indicators."""

    @staticmethod
    def calculate_macd(
        close: ArrayLike,
        fast: int = MACD_FAST,
        slow: int = MACD_SLOW,
        signal: int = MACD_SIGNAL
    ) -> Tuple[pd.Series, pd.Series, pd.Series]:
        """
        Calculate MACD, Signal line, and Histogram.

        MACD = EMA(fast) - EMA(slow)
        Signal = EMA(MACD, signal)
        Histogram = MACD - Signal

        The EMAs are seeded with the first close, so every output is defined
        from the first bar; callers decide how much history is meaningful.

        Returns
        -------
        Tuple[pd.Series, pd.Series, pd.Series]
            (MACD line, Signal line, Histogram)
        """
        close = _as_series(close)
        ema_fast = close.ewm(span=fast, adjust=False).mean()
        ema_slow = close.ewm(span=slow, adjust=False).mean()

        macd_line = ema_fast - ema_slow
        signal_line = macd_line.ewm(span=signal, adjust=False).mean()
        histogram = macd_line - signal_line

        return macd_line, signal_line, histogram


# =============================================================================
# VOLATILITY INDICATORS
# =============================================================================

@dataclass(frozen=True)
class BollingerSnapshot:
    """Latest-bar Bollinger Band values."""
    upper: float
    middle: float
    lower: float
    bandwidth: float
    percent_b: float


class VolatilityIndicators:
    """Volatility bands."""

    @staticmethod
    def calculate_bollinger_bands(
        close: ArrayLike,
        period: int = BB_PERIOD,
        std_dev: float = BB_STD_DEV
    ) -> Tuple[pd.Series, pd.Series, pd.Series, pd.Series, pd.Series]:
        """
        Calculate Bollinger Bands.

        Middle = SMA(close, period)
        Upper/Lower = Middle +/- std_dev * population StdDev(close, period)

        Returns
        -------
        Tuple[pd.Series, pd.Series, pd.Series, pd.Series, pd.Series]
            (Upper, Middle, Lower, Bandwidth, %B). Bandwidth is the band
            width as a fraction of the middle band; %B is 0.5 for a flat band.
        """
        close = _as_series(close)
        middle = close.rolling(window=period, min_periods=period).mean()
        std = close.rolling(window=period, min_periods=period).std(ddof=0)

        upper = middle + std_dev * std
        lower = middle - std_dev * std
        width = upper - lower

        bandwidth = (width / middle.replace(0, np.nan)).fillna(0.0)
        percent_b = (close - lower) / width.replace(0, np.nan)
        percent_b = percent_b.where(width != 0, 0.5)
        # Keep the warm-up region undefined
        bandwidth = bandwidth.where(middle.notna())
        percent_b = percent_b.where(middle.notna())

        return upper, middle, lower, bandwidth, percent_b

    @staticmethod
    def latest_bollinger(
        close: ArrayLike,
        period: int = BB_PERIOD,
        std_dev: float = BB_STD_DEV
    ) -> Optional[BollingerSnapshot]:
        """Bollinger values at the last bar, or None with fewer than `period` closes."""
        close = _as_series(close)
        if len(close) < period:
            return None
        upper, middle, lower, bandwidth, percent_b = \
            VolatilityIndicators.calculate_bollinger_bands(close, period, std_dev)
        return BollingerSnapshot(
            upper=float(upper.iloc[-1]),
            middle=float(middle.iloc[-1]),
            lower=float(lower.iloc[-1]),
            bandwidth=float(bandwidth.iloc[-1]),
            percent_b=float(percent_b.iloc[-1]),
        )


# =============================================================================
# STATISTICAL INDICATORS
# =============================================================================

class StatisticalIndicators:
    """Distributional and persistence statistics."""

    @staticmethod
    def rolling_zscore(close: ArrayLike, period: int = ZSCORE_PERIOD) -> pd.Series:
        """
        Z-score of each close against its trailing `period`-bar window.

        A flat window yields 0 rather than NaN.
        """
        close = _as_series(close)
        mean = close.rolling(window=period, min_periods=period).mean()
        std = close.rolling(window=period, min_periods=period).std(ddof=0)
        z = (close - mean) / std.replace(0, np.nan)
        return z.where(std != 0, 0.0).where(mean.notna())

    @staticmethod
    def hurst_exponent(
        close: ArrayLike,
        min_lag: int = HURST_MIN_LAG,
        max_lag: int = HURST_MAX_LAG,
        step: int = HURST_LAG_STEP
    ) -> Optional[float]:
        """
        Estimate the Hurst exponent by rescaled-range analysis of log returns.

        H > 0.5: persistent (trending)
        H = 0.5: random walk
        H < 0.5: anti-persistent (mean-reverting)

        Args:
            close: Closing prices
            min_lag, max_lag, step: Chunk sizes used for the R/S regression

        Returns:
            Slope of log(R/S) on log(lag); None with fewer than 2 * max_lag
            closes; 0.5 when fewer than two lags produce a finite R/S.
        """
        prices = _as_series(close).to_numpy()
        if len(prices) < max_lag * 2:
            return None
        with np.errstate(divide='ignore', invalid='ignore'):
            returns = np.diff(np.log(prices))
        returns = returns[np.isfinite(returns)]

        log_lags = []
        log_rs = []
        for lag in range(min_lag, max_lag + 1, step):
            chunks = len(returns) // lag
            if chunks < 1:
                continue
            rs_sum = 0.0
            for c in range(chunks):
                chunk = returns[c * lag:(c + 1) * lag]
                deviations = np.cumsum(chunk - chunk.mean())
                spread = deviations.max() - deviations.min()
                sd = chunk.std()
                if sd > 0:
                    rs_sum += spread / sd
            if rs_sum > 0:
                log_lags.append(np.log(lag))
                log_rs.append(np.log(rs_sum / chunks))

        if len(log_lags) < 2:
            return 0.5
        regression = stats.linregress(log_lags, log_rs)
        return float(regression.slope)


# =============================================================================
# CONVENIENCE ALIASES
# =============================================================================

calculate_rsi = MomentumIndicators.calculate_rsi
calculate_macd = TrendIndicators.calculate_macd
calculate_bollinger_bands = VolatilityIndicators.calculate_bollinger_bands
latest_bollinger = VolatilityIndicators.latest_bollinger
rolling_zscore = StatisticalIndicators.rolling_zscore
hurst_exponent = StatisticalIndicators.hurst_exponent
