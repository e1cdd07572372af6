"""Tests for the rule-based signal sources and indicator primitives."""
import numpy as np
import pytest

from regime_ensemble import (
    Action,
    BollingerBounceStrategy,
    MeanReversionStrategy,
    MomentumStrategy,
)
from regime_ensemble.technical_indicators import (
    calculate_rsi,
    hurst_exponent,
    latest_bollinger,
    rolling_zscore,
)


# ============================================================================
# Indicators
# ============================================================================

def test_rsi_bounds(trending_closes):
    rsi = calculate_rsi(trending_closes).dropna()
    assert ((rsi >= 0) & (rsi <= 100)).all()
    assert rsi.iloc[-1] > 70


def test_rsi_of_flat_prices_is_neutral():
    assert calculate_rsi(np.full(30, 100.0)).iloc[-1] == 50.0


def test_bollinger_snapshot():
    assert latest_bollinger(np.arange(10.0)) is None
    flat = latest_bollinger(np.full(25, 10.0))
    assert flat.percent_b == 0.5
    assert flat.bandwidth == 0.0


def test_zscore_of_flat_window_is_zero():
    assert rolling_zscore(np.full(30, 5.0)).iloc[-1] == 0.0


def test_hurst_needs_history(rng):
    assert hurst_exponent(np.arange(1.0, 30.0)) is None
    walk = 100.0 * np.exp(np.cumsum(0.01 * rng.standard_normal(300)))
    assert 0.0 < hurst_exponent(walk) < 1.0


# ============================================================================
# Strategies
# ============================================================================

def test_short_history_is_neutral():
    closes = np.linspace(100, 101, 10)
    for strategy in (MomentumStrategy(), MeanReversionStrategy(), BollingerBounceStrategy()):
        signal = strategy.generate_signal(closes)
        assert signal.action is Action.HOLD
        assert signal.strength == 0.0
        assert signal.reasons == ['Insufficient data']


def test_momentum_follows_the_trend(trending_closes):
    up = MomentumStrategy(lookback=7).generate_signal(trending_closes)
    down = MomentumStrategy(lookback=7).generate_signal(trending_closes[::-1])

    assert up.action is Action.BUY
    assert up.strength > 0
    assert down.action is Action.SELL
    assert 0.0 <= up.confidence <= 1.0
    assert up.details['momentum'] > 0


def test_mean_reversion_stands_aside_in_trends(trending_closes):
    signal = MeanReversionStrategy().generate_signal(trending_closes)
    assert -1.0 <= signal.strength <= 1.0
    assert 0.0 <= signal.confidence <= 1.0
    if signal.details['hurst'] is not None and signal.details['hurst'] >= 0.6:
        assert signal.strength == 0.0


def test_mean_reversion_buys_a_sharp_drop():
    closes = np.concatenate([100.0 + 0.5 * np.sin(np.arange(80)), [98.5]])
    signal = MeanReversionStrategy(entry_zscore=1.5).generate_signal(closes)
    if signal.details['hurst'] < 0.6:
        assert signal.strength == 1.0
        assert signal.action is Action.BUY


def test_bollinger_conservative_trades_outside_the_bands():
    strategy = BollingerBounceStrategy.conservative()
    assert strategy.percent_b_buy == 0.0
    assert strategy.percent_b_sell == 1.0

    closes = np.concatenate([100.0 + 0.5 * np.sin(np.arange(40)), [90.0]])
    signal = strategy.generate_signal(closes)
    assert signal.action is Action.BUY
    assert signal.details['percent_b'] < 0
    assert 0.4 <= signal.confidence <= 0.95


def test_bollinger_squeeze_stays_flat():
    signal = BollingerBounceStrategy().generate_signal(np.full(40, 100.0))
    assert signal.action is Action.HOLD
    assert signal.confidence == pytest.approx(0.0)
