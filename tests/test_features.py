"""Tests for feature extraction and training-data generation."""
import numpy as np
import pandas as pd
import pytest

from regime_ensemble import ConfigurationError, LabelMode, extract_features, generate_training_data
from regime_ensemble.features import FEATURE_NAMES, class_distribution, label_future_return


def test_features_need_26_bars(regime_bars):
    assert extract_features(regime_bars.iloc[:25]) is None
    assert extract_features(regime_bars.iloc[:26]) is not None


def test_features_are_normalized(regime_bars):
    vector = extract_features(regime_bars.iloc[:60])
    assert vector.shape == (len(FEATURE_NAMES),)
    assert np.all(vector >= 0.0)
    assert np.all(vector <= 1.0)
    # no sentiment maps to the neutral midpoint
    assert vector[9] == pytest.approx(0.5)


def test_features_are_read_only(regime_bars):
    vector = extract_features(regime_bars.iloc[:40])
    with pytest.raises(ValueError):
        vector[0] = 1.0


def test_sentiment_is_clamped(regime_bars):
    window = regime_bars.iloc[:40]
    assert extract_features(window, sentiment_score=1.0)[9] == pytest.approx(1.0)
    assert extract_features(window, sentiment_score=-5.0)[9] == pytest.approx(0.0)


def test_flat_prices_give_neutral_features(flat_bars):
    vector = extract_features(flat_bars)
    assert vector[0] == pytest.approx(0.5)
    assert vector[3] == pytest.approx(0.5)
    assert vector[6] == pytest.approx(0.5)


def test_missing_columns_raise():
    with pytest.raises(ConfigurationError):
        extract_features(pd.DataFrame({'close': np.arange(30.0)}))


def test_label_future_return():
    assert label_future_return(0.03, 0.02, -0.02, LabelMode.TERNARY) == 'BUY'
    assert label_future_return(-0.03, 0.02, -0.02, LabelMode.TERNARY) == 'SELL'
    assert label_future_return(0.01, 0.02, -0.02, LabelMode.TERNARY) == 'HOLD'
    assert label_future_return(0.001, 0.02, -0.02, LabelMode.DIRECTIONAL) == 'UP'
    assert label_future_return(0.0, 0.02, -0.02, LabelMode.DIRECTIONAL) is None


def test_training_labels_stay_inside_the_frame(regime_bars):
    window = regime_bars.iloc[:150]
    samples = generate_training_data(window, lookback=30, horizon=5)

    assert samples
    assert samples[0].bar_index == 30
    assert all(s.label_bar == s.bar_index + 5 for s in samples)
    assert max(s.label_bar for s in samples) < len(window)
    assert sum(class_distribution(samples).values()) == len(samples)


def test_training_targets_match_labels(regime_bars):
    closes = regime_bars['close'].to_numpy()
    samples = generate_training_data(regime_bars.iloc[:120], lookback=30, horizon=5)
    for sample in samples:
        expected = (closes[sample.label_bar] - closes[sample.bar_index]) / closes[sample.bar_index]
        assert sample.future_return == pytest.approx(expected)
        assert sample.target.sum() == 1.0
        assert ('BUY', 'HOLD', 'SELL')[int(np.argmax(sample.target))] == sample.label


def test_directional_mode_uses_two_classes(regime_bars):
    samples = generate_training_data(regime_bars.iloc[:120], mode=LabelMode.DIRECTIONAL)
    assert {s.label for s in samples} <= {'UP', 'DOWN'}
    assert all(len(s.target) == 2 for s in samples)


def test_sentiment_must_align(regime_bars):
    with pytest.raises(ConfigurationError):
        generate_training_data(regime_bars.iloc[:100], sentiment=[0.0] * 10)
