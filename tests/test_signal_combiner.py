"""Tests for the regime- and agreement-aware signal combiner."""
import numpy as np
import pytest

from regime_ensemble import (
    UNAVAILABLE,
    Action,
    Available,
    CombinerConfig,
    GaussianHMM,
    NeuralNetwork,
    RegimeSource,
    SignalCombiner,
    SourceSignal,
    capability,
    extract_observations,
)
from regime_ensemble.signal_predictor import Prediction


class StubPredictor:
    """Trained predictor that always returns the same prediction."""

    trained = True

    def __init__(self, label, confidence):
        rest = (1.0 - confidence) / 2.0
        probs = {'BUY': rest, 'HOLD': rest, 'SELL': rest}
        probs[label] = confidence
        self.prediction = Prediction(label=label, confidence=confidence, probabilities=probs)

    def predict_signal(self, features):
        return self.prediction


def _bullish_rules():
    trend = SourceSignal(strength=0.8, confidence=0.7, action=Action.BUY)
    reversion = SourceSignal(strength=0.4, confidence=0.5, action=Action.BUY)
    return trend, reversion


FEATURES = np.full(10, 0.5)


# ============================================================================
# Capability wrapping
# ============================================================================

def test_capability_requires_a_trained_model():
    assert capability(None) is UNAVAILABLE
    assert capability(NeuralNetwork(layers=(10, 4, 3), seed=1)) is UNAVAILABLE
    stub = StubPredictor('BUY', 0.8)
    assert capability(stub) == Available(stub)
    assert not UNAVAILABLE


# ============================================================================
# Agreement-aware predictor weight
# ============================================================================

def test_confident_agreement_boosts_predictor_weight():
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(trend, reversion, predictor=StubPredictor('BUY', 0.8), features=FEATURES)

    assert signal.ml_active
    assert signal.effective_ml_weight == pytest.approx(0.45)
    assert signal.effective_ml_weight > 0.3
    assert signal.effective_rule_weight == pytest.approx(0.55)
    assert signal.action is Action.BUY


def test_agreement_boost_is_capped():
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(
        trend, reversion, predictor=StubPredictor('BUY', 0.9), features=FEATURES, ml_weight=0.4,
    )
    assert signal.effective_ml_weight == pytest.approx(0.5)


def test_confident_disagreement_damps_predictor_weight():
    trend, reversion = _bullish_rules()
    combiner = SignalCombiner()
    agree = combiner.generate(trend, reversion, predictor=StubPredictor('BUY', 0.8), features=FEATURES)
    disagree = combiner.generate(trend, reversion, predictor=StubPredictor('SELL', 0.8), features=FEATURES)

    assert disagree.effective_ml_weight == pytest.approx(0.21)
    assert disagree.effective_ml_weight < agree.effective_ml_weight
    assert disagree.strength < agree.strength
    assert disagree.predictor.action is Action.SELL


def test_bearish_consensus_overrules_a_confident_buy():
    trend = SourceSignal(strength=-0.8, confidence=0.7, action=Action.SELL)
    reversion = SourceSignal(strength=-0.4, confidence=0.5, action=Action.SELL)
    signal = SignalCombiner().generate(trend, reversion, predictor=StubPredictor('BUY', 0.8), features=FEATURES)

    assert signal.rule_strength == pytest.approx(-0.6)
    assert signal.effective_ml_weight == pytest.approx(0.21)
    assert signal.effective_ml_weight < 0.45
    assert signal.action is not Action.BUY
    assert signal.action is Action.SELL


def test_uncertain_predictor_gets_minimal_weight():
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(trend, reversion, predictor=StubPredictor('BUY', 0.5), features=FEATURES)
    assert signal.effective_ml_weight == pytest.approx(0.09)


def test_untrained_predictor_is_ignored():
    trend, reversion = _bullish_rules()
    untrained = NeuralNetwork(layers=(10, 4, 3), seed=1)
    signal = SignalCombiner().generate(trend, reversion, predictor=untrained, features=FEATURES)

    assert not signal.ml_active
    assert signal.effective_ml_weight == 0.0
    assert signal.effective_rule_weight == 1.0
    assert 'ML: unavailable (rules only)' in signal.reasons


def test_missing_features_skip_predictor():
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(trend, reversion, predictor=StubPredictor('BUY', 0.8), features=None)
    assert signal.predictor is None
    assert signal.effective_ml_weight == 0.0


# ============================================================================
# Regime fallback ladder
# ============================================================================

def test_default_regime_without_any_source():
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(trend, reversion)

    assert signal.regime == 'unknown'
    assert signal.regime_source is RegimeSource.DEFAULT
    assert signal.rule_weights.trend == 0.5
    assert signal.rule_strength == pytest.approx(0.6)
    assert signal.strength == pytest.approx(0.6)
    assert signal.action is Action.BUY


def test_heuristic_regime_from_closes(trending_closes):
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(trend, reversion, closes=trending_closes)
    assert signal.regime_source is RegimeSource.HEURISTIC
    assert signal.rule_weights.trend == 0.7
    assert not signal.hmm_active


def test_untrained_detector_falls_back_to_heuristic(trending_closes, regime_bars):
    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(
        trend, reversion, closes=trending_closes,
        detector=GaussianHMM(), observations=extract_observations(regime_bars),
    )
    assert signal.regime_source is RegimeSource.HEURISTIC
    assert signal.regime_belief is None


def test_trained_detector_supplies_the_regime(regime_bars):
    observations = extract_observations(regime_bars)
    detector = GaussianHMM()
    detector.fit(observations)

    trend, reversion = _bullish_rules()
    signal = SignalCombiner().generate(trend, reversion, detector=detector, observations=observations)

    assert signal.regime_source is RegimeSource.HMM
    assert signal.hmm_active
    assert signal.regime in detector.states
    assert signal.regime_belief.regime == signal.regime
    assert signal.rule_weights == CombinerConfig().hmm_weights[signal.regime]


def test_regime_scale_applies_to_hmm_regimes_only(regime_bars, trending_closes):
    observations = extract_observations(regime_bars)
    detector = GaussianHMM()
    detector.fit(observations)
    trend, reversion = _bullish_rules()
    combiner = SignalCombiner()
    predictor = StubPredictor('BUY', 0.5)

    regime = detector.current_regime(observations).regime
    scaled = combiner.generate(
        trend, reversion, predictor=predictor, features=FEATURES,
        detector=detector, observations=observations, regime_ml_scale={regime: 0.5},
    )
    assert scaled.effective_ml_weight == pytest.approx(0.045)

    heuristic = combiner.generate(
        trend, reversion, closes=trending_closes, predictor=predictor, features=FEATURES,
        regime_ml_scale={'trending': 0.5, 'high_vol_trending': 0.5},
    )
    assert heuristic.effective_ml_weight == pytest.approx(0.09)


# ============================================================================
# Decision thresholds and output
# ============================================================================

def test_dead_zone_holds_weak_signals():
    weak = SourceSignal(strength=0.1, confidence=0.3, action=Action.BUY)
    flat = SourceSignal(strength=0.0, confidence=0.0, action=Action.HOLD)
    signal = SignalCombiner().generate(weak, flat)
    assert signal.strength == pytest.approx(0.05)
    assert signal.action is Action.HOLD


def test_bearish_consensus_sells():
    trend = SourceSignal(strength=-1.0, confidence=0.8, action=Action.SELL)
    reversion = SourceSignal(strength=-0.5, confidence=0.4, action=Action.SELL)
    assert SignalCombiner().generate(trend, reversion).action is Action.SELL


def test_to_dict_exposes_components():
    trend, reversion = _bullish_rules()
    data = SignalCombiner().generate(
        trend, reversion, predictor=StubPredictor('BUY', 0.8), features=FEATURES,
    ).to_dict()

    assert data['action'] == 'BUY'
    assert data['regime_source'] == 'default'
    assert set(data['components']) == {'trend', 'reversion', 'ml'}
    assert data['ml_active'] is True
    assert data['hmm_active'] is False
    assert data['reasons'][-1].startswith('Combined:')
