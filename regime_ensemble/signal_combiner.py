"""
Regime- and Agreement-Aware Signal Combiner

Fuses the trend source, the mean-reversion source and the optional signal
predictor into one auditable decision.

    1. Regime:    trained HMM belief -> volatility heuristic -> default
    2. Weights:   regime -> {trend, reversion} from CombinerConfig tables
    3. Consensus: weighted sum of the two rule sources
    4. Predictor: weight boosted when it confidently agrees with the
                  consensus, damped when it confidently disagrees, and
                  minimal when it is unsure
    5. Decision:  blend, then dead-zone threshold into BUY / SELL / HOLD

The combiner holds no state. It only reads the snapshots of the detector and
predictor it is handed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from .config import (
    UNKNOWN_REGIME,
    Action,
    CombinerConfig,
    RegimeSource,
    RuleWeights,
)
from .regime_detector import RegimeBelief, detect_heuristic_regime
from .results import Available, capability
from .strategies import SourceSignal

logger = logging.getLogger(__name__)


# =============================================================================
# OUTPUT
# =============================================================================

@dataclass(frozen=True)
class PredictorSignal:
    """Predictor opinion translated to the rule-source scale."""
    strength: float
    confidence: float
    action: Action
    probabilities: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strength': self.strength,
            'confidence': self.confidence,
            'action': self.action.value,
            'probabilities': dict(self.probabilities),
        }


@dataclass(frozen=True)
class CombinedSignal:
    """
    Final decision with its full decomposition.

    Attributes:
        strength: Blended signed strength in [-1, 1]
        confidence: Blended confidence in [0, 1]
        action: Dead-zone thresholded action
        regime: Regime label used for the weight lookup
        regime_source: Where the regime came from
        rule_weights: Trend/reversion weights applied
        rule_strength, rule_confidence: Rule consensus before blending
        effective_ml_weight: Predictor weight after agreement adjustment
        effective_rule_weight: 1 - effective_ml_weight
        trend, reversion, predictor: Sub-signals that took part
        regime_belief: HMM belief when the HMM supplied the regime
        reasons: Human-readable audit trail
    """
    strength: float
    confidence: float
    action: Action
    regime: str
    regime_source: RegimeSource
    rule_weights: RuleWeights
    rule_strength: float
    rule_confidence: float
    effective_ml_weight: float
    effective_rule_weight: float
    trend: SourceSignal
    reversion: SourceSignal
    predictor: Optional[PredictorSignal] = None
    regime_belief: Optional[RegimeBelief] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def ml_active(self) -> bool:
        return self.predictor is not None

    @property
    def hmm_active(self) -> bool:
        return self.regime_source is RegimeSource.HMM

    def to_dict(self) -> Dict[str, Any]:
        components: Dict[str, Any] = {
            'trend': self.trend.to_dict(),
            'reversion': self.reversion.to_dict(),
        }
        if self.predictor is not None:
            components['ml'] = self.predictor.to_dict()
        return {
            'strength': self.strength,
            'confidence': self.confidence,
            'action': self.action.value,
            'regime': self.regime,
            'regime_source': self.regime_source.value,
            'regime_belief': self.regime_belief.to_dict(decimals=None) if self.regime_belief else None,
            'rule_weights': self.rule_weights.to_dict(),
            'rule_strength': self.rule_strength,
            'rule_confidence': self.rule_confidence,
            'effective_ml_weight': self.effective_ml_weight,
            'effective_rule_weight': self.effective_rule_weight,
            'ml_active': self.ml_active,
            'hmm_active': self.hmm_active,
            'components': components,
            'reasons': list(self.reasons),
        }


# =============================================================================
# COMBINER
# =============================================================================

def _direction(strength: float) -> Action:
    if strength > 0:
        return Action.BUY
    if strength < 0:
        return Action.SELL
    return Action.HOLD


class SignalCombiner:
    """
    Stateless ensemble of the rule sources and the signal predictor.

    Example:
        >>> combiner = SignalCombiner()
        >>> signal = combiner.generate(
        ...     momentum.generate_signal(closes),
        ...     reversion.generate_signal(closes),
        ...     closes=closes,
        ...     predictor=network, features=extract_features(window),
        ...     detector=hmm, observations=extract_observations(bars),
        ... )
        >>> signal.action, signal.effective_ml_weight
    """

    def __init__(self, config: Optional[CombinerConfig] = None):
        self.config = config or CombinerConfig()

    # -------------------------------------------------------------------------
    # Regime
    # -------------------------------------------------------------------------

    def resolve_regime(
        self,
        closes: Optional[Sequence[float]],
        detector: Any,
        observations: Any
    ) -> Dict[str, Any]:
        """Walk the fallback ladder and return the regime, its source and weights."""
        cfg = self.config
        source = capability(detector)

        if isinstance(source, Available) and observations is not None and len(observations) > 0:
            belief = source.model.current_regime(observations)
            if not belief.is_unknown:
                weights = (cfg.hmm_weights.get(belief.regime)
                           or cfg.heuristic_weights.get(belief.regime)
                           or cfg.default_weights)
                return {'regime': belief.regime, 'source': RegimeSource.HMM,
                        'weights': weights, 'belief': belief}

        if closes is not None:
            regime = detect_heuristic_regime(closes, cfg.heuristic)
            if regime != UNKNOWN_REGIME:
                weights = cfg.heuristic_weights.get(regime, cfg.default_weights)
                return {'regime': regime, 'source': RegimeSource.HEURISTIC,
                        'weights': weights, 'belief': None}

        return {'regime': UNKNOWN_REGIME, 'source': RegimeSource.DEFAULT,
                'weights': cfg.default_weights, 'belief': None}

    # -------------------------------------------------------------------------
    # Predictor weighting
    # -------------------------------------------------------------------------

    def effective_ml_weight(self, base_weight: float, prediction: PredictorSignal, rule_strength: float) -> float:
        """
        Agreement-aware predictor weight.

        confident and agreeing     min(base * agreement_boost, agreement_cap)
        confident and disagreeing  base * disagreement_damp
        not confident              base * uncertain_scale
        """
        cfg = self.config
        confident = prediction.confidence > cfg.confidence_threshold
        agrees = prediction.action is _direction(rule_strength)
        if confident and agrees:
            return min(base_weight * cfg.agreement_boost, cfg.agreement_cap)
        if confident:
            return base_weight * cfg.disagreement_damp
        return base_weight * cfg.uncertain_scale

    def _predictor_signal(self, predictor: Any, features: Any) -> Optional[PredictorSignal]:
        source = capability(predictor)
        if not isinstance(source, Available) or features is None:
            return None
        prediction = source.model.predict_signal(features)
        return PredictorSignal(
            strength=prediction.strength,
            confidence=prediction.confidence,
            action=prediction.action,
            probabilities=dict(prediction.probabilities),
        )

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    def generate(
        self,
        trend: SourceSignal,
        reversion: SourceSignal,
        closes: Optional[Sequence[float]] = None,
        predictor: Any = None,
        features: Any = None,
        detector: Any = None,
        observations: Any = None,
        ml_weight: Optional[float] = None,
        regime_ml_scale: Optional[Mapping[str, float]] = None
    ) -> CombinedSignal:
        """
        Combine the sources into one decision.

        Args:
            trend: Trend-following source signal
            reversion: Mean-reversion source signal
            closes: Close history for the heuristic regime fallback
            predictor: Signal predictor (model or capability); skipped when
                missing or untrained
            features: FeatureVector for the predictor; None skips the predictor
            detector: Regime detector (model or capability); skipped when
                missing or untrained
            observations: HMM observations up to the decision bar
            ml_weight: Base predictor weight overriding config.ml_weight
            regime_ml_scale: Multipliers on the base predictor weight keyed
                by HMM regime, e.g. {'bear': 0.5}

        Returns:
            CombinedSignal
        """
        cfg = self.config
        base_ml_weight = cfg.ml_weight if ml_weight is None else float(ml_weight)

        resolved = self.resolve_regime(closes, detector, observations)
        regime: str = resolved['regime']
        weights: RuleWeights = resolved['weights']
        belief: Optional[RegimeBelief] = resolved['belief']
        if regime_ml_scale and resolved['source'] is RegimeSource.HMM:
            base_ml_weight *= regime_ml_scale.get(regime, 1.0)

        rule_strength = weights.trend * trend.strength + weights.reversion * reversion.strength
        rule_confidence = weights.trend * trend.confidence + weights.reversion * reversion.confidence

        prediction = self._predictor_signal(predictor, features)
        ml_weight_used = 0.0
        if prediction is not None:
            ml_weight_used = self.effective_ml_weight(base_ml_weight, prediction, rule_strength)
        rule_weight_used = 1.0 - ml_weight_used

        strength = rule_weight_used * rule_strength
        confidence = rule_weight_used * rule_confidence
        if prediction is not None:
            strength += ml_weight_used * prediction.strength
            confidence += ml_weight_used * prediction.confidence
        strength = float(np.clip(strength, -1.0, 1.0))
        confidence = float(np.clip(confidence, 0.0, 1.0))
        action = Action.from_strength(strength, cfg.buy_threshold, cfg.sell_threshold)

        regime_note = f" (HMM conf={belief.confidence:.2f})" if belief is not None else ''
        reasons = [
            f"Regime: {regime}{regime_note} [{resolved['source'].value}] "
            f"(trend: {weights.trend * 100:.0f}%, reversion: {weights.reversion * 100:.0f}%)",
            f"Trend: {trend.action.value} ({trend.confidence:.2f})",
            f"Reversion: {reversion.action.value} ({reversion.confidence:.2f})",
        ]
        if prediction is not None:
            reasons.append(
                f"ML: {prediction.action.value} ({prediction.confidence:.2f}) "
                f"[weight={ml_weight_used * 100:.0f}%]"
            )
        elif predictor is not None:
            reasons.append('ML: unavailable (rules only)')
        reasons.append(f"Combined: {strength:.3f}")

        return CombinedSignal(
            strength=strength,
            confidence=confidence,
            action=action,
            regime=regime,
            regime_source=resolved['source'],
            rule_weights=weights,
            rule_strength=float(rule_strength),
            rule_confidence=float(rule_confidence),
            effective_ml_weight=float(ml_weight_used),
            effective_rule_weight=float(rule_weight_used),
            trend=trend,
            reversion=reversion,
            predictor=prediction,
            regime_belief=belief,
            reasons=reasons,
        )
