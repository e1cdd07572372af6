"""
Configuration Module for the Regime-Aware Signal Ensemble

This module centralizes the constants, lookup tables and typed settings used
by the regime detector, the signal predictor, the signal combiner and the
walk-forward scheduler.

All "magic numbers" are defined here so that:
1. Regime priors and weight tables have a single source of truth
2. Experiments can change settings without touching the algorithms
3. Run settings can be persisted alongside results (to_dict/from_dict)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .results import ConfigurationError


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Action(Enum):
    """Trading action emitted by every signal source."""
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"

    @classmethod
    def from_strength(cls, strength: float, buy_threshold: float, sell_threshold: float) -> 'Action':
        """Dead-zone threshold a signed strength into an action."""
        if strength > buy_threshold:
            return cls.BUY
        if strength < sell_threshold:
            return cls.SELL
        return cls.HOLD


class RegimeSource(Enum):
    """Where the combiner's regime label came from."""
    HMM = "hmm"
    HEURISTIC = "heuristic"
    DEFAULT = "default"


class LabelMode(Enum):
    """Labelling scheme for predictor training samples."""
    TERNARY = "ternary"          # BUY / HOLD / SELL
    DIRECTIONAL = "directional"  # UP / DOWN


# =============================================================================
# REGIME VOCABULARY
# =============================================================================

DEFAULT_STATES: Tuple[str, ...] = ('bull', 'bear', 'range_bound', 'high_vol')

UNKNOWN_REGIME: str = 'unknown'

TERNARY_LABELS: Tuple[str, ...] = ('BUY', 'HOLD', 'SELL')
DIRECTIONAL_LABELS: Tuple[str, ...] = ('UP', 'DOWN')
NEUTRAL_LABEL: str = 'HOLD'

# Observation layout: [return, realized volatility, volume ratio]
OBSERVATION_DIM: int = 3


# =============================================================================
# REGIME DETECTOR SETTINGS
# =============================================================================

@dataclass(frozen=True)
class RegimePrior:
    """Initial Gaussian emission parameters for one regime (per dimension)."""
    mean: Tuple[float, ...]
    variance: Tuple[float, ...]


def _default_priors() -> Dict[str, RegimePrior]:
    return {
        'bull': RegimePrior(mean=(0.005, 0.015, 1.0), variance=(0.0001, 0.0001, 0.1)),
        'bear': RegimePrior(mean=(-0.005, 0.025, 1.2), variance=(0.0001, 0.0001, 0.15)),
        'range_bound': RegimePrior(mean=(0.0, 0.01, 0.8), variance=(0.00005, 0.00005, 0.08)),
        'high_vol': RegimePrior(mean=(0.0, 0.04, 1.5), variance=(0.0005, 0.0003, 0.3)),
    }


@dataclass(frozen=True)
class RegimeDetectorConfig:
    """Settings for the Gaussian HMM regime detector."""

    states: Tuple[str, ...] = DEFAULT_STATES
    obs_dim: int = OBSERVATION_DIM
    max_iter: int = 50
    tolerance: float = 1e-4

    # Regimes persist: diagonal of the initial transition matrix
    self_transition: float = 0.7

    min_observations: int = 10
    variance_floor: float = 1e-6
    probability_floor: float = 1e-10

    # Regimes without an entry start at mean 0 / variance 1
    priors: Dict[str, RegimePrior] = field(default_factory=_default_priors)

    # Observation extraction
    vol_window: int = 20

    def __post_init__(self):
        if len(self.states) < 2:
            raise ConfigurationError("An HMM needs at least two regimes")
        if len(set(self.states)) != len(self.states):
            raise ConfigurationError(f"Duplicate regime names: {self.states}")
        if self.obs_dim < 1:
            raise ConfigurationError("obs_dim must be positive")
        if not 0.0 < self.self_transition < 1.0:
            raise ConfigurationError("self_transition must lie in (0, 1)")
        for name, prior in self.priors.items():
            if len(prior.mean) != self.obs_dim or len(prior.variance) != self.obs_dim:
                raise ConfigurationError(
                    f"Prior for '{name}' does not match obs_dim={self.obs_dim}"
                )


@dataclass(frozen=True)
class HeuristicRegimeConfig:
    """Volatility-ratio / return-magnitude fallback regime classifier."""
    short_vol_window: int = 20
    long_vol_window: int = 60
    trend_lookback: int = 30

    high_vol_ratio: float = 1.5
    low_vol_ratio: float = 0.8
    high_vol_trend_return: float = 0.15
    low_vol_range_return: float = 0.05
    trend_return: float = 0.10

    @property
    def min_closes(self) -> int:
        return max(self.long_vol_window, self.trend_lookback) + 1


# =============================================================================
# SIGNAL COMBINER SETTINGS
# =============================================================================

@dataclass(frozen=True)
class RuleWeights:
    """Relative weight of the trend and mean-reversion sources."""
    trend: float
    reversion: float

    def to_dict(self) -> Dict[str, float]:
        return {'trend': self.trend, 'reversion': self.reversion}


def _default_hmm_weights() -> Dict[str, RuleWeights]:
    return {
        'bull': RuleWeights(trend=0.7, reversion=0.3),
        'bear': RuleWeights(trend=0.6, reversion=0.4),
        'range_bound': RuleWeights(trend=0.25, reversion=0.75),
        'high_vol': RuleWeights(trend=0.4, reversion=0.6),
    }


def _default_heuristic_weights() -> Dict[str, RuleWeights]:
    return {
        'trending': RuleWeights(trend=0.7, reversion=0.3),
        'high_vol_trending': RuleWeights(trend=0.7, reversion=0.3),
        'range_bound': RuleWeights(trend=0.3, reversion=0.7),
        'low_vol_range': RuleWeights(trend=0.3, reversion=0.7),
    }


@dataclass(frozen=True)
class CombinerConfig:
    """
    Settings for the regime- and agreement-aware signal combiner.

    The agreement multipliers are empirical defaults, not derived values.
    """

    hmm_weights: Dict[str, RuleWeights] = field(default_factory=_default_hmm_weights)
    heuristic_weights: Dict[str, RuleWeights] = field(default_factory=_default_heuristic_weights)
    default_weights: RuleWeights = RuleWeights(trend=0.5, reversion=0.5)

    # Predictor influence
    ml_weight: float = 0.3
    confidence_threshold: float = 0.55
    agreement_boost: float = 1.5
    agreement_cap: float = 0.5
    disagreement_damp: float = 0.7
    uncertain_scale: float = 0.3

    # Dead zone on the final strength
    buy_threshold: float = 0.15
    sell_threshold: float = -0.15

    heuristic: HeuristicRegimeConfig = HeuristicRegimeConfig()

    def __post_init__(self):
        if not 0.0 <= self.ml_weight <= 1.0:
            raise ConfigurationError("ml_weight must lie in [0, 1]")
        if self.sell_threshold > self.buy_threshold:
            raise ConfigurationError("sell_threshold must not exceed buy_threshold")


# =============================================================================
# SIGNAL PREDICTOR SETTINGS
# =============================================================================

NUM_FEATURES: int = 10


@dataclass(frozen=True)
class PredictorConfig:
    """Settings for the feed-forward signal predictor."""
    layers: Tuple[int, ...] = (NUM_FEATURES, 16, 8, len(TERNARY_LABELS))
    learning_rate: float = 0.01
    epochs: int = 50
    shuffle: bool = True

    # Numerical guards
    preactivation_clip: float = 500.0
    probability_floor: float = 1e-15


# =============================================================================
# WALK-FORWARD SCHEDULER SETTINGS
# =============================================================================

@dataclass(frozen=True)
class SchedulerConfig:
    """Settings for the expanding-window walk-forward evaluation."""

    # Predictor architecture and training
    layers: Tuple[int, ...] = (NUM_FEATURES, 16, 8, len(TERNARY_LABELS))
    learning_rate: float = 0.01
    epochs: int = 80
    phase1_fraction: float = 0.6
    fine_tune_lr_scale: float = 0.3

    # Labelling
    horizon: int = 5
    buy_threshold: float = 0.02
    sell_threshold: float = -0.02
    lookback: int = 30

    # Retraining
    retrain_interval: int = 60
    min_train_samples: int = 100
    min_retrain_samples: int = 20

    # Ensemble
    ml_weight: float = 0.3
    use_hmm: bool = True
    regime_ml_scale: Dict[str, float] = field(
        default_factory=lambda: {'high_vol': 0.5, 'bear': 0.5}
    )

    # Position management
    initial_balance: float = 100000.0
    trailing_stop: float = 0.15
    take_profit: float = 0.25
    min_entry_confidence: float = 0.05
    max_position_pct: float = 0.25
    kelly_fraction: float = 0.33

    # Execution costs
    slippage_bps: float = 5.0
    commission_bps: float = 10.0

    seed: Optional[int] = 42

    def __post_init__(self):
        if self.horizon < 1:
            raise ConfigurationError("horizon must be at least one bar")
        if self.retrain_interval < 1:
            raise ConfigurationError("retrain_interval must be at least one bar")
        if not 0.0 < self.phase1_fraction <= 1.0:
            raise ConfigurationError("phase1_fraction must lie in (0, 1]")
        if len(self.layers) < 2:
            raise ConfigurationError("layers needs an input and an output size")

    @property
    def warmup(self) -> int:
        """Bars needed before features and indicators are defined."""
        return max(self.lookback + 26, 60)

    @property
    def min_history(self) -> int:
        return self.warmup + self.min_train_samples + self.horizon

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['layers'] = list(self.layers)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SchedulerConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown scheduler settings: {sorted(unknown)}")
        kwargs = dict(data)
        if 'layers' in kwargs:
            kwargs['layers'] = tuple(kwargs['layers'])
        return cls(**kwargs)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def default_class_labels(n_outputs: int) -> Tuple[str, ...]:
    """
    Class labels implied by the size of the output layer.

    Args:
        n_outputs: Number of output units

    Returns:
        UP/DOWN for two outputs, BUY/HOLD/SELL for three
    """
    if n_outputs == len(DIRECTIONAL_LABELS):
        return DIRECTIONAL_LABELS
    if n_outputs == len(TERNARY_LABELS):
        return TERNARY_LABELS
    raise ConfigurationError(
        f"No default labels for {n_outputs} outputs; pass class_labels explicitly"
    )


def label_to_action(label: str) -> Action:
    """Map a predictor class label onto a trading action."""
    mapping: Dict[str, Action] = {
        'BUY': Action.BUY,
        'UP': Action.BUY,
        'SELL': Action.SELL,
        'DOWN': Action.SELL,
    }
    return mapping.get(label.upper(), Action.HOLD)
