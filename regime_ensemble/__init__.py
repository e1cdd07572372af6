"""
Regime-Aware Adaptive Signal Ensemble
=====================================

Trading-signal generation that adapts to latent market regimes.

    RegimeDetector        GaussianHMM over (return, volatility, volume ratio)
    SignalPredictor       NeuralNetwork classifier over a 10-feature vector
    SignalCombiner        regime-weighted, agreement-aware ensemble
    WalkForwardScheduler  expanding-window retraining without lookahead,
                          compared against static baselines
"""

from .config import (
    Action,
    CombinerConfig,
    HeuristicRegimeConfig,
    LabelMode,
    PredictorConfig,
    RegimeDetectorConfig,
    RegimePrior,
    RegimeSource,
    RuleWeights,
    SchedulerConfig,
)
from .execution import ExecutionModel, PaperTrader, PositionSizer, SizingDecision
from .features import extract_features, generate_training_data, TrainingSample
from .regime_detector import (
    GaussianHMM,
    RegimeBelief,
    RegimeModel,
    detect_heuristic_regime,
    extract_observations,
)
from .results import (
    UNAVAILABLE,
    Available,
    ConfigurationError,
    Result,
    Status,
    capability,
)
from .signal_combiner import CombinedSignal, SignalCombiner
from .signal_predictor import NetworkModel, NeuralNetwork, Prediction, balance_samples, walk_forward_cv
from .strategies import BollingerBounceStrategy, MeanReversionStrategy, MomentumStrategy, SourceSignal
from .synthetic import generate_regime_bars
from .walk_forward import (
    ComparisonReport,
    EvaluationRun,
    ModelSlot,
    RetrainEvent,
    WalkForwardScheduler,
    run_multi_session,
)

__version__ = "1.0.0"

__all__ = [
    'Action', 'CombinerConfig', 'HeuristicRegimeConfig', 'LabelMode', 'PredictorConfig',
    'RegimeDetectorConfig', 'RegimePrior', 'RegimeSource', 'RuleWeights', 'SchedulerConfig',
    'ExecutionModel', 'PaperTrader', 'PositionSizer', 'SizingDecision',
    'extract_features', 'generate_training_data', 'TrainingSample',
    'GaussianHMM', 'RegimeBelief', 'RegimeModel', 'detect_heuristic_regime', 'extract_observations',
    'UNAVAILABLE', 'Available', 'ConfigurationError', 'Result', 'Status', 'capability',
    'CombinedSignal', 'SignalCombiner',
    'NetworkModel', 'NeuralNetwork', 'Prediction', 'balance_samples', 'walk_forward_cv',
    'BollingerBounceStrategy', 'MeanReversionStrategy', 'MomentumStrategy', 'SourceSignal',
    'generate_regime_bars',
    'ComparisonReport', 'EvaluationRun', 'ModelSlot', 'RetrainEvent', 'WalkForwardScheduler',
    'run_multi_session',
]
