"""
Short-Horizon Signal Predictor

A small fully connected network that maps a FeatureVector to a probability
distribution over trading classes (UP/DOWN or BUY/HOLD/SELL).

    hidden layers:  sigmoid
    output layer:   softmax
    loss:           cross-entropy, so the output error is simply output - target
    init:           Xavier uniform, zero biases

Parameters are held in an immutable NetworkModel snapshot. Every training
call works on private copies and publishes exactly one new snapshot when it
finishes, so inference running alongside a retrain always sees a complete
parameter set.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import (
    NEUTRAL_LABEL,
    Action,
    PredictorConfig,
    default_class_labels,
    label_to_action,
)
from .features import TrainingSample
from .results import ConfigurationError, Result, Status, StopCheck

logger = logging.getLogger(__name__)

SampleLike = Union[TrainingSample, Tuple[Sequence[float], Sequence[float]]]
SeedLike = Union[None, int, np.random.Generator]


# =============================================================================
# DATA STRUCTURES
# =============================================================================

def _frozen(array: Any) -> np.ndarray:
    out = np.array(array, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class NetworkModel:
    """
    Immutable network parameter snapshot.

    weights[l] has shape (layers[l + 1], layers[l]); biases[l] has shape
    (layers[l + 1],).
    """
    layers: Tuple[int, ...]
    weights: Tuple[np.ndarray, ...]
    biases: Tuple[np.ndarray, ...]
    class_labels: Tuple[str, ...]
    trained: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'layers', tuple(int(n) for n in self.layers))
        object.__setattr__(self, 'weights', tuple(_frozen(w) for w in self.weights))
        object.__setattr__(self, 'biases', tuple(_frozen(b) for b in self.biases))
        object.__setattr__(self, 'class_labels', tuple(self.class_labels))

        if len(self.weights) != len(self.layers) - 1 or len(self.biases) != len(self.layers) - 1:
            raise ConfigurationError(
                f"Expected {len(self.layers) - 1} weight/bias pairs for layers {self.layers}"
            )
        for l, (w, b) in enumerate(zip(self.weights, self.biases)):
            expected = (self.layers[l + 1], self.layers[l])
            if w.shape != expected or b.shape != (self.layers[l + 1],):
                raise ConfigurationError(
                    f"Layer {l}: weights {w.shape} / biases {b.shape}, expected {expected}"
                )
        if len(self.class_labels) != self.layers[-1]:
            raise ConfigurationError(
                f"{len(self.class_labels)} class labels for {self.layers[-1]} outputs"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'layers': list(self.layers),
            'weights': [w.tolist() for w in self.weights],
            'biases': [b.tolist() for b in self.biases],
            'class_labels': list(self.class_labels),
            'trained': self.trained,
        }


@dataclass(frozen=True)
class Prediction:
    """Labelled output of one forward pass."""
    label: str
    confidence: float
    probabilities: Dict[str, float]

    @property
    def action(self) -> Action:
        return label_to_action(self.label)

    @property
    def strength(self) -> float:
        """Signed directional strength: P(buy side) - P(sell side), in [-1, 1]."""
        buy = sum(p for k, p in self.probabilities.items() if label_to_action(k) is Action.BUY)
        sell = sum(p for k, p in self.probabilities.items() if label_to_action(k) is Action.SELL)
        return float(np.clip(buy - sell, -1.0, 1.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'action': self.action.value,
            'confidence': self.confidence,
            'strength': self.strength,
            'probabilities': dict(self.probabilities),
        }


@dataclass(frozen=True)
class EpochStats:
    epoch: int
    loss: float
    accuracy: float


@dataclass(frozen=True)
class TrainingHistory:
    """Per-epoch loss/accuracy of one training call."""
    epochs: Tuple[EpochStats, ...]
    n_samples: int
    balanced: bool

    @property
    def final_loss(self) -> float:
        return self.epochs[-1].loss if self.epochs else float('nan')

    @property
    def final_accuracy(self) -> float:
        return self.epochs[-1].accuracy if self.epochs else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'n_samples': self.n_samples,
            'balanced': self.balanced,
            'epochs': [asdict(e) for e in self.epochs],
        }


@dataclass(frozen=True)
class ClassMetrics:
    precision: float
    recall: float
    f1: float
    support: int


@dataclass(frozen=True)
class EvaluationReport:
    """
    Classification quality on a labelled sample set.

    directional_accuracy is the accuracy over predictions that are not the
    neutral class; a model that only ever predicts HOLD scores 0 here.
    """
    accuracy: float
    loss: float
    correct: int
    total: int
    confusion: Dict[str, Dict[str, int]]
    per_class: Dict[str, ClassMetrics]
    directional_accuracy: float
    actionable_predictions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accuracy': self.accuracy,
            'loss': self.loss,
            'correct': self.correct,
            'total': self.total,
            'confusion': {k: dict(v) for k, v in self.confusion.items()},
            'per_class': {k: asdict(v) for k, v in self.per_class.items()},
            'directional_accuracy': self.directional_accuracy,
            'actionable_predictions': self.actionable_predictions,
        }


# =============================================================================
# SAMPLE HELPERS
# =============================================================================

def _unpack(sample: SampleLike) -> Tuple[np.ndarray, np.ndarray]:
    if isinstance(sample, TrainingSample):
        return np.asarray(sample.features, dtype=float), np.asarray(sample.target, dtype=float)
    features, target = sample
    return np.asarray(features, dtype=float), np.asarray(target, dtype=float)


def _class_index(sample: SampleLike) -> int:
    return int(np.argmax(_unpack(sample)[1]))


def balance_samples(samples: Sequence[SampleLike], seed: SeedLike = None) -> List[SampleLike]:
    """
    Oversample minority classes up to the size of the largest class.

    Pure resampling stage: the input is never modified, every original
    sample is kept once, and minority classes are topped up by drawing with
    replacement. Passing the same integer seed reproduces the same output.

    Args:
        samples: Labelled samples (TrainingSample or (features, target))
        seed: Integer seed or a numpy Generator

    Returns:
        New list grouped by class index
    """
    if not samples:
        return []
    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)

    groups: Dict[int, List[SampleLike]] = {}
    for sample in samples:
        groups.setdefault(_class_index(sample), []).append(sample)
    largest = max(len(g) for g in groups.values())

    balanced: List[SampleLike] = []
    for cls in sorted(groups):
        group = groups[cls]
        balanced.extend(group)
        shortfall = largest - len(group)
        if shortfall > 0:
            picks = rng.integers(0, len(group), size=shortfall)
            balanced.extend(group[i] for i in picks)
    return balanced


# =============================================================================
# NEURAL NETWORK
# =============================================================================

class NeuralNetwork:
    """
    Feed-forward classifier trained by per-sample backpropagation.

    Args:
        layers: Layer sizes, input first, e.g. (10, 16, 8, 3)
        learning_rate: Step size for every parameter update
        class_labels: Output labels; defaults to UP/DOWN for two outputs
            and BUY/HOLD/SELL for three
        seed: Seed for initialization and shuffling
        config: Numerical guards and epoch defaults
    """

    def __init__(
        self,
        layers: Optional[Sequence[int]] = None,
        learning_rate: Optional[float] = None,
        class_labels: Optional[Sequence[str]] = None,
        seed: SeedLike = None,
        config: Optional[PredictorConfig] = None
    ):
        self.config = config or PredictorConfig()
        layers = tuple(layers if layers is not None else self.config.layers)
        if len(layers) < 2 or any(int(n) < 1 for n in layers):
            raise ConfigurationError(f"Invalid layer sizes: {layers}")
        labels = tuple(class_labels) if class_labels is not None else default_class_labels(layers[-1])

        self.learning_rate = float(learning_rate if learning_rate is not None else self.config.learning_rate)
        self._rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)

        weights = []
        biases = []
        for fan_in, fan_out in zip(layers[:-1], layers[1:]):
            scale = np.sqrt(2.0 / (fan_in + fan_out))
            weights.append(self._rng.uniform(-1.0, 1.0, size=(fan_out, fan_in)) * scale)
            biases.append(np.zeros(fan_out))

        self._model = NetworkModel(
            layers=layers,
            weights=tuple(weights),
            biases=tuple(biases),
            class_labels=labels,
        )

    # -------------------------------------------------------------------------
    # Snapshot access
    # -------------------------------------------------------------------------

    @property
    def model(self) -> NetworkModel:
        return self._model

    @property
    def trained(self) -> bool:
        return self._model.trained

    @property
    def layers(self) -> Tuple[int, ...]:
        return self._model.layers

    @property
    def class_labels(self) -> Tuple[str, ...]:
        return self._model.class_labels

    @property
    def input_size(self) -> int:
        return self._model.layers[0]

    # -------------------------------------------------------------------------
    # Forward pass
    # -------------------------------------------------------------------------

    def _check_input(self, features: Any, size: int) -> np.ndarray:
        x = np.asarray(features, dtype=float).ravel()
        if x.shape[0] != size:
            raise ConfigurationError(f"Feature length {x.shape[0]} != input layer size {size}")
        return np.nan_to_num(x, nan=0.0, posinf=1.0, neginf=0.0)

    def _forward(
        self,
        weights: Sequence[np.ndarray],
        biases: Sequence[np.ndarray],
        x: np.ndarray
    ) -> List[np.ndarray]:
        """Activations of every layer, input included."""
        clip = self.config.preactivation_clip
        activations = [x]
        current = x
        last = len(weights) - 1
        for l, (w, b) in enumerate(zip(weights, biases)):
            z = np.clip(w @ current + b, -clip, clip)
            if l == last:
                e = np.exp(z - z.max())
                current = e / e.sum()
            else:
                current = 1.0 / (1.0 + np.exp(-z))
            activations.append(current)
        return activations

    def predict(self, features: Any) -> np.ndarray:
        """Class probability vector (sums to 1) for one FeatureVector."""
        model = self._model
        x = self._check_input(features, model.layers[0])
        return self._forward(model.weights, model.biases, x)[-1].copy()

    def predict_signal(self, features: Any) -> Prediction:
        """Arg-max label, its probability and the full labelled distribution."""
        model = self._model
        x = self._check_input(features, model.layers[0])
        probs = self._forward(model.weights, model.biases, x)[-1]
        best = int(np.argmax(probs))
        return Prediction(
            label=model.class_labels[best],
            confidence=float(probs[best]),
            probabilities={label: float(p) for label, p in zip(model.class_labels, probs)},
        )

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def _step(
        self,
        weights: List[np.ndarray],
        biases: List[np.ndarray],
        x: np.ndarray,
        target: np.ndarray,
        learning_rate: float
    ) -> Tuple[float, int]:
        """
        One backpropagation step on private parameter copies.

        Returns:
            (cross-entropy loss, predicted class index before the update)
        """
        activations = self._forward(weights, biases, x)
        output = activations[-1]
        delta = output - target

        for l in range(len(weights) - 1, -1, -1):
            prev = activations[l]
            # Error for the layer below uses the pre-update weights
            back = weights[l].T @ delta if l > 0 else None
            biases[l] -= learning_rate * delta
            weights[l] -= learning_rate * np.outer(delta, prev)
            if back is not None:
                delta = back * prev * (1.0 - prev)

        mask = target > 0
        loss = -float(np.sum(target[mask] * np.log(np.maximum(output[mask], self.config.probability_floor))))
        return loss, int(np.argmax(output))

    def _working_copies(self) -> Tuple[NetworkModel, List[np.ndarray], List[np.ndarray]]:
        model = self._model
        return model, [w.copy() for w in model.weights], [b.copy() for b in model.biases]

    def _publish(self, base: NetworkModel, weights, biases, trained: bool) -> None:
        self._model = NetworkModel(
            layers=base.layers,
            weights=tuple(weights),
            biases=tuple(biases),
            class_labels=base.class_labels,
            trained=trained,
        )

    def _check_target(self, target: Any, size: int) -> np.ndarray:
        t = np.asarray(target, dtype=float).ravel()
        if t.shape[0] != size:
            raise ConfigurationError(f"Target length {t.shape[0]} != output layer size {size}")
        return t

    def train_sample(self, features: Any, target: Any) -> float:
        """
        Single backpropagation step.

        Publishes the updated parameters but does not mark the network as
        trained. Returns the cross-entropy loss of the pre-update output.
        """
        base, weights, biases = self._working_copies()
        x = self._check_input(features, base.layers[0])
        t = self._check_target(target, base.layers[-1])
        loss, _ = self._step(weights, biases, x, t, self.learning_rate)
        self._publish(base, weights, biases, trained=base.trained)
        return loss

    def _run_epochs(
        self,
        samples: Sequence[SampleLike],
        epochs: int,
        shuffle: bool,
        balanced: bool,
        should_stop: Optional[StopCheck],
        on_epoch: Optional[Callable[[EpochStats], None]]
    ) -> Result[TrainingHistory]:
        if not samples:
            return Result.failure(Status.INSUFFICIENT_DATA, "No training samples")

        base, weights, biases = self._working_copies()
        unpacked = [
            (self._check_input(f, base.layers[0]), self._check_target(t, base.layers[-1]))
            for f, t in (_unpack(s) for s in samples)
        ]
        learning_rate = self.learning_rate
        history: List[EpochStats] = []

        for epoch in range(1, epochs + 1):
            if should_stop is not None and should_stop():
                logger.info(f"Training cancelled after {epoch - 1} epochs")
                return Result.failure(Status.CANCELLED, f"Cancelled after {epoch - 1} epochs")

            epoch_data = balance_samples(unpacked, self._rng) if balanced else unpacked
            order = self._rng.permutation(len(epoch_data)) if shuffle else range(len(epoch_data))

            total_loss = 0.0
            correct = 0
            for idx in order:
                x, t = epoch_data[idx]
                loss, predicted = self._step(weights, biases, x, t, learning_rate)
                total_loss += loss
                correct += int(predicted == int(np.argmax(t)))

            stats = EpochStats(
                epoch=epoch,
                loss=total_loss / len(epoch_data),
                accuracy=correct / len(epoch_data),
            )
            history.append(stats)
            logger.debug(f"Epoch {epoch}/{epochs}: loss={stats.loss:.4f} acc={stats.accuracy:.3f}")
            if on_epoch is not None:
                on_epoch(stats)

        self._publish(base, weights, biases, trained=True)
        return Result.success(TrainingHistory(
            epochs=tuple(history),
            n_samples=len(samples),
            balanced=balanced,
        ))

    def train(
        self,
        samples: Sequence[SampleLike],
        epochs: Optional[int] = None,
        shuffle: bool = True,
        should_stop: Optional[StopCheck] = None,
        on_epoch: Optional[Callable[[EpochStats], None]] = None
    ) -> Result[TrainingHistory]:
        """
        Train for a number of epochs over the samples as given.

        Epoch accuracy counts the prediction made before each update.
        Returns INSUFFICIENT_DATA for an empty sample set.
        """
        return self._run_epochs(
            samples, epochs if epochs is not None else self.config.epochs,
            shuffle, False, should_stop, on_epoch,
        )

    def train_balanced(
        self,
        samples: Sequence[SampleLike],
        epochs: Optional[int] = None,
        shuffle: bool = True,
        should_stop: Optional[StopCheck] = None,
        on_epoch: Optional[Callable[[EpochStats], None]] = None
    ) -> Result[TrainingHistory]:
        """
        Train with minority classes oversampled afresh every epoch.

        Directional market labels are rarely balanced; without resampling a
        network can settle on always predicting the majority class.
        """
        return self._run_epochs(
            samples, epochs if epochs is not None else self.config.epochs,
            shuffle, True, should_stop, on_epoch,
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, samples: Sequence[SampleLike]) -> Result[EvaluationReport]:
        """Accuracy, loss, confusion matrix and per-class precision/recall/F1."""
        if not samples:
            return Result.failure(Status.INSUFFICIENT_DATA, "No evaluation samples")

        model = self._model
        labels = model.class_labels
        n = len(labels)
        confusion = np.zeros((n, n), dtype=int)
        total_loss = 0.0
        floor = self.config.probability_floor

        for sample in samples:
            features, target = _unpack(sample)
            x = self._check_input(features, model.layers[0])
            t = self._check_target(target, n)
            probs = self._forward(model.weights, model.biases, x)[-1]
            confusion[int(np.argmax(t)), int(np.argmax(probs))] += 1
            mask = t > 0
            total_loss -= float(np.sum(t[mask] * np.log(np.maximum(probs[mask], floor))))

        total = int(confusion.sum())
        correct = int(np.trace(confusion))

        per_class: Dict[str, ClassMetrics] = {}
        for i, label in enumerate(labels):
            tp = confusion[i, i]
            predicted = confusion[:, i].sum()
            actual = confusion[i, :].sum()
            precision = tp / predicted if predicted > 0 else 0.0
            recall = tp / actual if actual > 0 else 0.0
            f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
            per_class[label] = ClassMetrics(float(precision), float(recall), float(f1), int(actual))

        actionable = [i for i, label in enumerate(labels) if label != NEUTRAL_LABEL]
        actionable_predictions = int(confusion[:, actionable].sum())
        actionable_correct = int(sum(confusion[i, i] for i in actionable))
        directional = actionable_correct / actionable_predictions if actionable_predictions > 0 else 0.0

        report = EvaluationReport(
            accuracy=correct / total,
            loss=total_loss / total,
            correct=correct,
            total=total,
            confusion={
                labels[i]: {labels[j]: int(confusion[i, j]) for j in range(n)}
                for i in range(n)
            },
            per_class=per_class,
            directional_accuracy=float(directional),
            actionable_predictions=actionable_predictions,
        )
        return Result.success(report)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        data = self._model.to_dict()
        data['learning_rate'] = self.learning_rate
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NeuralNetwork':
        missing = [k for k in ('layers', 'weights', 'biases') if k not in data]
        if missing:
            raise ConfigurationError(f"Serialized network is missing {missing}")
        layers = tuple(int(n) for n in data['layers'])
        nn = cls(
            layers=layers,
            learning_rate=data.get('learning_rate'),
            class_labels=data.get('class_labels'),
        )
        nn._model = NetworkModel(
            layers=layers,
            weights=tuple(np.asarray(w, dtype=float) for w in data['weights']),
            biases=tuple(np.asarray(b, dtype=float) for b in data['biases']),
            class_labels=nn.class_labels,
            trained=bool(data.get('trained', False)),
        )
        return nn


# =============================================================================
# WALK-FORWARD CROSS-VALIDATION
# =============================================================================

@dataclass(frozen=True)
class FoldResult:
    fold: int
    train_size: int
    val_size: int
    accuracy: float
    loss: float
    directional_accuracy: float


@dataclass(frozen=True)
class CrossValidationReport:
    folds: Tuple[FoldResult, ...]
    avg_accuracy: float
    avg_loss: float
    total_samples: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'folds': [asdict(f) for f in self.folds],
            'avg_accuracy': self.avg_accuracy,
            'avg_loss': self.avg_loss,
            'total_samples': self.total_samples,
        }


def walk_forward_cv(
    samples: Sequence[SampleLike],
    folds: int = 5,
    layers: Optional[Sequence[int]] = None,
    learning_rate: Optional[float] = None,
    epochs: int = 50,
    balanced: bool = False,
    seed: Optional[int] = None
) -> Result[CrossValidationReport]:
    """
    Expanding-window cross-validation of the predictor.

    The chronologically ordered samples are cut into folds + 1 equal blocks;
    fold k trains a fresh network on blocks 0..k and validates on block k+1.

    Returns INSUFFICIENT_DATA with fewer than 10 samples per fold.
    """
    n = len(samples)
    if folds < 1:
        raise ConfigurationError("folds must be positive")
    if n < folds * 10:
        return Result.failure(
            Status.INSUFFICIENT_DATA,
            f"Insufficient data for {folds}-fold CV: {n} samples",
        )

    fold_size = n // (folds + 1)
    rng = np.random.default_rng(seed)
    results: List[FoldResult] = []

    for fold in range(folds):
        train_end = (fold + 1) * fold_size
        val_end = min(train_end + fold_size, n)
        train_set = samples[:train_end]
        val_set = samples[train_end:val_end]
        if len(train_set) < 5 or len(val_set) < 3:
            continue

        network = NeuralNetwork(layers=layers, learning_rate=learning_rate, seed=rng)
        if balanced:
            network.train_balanced(train_set, epochs=epochs)
        else:
            network.train(train_set, epochs=epochs)
        report = network.evaluate(val_set).unwrap()
        results.append(FoldResult(
            fold=fold + 1,
            train_size=len(train_set),
            val_size=len(val_set),
            accuracy=report.accuracy,
            loss=report.loss,
            directional_accuracy=report.directional_accuracy,
        ))
        logger.debug(f"CV fold {fold + 1}: acc={report.accuracy:.3f} loss={report.loss:.4f}")

    if not results:
        return Result.failure(Status.INSUFFICIENT_DATA, "No fold had enough samples")

    return Result.success(CrossValidationReport(
        folds=tuple(results),
        avg_accuracy=float(np.mean([f.accuracy for f in results])),
        avg_loss=float(np.mean([f.loss for f in results])),
        total_samples=n,
    ))
