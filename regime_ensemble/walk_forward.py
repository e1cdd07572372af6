"""
Walk-Forward Scheduler
======================

Expanding-window simulation of the adaptive ensemble against static
baselines on identical bars.

ARCHITECTURE
------------
    ModelSlot           lock-guarded single reference to the current
                        (predictor, detector) bundle; background retrains
                        publish through it
    EvaluationRun       ordered equity curve and summary of one strategy,
                        appended bar by bar and finalized exactly once
    WalkForwardScheduler
        evaluate(bars)  adaptive run + rules-only, Bollinger-conservative and
                        7-bar momentum baselines -> ComparisonReport

NO LOOKAHEAD
------------
A retrain at bar T sees only bars[:T - horizon]. Every sample in that window
is labelled from a close inside the window, so the latest label used lies
strictly before T - horizon. Each attempt is logged as a RetrainEvent
carrying that bound.

POSITION MANAGEMENT (per bar)
-----------------------------
    1. Mark to market
    2. Trailing stop: exit fully when price is trailing_stop below the peak
    3. Take profit: sell half once price is take_profit above entry
    4. BUY when flat and confidence > min_entry_confidence, sized by the sizer
    5. SELL exits fully
All fills go through the execution model.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

import numpy as np
import pandas as pd

from .config import (
    Action,
    CombinerConfig,
    RegimeDetectorConfig,
    SchedulerConfig,
)
from .execution import (
    ExecutionModel,
    PaperTrader,
    PositionSizer,
    execute_buy,
    execute_sell,
)
from .features import extract_features, generate_training_data, validate_bars
from .metrics import summarize_run
from .regime_detector import GaussianHMM, extract_observations
from .results import Result, Status, StopCheck
from .signal_combiner import SignalCombiner
from .signal_predictor import NeuralNetwork
from .strategies import BollingerBounceStrategy, MeanReversionStrategy, MomentumStrategy
from .synthetic import generate_regime_bars

logger = logging.getLogger(__name__)

T = TypeVar('T')


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """Simulation constants."""

    SYMBOL: str = 'asset'

    # Rule sources inside the ensembles
    MOMENTUM_LOOKBACK: int = 7
    MOMENTUM_TARGET_RISK: float = 0.015
    REVERSION_ENTRY_Z: float = 1.5
    REVERSION_EXIT_Z: float = 0.3

    # HMM
    HMM_VOL_WINDOW: int = 20
    MIN_HMM_OBSERVATIONS: int = 50
    REGIME_FILTER_WINDOW: int = 250

    # Baseline names
    RULES_ONLY: str = 'rules_only'
    BOLLINGER_CONSERVATIVE: str = 'bollinger_conservative'
    MOMENTUM_7D: str = 'momentum_7d'

    DECIMALS: int = 2


# =============================================================================
# MODEL PUBLICATION
# =============================================================================

@dataclass(frozen=True)
class ModelBundle:
    """Predictor and detector trained together at one retrain."""
    predictor: Optional[NeuralNetwork]
    detector: Optional[GaussianHMM]
    trained_at_bar: int


class ModelSlot(Generic[T]):
    """
    Single published reference to the current model.

    Readers call get() and keep using whatever they received; writers replace
    the reference under a lock. A reader never sees a half-built model
    because models are immutable snapshots.
    """

    def __init__(self, initial: Optional[T] = None):
        self._lock = threading.Lock()
        self._value = initial
        self._version = 0

    def get(self) -> Optional[T]:
        with self._lock:
            return self._value

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def publish(self, value: T) -> None:
        with self._lock:
            self._value = value
            self._version += 1

    def submit_retrain(self, executor: Executor, fn: Callable[..., Optional[T]], *args: Any) -> Future:
        """
        Run `fn(*args)` on `executor` and publish its non-None result.

        Decisions keep reading the previous value until the new one lands.
        Publication happens before the future resolves, so a caller waiting
        on the future sees the new value. A failed retrain publishes nothing
        and its exception is raised from future.result().
        """
        def job() -> Optional[T]:
            value = fn(*args)
            if value is not None:
                self.publish(value)
            return value

        return executor.submit(job)


# =============================================================================
# RUN RECORDS
# =============================================================================

@dataclass(frozen=True)
class RetrainEvent:
    """
    One retrain attempt.

    Attributes:
        bar_index: Decision bar at which the retrain happened
        timestamp: Timestamp of that bar
        n_samples: Labelled samples in the training window
        max_label_bar: Latest bar any training label depends on (-1 if none)
        published: Whether a new model replaced the previous one
        reason: Why an attempt did not publish
    """
    bar_index: int
    timestamp: Any
    n_samples: int
    max_label_bar: int
    published: bool
    hmm_trained: bool = False
    reason: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bar_index': self.bar_index,
            'timestamp': str(self.timestamp),
            'n_samples': self.n_samples,
            'max_label_bar': self.max_label_bar,
            'published': self.published,
            'hmm_trained': self.hmm_trained,
            'reason': self.reason,
        }


@dataclass
class EvaluationRun:
    """
    Equity curve and summary of one strategy.

    Bars are appended in order while the run is open; finalize() computes
    the summary once and closes the run.
    """
    name: str
    initial_balance: float
    equity_curve: List[float] = field(default_factory=list)
    retrain_bars: List[int] = field(default_factory=list)
    retrain_timestamps: List[Any] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    _finalized: bool = field(default=False, repr=False)

    def __post_init__(self):
        if not self.equity_curve:
            self.equity_curve.append(float(self.initial_balance))

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def retrain_count(self) -> int:
        return len(self.retrain_bars)

    def append(self, equity: float) -> None:
        if self._finalized:
            raise RuntimeError(f"Run '{self.name}' is already finalized")
        self.equity_curve.append(float(equity))

    def record_retrain(self, bar_index: int, timestamp: Any) -> None:
        if self._finalized:
            raise RuntimeError(f"Run '{self.name}' is already finalized")
        self.retrain_bars.append(bar_index)
        self.retrain_timestamps.append(timestamp)

    def finalize(self, trader: PaperTrader, execution: Optional[ExecutionModel]) -> Dict[str, Any]:
        if self._finalized:
            raise RuntimeError(f"Run '{self.name}' is already finalized")
        pnls = [t.pnl for t in trader.closed_trades if t.pnl is not None]
        self.summary = summarize_run(
            self.equity_curve,
            pnls,
            initial_balance=self.initial_balance,
            final_cash=trader.cash,
            execution_costs=execution.total_costs if execution is not None else 0.0,
        )
        self._finalized = True
        return self.summary

    @property
    def sharpe_ratio(self) -> float:
        return float(self.summary.get('sharpe_ratio', 0.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'summary': dict(self.summary),
            'retrain_count': self.retrain_count,
            'retrain_bars': list(self.retrain_bars),
            'retrain_timestamps': [str(t) for t in self.retrain_timestamps],
            'equity_curve': list(self.equity_curve),
        }


@dataclass
class ComparisonReport:
    """Adaptive run against the baselines on the same bars."""
    adaptive: EvaluationRun
    baselines: Dict[str, EvaluationRun]
    retrain_events: List[RetrainEvent] = field(default_factory=list)
    hmm: Optional[Dict[str, Any]] = None

    @property
    def sharpe_by_strategy(self) -> Dict[str, float]:
        sharpes = {self.adaptive.name: self.adaptive.sharpe_ratio}
        sharpes.update({name: run.sharpe_ratio for name, run in self.baselines.items()})
        return sharpes

    @property
    def beats(self) -> Dict[str, bool]:
        return {name: self.adaptive.sharpe_ratio > run.sharpe_ratio for name, run in self.baselines.items()}

    @property
    def improvement_vs_rules_pct(self) -> float:
        rules = self.baselines.get(Config.RULES_ONLY)
        if rules is None or rules.sharpe_ratio == 0:
            return 0.0
        return (self.adaptive.sharpe_ratio - rules.sharpe_ratio) / abs(rules.sharpe_ratio) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        comparison: Dict[str, Any] = {
            f"{name}_sharpe": sharpe for name, sharpe in self.sharpe_by_strategy.items()
        }
        comparison.update({f"beats_{name}": won for name, won in self.beats.items()})
        comparison['improvement_vs_rules_pct'] = round(self.improvement_vs_rules_pct, Config.DECIMALS)
        return {
            'adaptive': self.adaptive.to_dict(),
            'baselines': {name: run.to_dict() for name, run in self.baselines.items()},
            'comparison': comparison,
            'hmm': self.hmm,
            'retrain_log': [event.to_dict() for event in self.retrain_events],
        }


# =============================================================================
# HELPERS
# =============================================================================

Decision = Tuple[Action, float]
Decide = Callable[[int], Decision]


def _timestamp(bars: pd.DataFrame, i: int) -> Any:
    if 'timestamp' in bars.columns:
        return bars['timestamp'].iloc[i]
    return bars.index[i]


def _bar_seed(seed: Optional[int], bar_index: int) -> Optional[List[int]]:
    return None if seed is None else [seed, bar_index]


# =============================================================================
# SCHEDULER
# =============================================================================

class WalkForwardScheduler:
    """
    Expanding-window evaluation of the adaptive ensemble.

    Example:
        >>> scheduler = WalkForwardScheduler(SchedulerConfig(epochs=20))
        >>> result = scheduler.evaluate(generate_regime_bars(500, seed=7))
        >>> if result.ok:
        ...     print(result.value.to_dict()['comparison'])
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        trader_factory: Optional[Callable[[float], PaperTrader]] = None,
        sizer: Optional[PositionSizer] = None,
        execution_factory: Optional[Callable[[], Optional[ExecutionModel]]] = None,
        combiner_config: Optional[CombinerConfig] = None,
        detector_config: Optional[RegimeDetectorConfig] = None,
        executor: Optional[Executor] = None
    ):
        self.config = config or SchedulerConfig()
        cfg = self.config
        self.trader_factory = trader_factory or (
            lambda balance: PaperTrader(initial_balance=balance, max_position_pct=cfg.max_position_pct)
        )
        self.sizer = sizer or PositionSizer(max_position_pct=cfg.max_position_pct, kelly_fraction=cfg.kelly_fraction)
        self.execution_factory = execution_factory or self._default_execution
        self.combiner = SignalCombiner(combiner_config)
        self.detector_config = detector_config or RegimeDetectorConfig()
        self.executor = executor

        self.momentum = MomentumStrategy(lookback=Config.MOMENTUM_LOOKBACK, target_risk=Config.MOMENTUM_TARGET_RISK)
        self.reversion = MeanReversionStrategy(
            entry_zscore=Config.REVERSION_ENTRY_Z, exit_zscore=Config.REVERSION_EXIT_Z,
        )

    def _default_execution(self) -> Optional[ExecutionModel]:
        cfg = self.config
        if cfg.slippage_bps == 0 and cfg.commission_bps == 0:
            return None
        return ExecutionModel(slippage_bps=cfg.slippage_bps, commission_bps=cfg.commission_bps)

    # -------------------------------------------------------------------------
    # Retraining
    # -------------------------------------------------------------------------

    def train_models(self, bars: pd.DataFrame, bar_index: int) -> Tuple[Optional[ModelBundle], RetrainEvent]:
        """
        Train a predictor (and HMM) on bars[:bar_index - horizon].

        Two-phase schedule: phase1_fraction of the epochs at the base rate,
        the rest at fine_tune_lr_scale times the base rate, after which the
        base rate is restored.

        Returns:
            (bundle or None, RetrainEvent); None when the window yields fewer
            than min_retrain_samples samples.
        """
        cfg = self.config
        cutoff = bar_index - cfg.horizon
        window = bars.iloc[:cutoff]
        timestamp = _timestamp(bars, bar_index)

        samples = generate_training_data(
            window,
            lookback=cfg.lookback,
            horizon=cfg.horizon,
            buy_threshold=cfg.buy_threshold,
            sell_threshold=cfg.sell_threshold,
        )
        max_label_bar = max((s.label_bar for s in samples), default=-1)
        if len(samples) < cfg.min_retrain_samples:
            logger.warning(
                f"Retrain at bar {bar_index} skipped: {len(samples)} samples "
                f"(need >= {cfg.min_retrain_samples}), keeping previous model"
            )
            return None, RetrainEvent(
                bar_index=bar_index, timestamp=timestamp, n_samples=len(samples),
                max_label_bar=max_label_bar, published=False, reason='insufficient samples',
            )

        network = NeuralNetwork(
            layers=cfg.layers,
            learning_rate=cfg.learning_rate,
            seed=np.random.default_rng(_bar_seed(cfg.seed, bar_index)),
        )
        phase1 = int(math.floor(cfg.epochs * cfg.phase1_fraction))
        phase2 = cfg.epochs - phase1
        if phase1 > 0:
            network.train_balanced(samples, epochs=phase1, shuffle=True)
        if phase2 > 0:
            network.learning_rate = cfg.learning_rate * cfg.fine_tune_lr_scale
            network.train_balanced(samples, epochs=phase2, shuffle=True)
            network.learning_rate = cfg.learning_rate

        detector = self._fit_detector(window) if cfg.use_hmm else None
        logger.info(
            f"Retrained at bar {bar_index}: {len(samples)} samples, "
            f"labels up to bar {max_label_bar}, HMM {'on' if detector else 'off'}"
        )
        bundle = ModelBundle(predictor=network, detector=detector, trained_at_bar=bar_index)
        return bundle, RetrainEvent(
            bar_index=bar_index, timestamp=timestamp, n_samples=len(samples),
            max_label_bar=max_label_bar, published=True, hmm_trained=detector is not None,
        )

    def _fit_detector(self, window: pd.DataFrame) -> Optional[GaussianHMM]:
        observations = extract_observations(window, vol_window=Config.HMM_VOL_WINDOW)
        if len(observations) < Config.MIN_HMM_OBSERVATIONS:
            return None
        detector = GaussianHMM(self.detector_config)
        result = detector.fit(observations)
        if not result.ok:
            logger.warning(f"HMM fit failed: {result.message}")
            return None
        return detector

    def _retrain(
        self,
        slot: ModelSlot[ModelBundle],
        bars: pd.DataFrame,
        bar_index: int
    ) -> RetrainEvent:
        events: List[RetrainEvent] = []

        def job() -> Optional[ModelBundle]:
            bundle, event = self.train_models(bars, bar_index)
            events.append(event)
            return bundle

        if self.executor is None:
            bundle = job()
            if bundle is not None:
                slot.publish(bundle)
        else:
            # Simulated time waits for the model; live callers would not.
            slot.submit_retrain(self.executor, job).result()
        return events[0]

    # -------------------------------------------------------------------------
    # Simulation
    # -------------------------------------------------------------------------

    def _simulate(
        self,
        name: str,
        bars: pd.DataFrame,
        decide: Decide,
        should_stop: Optional[StopCheck],
        on_bar: Optional[Callable[[int, EvaluationRun], None]] = None
    ) -> Optional[EvaluationRun]:
        cfg = self.config
        symbol = Config.SYMBOL
        closes = bars['close'].to_numpy(dtype=float)
        trader = self.trader_factory(cfg.initial_balance)
        execution = self.execution_factory()
        run = EvaluationRun(name=name, initial_balance=cfg.initial_balance)

        high_water = 0.0
        entry_price = 0.0
        took_profit = False

        for i in range(cfg.warmup, len(bars)):
            if should_stop is not None and should_stop():
                logger.info(f"{name}: cancelled at bar {i}")
                return None

            price = closes[i]
            trader.update_price(symbol, price)
            if on_bar is not None:
                on_bar(i, run)
            action, confidence = decide(i)

            position = trader.get_position(symbol)
            if position is not None:
                high_water = max(high_water, price)
                if (high_water - price) / high_water >= cfg.trailing_stop:
                    execute_sell(trader, symbol, position.qty, price, execution)
                    high_water, entry_price, took_profit = 0.0, 0.0, False
                    run.append(trader.portfolio_value)
                    continue
                if (not took_profit and entry_price > 0
                        and (price - entry_price) / entry_price >= cfg.take_profit):
                    half = math.floor(position.qty / 2) if position.qty > 1 else position.qty / 2
                    if half > 0 and execute_sell(trader, symbol, half, price, execution) is not None:
                        took_profit = True

            if (action is Action.BUY and confidence > cfg.min_entry_confidence
                    and trader.get_position(symbol) is None):
                sizing = self.sizer.calculate(trader.portfolio_value, price, confidence)
                if sizing.qty > 0 and execute_buy(trader, symbol, sizing.qty, price, execution) is not None:
                    entry_price = price
                    high_water = price
                    took_profit = False
            elif action is Action.SELL:
                open_position = trader.get_position(symbol)
                if open_position is not None:
                    execute_sell(trader, symbol, open_position.qty, price, execution)
                    high_water, entry_price, took_profit = 0.0, 0.0, False

            run.append(trader.portfolio_value)

        remaining = trader.get_position(symbol)
        if remaining is not None:
            execute_sell(trader, symbol, remaining.qty, closes[-1], execution)
        run.finalize(trader, execution)
        logger.info(
            f"{name}: return {run.summary['total_return_pct']}%, "
            f"Sharpe {run.summary['sharpe_ratio']}, trades {run.summary['total_trades']}"
        )
        return run

    def _rules_decision(self, closes: np.ndarray, i: int, **kwargs: Any) -> Decision:
        history = closes[:i + 1]
        signal = self.combiner.generate(
            self.momentum.generate_signal(history),
            self.reversion.generate_signal(history),
            closes=history,
            **kwargs,
        )
        return signal.action, signal.confidence

    def _run_adaptive(
        self,
        bars: pd.DataFrame,
        should_stop: Optional[StopCheck]
    ) -> Tuple[Optional[EvaluationRun], List[RetrainEvent], ModelSlot[ModelBundle]]:
        cfg = self.config
        closes = bars['close'].to_numpy(dtype=float)
        observations = extract_observations(bars, vol_window=Config.HMM_VOL_WINDOW) if cfg.use_hmm else None
        slot: ModelSlot[ModelBundle] = ModelSlot()
        events: List[RetrainEvent] = []
        last_attempt = [None]

        def maybe_retrain(i: int, run: EvaluationRun) -> None:
            due = slot.get() is None or i - last_attempt[0] >= cfg.retrain_interval
            if not due or i - cfg.horizon < cfg.warmup + cfg.min_train_samples:
                return
            last_attempt[0] = i
            event = self._retrain(slot, bars, i)
            events.append(event)
            if event.published:
                run.record_retrain(i, event.timestamp)

        def decide(i: int) -> Decision:
            bundle = slot.get()
            if bundle is None:
                return self._rules_decision(closes, i)

            kwargs: Dict[str, Any] = {'ml_weight': cfg.ml_weight}
            if bundle.predictor is not None:
                kwargs['predictor'] = bundle.predictor
                kwargs['features'] = extract_features(bars.iloc[max(0, i - cfg.warmup):i + 1])
            if bundle.detector is not None and observations is not None:
                end = i - Config.HMM_VOL_WINDOW + 1
                if end > 0:
                    kwargs['detector'] = bundle.detector
                    kwargs['observations'] = observations[max(0, end - Config.REGIME_FILTER_WINDOW):end]
                    kwargs['regime_ml_scale'] = cfg.regime_ml_scale
            return self._rules_decision(closes, i, **kwargs)

        run = self._simulate('adaptive', bars, decide, should_stop, on_bar=maybe_retrain)
        return run, events, slot

    def _run_baseline(
        self,
        name: str,
        bars: pd.DataFrame,
        should_stop: Optional[StopCheck]
    ) -> Optional[EvaluationRun]:
        closes = bars['close'].to_numpy(dtype=float)

        if name == Config.RULES_ONLY:
            return self._simulate(name, bars, lambda i: self._rules_decision(closes, i), should_stop)

        if name == Config.BOLLINGER_CONSERVATIVE:
            strategy = BollingerBounceStrategy.conservative()
        else:
            strategy = MomentumStrategy(lookback=Config.MOMENTUM_LOOKBACK, target_risk=Config.MOMENTUM_TARGET_RISK)

        def decide(i: int) -> Decision:
            signal = strategy.generate_signal(closes[:i + 1])
            return signal.action, signal.confidence

        return self._simulate(name, bars, decide, should_stop)

    def evaluate(self, bars: pd.DataFrame, should_stop: Optional[StopCheck] = None) -> Result[ComparisonReport]:
        """
        Run the adaptive ensemble and every baseline over `bars`.

        Args:
            bars: Ordered OHLCV frame
            should_stop: Optional cancellation check polled once per bar

        Returns:
            Result wrapping a ComparisonReport; INSUFFICIENT_DATA (with no
            partial run) when len(bars) < config.min_history, CANCELLED when
            should_stop fired.
        """
        validate_bars(bars)
        cfg = self.config
        if len(bars) < cfg.min_history:
            logger.warning(f"Walk-forward needs {cfg.min_history} bars, got {len(bars)}")
            return Result.failure(
                Status.INSUFFICIENT_DATA,
                f"Need at least {cfg.min_history} bars, got {len(bars)}",
            )

        adaptive, events, slot = self._run_adaptive(bars, should_stop)
        if adaptive is None:
            return Result.failure(Status.CANCELLED, "Evaluation cancelled")

        baselines: Dict[str, EvaluationRun] = {}
        for name in (Config.RULES_ONLY, Config.BOLLINGER_CONSERVATIVE, Config.MOMENTUM_7D):
            run = self._run_baseline(name, bars, should_stop)
            if run is None:
                return Result.failure(Status.CANCELLED, "Evaluation cancelled")
            baselines[name] = run

        bundle = slot.get()
        hmm_summary = None
        if bundle is not None and bundle.detector is not None:
            hmm_summary = bundle.detector.summary()

        report = ComparisonReport(adaptive=adaptive, baselines=baselines, retrain_events=events, hmm=hmm_summary)
        logger.info(f"Walk-forward finished: {report.to_dict()['comparison']}")
        return Result.success(report)


# =============================================================================
# MULTI-SESSION EVALUATION
# =============================================================================

def run_multi_session(
    sessions: int = 10,
    bars_per_session: int = 500,
    config: Optional[SchedulerConfig] = None,
    seed: Optional[int] = None,
    detector_config: Optional[RegimeDetectorConfig] = None
) -> Result[Dict[str, Any]]:
    """
    Evaluate the scheduler over independent synthetic sessions.

    Each session draws a start price in [40k, 60k) and a fresh
    regime-switching path. Sessions that cannot be evaluated are skipped.

    Returns:
        Result wrapping per-strategy aggregates (average, median, min and
        max Sharpe; average return and drawdown), the rate at which the
        adaptive run beat the Bollinger baseline, and per-session Sharpes.
        INSUFFICIENT_DATA when no session could be evaluated.
    """
    d = Config.DECIMALS
    rng = np.random.default_rng(seed)
    scheduler = WalkForwardScheduler(config, detector_config=detector_config)
    reports: List[ComparisonReport] = []

    for session in range(sessions):
        bars = generate_regime_bars(
            n_bars=bars_per_session,
            start_price=float(rng.uniform(40_000, 60_000)),
            seed=int(rng.integers(0, 2**31 - 1)),
        )
        result = scheduler.evaluate(bars)
        if result.ok:
            reports.append(result.value)
        else:
            logger.warning(f"Session {session + 1} skipped: {result.message}")

    if not reports:
        return Result.failure(Status.INSUFFICIENT_DATA, "No valid sessions")

    names = [reports[0].adaptive.name] + list(reports[0].baselines)
    aggregate: Dict[str, Dict[str, float]] = {}
    for name in names:
        runs = [r.adaptive if name == r.adaptive.name else r.baselines[name] for r in reports]
        sharpes = np.array([run.sharpe_ratio for run in runs])
        aggregate[name] = {
            'avg_sharpe': round(float(sharpes.mean()), d),
            'median_sharpe': round(float(np.median(sharpes)), d),
            'min_sharpe': round(float(sharpes.min()), d),
            'max_sharpe': round(float(sharpes.max()), d),
            'avg_return_pct': round(float(np.mean([run.summary['total_return_pct'] for run in runs])), d),
            'avg_max_drawdown_pct': round(float(np.mean([run.summary['max_drawdown_pct'] for run in runs])), d),
        }

    wins = sum(r.beats.get(Config.BOLLINGER_CONSERVATIVE, False) for r in reports)
    logger.info(f"Multi-session evaluation: {len(reports)}/{sessions} sessions, adaptive beat Bollinger in {wins}")
    return Result.success({
        'sessions': len(reports),
        'aggregate': aggregate,
        'adaptive_beats_bollinger_rate_pct': round(wins / len(reports) * 100.0, d),
        'per_session': [
            {
                'session': k + 1,
                'adaptive_sharpe': r.adaptive.sharpe_ratio,
                'bollinger_sharpe': r.baselines[Config.BOLLINGER_CONSERVATIVE].sharpe_ratio,
                'beats_bollinger': r.beats.get(Config.BOLLINGER_CONSERVATIVE, False),
            }
            for k, r in enumerate(reports)
        ],
    })
