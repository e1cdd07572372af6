"""Tests for the walk-forward scheduler and its publication primitives."""
import json
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
import pytest

from regime_ensemble import (
    Action,
    ConfigurationError,
    EvaluationRun,
    ModelSlot,
    PaperTrader,
    SchedulerConfig,
    Status,
    WalkForwardScheduler,
    generate_regime_bars,
    run_multi_session,
)
from regime_ensemble.execution import OrderSide


# ============================================================================
# Configuration
# ============================================================================

def test_scheduler_config_round_trip():
    config = SchedulerConfig(epochs=7, horizon=3)
    restored = SchedulerConfig.from_dict(json.loads(json.dumps(config.to_dict())))
    assert restored == config
    assert config.warmup == 60
    assert config.min_history == 60 + 100 + 3


def test_scheduler_config_rejects_bad_values():
    with pytest.raises(ConfigurationError):
        SchedulerConfig(horizon=0)
    with pytest.raises(ConfigurationError):
        SchedulerConfig.from_dict({'epochs': 3, 'learning_rte': 0.1})


# ============================================================================
# Model publication
# ============================================================================

def test_model_slot_publishes_before_future_resolves():
    slot = ModelSlot()
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = slot.submit_retrain(executor, lambda x: x * 2, 21)
        assert future.result() == 42
        assert slot.get() == 42
        assert slot.version == 1

        skipped = slot.submit_retrain(executor, lambda: None)
        assert skipped.result() is None
        assert slot.get() == 42
        assert slot.version == 1


def test_model_slot_failed_retrain_keeps_previous_value():
    def broken():
        raise RuntimeError("training blew up")

    slot = ModelSlot(initial='old')
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = slot.submit_retrain(executor, broken)
        with pytest.raises(RuntimeError):
            future.result()
    assert slot.get() == 'old'
    assert slot.version == 0


def test_evaluation_run_finalizes_once():
    run = EvaluationRun(name='demo', initial_balance=1_000.0)
    assert run.equity_curve == [1_000.0]
    run.append(1_010.0)
    run.record_retrain(5, 'bar-5')

    trader = PaperTrader(initial_balance=1_000.0)
    summary = run.finalize(trader, execution=None)
    assert run.finalized
    assert summary['total_trades'] == 0
    assert run.retrain_count == 1

    with pytest.raises(RuntimeError):
        run.finalize(trader, execution=None)
    with pytest.raises(RuntimeError):
        run.append(990.0)
    with pytest.raises(RuntimeError):
        run.record_retrain(6, 'bar-6')


# ============================================================================
# Retraining
# ============================================================================

def test_train_models_uses_only_past_labels(regime_bars, fast_config):
    scheduler = WalkForwardScheduler(fast_config)
    bundle, event = scheduler.train_models(regime_bars, 150)

    assert event.published
    assert bundle.trained_at_bar == 150
    assert bundle.predictor.trained
    assert bundle.detector is None
    assert event.max_label_bar < 150 - fast_config.horizon
    assert event.n_samples > fast_config.min_retrain_samples


def test_train_models_ignores_future_bars(regime_bars, fast_config):
    altered = regime_bars.copy()
    altered.iloc[145:, altered.columns.get_loc('close')] *= 2.0

    scheduler = WalkForwardScheduler(fast_config)
    original, _ = scheduler.train_models(regime_bars, 150)
    shifted, _ = scheduler.train_models(altered, 150)

    for a, b in zip(original.predictor.model.weights, shifted.predictor.model.weights):
        assert np.array_equal(a, b)


def test_train_models_keeps_previous_model_when_data_is_short(regime_bars, fast_config):
    bundle, event = WalkForwardScheduler(fast_config).train_models(regime_bars, 50)
    assert bundle is None
    assert not event.published
    assert event.reason == 'insufficient samples'


def test_train_models_fits_detector_when_enabled(regime_bars, fast_hmm_config):
    bundle, event = WalkForwardScheduler(fast_hmm_config).train_models(regime_bars, 150)
    assert event.hmm_trained
    assert bundle.detector.trained


# ============================================================================
# Evaluation
# ============================================================================

def test_evaluate_rejects_short_history(fast_config):
    bars = generate_regime_bars(n_bars=100, seed=1)
    result = WalkForwardScheduler(fast_config).evaluate(bars)
    assert result.status is Status.INSUFFICIENT_DATA
    assert result.value is None


def test_evaluate_compares_against_baselines(regime_bars, fast_config):
    bars = regime_bars.iloc[:200]
    report = WalkForwardScheduler(fast_config).evaluate(bars).unwrap()

    expected_length = 1 + len(bars) - fast_config.warmup
    assert len(report.adaptive.equity_curve) == expected_length
    assert set(report.baselines) == {'rules_only', 'bollinger_conservative', 'momentum_7d'}
    for run in report.baselines.values():
        assert len(run.equity_curve) == expected_length
        assert run.finalized

    assert report.retrain_events
    for event in report.retrain_events:
        assert event.max_label_bar < event.bar_index - fast_config.horizon
    published = [e.bar_index for e in report.retrain_events if e.published]
    assert report.adaptive.retrain_bars == published
    assert published[0] == fast_config.min_history


def test_report_serializes(regime_bars, fast_config):
    report = WalkForwardScheduler(fast_config).evaluate(regime_bars.iloc[:180]).unwrap()
    data = json.loads(json.dumps(report.to_dict()))

    assert set(data) == {'adaptive', 'baselines', 'comparison', 'hmm', 'retrain_log'}
    comparison = data['comparison']
    for name in ('adaptive', 'rules_only', 'bollinger_conservative', 'momentum_7d'):
        assert f"{name}_sharpe" in comparison
    assert 'beats_rules_only' in comparison
    assert 'improvement_vs_rules_pct' in comparison
    assert data['hmm'] is None


def test_without_a_model_the_adaptive_run_matches_rules_only():
    config = SchedulerConfig(use_hmm=False, epochs=1, min_train_samples=20, min_retrain_samples=10_000)
    bars = generate_regime_bars(n_bars=110, seed=21)
    report = WalkForwardScheduler(config).evaluate(bars).unwrap()

    assert report.retrain_events
    assert not any(e.published for e in report.retrain_events)
    assert report.adaptive.retrain_count == 0
    assert report.adaptive.equity_curve == report.baselines['rules_only'].equity_curve


def test_executor_backed_retraining_is_deterministic(regime_bars, fast_config):
    bars = regime_bars.iloc[:190]
    inline = WalkForwardScheduler(fast_config).evaluate(bars).unwrap()
    with ThreadPoolExecutor(max_workers=1) as executor:
        threaded = WalkForwardScheduler(fast_config, executor=executor).evaluate(bars).unwrap()

    assert threaded.adaptive.equity_curve == inline.adaptive.equity_curve
    assert threaded.adaptive.retrain_bars == inline.adaptive.retrain_bars


def test_evaluate_with_regime_detector(regime_bars, fast_hmm_config):
    report = WalkForwardScheduler(fast_hmm_config).evaluate(regime_bars.iloc[:200]).unwrap()
    assert any(e.hmm_trained for e in report.retrain_events)
    assert report.hmm['trained'] is True


def test_evaluate_can_be_cancelled(regime_bars, fast_config):
    calls = []

    def stop_after_ten():
        calls.append(1)
        return len(calls) > 10

    result = WalkForwardScheduler(fast_config).evaluate(regime_bars.iloc[:200], should_stop=stop_after_ten)
    assert result.status is Status.CANCELLED
    assert not result.ok


def test_run_multi_session(fast_config):
    result = run_multi_session(sessions=2, bars_per_session=150, config=fast_config, seed=3)
    summary = result.unwrap()

    assert summary['sessions'] == 2
    assert set(summary['aggregate']) == {'adaptive', 'rules_only', 'bollinger_conservative', 'momentum_7d'}
    assert 0.0 <= summary['adaptive_beats_bollinger_rate_pct'] <= 100.0
    assert len(summary['per_session']) == 2


def test_run_multi_session_without_valid_sessions(fast_config):
    result = run_multi_session(sessions=1, bars_per_session=50, config=fast_config, seed=3)
    assert result.status is Status.INSUFFICIENT_DATA


# ============================================================================
# Position management
# ============================================================================

def test_take_profit_then_trailing_stop():
    config = SchedulerConfig(slippage_bps=0.0, commission_bps=0.0)
    traders = []

    def make_trader(balance):
        traders.append(PaperTrader(initial_balance=balance, max_position_pct=config.max_position_pct))
        return traders[-1]

    scheduler = WalkForwardScheduler(config, trader_factory=make_trader)
    closes = [100.0] * config.warmup + [100.0, 130.0, 140.0, 118.0, 118.0]
    bars = pd.DataFrame({'close': closes})

    def buy_once(i):
        if i == config.warmup:
            return Action.BUY, 0.9
        return Action.HOLD, 0.0

    run = scheduler._simulate('scripted', bars, buy_once, should_stop=None)

    sells = [t for t in traders[0].trade_history if t.side is OrderSide.SELL]
    # 225 shares bought at 100; half taken off at +30%, rest stopped 15.7% below the 140 peak
    assert [(t.qty, t.price) for t in sells] == [(112, 130.0), (113, 118.0)]
    assert run.equity_curve == pytest.approx([100_000, 100_000, 106_750, 107_880, 105_394, 105_394])
    assert traders[0].get_position('asset') is None
    assert run.summary['total_trades'] == 2
