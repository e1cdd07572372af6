"""Tests for the paper trader, position sizing, execution costs and run statistics."""
import numpy as np
import pytest

from regime_ensemble import ConfigurationError, ExecutionModel, PaperTrader, PositionSizer
from regime_ensemble.execution import OrderSide, SlippageModel, execute_buy, execute_sell
from regime_ensemble.metrics import (
    Config as MetricsConfig,
    calmar_ratio,
    max_drawdown,
    profit_factor,
    sharpe_ratio,
    sortino_ratio,
    summarize_run,
)


# ============================================================================
# Paper trader
# ============================================================================

def test_buy_then_mark_to_market():
    trader = PaperTrader(initial_balance=100_000)
    trade = trader.buy('asset', 10, 100.0)
    trader.update_price('asset', 110.0)

    assert trade.side is OrderSide.BUY
    assert trader.cash == 99_000.0
    assert trader.portfolio_value == 100_100.0
    assert trader.pnl == 100.0


def test_buy_averages_entry_price():
    trader = PaperTrader()
    trader.buy('asset', 10, 100.0)
    trader.buy('asset', 10, 120.0)
    assert trader.get_position('asset').avg_price == pytest.approx(110.0)


def test_rejected_orders_return_none():
    trader = PaperTrader(initial_balance=1_000)
    assert trader.buy('asset', 100, 50.0) is None
    assert trader.sell('asset', 1, 50.0) is None
    assert trader.cash == 1_000
    assert trader.trade_history == []


def test_invalid_orders_raise():
    trader = PaperTrader()
    with pytest.raises(ConfigurationError):
        trader.buy('asset', 0, 100.0)
    with pytest.raises(ConfigurationError):
        trader.sell('asset', 1, -1.0)
    with pytest.raises(ConfigurationError):
        PaperTrader(initial_balance=0)


def test_sell_records_realized_pnl():
    trader = PaperTrader()
    trader.buy('asset', 10, 100.0)
    trade = trader.sell('asset', 4, 125.0, fee=1.0)

    assert trade.pnl == pytest.approx(100.0)
    assert trader.get_position('asset').qty == 6
    trader.sell('asset', 6, 90.0)
    assert trader.get_position('asset') is None
    assert [t.pnl for t in trader.closed_trades] == pytest.approx([100.0, -60.0])


# ============================================================================
# Position sizing
# ============================================================================

def test_standard_sizing_scales_with_confidence():
    decision = PositionSizer().calculate(portfolio_value=100_000, price=100.0, confidence=0.5)
    assert decision.method == 'standard'
    assert decision.qty == 50
    assert decision.position_pct == pytest.approx(5.0)


def test_high_conviction_sizing():
    decision = PositionSizer().calculate(portfolio_value=100_000, price=100.0, confidence=0.9)
    assert decision.method == 'high_conviction'
    assert decision.qty == 225


def test_volatility_adjustment_shrinks_size():
    sizer = PositionSizer()
    calm = sizer.calculate(100_000, 100.0, 0.5, volatility=0.01)
    wild = sizer.calculate(100_000, 100.0, 0.5, volatility=0.04)
    assert calm.method == 'standard+vol_adjusted'
    assert calm.qty == 50
    assert wild.qty == 25


def test_kelly_sizing():
    sizer = PositionSizer(kelly_fraction=0.5)
    # K = (0.6 * 2 - 0.4 * 1) / 2 = 0.4, half-Kelly 0.2
    assert sizer.kelly_size(0.6, 2.0, 1.0) == pytest.approx(0.2)
    decision = sizer.calculate(100_000, 100.0, 1.0, win_rate=0.6, avg_win=2.0, avg_loss=1.0)
    assert decision.method == 'kelly'
    assert decision.qty == 200
    assert sizer.kelly_size(0.2, 1.0, 1.0) == 0.0


def test_drawdown_scales_kelly_size():
    sizer = PositionSizer(kelly_fraction=0.5)
    decision = sizer.calculate(100_000, 100.0, 1.0, win_rate=0.6, avg_win=2.0, avg_loss=1.0,
                               current_drawdown=0.15)
    assert decision.method == 'kelly+dd_adjusted'
    assert decision.qty == 100


def test_small_positions_are_skipped():
    decision = PositionSizer().calculate(portfolio_value=1_000, price=10.0, confidence=0.5)
    assert decision.method == 'skip'
    assert decision.qty == 0.0
    assert PositionSizer().calculate(0, 10.0, 0.5).method == 'none'


def test_expensive_assets_get_fractional_quantity():
    decision = PositionSizer().calculate(portfolio_value=100_000, price=50_000.0, confidence=0.5)
    assert decision.qty == pytest.approx(0.1)
    assert decision.value == pytest.approx(5_000.0)


# ============================================================================
# Execution costs
# ============================================================================

def test_fixed_slippage_moves_fills_against_the_trader():
    model = ExecutionModel(slippage_bps=10, commission_bps=0)
    assert model.execution_price(OrderSide.BUY, 100.0, qty=1) == pytest.approx(100.1)
    assert model.execution_price(OrderSide.SELL, 100.0, qty=1) == pytest.approx(99.9)
    assert model.total_slippage_paid == pytest.approx(0.2)


def test_volatility_slippage_grows_with_volatility():
    model = ExecutionModel(slippage_bps=10, slippage_model='volatility')
    assert model.slippage_model is SlippageModel.VOLATILITY
    assert model.execution_price(OrderSide.BUY, 100.0, qty=1, volatility=0.04) == pytest.approx(100.2)


def test_round_trip_cost():
    model = ExecutionModel(slippage_bps=5, commission_bps=10)
    assert model.round_trip_cost_bps() == 30.0
    assert not model.is_free
    assert ExecutionModel(slippage_bps=0, commission_bps=0).is_free
    with pytest.raises(ConfigurationError):
        ExecutionModel(slippage_bps=-1)


def test_execute_buy_charges_costs():
    trader = PaperTrader(initial_balance=10_000)
    model = ExecutionModel(slippage_bps=10, commission_bps=10)
    trade = execute_buy(trader, 'asset', 10, 100.0, model)

    assert trade.price == pytest.approx(100.1)
    assert trade.fee == pytest.approx(1.001)
    assert trader.cash == pytest.approx(10_000 - 1001.0 - 1.001)
    assert model.total_costs == pytest.approx(1.0 + 1.001)


def test_rejected_execution_costs_nothing():
    trader = PaperTrader(initial_balance=1_000)
    model = ExecutionModel()
    assert execute_buy(trader, 'asset', 100, 100.0, model) is None
    assert execute_sell(trader, 'asset', 1, 100.0, model) is None
    assert model.total_costs == 0.0


# ============================================================================
# Run statistics
# ============================================================================

def test_max_drawdown():
    assert max_drawdown([100, 120, 90, 130]) == pytest.approx(0.25)
    assert max_drawdown([100, 101, 102]) == 0.0
    assert max_drawdown([]) == 0.0


def test_ratios_on_flat_curve_are_zero():
    flat = [100.0] * 10
    assert sharpe_ratio(flat) == 0.0
    assert sortino_ratio(flat) == 0.0
    assert calmar_ratio(flat) == 0.0


def test_ratios_are_capped_without_downside():
    rising = [100.0, 101.0, 102.5, 103.0, 104.2]
    assert sortino_ratio(rising) == MetricsConfig.RATIO_CAP
    assert calmar_ratio(rising) == MetricsConfig.RATIO_CAP
    assert sharpe_ratio(rising) > 0


def test_profit_factor():
    assert profit_factor([100.0, -50.0, 25.0]) == pytest.approx(2.5)
    assert profit_factor([10.0]) == MetricsConfig.RATIO_CAP
    assert profit_factor([]) == 0.0


def test_summarize_run_is_finite(rng):
    curve = list(100_000 * np.cumprod(1 + 0.01 * rng.standard_normal(100)))
    summary = summarize_run(curve, [120.0, -40.0, 10.0], initial_balance=100_000,
                            final_cash=curve[-1], execution_costs=12.3)

    assert summary['total_trades'] == 3
    assert summary['win_rate_pct'] == pytest.approx(66.67)
    assert summary['execution_costs'] == 12.3
    assert all(np.isfinite(v) for v in summary.values())
    assert set(summary) == {
        'total_return_pct', 'sharpe_ratio', 'sortino_ratio', 'calmar_ratio', 'max_drawdown_pct',
        'total_trades', 'win_rate_pct', 'profit_factor', 'final_equity', 'execution_costs',
        'return_skewness', 'return_kurtosis',
    }


def test_summarize_run_returns_plain_python_numbers():
    closes = np.array([100.0, 101.0, 99.5, 102.0])
    curve = list(1_000 * closes / closes[0])
    summary = summarize_run(curve, [np.float64(5.0)], initial_balance=1_000, final_cash=closes[-1] * 10)

    assert type(summary['total_return_pct']) is float
    assert summary['total_return_pct'] == pytest.approx(2.0)
    assert type(summary['total_trades']) is int
    assert all(type(v) in (int, float) for v in summary.values())
