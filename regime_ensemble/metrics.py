"""
Performance Statistics
======================

Equity-curve statistics for comparing evaluation runs.

    Max Drawdown:  max over t of (peak_t - equity_t) / peak_t
    Sharpe:        mean(r) / std(r) * sqrt(252)        (population std)
    Sortino:       mean(r) / downside_dev(r) * sqrt(252)
    Calmar:        total_return * 252 / periods / max_drawdown

Every function returns a finite float. Ratios that would be infinite
(no downside, no drawdown) are reported as RATIO_CAP.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Sequence

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)


class Config:
    TRADING_DAYS_YEAR: int = 252
    RATIO_CAP: float = 999.0
    DECIMALS: int = 2


def _curve(equity_curve: Sequence[float]) -> pd.Series:
    return pd.Series(np.asarray(equity_curve, dtype=float))


def period_returns(equity_curve: Sequence[float]) -> pd.Series:
    """Simple returns between consecutive equity points."""
    curve = _curve(equity_curve)
    return curve.pct_change().dropna().replace([np.inf, -np.inf], 0.0)


def _capped(value: float) -> float:
    if not np.isfinite(value):
        return Config.RATIO_CAP if value > 0 else 0.0
    return float(np.clip(value, -Config.RATIO_CAP, Config.RATIO_CAP))


def max_drawdown(equity_curve: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a fraction in [0, 1]."""
    curve = _curve(equity_curve)
    if curve.empty:
        return 0.0
    peak = curve.cummax()
    drawdown = (peak - curve) / peak.where(peak > 0)
    return float(np.nan_to_num(drawdown.max(), nan=0.0))


def sharpe_ratio(equity_curve: Sequence[float], risk_free_rate: float = 0.0) -> float:
    """Annualized Sharpe ratio of per-bar returns."""
    returns = period_returns(equity_curve)
    if returns.empty:
        return 0.0
    std = returns.std(ddof=0)
    if std == 0:
        return 0.0
    excess = returns.mean() - risk_free_rate / Config.TRADING_DAYS_YEAR
    return _capped(excess / std * np.sqrt(Config.TRADING_DAYS_YEAR))


def sortino_ratio(equity_curve: Sequence[float], risk_free_rate: float = 0.0) -> float:
    """Annualized Sortino ratio; only returns below the risk-free rate count as risk."""
    returns = period_returns(equity_curve)
    if returns.empty:
        return 0.0
    hurdle = risk_free_rate / Config.TRADING_DAYS_YEAR
    mean = returns.mean()
    downside = returns[returns < hurdle]
    if downside.empty:
        return Config.RATIO_CAP if mean > hurdle else 0.0
    downside_dev = np.sqrt(((downside - hurdle) ** 2).mean())
    if downside_dev == 0:
        return 0.0
    return _capped((mean - hurdle) / downside_dev * np.sqrt(Config.TRADING_DAYS_YEAR))


def calmar_ratio(equity_curve: Sequence[float]) -> float:
    """Annualized total return over max drawdown."""
    curve = _curve(equity_curve)
    if len(curve) < 2 or curve.iloc[0] == 0:
        return 0.0
    total_return = (curve.iloc[-1] - curve.iloc[0]) / curve.iloc[0]
    annualized = total_return * Config.TRADING_DAYS_YEAR / (len(curve) - 1)
    drawdown = max_drawdown(curve)
    if drawdown == 0:
        return Config.RATIO_CAP if annualized > 0 else 0.0
    return _capped(annualized / drawdown)


def profit_factor(pnls: Sequence[float]) -> float:
    """Gross profit over gross loss of closed trades."""
    values = np.asarray(pnls, dtype=float)
    gross_profit = values[values > 0].sum()
    gross_loss = abs(values[values <= 0].sum())
    if gross_loss > 0:
        return _capped(gross_profit / gross_loss)
    return Config.RATIO_CAP if gross_profit > 0 else 0.0


def return_moments(equity_curve: Sequence[float]) -> Dict[str, float]:
    """Skewness and excess kurtosis of per-bar returns (0 when undefined)."""
    returns = period_returns(equity_curve)
    if len(returns) < 3 or returns.std(ddof=0) == 0:
        return {'skewness': 0.0, 'kurtosis': 0.0}
    return {
        'skewness': float(np.nan_to_num(stats.skew(returns))),
        'kurtosis': float(np.nan_to_num(stats.kurtosis(returns))),
    }


def summarize_run(
    equity_curve: Sequence[float],
    trade_pnls: Sequence[float],
    initial_balance: float,
    final_cash: float,
    execution_costs: float = 0.0
) -> Dict[str, Any]:
    """
    Build the performance summary block of an evaluation run.

    Args:
        equity_curve: Ordered equity values, starting at the initial balance
        trade_pnls: Realized P&L of each closing fill
        initial_balance: Starting equity
        final_cash: Cash after the final liquidation
        execution_costs: Slippage plus commission paid

    Returns:
        Dict of rounded, finite statistics
    """
    d = Config.DECIMALS
    pnls = np.asarray(trade_pnls, dtype=float)
    wins = int((pnls > 0).sum())
    total_trades = len(pnls)
    final_equity = float(equity_curve[-1]) if len(equity_curve) else float(initial_balance)
    moments = return_moments(equity_curve)

    return {
        'total_return_pct': round(float((final_cash - initial_balance) / initial_balance * 100.0), d),
        'sharpe_ratio': round(sharpe_ratio(equity_curve), d),
        'sortino_ratio': round(sortino_ratio(equity_curve), d),
        'calmar_ratio': round(calmar_ratio(equity_curve), d),
        'max_drawdown_pct': round(max_drawdown(equity_curve) * 100.0, d),
        'total_trades': total_trades,
        'win_rate_pct': round(wins / total_trades * 100.0, d) if total_trades else 0.0,
        'profit_factor': round(profit_factor(pnls), d),
        'final_equity': round(final_equity, d),
        'execution_costs': round(float(execution_costs), d),
        'return_skewness': round(moments['skewness'], 4),
        'return_kurtosis': round(moments['kurtosis'], 4),
    }
