"""
Execution Shell: Paper Trading, Position Sizing and Costs
==========================================================

The collaborators the walk-forward evaluation trades through.

    PaperTrader      cash, long positions, trade history, mark-to-market
    PositionSizer    confidence-scaled sizing with a high-conviction tier,
                     optional fractional Kelly, drawdown and volatility
                     adjustment
    ExecutionModel   slippage (fixed / volume impact / volatility scaled)
                     and commission, with running cost totals

Nothing here routes real orders.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from .results import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """Execution defaults."""

    BPS: float = 10_000.0

    # Sizing
    MAX_POSITION_PCT: float = 0.10
    MAX_HIGH_CONVICTION_PCT: float = 0.25
    HIGH_CONVICTION_THRESHOLD: float = 0.85
    KELLY_FRACTION: float = 0.33
    MIN_POSITION_VALUE: float = 100.0
    TARGET_DAILY_RISK: float = 0.02
    DRAWDOWN_THRESHOLD: float = 0.15
    MAX_DRAWDOWN_SCALE: float = 0.50
    FRACTIONAL_DECIMALS: int = 8

    # Costs
    SLIPPAGE_BPS: float = 5.0
    COMMISSION_BPS: float = 10.0
    MARKET_IMPACT_COEFF: float = 0.1
    REFERENCE_VOLATILITY: float = 0.02

    QTY_EPSILON: float = 1e-12


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class SlippageModel(Enum):
    FIXED = "fixed"
    VOLUME = "volume"
    VOLATILITY = "volatility"


# =============================================================================
# PAPER TRADER
# =============================================================================

@dataclass
class Position:
    """Open long position."""
    qty: float
    avg_price: float


@dataclass(frozen=True)
class TradeRecord:
    """
    One fill in the trade history.

    `pnl` is set on sells only and is measured against the average entry
    price, before fees.
    """
    symbol: str
    side: OrderSide
    qty: float
    price: float
    fee: float
    cash_after: float
    pnl: Optional[float] = None

    @property
    def value(self) -> float:
        return self.qty * self.price

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'qty': self.qty,
            'price': self.price,
            'fee': self.fee,
            'cash_after': self.cash_after,
            'pnl': self.pnl,
        }


class PaperTrader:
    """
    Simulated long-only account.

    Example:
        >>> trader = PaperTrader(initial_balance=100_000)
        >>> trader.buy('asset', 10, 100.0)
        >>> trader.update_price('asset', 110.0)
        >>> trader.portfolio_value
        100100.0
    """

    def __init__(self, initial_balance: float = 100_000.0, max_position_pct: float = Config.MAX_POSITION_PCT):
        if initial_balance <= 0:
            raise ConfigurationError("initial_balance must be positive")
        self.initial_balance = float(initial_balance)
        self.cash = float(initial_balance)
        self.max_position_pct = max_position_pct
        self.positions: Dict[str, Position] = {}
        self.trade_history: List[TradeRecord] = []
        self._last_prices: Dict[str, float] = {}

    # -------------------------------------------------------------------------
    # Valuation
    # -------------------------------------------------------------------------

    def update_price(self, symbol: str, price: float) -> None:
        """Record the latest mark for `symbol`."""
        self._last_prices[symbol] = float(price)

    @property
    def portfolio_value(self) -> float:
        """Cash plus positions at the last mark (cost basis when unmarked)."""
        value = self.cash
        for symbol, position in self.positions.items():
            value += position.qty * self._last_prices.get(symbol, position.avg_price)
        return value

    @property
    def pnl(self) -> float:
        return self.portfolio_value - self.initial_balance

    @property
    def pnl_pct(self) -> float:
        return self.pnl / self.initial_balance * 100.0

    def get_position(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def buy(self, symbol: str, qty: float, price: float, fee: float = 0.0) -> Optional[TradeRecord]:
        """
        Buy `qty` at `price`, paying `fee` from cash.

        Returns:
            The TradeRecord, or None when cash is insufficient
        """
        if qty <= 0 or price <= 0:
            raise ConfigurationError(f"Invalid order: qty={qty}, price={price}")
        cost = qty * price
        if cost + fee > self.cash:
            logger.warning(f"Buy rejected for {symbol}: cost {cost + fee:.2f} exceeds cash {self.cash:.2f}")
            return None

        self.cash -= cost + fee
        existing = self.positions.get(symbol)
        if existing is not None:
            total = existing.qty + qty
            existing.avg_price = (existing.avg_price * existing.qty + price * qty) / total
            existing.qty = total
        else:
            self.positions[symbol] = Position(qty=qty, avg_price=price)

        trade = TradeRecord(symbol=symbol, side=OrderSide.BUY, qty=qty, price=price, fee=fee, cash_after=self.cash)
        self.trade_history.append(trade)
        return trade

    def sell(self, symbol: str, qty: float, price: float, fee: float = 0.0) -> Optional[TradeRecord]:
        """
        Sell `qty` of an open position at `price`, paying `fee` from proceeds.

        Returns:
            The TradeRecord, or None when the position is too small
        """
        if qty <= 0 or price <= 0:
            raise ConfigurationError(f"Invalid order: qty={qty}, price={price}")
        position = self.positions.get(symbol)
        if position is None or position.qty + Config.QTY_EPSILON < qty:
            logger.warning(f"Sell rejected: insufficient position in {symbol}")
            return None

        pnl = (price - position.avg_price) * qty
        self.cash += qty * price - fee
        position.qty -= qty
        if position.qty <= Config.QTY_EPSILON:
            del self.positions[symbol]

        trade = TradeRecord(
            symbol=symbol, side=OrderSide.SELL, qty=qty, price=price,
            fee=fee, cash_after=self.cash, pnl=pnl,
        )
        self.trade_history.append(trade)
        return trade

    @property
    def closed_trades(self) -> List[TradeRecord]:
        return [t for t in self.trade_history if t.side is OrderSide.SELL]

    def summary(self) -> Dict[str, Any]:
        return {
            'cash': round(self.cash, 2),
            'portfolio_value': round(self.portfolio_value, 2),
            'pnl': round(self.pnl, 2),
            'pnl_pct': round(self.pnl_pct, 2),
            'positions': {s: {'qty': p.qty, 'avg_price': p.avg_price} for s, p in self.positions.items()},
            'trade_count': len(self.trade_history),
        }


# =============================================================================
# POSITION SIZER
# =============================================================================

@dataclass(frozen=True)
class SizingDecision:
    """
    Result of a sizing request.

    Attributes:
        qty: Units to trade (fractional for expensive assets); 0 means skip
        value: qty * price, rounded to cents
        method: Sizing path taken, e.g. 'standard+vol_adjusted'
        position_pct: Fraction of equity allocated, in percent
        reason: Explanation when the request was skipped
    """
    qty: float
    value: float
    method: str
    position_pct: float = 0.0
    reason: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'qty': self.qty,
            'value': self.value,
            'method': self.method,
            'position_pct': self.position_pct,
            'reason': self.reason,
        }


class PositionSizer:
    """
    Position sizing from signal confidence and optional trade statistics.

    Kelly Formula:
        K = (p * W - (1 - p) * L) / W
    where p = win rate, W = average win, L = average loss. The applied size is
    K * kelly_fraction, clamped to [0, max_high_conviction_pct], then scaled
    by confidence.

    Without trade statistics the size is max_position_pct * confidence, or
    max_high_conviction_pct * confidence at confidence >= the high-conviction
    threshold.
    """

    def __init__(
        self,
        max_position_pct: float = Config.MAX_POSITION_PCT,
        max_high_conviction_pct: float = Config.MAX_HIGH_CONVICTION_PCT,
        high_conviction_threshold: float = Config.HIGH_CONVICTION_THRESHOLD,
        kelly_fraction: float = Config.KELLY_FRACTION,
        min_position_value: float = Config.MIN_POSITION_VALUE,
        drawdown_threshold: float = Config.DRAWDOWN_THRESHOLD,
        max_drawdown_scale: float = Config.MAX_DRAWDOWN_SCALE
    ):
        self.max_position_pct = max_position_pct
        self.max_high_conviction_pct = max_high_conviction_pct
        self.high_conviction_threshold = high_conviction_threshold
        self.kelly_fraction = kelly_fraction
        self.min_position_value = min_position_value
        self.drawdown_threshold = drawdown_threshold
        self.max_drawdown_scale = max_drawdown_scale

    def kelly_size(self, win_rate: float, avg_win: float, avg_loss: float) -> float:
        if avg_loss == 0 or avg_win == 0:
            return 0.0
        kelly = (win_rate * avg_win - (1 - win_rate) * avg_loss) / avg_win
        return float(np.clip(kelly * self.kelly_fraction, 0.0, self.max_high_conviction_pct))

    def drawdown_adjusted(self, position_pct: float, current_drawdown: float) -> float:
        """Linear scale-down from full size at 0% drawdown to max_drawdown_scale at the threshold."""
        if current_drawdown <= 0 or position_pct <= 0:
            return position_pct
        ratio = min(current_drawdown / self.drawdown_threshold, 1.0)
        return position_pct * (1.0 - ratio * (1.0 - self.max_drawdown_scale))

    def calculate(
        self,
        portfolio_value: float,
        price: float,
        confidence: float,
        volatility: Optional[float] = None,
        win_rate: Optional[float] = None,
        avg_win: Optional[float] = None,
        avg_loss: Optional[float] = None,
        current_drawdown: Optional[float] = None
    ) -> SizingDecision:
        """
        Size a new position.

        Args:
            portfolio_value: Current equity
            price: Entry price
            confidence: Signal confidence in [0, 1]
            volatility: Daily return standard deviation; scales size down
                toward a 2% daily risk budget
            win_rate, avg_win, avg_loss: Trade statistics enabling Kelly
            current_drawdown: Portfolio drawdown in [0, 1]

        Returns:
            SizingDecision (qty 0 when skipped)
        """
        if portfolio_value <= 0 or price <= 0 or confidence <= 0:
            return SizingDecision(qty=0.0, value=0.0, method='none', reason='Invalid inputs')

        method = ''
        position_pct = 0.0
        if win_rate is not None and avg_win is not None and avg_loss is not None:
            kelly_pct = self.kelly_size(win_rate, avg_win, avg_loss)
            if kelly_pct > 0:
                position_pct = kelly_pct * confidence
                method = 'kelly'

        if method and current_drawdown:
            position_pct = self.drawdown_adjusted(position_pct, current_drawdown)
            method += '+dd_adjusted'

        if not method:
            high_conviction = confidence >= self.high_conviction_threshold
            base = self.max_high_conviction_pct if high_conviction else self.max_position_pct
            position_pct = base * confidence
            method = 'high_conviction' if high_conviction else 'standard'

        if volatility is not None and volatility > 0:
            position_pct *= min(Config.TARGET_DAILY_RISK / volatility, 1.0)
            method += '+vol_adjusted'

        position_pct = min(position_pct, self.max_high_conviction_pct)
        value = portfolio_value * position_pct
        if value < self.min_position_value:
            return SizingDecision(
                qty=0.0, value=0.0, method='skip',
                reason=f"Position value ${value:.2f} below minimum ${self.min_position_value:.2f}",
            )

        qty = float(math.floor(value / price))
        if qty == 0:
            qty = round(value / price, Config.FRACTIONAL_DECIMALS)
        return SizingDecision(
            qty=qty,
            value=round(qty * price, 2),
            method=method,
            position_pct=round(position_pct * 100.0, 2),
        )


# =============================================================================
# EXECUTION MODEL
# =============================================================================

@dataclass
class ExecutionModel:
    """
    Slippage and commission model with running totals.

    Slippage fraction by model:
        FIXED       slippage_bps / 10000
        VOLUME      market_impact_coeff * sqrt(qty / avg_volume)
        VOLATILITY  slippage_bps / 10000 * max(1, volatility / 2%)

    Buys fill above the reference price and sells below it.
    """
    slippage_bps: float = Config.SLIPPAGE_BPS
    commission_bps: float = Config.COMMISSION_BPS
    slippage_model: SlippageModel = SlippageModel.FIXED
    market_impact_coeff: float = Config.MARKET_IMPACT_COEFF
    total_slippage_paid: float = field(default=0.0, init=False)
    total_commission_paid: float = field(default=0.0, init=False)

    def __post_init__(self):
        if isinstance(self.slippage_model, str):
            self.slippage_model = SlippageModel(self.slippage_model)
        if self.slippage_bps < 0 or self.commission_bps < 0:
            raise ConfigurationError("Cost rates must be non-negative")

    def _slippage_fraction(self, qty: float, avg_volume: float, volatility: float) -> float:
        base = self.slippage_bps / Config.BPS
        if self.slippage_model is SlippageModel.VOLUME:
            if avg_volume > 0 and qty > 0:
                return self.market_impact_coeff * math.sqrt(qty / avg_volume)
            return base
        if self.slippage_model is SlippageModel.VOLATILITY:
            return base * max(1.0, volatility / Config.REFERENCE_VOLATILITY)
        return base

    def execution_price(
        self,
        side: OrderSide,
        price: float,
        qty: float = 0.0,
        avg_volume: float = 0.0,
        volatility: float = 0.0
    ) -> float:
        """Fill price after slippage; accumulates the slippage paid."""
        direction = 1.0 if side is OrderSide.BUY else -1.0
        slippage = price * self._slippage_fraction(qty, avg_volume, volatility) * direction
        self.total_slippage_paid += abs(slippage) * qty
        return price + slippage

    def commission(self, price: float, qty: float) -> float:
        fee = price * qty * self.commission_bps / Config.BPS
        self.total_commission_paid += fee
        return fee

    @property
    def total_costs(self) -> float:
        return self.total_slippage_paid + self.total_commission_paid

    def round_trip_cost_bps(self) -> float:
        return (self.slippage_bps + self.commission_bps) * 2.0

    @property
    def is_free(self) -> bool:
        return self.slippage_bps == 0 and self.commission_bps == 0


def _execute(
    trader: PaperTrader,
    side: OrderSide,
    symbol: str,
    qty: float,
    price: float,
    execution: Optional[ExecutionModel]
) -> Optional[TradeRecord]:
    order = trader.buy if side is OrderSide.BUY else trader.sell
    if execution is None:
        return order(symbol, qty, price)

    slippage_before = execution.total_slippage_paid
    commission_before = execution.total_commission_paid
    fill = execution.execution_price(side, price, qty=qty)
    trade = order(symbol, qty, fill, fee=execution.commission(fill, qty))
    if trade is None:
        # rejected orders cost nothing
        execution.total_slippage_paid = slippage_before
        execution.total_commission_paid = commission_before
    return trade


def execute_buy(
    trader: PaperTrader,
    symbol: str,
    qty: float,
    price: float,
    execution: Optional[ExecutionModel] = None
) -> Optional[TradeRecord]:
    """Buy through the execution model when one is given."""
    return _execute(trader, OrderSide.BUY, symbol, qty, price, execution)


def execute_sell(
    trader: PaperTrader,
    symbol: str,
    qty: float,
    price: float,
    execution: Optional[ExecutionModel] = None
) -> Optional[TradeRecord]:
    """Sell through the execution model when one is given."""
    return _execute(trader, OrderSide.SELL, symbol, qty, price, execution)
