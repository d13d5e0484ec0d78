"""
Trading Simulator
=================

Turns the normalized forecast stream into trades and tracks holdings, cash
and portfolio value across rebalancing dates.

Features:
- Log-dampened, sign-preserving trade sizing
- Frictionless fills at the recorded price (no fees, slippage or margin)
- Sharpe ratio against a compounded period risk-free rate
- JSON persistence of the snapshot history
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Dict, List

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

TRADING_DAYS_PER_YEAR = 252

# Below this the sizing curve is close to linear in the signal
MIN_BASE_CHANGE = 0.5


# ============================================================================
# SIZING & RISK-FREE RATE
# ============================================================================

def trade_size(normalized_change, base_size: float, base_change: float):
    """
    Dollar trade size: base_size × sign(z) × ln(1 + |z| / base_change).

    Accepts scalars, arrays, Series or DataFrames; NaN maps to NaN.
    """
    z = normalized_change
    return base_size * np.sign(z) * np.log1p(np.abs(z) / base_change)


def period_risk_free_rate(annual_rate: float, period_days: int) -> float:
    """Compound an annual rate down to a `period_days` trading-day period."""
    return (1.0 + annual_rate) ** (period_days / TRADING_DAYS_PER_YEAR) - 1.0


def sharpe_ratio(values: pd.Series, annual_rate: float, period_days: int) -> float:
    """
    Annualized Sharpe ratio of portfolio value.

    Returns start at the third observation; the first transition is dropped
    because the value can start at or near zero.
    """
    returns = period_returns(values)
    if len(returns) < 2:
        return float('nan')
    std = returns.std()
    if not np.isfinite(std) or std == 0:
        return float('nan')
    excess = returns.mean() - period_risk_free_rate(annual_rate, period_days)
    return float(excess / std * np.sqrt(TRADING_DAYS_PER_YEAR / period_days))


def period_returns(values: pd.Series) -> pd.Series:
    """Simple returns from the third observation on, undefined ones dropped."""
    values = pd.Series(values, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        returns = (values / values.shift(1) - 1.0).iloc[2:]
    undefined = ~np.isfinite(returns)
    if undefined.any():
        logger.debug("Dropping %d undefined period returns", int(undefined.sum()))
    return returns[~undefined]


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class PortfolioSnapshot:
    """Portfolio state after the trades of one rebalancing date."""
    date: str                         # ISO date
    holdings: Dict[str, float]        # units per metal, cumulative
    cash: float                       # cumulative
    prices: Dict[str, float]          # fill prices at this date
    trades: Dict[str, float]          # dollar size traded at this date

    @property
    def value(self) -> float:
        """holdings · prices + cash"""
        return float(sum(self.holdings[m] * self.prices[m] for m in self.holdings) + self.cash)

    def to_dict(self) -> Dict:
        d = asdict(self)
        d['value'] = self.value
        return d


@dataclass
class SimulationResult:
    """Snapshot history and performance of one simulation."""
    snapshots: List[PortfolioSnapshot]
    sharpe: float
    period_days: int
    annual_risk_free_rate: float
    metals: List[str] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        """Portfolio time series keyed by date: trades, units, holdings, cash, value."""
        rows = []
        for s in self.snapshots:
            row = {'date': pd.Timestamp(s.date)}
            for m in self.metals:
                row[f'trade_{m}'] = s.trades[m]
                row[f'units_{m}'] = s.trades[m] / s.prices[m]
                row[f'holdings_{m}'] = s.holdings[m]
            row['cash'] = s.cash
            row['value'] = s.value
            rows.append(row)
        frame = pd.DataFrame(rows)
        return frame.set_index('date') if not frame.empty else frame

    @property
    def values(self) -> pd.Series:
        return pd.Series([s.value for s in self.snapshots],
                         index=pd.DatetimeIndex([s.date for s in self.snapshots]),
                         name='value')

    def summary(self) -> Dict:
        values = self.values
        return {
            'periods': len(self.snapshots),
            'final_value': float(values.iloc[-1]) if len(values) else float('nan'),
            'sharpe_ratio': self.sharpe,
            'period_days': self.period_days,
            'period_risk_free_rate': period_risk_free_rate(self.annual_risk_free_rate,
                                                           self.period_days),
        }


# ============================================================================
# SIMULATOR
# ============================================================================

class TradingSimulator:
    """
    Holdings / cash recursion driven by normalized expected changes.

    Usage:
        sim = TradingSimulator(base_size=1000, base_change=1.0, period_days=5)
        result = sim.run(aligned['normalized_change'], np.exp(aligned['log_price']))
        result.sharpe
    """

    def __init__(self, base_size: float = 1000.0, base_change: float = 1.0,
                 annual_risk_free_rate: float = 0.0, period_days: int = 5):
        if base_size <= 0:
            raise ValueError(f"base_size must be positive, got {base_size}")
        if base_change < MIN_BASE_CHANGE:
            raise ValueError(f"base_change must be ≥ {MIN_BASE_CHANGE}, got {base_change}")
        if period_days < 1:
            raise ValueError("period_days must be at least 1")
        self.base_size = base_size
        self.base_change = base_change
        self.annual_risk_free_rate = annual_risk_free_rate
        self.period_days = period_days

    def size_trades(self, normalized: pd.DataFrame) -> pd.DataFrame:
        """Dollar trade sizes; undefined sizes become zero trades."""
        sizes = trade_size(normalized, self.base_size, self.base_change)
        return sizes.fillna(0.0)

    def run(self, normalized: pd.DataFrame, prices: pd.DataFrame) -> SimulationResult:
        """
        Run the recursion over rebalancing dates.

        Args:
            normalized: date × metal normalized expected change
            prices: date × metal raw fill prices on the same dates
        """
        metals = list(normalized.columns)
        prices = prices.loc[normalized.index, metals]
        if prices.isna().any().any() or (prices <= 0).any().any():
            raise ValueError("Fill prices must be positive at every rebalancing date")

        sizes = self.size_trades(normalized)
        holdings = np.zeros(len(metals))
        cash = 0.0
        snapshots = []
        for date in normalized.index:
            price = prices.loc[date].values.astype(float)
            size = sizes.loc[date].values.astype(float)
            units = size / price
            holdings = holdings + units
            cash = cash - float(units @ price)
            snapshots.append(PortfolioSnapshot(
                date=pd.Timestamp(date).isoformat(),
                holdings=dict(zip(metals, holdings.tolist())),
                cash=cash,
                prices=dict(zip(metals, price.tolist())),
                trades=dict(zip(metals, size.tolist())),
            ))

        values = pd.Series([s.value for s in snapshots], dtype=float)
        sharpe = sharpe_ratio(values, self.annual_risk_free_rate, self.period_days)
        return SimulationResult(snapshots=snapshots, sharpe=sharpe,
                                period_days=self.period_days,
                                annual_risk_free_rate=self.annual_risk_free_rate,
                                metals=metals)


# ============================================================================
# PERSISTENCE
# ============================================================================

def save_history(result: SimulationResult, path: str):
    """Write the snapshot history as JSON."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    data = {
        'version': '1.0',
        'last_updated': datetime.now().isoformat(),
        'metals': result.metals,
        'period_days': result.period_days,
        'annual_risk_free_rate': result.annual_risk_free_rate,
        'sharpe': None if not np.isfinite(result.sharpe) else result.sharpe,
        'snapshots': [s.to_dict() for s in result.snapshots],
    }
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    logger.info("Saved %d snapshots to %s", len(result.snapshots), path)
