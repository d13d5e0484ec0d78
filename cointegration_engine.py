"""
Cointegration Forecasting Engine
================================

Econometric core for a basket of related commodity prices: log transform and
window volatility, AIC lag selection, Johansen rank testing, and dispatch
between an error-correction model and an unrestricted VAR for n-step
forecasting.

Pipeline (one rebalancing date):
    1. Slice the rolling window (flat 30 calendar days per month)
    2. Select the VAR lag order by AIC over 1..15, floor it at 2
    3. Johansen rank test, nested walk at the 10% level → nrel
    4. nrel ≥ 1 → VECM(rank=nrel), nrel = 0 → VAR
    5. Forecast `horizon` steps ahead and keep the final step

Deterministic terms in the rank test follow the call site: the single
full-history call runs trend-inclusive ("long_run"), every bounded window
runs constant-only ("short_window").
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
from statsmodels.tsa.api import VAR
from statsmodels.tsa.stattools import adfuller
from statsmodels.tsa.vector_ar.vecm import VECM, coint_johansen

logger = logging.getLogger(__name__)

DEFAULT_METALS = ['lithium', 'cobalt', 'nickel', 'manganese', 'copper']

MAX_LAG = 15
MIN_RANK_LAG = 2          # Johansen needs at least one lagged difference
DAYS_PER_MONTH = 30

LONG_RUN = 'long_run'
SHORT_WINDOW = 'short_window'

# coint_johansen det_order per call-site mode
DET_ORDER = {
    LONG_RUN: 1,       # linear trend
    SHORT_WINDOW: 0,   # constant only
}

# Column of coint_johansen's critical value tables (90%, 95%, 99%)
CRIT_COLUMN = {0.10: 0, 0.05: 1, 0.01: 2}

ERROR_CORRECTION = 'VECM'
AUTOREGRESSIVE = 'VAR'


# ============================================================================
# TYPED ERRORS
# ============================================================================

class ForecastingError(ValueError):
    """Base class for failures the walk-forward orchestrator can act on."""

    def __init__(self, message: str, date: Optional[pd.Timestamp] = None):
        super().__init__(message)
        self.date = date

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidPriceData(ForecastingError):
    """Non-positive, missing or unordered prices. Fatal for the whole run."""


class InsufficientWindowData(ForecastingError):
    """Window too short for the largest candidate lag order."""


class SingularFit(ForecastingError):
    """Rank test or model fit hit a degenerate / near-singular matrix."""


class MisalignedDates(ForecastingError):
    """A rebalancing date has no realized value `horizon` rows later."""


# ============================================================================
# DATA CLASSES FOR STRUCTURED RESULTS
# ============================================================================

@dataclass
class EquilibriumVector:
    """Cointegrating coefficients, normalized so the first metal is 1."""
    coefficients: Dict[str, float]
    constant: float = 0.0

    def as_series(self) -> pd.Series:
        return pd.Series({**self.coefficients, 'constant': self.constant})

    def to_dict(self) -> Dict:
        return {**self.coefficients, 'constant': self.constant}

    @classmethod
    def from_array(cls, vector: np.ndarray, columns: List[str],
                   constant: float = 0.0) -> 'EquilibriumVector':
        """Normalize on the first coefficient and label by column."""
        lead = float(vector[0])
        if not np.isfinite(lead) or abs(lead) < 1e-12:
            raise SingularFit("Cointegrating vector cannot be normalized on the first series")
        scaled = np.asarray(vector, dtype=float) / lead
        return cls(
            coefficients={c: float(v) for c, v in zip(columns, scaled)},
            constant=float(constant) / lead,
        )


@dataclass
class RankTestResult:
    """Lag selection and Johansen rank decision for one window."""
    selected_lag: int                 # AIC choice in [1, max_lag]
    working_lag: int                  # floored at MIN_RANK_LAG
    nrel: int                         # number of equilibrium relations
    mode: str                         # LONG_RUN or SHORT_WINDOW
    statistics: np.ndarray            # rank ≤ 0, rank ≤ 1, ...
    critical_values: np.ndarray       # at the configured significance
    eigenvalues: np.ndarray
    first_vector: EquilibriumVector
    combination_adf_pvalue: float     # diagnostic only, never gates nrel
    series_adf_pvalues: Dict[str, float] = field(default_factory=dict)

    @property
    def k_ar_diff(self) -> int:
        return self.working_lag - 1


# ============================================================================
# SERIES PREPROCESSOR
# ============================================================================

def to_log_prices(prices: pd.DataFrame) -> pd.DataFrame:
    """
    Natural-log transform of a price panel.

    Raises InvalidPriceData for an empty panel, a non-datetime or unordered
    index, duplicate timestamps, or any missing / non-positive price.
    """
    if prices is None or prices.empty:
        raise InvalidPriceData("Price panel is empty")
    if not isinstance(prices.index, pd.DatetimeIndex):
        raise InvalidPriceData("Price panel must be indexed by date")
    if prices.index.has_duplicates:
        dupes = prices.index[prices.index.duplicated()].unique()
        raise InvalidPriceData(f"Duplicate timestamps in price panel: {list(dupes[:5])}")
    if not prices.index.is_monotonic_increasing:
        raise InvalidPriceData("Price panel timestamps must be strictly increasing")

    try:
        values = prices.astype(float)
    except (TypeError, ValueError) as e:
        raise InvalidPriceData(f"Price panel contains non-numeric values: {e}") from e
    bad =values.isna() | ~np.isfinite(values) | (values <= 0)
    if bad.any().any():
        columns = bad.columns[bad.any()].tolist()
        first = bad.any(axis=1).idxmax()
        raise InvalidPriceData(
            f"Missing or non-positive prices in {columns} (first at {first:%Y-%m-%d})",
            date=first,
        )
    return np.log(values)


def window_volatility(log_window: pd.DataFrame) -> pd.Series:
    """Sample std of log-price levels per series (not of returns)."""
    return log_window.std(ddof=1)


def model_window(log_prices: pd.DataFrame, as_of: pd.Timestamp,
                 months: int) -> pd.DataFrame:
    """Rows in [as_of - 30*months days, as_of]. Months are a flat 30 days."""
    as_of = pd.Timestamp(as_of)
    start = as_of - pd.Timedelta(days=DAYS_PER_MONTH * months)
    return log_prices.loc[start:as_of]


def min_window_rows(n_series: int, max_lag: int = MAX_LAG) -> int:
    """Rows needed so a VAR at the largest candidate lag is estimable."""
    return max_lag * (n_series + 1) + 2


# ============================================================================
# LAG & RANK SELECTOR
# ============================================================================

def nested_rank(statistics: np.ndarray, critical_values: np.ndarray,
                n_series: int) -> int:
    """
    Count rejected nulls walking rank ≤ 0, rank ≤ 1, ... in order.

    Stops at the first hypothesis that is not rejected, or at n_series - 1.
    """
    nrel = 0
    while nrel < n_series - 1 and statistics[nrel] > critical_values[nrel]:
        nrel += 1
    return nrel


class LagRankSelector:
    """
    AIC lag selection followed by a Johansen rank test.

    Args:
        max_lag: Largest candidate VAR order (default 15)
        significance: Critical value level for the rank walk (default 0.10)
        rank_statistic: 'eigen' (max-eigenvalue) or 'trace'
    """

    def __init__(self, max_lag: int = MAX_LAG, significance: float = 0.10,
                 rank_statistic: str = 'eigen'):
        if significance not in CRIT_COLUMN:
            raise ValueError(f"significance must be one of {sorted(CRIT_COLUMN)}, got {significance}")
        if rank_statistic not in ('eigen', 'trace'):
            raise ValueError(f"rank_statistic must be 'eigen' or 'trace', got {rank_statistic!r}")
        if max_lag < 1:
            raise ValueError("max_lag must be at least 1")
        self.max_lag = max_lag
        self.significance = significance
        self.rank_statistic = rank_statistic

    def check_window(self, window: pd.DataFrame):
        """Fail fast when the window cannot support every candidate lag."""
        required = min_window_rows(window.shape[1], self.max_lag)
        if len(window) < required:
            end = window.index[-1] if len(window) else None
            raise InsufficientWindowData(
                f"Window has {len(window)} rows, need {required} for "
                f"{window.shape[1]} series at lag {self.max_lag}",
                date=end,
            )

    def select_lag(self, window: pd.DataFrame) -> int:
        """AIC-optimal VAR order in [1, max_lag]."""
        self.check_window(window)
        try:
            order = VAR(window.values).select_order(maxlags=self.max_lag, trend='c')
        except (ValueError, np.linalg.LinAlgError) as e:
            raise SingularFit(f"Lag selection failed: {e}", date=window.index[-1]) from e

        aic_lag = order.selected_orders['aic']
        if aic_lag is None or not np.isfinite(aic_lag):
            raise SingularFit("AIC undefined for every candidate lag", date=window.index[-1])
        return int(min(max(int(aic_lag), 1), self.max_lag))

    def series_stationarity(self, window: pd.DataFrame, lag: int) -> Dict[str, float]:
        """Per-series ADF p-values at the selected lag. Advisory only."""
        pvalues = {}
        for column in window.columns:
            try:
                pvalues[column] = float(adfuller(window[column].values, maxlag=max(lag - 1, 0),
                                                 regression='c', autolag=None)[1])
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.debug("ADF pre-check failed for %s: %s", column, e)
                pvalues[column] = float('nan')
        return pvalues

    def test_rank(self, window: pd.DataFrame, lag: int, mode: str) -> RankTestResult:
        """
        Johansen test with k_ar_diff = lag - 1 and the nested rank walk.

        Args:
            window: Log-price window (rows × series)
            lag: Working VAR lag, already floored at 2
            mode: LONG_RUN (trend) or SHORT_WINDOW (constant)
        """
        if mode not in DET_ORDER:
            raise ValueError(f"Unknown rank test mode {mode!r}")
        if lag < MIN_RANK_LAG:
            raise ValueError(f"Rank test needs lag ≥ {MIN_RANK_LAG}, got {lag}")

        as_of = window.index[-1]
        n_series = window.shape[1]
        try:
            result = coint_johansen(window.values, DET_ORDER[mode], lag - 1)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise SingularFit(f"Johansen test failed: {e}", date=as_of) from e

        if self.rank_statistic == 'trace':
            statistics, table = result.lr1, result.cvt
        else:
            statistics, table = result.lr2, result.cvm
        critical = table[:, CRIT_COLUMN[self.significance]]

        if not (np.all(np.isfinite(result.eig)) and np.all(np.isfinite(statistics))):
            raise SingularFit("Johansen eigenvalues are not finite", date=as_of)

        nrel = nested_rank(statistics, critical, n_series)

        first = EquilibriumVector.from_array(result.evec[:, 0], list(window.columns))
        weights = np.array([first.coefficients[c] for c in window.columns])
        combination = window.values @ weights
        first.constant = -float(combination.mean())
        try:
            combo_pvalue = float(adfuller(combination + first.constant, maxlag=lag - 1,
                                          regression='c', autolag=None)[1])
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug("ADF on equilibrium combination failed at %s: %s", as_of, e)
            combo_pvalue = float('nan')

        return RankTestResult(
            selected_lag=lag,
            working_lag=lag,
            nrel=nrel,
            mode=mode,
            statistics=np.asarray(statistics, dtype=float),
            critical_values=np.asarray(critical, dtype=float),
            eigenvalues=np.asarray(result.eig, dtype=float),
            first_vector=first,
            combination_adf_pvalue=combo_pvalue,
        )

    def select(self, window: pd.DataFrame, mode: str = SHORT_WINDOW) -> RankTestResult:
        """Lag selection, advisory ADF pre-check and rank test in one call."""
        selected = self.select_lag(window)
        pre_check = self.series_stationarity(window, selected)
        working = max(selected, MIN_RANK_LAG)

        result = self.test_rank(window, working, mode)
        result.selected_lag = selected
        result.series_adf_pvalues = pre_check
        return result


# ============================================================================
# MODEL FITTER / FORECASTER
# ============================================================================

@dataclass
class ErrorCorrectionModel:
    """Fitted VECM, used when at least one equilibrium relation exists."""
    k_ar_diff: int
    rank: int
    results: object               # statsmodels VECMResults
    columns: List[str]
    family: str = field(default=ERROR_CORRECTION, init=False)

    def forecast(self, horizon: int) -> pd.Series:
        """Final step of an n-step-ahead forecast."""
        path = self.results.predict(steps=horizon)
        return pd.Series(np.asarray(path)[-1], index=self.columns)

    def equilibrium_vector(self) -> EquilibriumVector:
        beta = np.asarray(self.results.beta)[:, 0]
        constant = 0.0
        det_coint = getattr(self.results, 'det_coef_coint', None)
        if det_coint is not None and np.size(det_coint) > 0:
            constant = float(np.asarray(det_coint)[0, 0])
        return EquilibriumVector.from_array(beta, self.columns, constant)


@dataclass
class AutoregressiveModel:
    """Fitted unrestricted VAR, the fallback when nrel = 0."""
    lag: int
    results: object               # statsmodels VARResults
    columns: List[str]
    history: np.ndarray           # last `lag` observations
    family: str = field(default=AUTOREGRESSIVE, init=False)

    def forecast(self, horizon: int) -> pd.Series:
        path = self.results.forecast(self.history, steps=horizon)
        return pd.Series(np.asarray(path)[-1], index=self.columns)

    def equilibrium_vector(self) -> Optional[EquilibriumVector]:
        return None


ForecastModel = Union[ErrorCorrectionModel, AutoregressiveModel]


class ModelFitter:
    """Dispatch on the rank decision and fit the chosen model family."""

    def fit(self, window: pd.DataFrame, rank: RankTestResult) -> ForecastModel:
        as_of = window.index[-1]
        lag = rank.working_lag - 1
        columns = list(window.columns)
        if len(window) <= lag * (len(columns) + 1) + 1:
            raise InsufficientWindowData(
                f"Window of {len(window)} rows too short for a lag-{lag} fit", date=as_of)

        try:
            if rank.nrel == 0:
                results = VAR(window.values).fit(maxlags=lag, trend='c')
                model = AutoregressiveModel(lag=lag, results=results, columns=columns,
                                            history=window.values[-lag:])
            else:
                results = VECM(window.values, k_ar_diff=lag, coint_rank=rank.nrel,
                               deterministic='ci').fit()
                model = ErrorCorrectionModel(k_ar_diff=lag, rank=rank.nrel,
                                             results=results, columns=columns)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise SingularFit(f"{'VAR' if rank.nrel == 0 else 'VECM'} fit failed: {e}",
                              date=as_of) from e
        return model

    def forecast(self, model: ForecastModel, horizon: int,
                 as_of: Optional[pd.Timestamp] = None) -> pd.Series:
        """Final-step forecast; non-finite output is a singular fit."""
        if horizon < 1:
            raise ValueError("horizon must be at least 1")
        try:
            prediction = model.forecast(horizon)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise SingularFit(f"{model.family} forecast failed: {e}", date=as_of) from e
        if not np.all(np.isfinite(prediction.values)):
            raise SingularFit(f"{model.family} forecast is not finite", date=as_of)
        return prediction
