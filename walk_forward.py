"""
Walk-Forward Orchestrator
=========================

Drives the cointegration engine across rebalancing dates spaced by the
prediction horizon, then resolves the sequential parts of the run in a
single merge pass.

Two phases:
    1. Fit   - one unit of work per rebalancing date, run in a thread pool.
               Each unit sees only data up to its own date.
    2. Merge - date order: forecast rows, equilibrium-vector carry-forward,
               fallback counters, skip/abort policy, alignment with the
               realized log price `horizon` rows later.
"""

import logging
import multiprocessing
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from cointegration_engine import (
    AUTOREGRESSIVE, DEFAULT_METALS, LONG_RUN, MAX_LAG, SHORT_WINDOW, DAYS_PER_MONTH,
    EquilibriumVector, ForecastingError, ForecastModel, InvalidPriceData,
    LagRankSelector, MisalignedDates, ModelFitter, RankTestResult,
    model_window, to_log_prices, window_volatility,
)

logger = logging.getLogger(__name__)

# Number of workers for parallel fitting
N_WORKERS = min(8, multiprocessing.cpu_count())

ALIGNED_FIELDS = ['forecast', 'log_price', 'realized', 'expected_change',
                  'actual_change', 'volatility', 'normalized_change']


# ============================================================================
# DATA CLASSES FOR STRUCTURED RESULTS
# ============================================================================

@dataclass
class DateFit:
    """Outcome of one rebalancing date's fitting unit."""
    date: pd.Timestamp
    forecast: pd.Series           # log-price forecast, `horizon` rows ahead
    volatility: pd.Series         # window std of log-price levels
    rank: RankTestResult
    model: ForecastModel
    vector: Optional[EquilibriumVector] = None   # only set by the VECM branch

    @property
    def family(self) -> str:
        return self.model.family


@dataclass
class SkippedDate:
    """A rebalancing date dropped under the skip-and-continue policy."""
    date: pd.Timestamp
    kind: str
    message: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class WalkForwardResult:
    """Append-only tables produced by the merge pass."""
    forecasts: pd.DataFrame       # date × metal
    volatility: pd.DataFrame      # date × metal
    aligned: pd.DataFrame         # date × (field, metal)
    vectors: pd.DataFrame         # date × (metal..., constant)
    diagnostics: pd.DataFrame     # date × rank/lag/family columns
    skipped: List[SkippedDate] = field(default_factory=list)
    misaligned_dates: List[pd.Timestamp] = field(default_factory=list)
    n_rebalances: int = 0
    n_fallbacks: int = 0
    horizon: int = 5

    @property
    def fallback_fraction(self) -> float:
        """Share of completed rebalances that used the VAR fallback."""
        if self.n_rebalances == 0:
            return float('nan')
        return self.n_fallbacks / self.n_rebalances

    def skipped_frame(self) -> pd.DataFrame:
        return pd.DataFrame([s.to_dict() for s in self.skipped],
                            columns=['date', 'kind', 'message'])

    def summary(self) -> Dict:
        kinds: Dict[str, int] = {}
        for s in self.skipped:
            kinds[s.kind] = kinds.get(s.kind, 0) + 1
        return {
            'rebalances': self.n_rebalances,
            'var_fallbacks': self.n_fallbacks,
            'fallback_fraction': self.fallback_fraction,
            'skipped_dates': len(self.skipped),
            'skipped_by_kind': kinds,
            'misaligned_dates': len(self.misaligned_dates),
            'horizon': self.horizon,
            'timestamp': datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
        }


# ============================================================================
# ALIGNMENT
# ============================================================================

def _stack_rows(rows: List[pd.Series], columns: List[str]) -> pd.DataFrame:
    """Date-named Series rows → date-indexed float frame with fixed columns."""
    values = np.array([row.reindex(columns).values for row in rows], dtype=float)
    return pd.DataFrame(values.reshape(len(rows), len(columns)),
                        index=pd.DatetimeIndex([row.name for row in rows], name='date'),
                        columns=columns)


def align_forecasts(forecasts: pd.DataFrame, volatility: pd.DataFrame,
                    log_prices: pd.DataFrame, horizon: int,
                    strict: bool = False) -> Tuple[pd.DataFrame, List[pd.Timestamp]]:
    """
    Join each forecast row to the realized log price `horizon` rows later.

    Rows without a realized value are kept with NaN actual change. Returns
    the aligned table (columns: field × metal) and the misaligned dates.

    Raises:
        MisalignedDates: when strict=True and any row lacks a realized value
    """
    index = log_prices.index
    positions = index.get_indexer(forecasts.index)
    if (positions < 0).any():
        missing = forecasts.index[positions < 0]
        raise MisalignedDates(f"Forecast dates not in price index: {list(missing[:5])}",
                              date=missing[0])

    targets = positions + horizon
    available = targets < len(index)
    realized = pd.DataFrame(np.nan, index=forecasts.index, columns=forecasts.columns)
    if available.any():
        realized.loc[available] = log_prices.iloc[targets[available]].values

    misaligned = list(forecasts.index[~available])
    if misaligned and strict:
        raise MisalignedDates(
            f"{len(misaligned)} forecast dates have no realized value {horizon} rows ahead",
            date=misaligned[0])

    current = log_prices.loc[forecasts.index, forecasts.columns]
    expected = forecasts - current
    aligned = pd.concat({
        'forecast': forecasts,
        'log_price': current,
        'realized': realized,
        'expected_change': expected,
        'actual_change': realized - current,
        'volatility': volatility,
        'normalized_change': expected / volatility,
    }, axis=1)
    aligned.index.name = 'date'
    return aligned, misaligned


# ============================================================================
# WALK-FORWARD ENGINE
# ============================================================================

class WalkForwardEngine:
    """
    Rolling-window cointegration forecaster.
    """

    def __init__(self, config: Dict = None):
        """
        Initialize engine with configuration.

        Config options:
            metals: Ordered series names (default lithium..copper)
            window_length_months: Rolling window, 30 days per month (default 12)
            prediction_horizon_days: Forecast steps and rebalance cadence (default 5)
            run_start / run_end: Walk-forward bounds (default: data bounds)
            max_lag: Largest AIC candidate lag (default 15)
            significance: Rank-test critical value level (default 0.10)
            rank_statistic: 'eigen' or 'trace' (default 'eigen')
            skip_failed_dates: Skip-and-continue on per-date failures (default True)
            use_parallel: Fit dates in a thread pool (default True)
            n_workers: Thread pool size (default min(8, cpu_count))
        """
        self.config = dict(config or {})
        self._set_defaults()
        self._validate()

        self.selector = LagRankSelector(
            max_lag=self.config['max_lag'],
            significance=self.config['significance'],
            rank_statistic=self.config['rank_statistic'],
        )
        self.fitter = ModelFitter()

    def _set_defaults(self):
        """Set default configuration values."""
        defaults = {
            'metals': list(DEFAULT_METALS),
            'window_length_months': 12,
            'prediction_horizon_days': 5,
            'run_start': None,
            'run_end': None,
            'max_lag': MAX_LAG,
            'significance': 0.10,
            'rank_statistic': 'eigen',
            'skip_failed_dates': True,
            'use_parallel': True,
            'n_workers': N_WORKERS,
        }
        for key, value in defaults.items():
            if key not in self.config:
                self.config[key] = value

    def _validate(self):
        if len(self.config['metals']) < 2:
            raise ValueError("At least two series are needed for a cointegration study")
        if len(set(self.config['metals'])) != len(self.config['metals']):
            raise ValueError(f"Duplicate series names: {self.config['metals']}")
        if int(self.config['window_length_months']) < 1:
            raise ValueError("window_length_months must be at least 1")
        if int(self.config['prediction_horizon_days']) < 1:
            raise ValueError("prediction_horizon_days must be at least 1")

    @property
    def horizon(self) -> int:
        return int(self.config['prediction_horizon_days'])

    @property
    def metals(self) -> List[str]:
        return list(self.config['metals'])

    # ------------------------------------------------------------------------
    # PREPARATION
    # ------------------------------------------------------------------------

    def prepare(self, prices: pd.DataFrame) -> pd.DataFrame:
        """Select the configured series in order and log-transform them."""
        missing = [m for m in self.metals if m not in prices.columns]
        if missing:
            raise InvalidPriceData(f"Price panel is missing series: {missing}")
        return to_log_prices(prices[self.metals])

    def rebalance_dates(self, index: pd.DatetimeIndex) -> pd.DatetimeIndex:
        """
        First row on/after run_start, then every `horizon` rows to run_end.

        Without run_start the run begins one full window after the first row.
        """
        if len(index) == 0:
            return pd.DatetimeIndex([])
        start = self.config['run_start']
        if start is None:
            start = index[0] + pd.Timedelta(days=DAYS_PER_MONTH * self.config['window_length_months'])
        end = self.config['run_end'] if self.config['run_end'] is not None else index[-1]

        first = index.searchsorted(pd.Timestamp(start), side='left')
        last = index.searchsorted(pd.Timestamp(end), side='right') - 1
        if first > last:
            return pd.DatetimeIndex([])
        return index[np.arange(first, last + 1, self.horizon)]

    # ------------------------------------------------------------------------
    # PHASE 1: PER-DATE FITTING
    # ------------------------------------------------------------------------

    def _fit_date(self, log_prices: pd.DataFrame, date: pd.Timestamp) -> DateFit:
        """One unit of work: window → volatility → lag/rank → fit → forecast."""
        window = model_window(log_prices, date, self.config['window_length_months'])
        volatility = window_volatility(window)
        try:
            rank = self.selector.select(window, SHORT_WINDOW)
            model = self.fitter.fit(window, rank)
            forecast = self.fitter.forecast(model, self.horizon, as_of=date)
            vector = model.equilibrium_vector()
        except ForecastingError as e:
            if e.date is None:
                e.date = date
            raise

        return DateFit(date=date, forecast=forecast, volatility=volatility,
                       rank=rank, model=model, vector=vector)

    def _fit_all(self, log_prices: pd.DataFrame,
                 dates: pd.DatetimeIndex) -> Dict[pd.Timestamp, Union[DateFit, ForecastingError]]:
        outcomes: Dict[pd.Timestamp, Union[DateFit, ForecastingError]] = {}

        if self.config['use_parallel'] and len(dates) > 1:
            with ThreadPoolExecutor(max_workers=self.config['n_workers']) as executor:
                futures = {
                    executor.submit(self._fit_date, log_prices, date): date
                    for date in dates
                }
                for future in as_completed(futures):
                    date = futures[future]
                    try:
                        outcomes[date] = future.result()
                    except ForecastingError as e:
                        outcomes[date] = e
        else:
            for date in dates:
                try:
                    outcomes[date] = self._fit_date(log_prices, date)
                except ForecastingError as e:
                    if not self.config['skip_failed_dates']:
                        raise
                    outcomes[date] = e
        return outcomes

    # ------------------------------------------------------------------------
    # PHASE 2: SEQUENTIAL MERGE
    # ------------------------------------------------------------------------

    def _merge(self, log_prices: pd.DataFrame, dates: pd.DatetimeIndex,
               outcomes: Dict[pd.Timestamp, Union[DateFit, ForecastingError]]) -> WalkForwardResult:
        forecast_rows, vol_rows, vector_rows, diag_rows = [], [], [], []
        skipped: List[SkippedDate] = []
        current_vector: Optional[EquilibriumVector] = None
        n_rebalances = n_fallbacks = 0

        for date in dates:
            outcome = outcomes[date]
            if isinstance(outcome, ForecastingError):
                if not self.config['skip_failed_dates']:
                    raise outcome
                logger.warning("Skipping %s: %s: %s", date.date(), outcome.kind, outcome)
                skipped.append(SkippedDate(date=date, kind=outcome.kind, message=str(outcome)))
                continue

            n_rebalances += 1
            if outcome.family == AUTOREGRESSIVE:
                n_fallbacks += 1
            else:
                current_vector = outcome.vector

            forecast_rows.append(outcome.forecast.rename(date))
            vol_rows.append(outcome.volatility.rename(date))
            # Dates before the first VECM fit have no vector to carry
            if current_vector is not None:
                vector_rows.append(current_vector.as_series().rename(date))

            rank = outcome.rank
            diag = {
                'date': date,
                'selected_lag': rank.selected_lag,
                'working_lag': rank.working_lag,
                'nrel': rank.nrel,
                'family': outcome.family,
                'combination_adf_pvalue': rank.combination_adf_pvalue,
            }
            for metal, pvalue in rank.series_adf_pvalues.items():
                diag[f'adf_{metal}'] = pvalue
            diag_rows.append(diag)

        metals = list(log_prices.columns)
        forecasts = _stack_rows(forecast_rows, metals)
        volatility = _stack_rows(vol_rows, metals)
        vectors = _stack_rows(vector_rows, metals + ['constant'])

        diagnostics = pd.DataFrame(diag_rows)
        if not diagnostics.empty:
            diagnostics = diagnostics.set_index('date')

        aligned, misaligned = align_forecasts(forecasts, volatility, log_prices, self.horizon)
        if misaligned:
            logger.info("%d forecast dates have no realized value %d rows ahead (%s)",
                        len(misaligned), self.horizon, MisalignedDates.__name__)

        return WalkForwardResult(
            forecasts=forecasts,
            volatility=volatility,
            aligned=aligned,
            vectors=vectors,
            diagnostics=diagnostics,
            skipped=skipped,
            misaligned_dates=misaligned,
            n_rebalances=n_rebalances,
            n_fallbacks=n_fallbacks,
            horizon=self.horizon,
        )

    # ------------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------------

    def run(self, prices: pd.DataFrame, progress_callback=None) -> WalkForwardResult:
        """
        Run the walk-forward study over a raw price panel.

        Args:
            prices: Date-indexed raw prices, one column per configured metal
            progress_callback: Optional function(stage, message)

        Raises:
            InvalidPriceData: always aborts the run
            ForecastingError: first per-date failure when skip_failed_dates=False
        """
        log_prices = self.prepare(prices)
        dates = self.rebalance_dates(log_prices.index)
        logger.info("Walk-forward over %d rebalancing dates (window=%d months, horizon=%d)",
                    len(dates), self.config['window_length_months'], self.horizon)
        if progress_callback:
            progress_callback('fitting', f"Fitting {len(dates)} rebalancing dates")

        # Warning filters are process-global: set once here, never in workers
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            outcomes = self._fit_all(log_prices, dates)

        if progress_callback:
            progress_callback('merging', f"Merging {len(outcomes)} outcomes")
        result = self._merge(log_prices, dates, outcomes)

        logger.info("Walk-forward complete: %d rebalances, %d VAR fallbacks, %d skipped",
                    result.n_rebalances, result.n_fallbacks, len(result.skipped))
        return result

    def full_history_rank(self, prices: pd.DataFrame) -> RankTestResult:
        """The single long-run (trend-inclusive) rank test over all rows."""
        log_prices = self.prepare(prices)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            return self.selector.select(log_prices, LONG_RUN)


# ============================================================================
# REPORTING
# ============================================================================

def print_run_report(result: WalkForwardResult, full_history: Optional[RankTestResult] = None):
    """Print a console summary of a walk-forward run."""
    sep = '=' * 80
    print(f"\n{sep}")
    print("  WALK-FORWARD COINTEGRATION RUN")
    print(f"{sep}\n")
    print(f"  Rebalances:        {result.n_rebalances}")
    print(f"  VAR fallbacks:     {result.n_fallbacks} ({result.fallback_fraction:.1%})")
    print(f"  Skipped dates:     {len(result.skipped)}")
    print(f"  Without realized:  {len(result.misaligned_dates)}")

    if full_history is not None:
        print(f"\n  Full-history rank: nrel={full_history.nrel} "
              f"(lag={full_history.selected_lag}, mode={full_history.mode})")
        vec = '  '.join(f"{k}={v:+.3f}" for k, v in full_history.first_vector.coefficients.items())
        print(f"  First eigenvector: {vec}")

    if not result.diagnostics.empty:
        counts = result.diagnostics['nrel'].value_counts().sort_index()
        print("\n  Rank distribution:")
        for nrel, count in counts.items():
            print(f"    nrel={nrel}: {count}")

    if result.skipped:
        print("\n  Skipped:")
        for s in result.skipped:
            print(f"    {s.date:%Y-%m-%d}  {s.kind:<24} {s.message}")
    print(f"\n{sep}\n")
