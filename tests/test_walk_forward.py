"""Tests for the walk-forward orchestrator: scheduling, merge pass, alignment."""

import warnings

import numpy as np
import pandas as pd
import pytest

from cointegration_engine import (
    AutoregressiveModel,
    EquilibriumVector,
    ErrorCorrectionModel,
    InsufficientWindowData,
    InvalidPriceData,
    MisalignedDates,
    RankTestResult,
    SingularFit,
)
from forecast_evaluation import evaluate_forecasts
from walk_forward import DateFit, WalkForwardEngine, align_forecasts
from conftest import METALS, make_cointegrated_prices


def scripted_fit(date, family, vector=None, nrel=1, metals=METALS):
    """A DateFit that skips the econometrics, for merge-pass tests."""
    if family == 'VECM':
        model = ErrorCorrectionModel(k_ar_diff=1, rank=nrel, results=None, columns=metals)
    else:
        model = AutoregressiveModel(lag=1, results=None, columns=metals, history=None)
        nrel = 0
    k = len(metals)
    rank = RankTestResult(
        selected_lag=2, working_lag=2, nrel=nrel, mode='short_window',
        statistics=np.zeros(k), critical_values=np.ones(k), eigenvalues=np.zeros(k),
        first_vector=EquilibriumVector({m: 1.0 for m in metals}),
        combination_adf_pvalue=0.5,
        series_adf_pvalues={m: 0.5 for m in metals},
    )
    return DateFit(date=date, forecast=pd.Series(4.0, index=metals),
                   volatility=pd.Series(0.1, index=metals), rank=rank,
                   model=model, vector=vector)


def vector(values):
    return EquilibriumVector(dict(zip(METALS, values)), constant=0.5)


@pytest.fixture
def prices():
    return make_cointegrated_prices(n=200)


def scripted_engine(monkeypatch, script, **config):
    """Engine whose per-date fits come from `script` (date → DateFit or error)."""
    engine = WalkForwardEngine({'window_length_months': 1, 'prediction_horizon_days': 5,
                                'use_parallel': False, **config})

    def fake_fit(log_prices, date):
        outcome = script(date)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(engine, '_fit_date', fake_fit)
    return engine


class TestScheduling:
    def test_dates_spaced_by_horizon(self, prices):
        engine = WalkForwardEngine({'prediction_horizon_days': 7, 'run_start': prices.index[20],
                                    'run_end': prices.index[60]})
        dates = engine.rebalance_dates(prices.index)
        positions = prices.index.get_indexer(dates)
        assert positions[0] == 20
        assert np.all(np.diff(positions) == 7)
        assert positions[-1] <= 60

    def test_default_start_is_one_window_in(self, prices):
        engine = WalkForwardEngine({'window_length_months': 2})
        dates = engine.rebalance_dates(prices.index)
        assert dates[0] >= prices.index[0] + pd.Timedelta(days=60)
        assert dates[-1] <= prices.index[-1]

    def test_start_after_end_yields_nothing(self, prices):
        engine = WalkForwardEngine({'run_start': prices.index[50], 'run_end': prices.index[10]})
        assert len(engine.rebalance_dates(prices.index)) == 0

    def test_needs_two_series(self):
        with pytest.raises(ValueError):
            WalkForwardEngine({'metals': ['copper']})


class TestCarryForward:
    def test_fallback_date_carries_previous_vector(self, prices, monkeypatch):
        v1, v3 = vector([1.0, -0.4, 0.2, 0.1, -0.9]), vector([1.0, 0.3, -0.2, 0.5, -1.6])
        engine = scripted_engine(monkeypatch, lambda d: None,
                                 run_start=prices.index[100], run_end=prices.index[110])
        dates = engine.rebalance_dates(prices.index)
        assert len(dates) == 3
        script = {dates[0]: scripted_fit(dates[0], 'VECM', v1),
                  dates[1]: scripted_fit(dates[1], 'VAR'),
                  dates[2]: scripted_fit(dates[2], 'VECM', v3)}
        monkeypatch.setattr(engine, '_fit_date', lambda lp, d: script[d])

        result = engine.run(prices)
        assert result.vectors.loc[dates[1]].to_dict() == v1.to_dict()
        assert result.vectors.loc[dates[2]].to_dict() == v3.to_dict()
        assert result.n_rebalances == 3
        assert result.n_fallbacks == 1
        assert result.fallback_fraction == pytest.approx(1 / 3)

    def test_carry_across_consecutive_fallbacks(self, prices, monkeypatch):
        v1 = vector([1.0, -0.4, 0.2, 0.1, -0.9])
        engine = scripted_engine(monkeypatch, lambda d: None,
                                 run_start=prices.index[100], run_end=prices.index[120])
        dates = engine.rebalance_dates(prices.index)
        script = {d: scripted_fit(d, 'VAR') for d in dates}
        script[dates[0]] = scripted_fit(dates[0], 'VECM', v1)
        monkeypatch.setattr(engine, '_fit_date', lambda lp, d: script[d])

        result = engine.run(prices)
        for d in dates:
            assert result.vectors.loc[d].to_dict() == v1.to_dict()

    def test_leading_fallbacks_have_no_vector_rows(self, prices, monkeypatch):
        v3 = vector([1.0, 0.3, -0.2, 0.5, -1.6])
        engine = scripted_engine(monkeypatch, lambda d: None,
                                 run_start=prices.index[100], run_end=prices.index[110])
        dates = engine.rebalance_dates(prices.index)
        script = {dates[0]: scripted_fit(dates[0], 'VAR'),
                  dates[1]: scripted_fit(dates[1], 'VAR'),
                  dates[2]: scripted_fit(dates[2], 'VECM', v3)}
        monkeypatch.setattr(engine, '_fit_date', lambda lp, d: script[d])

        result = engine.run(prices)
        assert list(result.vectors.index) == [dates[2]]
        assert len(result.forecasts) == 3


class TestFailurePolicy:
    def test_skip_and_continue(self, prices, monkeypatch):
        def script(d):
            if d == prices.index[105]:
                return SingularFit("Singular matrix", date=d)
            return scripted_fit(d, 'VECM', vector([1.0, 0, 0, 0, 0]))

        engine = scripted_engine(monkeypatch, script,
                                 run_start=prices.index[100], run_end=prices.index[110])
        result = engine.run(prices)
        assert result.n_rebalances == 2
        assert [s.kind for s in result.skipped] == ['SingularFit']
        assert prices.index[105] not in result.forecasts.index
        assert result.summary()['skipped_by_kind'] == {'SingularFit': 1}

    @pytest.mark.parametrize('use_parallel', [False, True])
    def test_abort_when_configured(self, prices, monkeypatch, use_parallel):
        def script(d):
            return InsufficientWindowData("too short", date=d)

        engine = scripted_engine(monkeypatch, script, skip_failed_dates=False,
                                 use_parallel=use_parallel,
                                 run_start=prices.index[100], run_end=prices.index[110])
        with pytest.raises(InsufficientWindowData):
            engine.run(prices)

    def test_invalid_prices_abort(self, prices):
        bad = prices.copy()
        bad.iloc[3, 0] = -1.0
        with pytest.raises(InvalidPriceData):
            WalkForwardEngine().run(bad)

    def test_missing_series_is_invalid(self, prices):
        with pytest.raises(InvalidPriceData):
            WalkForwardEngine().run(prices.drop(columns=['cobalt']))

    def test_short_windows_are_skipped(self, prices):
        engine = WalkForwardEngine({'window_length_months': 1, 'use_parallel': False,
                                    'run_start': prices.index[40], 'run_end': prices.index[50]})
        result = engine.run(prices)
        assert result.n_rebalances == 0
        assert {s.kind for s in result.skipped} == {'InsufficientWindowData'}

    @pytest.mark.parametrize('use_parallel', [False, True])
    def test_flat_series_is_skipped_as_singular(self, use_parallel):
        flat = make_cointegrated_prices(n=400, seed=5)
        flat.iloc[100:, 3] = flat.iloc[100, 3]
        engine = WalkForwardEngine({'window_length_months': 6, 'use_parallel': use_parallel,
                                    'run_start': flat.index[300]})
        result = engine.run(flat)
        assert result.n_rebalances == 0
        assert len(result.skipped) > 0
        assert {s.kind for s in result.skipped} == {'SingularFit'}
        assert result.forecasts.empty


class TestAlignment:
    def test_tail_rows_retained_with_missing_actual(self, prices):
        log_prices = np.log(prices)
        dates = log_prices.index[[100, 194, 198]]
        forecasts = log_prices.loc[dates] + 0.01
        vol = pd.DataFrame(0.05, index=dates, columns=log_prices.columns)

        aligned, misaligned = align_forecasts(forecasts, vol, log_prices, horizon=5)
        assert len(aligned) == 3
        assert misaligned == [dates[2]]
        assert aligned['actual_change'].loc[dates[2]].isna().all()
        assert aligned['actual_change'].loc[dates[1]].notna().all()

        expected_actual = log_prices.iloc[105] - log_prices.iloc[100]
        np.testing.assert_allclose(aligned['actual_change'].loc[dates[0]].values,
                                   expected_actual.values)
        np.testing.assert_allclose(aligned['expected_change'].values, 0.01)
        np.testing.assert_allclose(aligned['normalized_change'].values, 0.2)

    def test_strict_alignment_raises(self, prices):
        log_prices = np.log(prices)
        dates = log_prices.index[[198]]
        forecasts = log_prices.loc[dates]
        vol = pd.DataFrame(0.05, index=dates, columns=log_prices.columns)
        with pytest.raises(MisalignedDates):
            align_forecasts(forecasts, vol, log_prices, horizon=5, strict=True)


class TestEndToEnd:
    def test_full_history_rank_detects_relation(self, prices):
        engine = WalkForwardEngine()
        result = engine.full_history_rank(prices)
        assert result.mode == 'long_run'
        assert result.nrel >= 1

    def test_ecm_beats_no_change_forecast(self):
        prices = make_cointegrated_prices(n=600, seed=7, factor_sd=0.005, noise_sd=0.01)
        engine = WalkForwardEngine({'window_length_months': 8, 'prediction_horizon_days': 5})
        result = engine.run(prices)

        assert result.n_rebalances > 50
        assert not result.skipped
        assert result.fallback_fraction < 0.5
        assert len(result.misaligned_dates) <= 1

        report = evaluate_forecasts(result.aligned)
        model_rmse = np.mean([m.rmse for m in report.metals.values()])
        naive_rmse = np.mean([m.naive_rmse for m in report.metals.values()])
        assert model_rmse < naive_rmse

    def test_parallel_and_sequential_agree(self, prices):
        config = {'window_length_months': 5, 'prediction_horizon_days': 10,
                  'run_start': prices.index[150]}
        parallel = WalkForwardEngine({**config, 'use_parallel': True}).run(prices)
        sequential = WalkForwardEngine({**config, 'use_parallel': False}).run(prices)
        pd.testing.assert_frame_equal(parallel.forecasts, sequential.forecasts)
        pd.testing.assert_frame_equal(parallel.vectors, sequential.vectors)


class TestWarningFilters:
    @pytest.mark.parametrize('use_parallel', [False, True])
    def test_filters_unchanged_after_run(self, prices, use_parallel):
        before = list(warnings.filters)
        engine = WalkForwardEngine({'window_length_months': 5, 'prediction_horizon_days': 10,
                                    'run_start': prices.index[150],
                                    'use_parallel': use_parallel})
        engine.run(prices)
        engine.full_history_rank(prices)
        assert list(warnings.filters) == before
