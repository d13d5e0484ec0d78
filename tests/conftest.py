"""
Shared fixtures: synthetic price panels with known cointegration structure.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Modules live at the project root
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

METALS = ['lithium', 'cobalt', 'nickel', 'manganese', 'copper']


def make_cointegrated_prices(n=200, seed=0, metals=METALS, factor_sd=0.01,
                             noise_sd=0.005, start='2018-01-01'):
    """
    Shared random-walk factor plus independent noise per metal.

    Every pair of log prices is cointegrated (k - 1 relations).
    """
    rng = np.random.default_rng(seed)
    factor = np.cumsum(rng.normal(0.0, factor_sd, n))
    levels = np.log(np.linspace(50.0, 150.0, len(metals)))
    noise = rng.normal(0.0, noise_sd, (n, len(metals)))
    log_prices = levels + factor[:, None] + noise
    index = pd.bdate_range(start, periods=n, name='date')
    return pd.DataFrame(np.exp(log_prices), index=index, columns=list(metals))


def make_independent_prices(n=200, seed=0, metals=METALS, sd=0.01, start='2018-01-01'):
    """Independent random walks: no equilibrium relation."""
    rng = np.random.default_rng(seed)
    log_prices = np.log(100.0) + np.cumsum(rng.normal(0.0, sd, (n, len(metals))), axis=0)
    index = pd.bdate_range(start, periods=n, name='date')
    return pd.DataFrame(np.exp(log_prices), index=index, columns=list(metals))


@pytest.fixture
def cointegrated_prices():
    return make_cointegrated_prices()


@pytest.fixture
def independent_prices():
    return make_independent_prices()


@pytest.fixture
def log_cointegrated(cointegrated_prices):
    return np.log(cointegrated_prices)


@pytest.fixture
def tmp_home(tmp_path, monkeypatch):
    """Point the user data directory at a temporary folder."""
    monkeypatch.setenv('METALS_FORECAST_HOME', str(tmp_path / 'home'))
    return tmp_path / 'home'
