"""
Battery Metals Cointegration Forecaster - Application Configuration
===================================================================

Centralized configuration: version, platform-aware data locations, study
configuration files and logging setup.

Data locations:
    - User data (mutable): %APPDATA%/MetalsForecast/ (Windows)
                           ~/Library/Application Support/MetalsForecast/ (Mac)
                           ~/.metals-forecast/ (Linux)
    - Override with the METALS_FORECAST_HOME environment variable
"""

import os
import sys
import json
import platform
from pathlib import Path
from typing import Dict, Optional

# ── Version ──────────────────────────────────────────────────────────────────
APP_NAME = "Battery Metals Cointegration Forecaster"
APP_VERSION = "1.0.0"
HOME_ENV = "METALS_FORECAST_HOME"

# Keys a study config file may set (see WalkForwardEngine / TradingSimulator)
ENGINE_KEYS = {
    'metals', 'window_length_months', 'prediction_horizon_days', 'run_start',
    'run_end', 'max_lag', 'significance', 'rank_statistic', 'skip_failed_dates',
    'use_parallel', 'n_workers',
}
SIMULATOR_KEYS = {'base_size', 'base_change', 'annual_risk_free_rate'}

DEFAULT_STUDY_CONFIG = {
    'base_size': 1000.0,
    'base_change': 1.0,
    'annual_risk_free_rate': 0.0,
}


# ── Path Resolution ──────────────────────────────────────────────────────────

def get_user_data_dir() -> Path:
    """
    Get the user data directory for outputs and logs.

    Windows: %APPDATA%/MetalsForecast/
    Linux:   ~/.metals-forecast/
    macOS:   ~/Library/Application Support/MetalsForecast/
    """
    override = os.environ.get(HOME_ENV)
    if override:
        data_dir = Path(override)
    else:
        system = platform.system()
        if system == "Windows":
            base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
            data_dir = base / "MetalsForecast"
        elif system == "Darwin":
            data_dir = Path.home() / "Library" / "Application Support" / "MetalsForecast"
        else:
            data_dir = Path.home() / ".metals-forecast"

    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_output_dir() -> Path:
    """Default directory for run output tables."""
    d = get_user_data_dir() / "Outputs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_logs_dir() -> Path:
    """Subdirectory for log files."""
    d = get_user_data_dir() / "Logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


# ── Output File Paths ───────────────────────────────────────────────────────

class Paths:
    """Output file names for one run directory."""

    def __init__(self, output_dir: Optional[str] = None):
        self.output_dir = Path(output_dir) if output_dir else get_output_dir()
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def aligned_csv(self) -> str:
        return str(self.output_dir / "aligned_forecasts.csv")

    def vectors_csv(self) -> str:
        return str(self.output_dir / "equilibrium_vectors.csv")

    def diagnostics_csv(self) -> str:
        return str(self.output_dir / "rank_diagnostics.csv")

    def evaluation_csv(self) -> str:
        return str(self.output_dir / "evaluation.csv")

    def portfolio_csv(self) -> str:
        return str(self.output_dir / "portfolio.csv")

    def skipped_csv(self) -> str:
        return str(self.output_dir / "skipped_dates.csv")

    def portfolio_history_json(self) -> str:
        return str(self.output_dir / "portfolio_history.json")

    def summary_json(self) -> str:
        return str(self.output_dir / "summary.json")


# ── Study Configuration ─────────────────────────────────────────────────────

def load_study_config(path: Optional[str] = None) -> Dict:
    """
    Load a JSON study configuration on top of the simulator defaults.

    Engine keys are passed through for WalkForwardEngine to default;
    unknown keys are rejected.
    """
    config = dict(DEFAULT_STUDY_CONFIG)
    if not path:
        return config

    with open(path, 'r', encoding='utf-8') as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict):
        raise ValueError(f"Study config must be a JSON object: {path}")

    unknown = set(overrides) - ENGINE_KEYS - SIMULATOR_KEYS
    if unknown:
        raise ValueError(f"Unknown study config keys: {sorted(unknown)}")

    config.update(overrides)
    return config


def split_study_config(config: Dict):
    """Split a study config into (engine config, simulator kwargs)."""
    engine = {k: v for k, v in config.items() if k in ENGINE_KEYS}
    simulator = {k: v for k, v in config.items() if k in SIMULATOR_KEYS}
    return engine, simulator


# ── Logging Setup ────────────────────────────────────────────────────────────

def setup_logging(level: int = None, log_to_file: bool = True):
    """Configure file and console logging for a study run."""
    import logging
    from datetime import datetime

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_to_file:
        log_file = get_logs_dir() / f"study_{datetime.now():%Y-%m-%d}.log"
        handlers.insert(0, logging.FileHandler(str(log_file), encoding="utf-8"))

    logging.basicConfig(
        level=level if level is not None else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )

    return logging.getLogger("metals_forecast")


# ── Print Configuration (for debugging) ─────────────────────────────────────

def print_config():
    """Print current configuration for debugging."""
    print(f"\n{'='*60}")
    print(f"  {APP_NAME} v{APP_VERSION}")
    print(f"{'='*60}")
    print(f"  User data:    {get_user_data_dir()}")
    print(f"  Outputs:      {get_output_dir()}")
    print(f"  Logs:         {get_logs_dir()}")
    print(f"  Platform:     {platform.system()} {platform.release()}")
    print(f"{'='*60}\n")


if __name__ == "__main__":
    print_config()
