"""
Battery Metals Cointegration Study - Command Line Runner
========================================================

Runs the walk-forward forecaster, the forecast evaluation and the trading
simulation over a price table, prints the reports and writes every output
table to a run directory.

Usage:
    python run_study.py --prices prices.csv
    python run_study.py --prices prices.csv --config study.json --output ./run1
    python run_study.py --prices prices.csv --window-months 6 --horizon 10
    python run_study.py --prices prices.csv --start 2019-01-01 --abort-on-error

Price table: one date column plus one column per metal, strictly positive
prices. Separator and encoding are detected automatically.
"""

import argparse
import json
import sys
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from app_config import (
    APP_NAME, APP_VERSION, Paths, load_study_config, setup_logging, split_study_config,
)
from cointegration_engine import ForecastingError, InvalidPriceData, RankTestResult
from forecast_evaluation import evaluate_forecasts, print_evaluation_report
from trading_simulator import TradingSimulator, save_history
from walk_forward import ALIGNED_FIELDS, WalkForwardEngine, print_run_report


# ── Loading ─────────────────────────────────────────────────────────────────

def load_price_table(filepath: str, date_column: str = None,
                     separator: str = None) -> pd.DataFrame:
    """Load a date-indexed price table; column names are lower-cased."""
    for encoding in ['utf-8', 'utf-8-sig', 'latin-1', 'cp1252']:
        try:
            if separator is None:
                with open(filepath, 'r', encoding=encoding) as f:
                    first_line = f.readline()
                if ';' in first_line:
                    sep = ';'
                elif '\t' in first_line:
                    sep = '\t'
                else:
                    sep = ','
            else:
                sep = separator

            df = pd.read_csv(filepath, sep=sep, encoding=encoding)
            break
        except UnicodeDecodeError:
            continue
    else:
        raise ValueError(f"Could not read CSV file with any supported encoding: {filepath}")

    df.columns = [str(c).strip().lower() for c in df.columns]
    date_col = date_column.lower() if date_column else df.columns[0]
    if date_col not in df.columns:
        raise InvalidPriceData(f"Date column {date_col!r} not found in {filepath}")

    df[date_col] = pd.to_datetime(df[date_col])
    return df.set_index(date_col).sort_index()


# ── Output ──────────────────────────────────────────────────────────────────

def flatten_columns(frame: pd.DataFrame) -> pd.DataFrame:
    """(field, metal) columns → 'field_metal' for CSV export."""
    out = frame.copy()
    out.columns = [f"{field}_{metal}" for field, metal in out.columns]
    return out


def write_outputs(paths: Paths, walk, evaluation, simulation, summary: Dict):
    flatten_columns(walk.aligned[ALIGNED_FIELDS]).to_csv(paths.aligned_csv())
    walk.vectors.to_csv(paths.vectors_csv())
    walk.diagnostics.to_csv(paths.diagnostics_csv())
    walk.skipped_frame().to_csv(paths.skipped_csv(), index=False)
    evaluation.to_frame().to_csv(paths.evaluation_csv())
    simulation.to_frame().to_csv(paths.portfolio_csv())
    save_history(simulation, paths.portfolio_history_json())
    with open(paths.summary_json(), 'w', encoding='utf-8') as f:
        json.dump(summary, f, indent=2, default=_json_default)


def _json_default(value):
    if isinstance(value, (pd.Timestamp, np.datetime64)):
        return str(value)
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


# ── Main ────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"{APP_NAME} v{APP_VERSION}")
    parser.add_argument('--prices', required=True, help='Price CSV (date column + one column per metal)')
    parser.add_argument('--config', help='JSON study config')
    parser.add_argument('--output', help='Output directory (default: user data Outputs/)')
    parser.add_argument('--date-column', help='Name of the date column (default: first column)')
    parser.add_argument('--metals', nargs='+', help='Ordered series to model')
    parser.add_argument('--window-months', type=int, help='Rolling window length in months')
    parser.add_argument('--horizon', type=int, help='Prediction horizon in trading days')
    parser.add_argument('--start', help='First rebalancing date (YYYY-MM-DD)')
    parser.add_argument('--end', help='Last rebalancing date (YYYY-MM-DD)')
    parser.add_argument('--sequential', action='store_true', help='Fit dates without a thread pool')
    parser.add_argument('--abort-on-error', action='store_true', help='Abort on the first failed date')
    parser.add_argument('--no-log-file', action='store_true', help='Log to console only')
    return parser


def apply_cli_overrides(config: Dict, args) -> Dict:
    overrides = {
        'metals': args.metals,
        'window_length_months': args.window_months,
        'prediction_horizon_days': args.horizon,
        'run_start': args.start,
        'run_end': args.end,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})
    if args.sequential:
        config['use_parallel'] = False
    if args.abort_on_error:
        config['skip_failed_dates'] = False
    return config


def run_full_history(engine: WalkForwardEngine, prices: pd.DataFrame,
                     logger) -> Optional[RankTestResult]:
    """Long-run rank test; under skip-and-continue a failure is reported, not fatal."""
    try:
        return engine.full_history_rank(prices)
    except InvalidPriceData:
        raise
    except ForecastingError as e:
        if not engine.config['skip_failed_dates']:
            raise
        logger.warning("Full-history rank test failed: %s: %s", e.kind, e)
        return None


def main(argv: List[str] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = setup_logging(log_to_file=not args.no_log_file)

    config = apply_cli_overrides(load_study_config(args.config), args)
    engine_config, simulator_kwargs = split_study_config(config)

    prices = load_price_table(args.prices, date_column=args.date_column)
    engine = WalkForwardEngine(engine_config)

    try:
        full_history = run_full_history(engine, prices, logger)
        walk = engine.run(prices)
    except InvalidPriceData as e:
        logger.error("Aborting run, invalid price data: %s", e)
        return 2
    except ForecastingError as e:
        logger.error("Aborting run at %s: %s: %s", e.date, e.kind, e)
        return 1

    evaluation = evaluate_forecasts(walk.aligned)
    simulator = TradingSimulator(period_days=engine.horizon, **simulator_kwargs)
    simulation = simulator.run(walk.aligned['normalized_change'],
                               np.exp(walk.aligned['log_price']))

    print_run_report(walk, full_history)
    print_evaluation_report(evaluation)
    print(f"  Sharpe ratio: {simulation.sharpe:.3f}\n")

    summary = {
        'walk_forward': walk.summary(),
        'full_history_nrel': None if full_history is None else full_history.nrel,
        'evaluation': evaluation.to_dict(),
        'portfolio': simulation.summary(),
        'config': config,
    }
    paths = Paths(args.output)
    write_outputs(paths, walk, evaluation, simulation, summary)
    logger.info("Outputs written to %s", paths.output_dir)
    return 0


if __name__ == '__main__':
    sys.exit(main())
