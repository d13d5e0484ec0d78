"""
Forecast Evaluation
===================

Error statistics for the aligned forecast stream:
    - RMSE of expected vs realized change (rows with a realized value)
    - Naive no-change RMSE on the same rows, for reference
    - Directional accuracy over rows whose realized change is nonzero
    - One-sided binomial test of the pooled hit count against a fair coin
"""

from dataclasses import dataclass, asdict, field
from typing import Dict, List

import numpy as np
import pandas as pd
from scipy import stats


@dataclass
class MetalEvaluation:
    """Per-series forecast diagnostics."""
    metal: str
    n_forecasts: int                  # rows with a realized change
    rmse: float
    naive_rmse: float                 # forecast change of zero
    n_directional: int                # rows with a nonzero realized change
    hits: int
    directional_accuracy: float
    zero_change_expected: List[float] = field(default_factory=list)

    @property
    def rmse_ratio(self) -> float:
        if not self.naive_rmse or not np.isfinite(self.naive_rmse):
            return float('nan')
        return self.rmse / self.naive_rmse

    def to_dict(self) -> Dict:
        d = asdict(self)
        d['rmse_ratio'] = self.rmse_ratio
        return d


@dataclass
class EvaluationReport:
    """Metric bundle for a walk-forward run."""
    metals: Dict[str, MetalEvaluation]
    pooled_hits: int
    pooled_total: int
    binomial_pvalue: float

    @property
    def pooled_accuracy(self) -> float:
        if self.pooled_total == 0:
            return float('nan')
        return self.pooled_hits / self.pooled_total

    def to_frame(self) -> pd.DataFrame:
        rows = [m.to_dict() for m in self.metals.values()]
        frame = pd.DataFrame(rows).set_index('metal') if rows else pd.DataFrame()
        return frame.drop(columns=['zero_change_expected'], errors='ignore')

    def to_dict(self) -> Dict:
        return {
            'metals': {name: m.to_dict() for name, m in self.metals.items()},
            'pooled_hits': self.pooled_hits,
            'pooled_total': self.pooled_total,
            'pooled_accuracy': self.pooled_accuracy,
            'binomial_pvalue': self.binomial_pvalue,
        }


def rmse(actual: pd.Series, expected: pd.Series) -> float:
    """Root-mean-square error over rows where `actual` is defined."""
    mask = actual.notna() & expected.notna()
    if not mask.any():
        return float('nan')
    diff = actual[mask].values - expected[mask].values
    return float(np.sqrt(np.mean(diff ** 2)))


def directional_hits(actual: pd.Series, expected: pd.Series):
    """
    Sign agreement over rows with a nonzero realized change.

    Returns (hits, total, expected changes on exact-zero realized rows).
    """
    defined = actual.notna() & expected.notna()
    zero = defined & (actual == 0)
    moved = defined & (actual != 0)

    hits = int((np.sign(actual[moved]) == np.sign(expected[moved])).sum())
    return hits, int(moved.sum()), [float(v) for v in expected[zero].values]


def binomial_pvalue(hits: int, total: int) -> float:
    """P(X ≥ hits) for X ~ Binomial(total, 0.5)."""
    if total == 0:
        return float('nan')
    return float(stats.binomtest(hits, total, p=0.5, alternative='greater').pvalue)


def evaluate_forecasts(aligned: pd.DataFrame) -> EvaluationReport:
    """
    Evaluate an aligned forecast table (columns: field × metal).

    Args:
        aligned: Output of walk_forward.align_forecasts
    """
    expected_all = aligned['expected_change']
    actual_all = aligned['actual_change']

    metals = {}
    pooled_hits = pooled_total = 0
    for metal in expected_all.columns:
        expected = expected_all[metal]
        actual = actual_all[metal]
        hits, total, zero_expected = directional_hits(actual, expected)
        pooled_hits += hits
        pooled_total += total

        metals[metal] = MetalEvaluation(
            metal=metal,
            n_forecasts=int((actual.notna() & expected.notna()).sum()),
            rmse=rmse(actual, expected),
            naive_rmse=rmse(actual, pd.Series(0.0, index=actual.index)),
            n_directional=total,
            hits=hits,
            directional_accuracy=hits / total if total else float('nan'),
            zero_change_expected=zero_expected,
        )

    return EvaluationReport(
        metals=metals,
        pooled_hits=pooled_hits,
        pooled_total=pooled_total,
        binomial_pvalue=binomial_pvalue(pooled_hits, pooled_total),
    )


def print_evaluation_report(report: EvaluationReport):
    """Print per-metal forecast statistics to console."""
    sep = '=' * 80
    thin = '-' * 80
    print(f"\n{sep}")
    print("  FORECAST EVALUATION")
    print(f"{sep}\n")
    header = (f"  {'Metal':<12} {'N':>5} {'RMSE':>10} {'Naive':>10} {'Ratio':>7} "
              f"{'Dir N':>6} {'Hits':>5} {'Acc':>7} {'Zero':>5}")
    print(header)
    print(thin)
    for m in report.metals.values():
        print(f"  {m.metal:<12} {m.n_forecasts:>5} {m.rmse:>10.5f} {m.naive_rmse:>10.5f} "
              f"{m.rmse_ratio:>7.3f} {m.n_directional:>6} {m.hits:>5} "
              f"{m.directional_accuracy:>7.1%} {len(m.zero_change_expected):>5}")
    print(thin)
    print(f"  Pooled directional accuracy: {report.pooled_hits}/{report.pooled_total} "
          f"({report.pooled_accuracy:.1%}), binomial p = {report.binomial_pvalue:.4f}")
    print(f"\n{sep}\n")
