"""
Benchmark Result Store
======================

Append-only CSV persistence for benchmark rows, plus the aggregate
summaries computed from them. Summaries are always recomputed from the rows,
so a saved file can be re-analyzed without re-running any cell.

Row key: (n, correlation, effect_size, functional_form, replication).

Author: DCM Research Team
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd

from ..constants import CELL_STATUSES, STATUS_FRAGILE_FAILED, STATUS_OK


# =============================================================================
# ROW SCHEMA
# =============================================================================

@dataclass
class BenchmarkResultRow:
    """One benchmark cell: design factors, fit status and scores."""
    cell_id: int
    n: int
    correlation: float
    effect_size: float
    functional_form: str
    replication: int
    seed: int
    status: str = STATUS_OK
    fragile_model_converged: bool = False
    fragile_attempts: int = 0
    robust_rmse: Optional[float] = None
    fragile_rmse: Optional[float] = None
    robust_brier: Optional[float] = None
    fragile_brier: Optional[float] = None
    robust_aic: Optional[float] = None
    fragile_aic: Optional[float] = None
    robust_model_is_better: Optional[bool] = None
    robust_fit_seconds: Optional[float] = None
    fragile_fit_seconds: Optional[float] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


RESULT_COLUMNS = [f.name for f in fields(BenchmarkResultRow)]

BOOLEAN_COLUMNS = ['fragile_model_converged', 'robust_model_is_better']

FLOAT_COLUMNS = [
    'correlation', 'effect_size', 'robust_rmse', 'fragile_rmse', 'robust_brier',
    'fragile_brier', 'robust_aic', 'fragile_aic', 'robust_fit_seconds', 'fragile_fit_seconds',
]


RowsLike = Union[pd.DataFrame, Iterable[Union[BenchmarkResultRow, Dict]]]


def rows_to_frame(rows: RowsLike) -> pd.DataFrame:
    """DataFrame with exactly RESULT_COLUMNS, in order."""
    if isinstance(rows, pd.DataFrame):
        df = rows.copy()
    else:
        records = [r.to_dict() if isinstance(r, BenchmarkResultRow) else dict(r) for r in rows]
        df = pd.DataFrame.from_records(records, columns=RESULT_COLUMNS)

    missing = [c for c in RESULT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"result rows are missing columns: {missing}")

    return df[RESULT_COLUMNS]


def _restore_types(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    for col in BOOLEAN_COLUMNS:
        df[col] = df[col].map(
            {True: True, False: False, 'True': True, 'False': False}
        ).astype('boolean')
    for col in FLOAT_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors='coerce').astype(float)
    return df


# =============================================================================
# PERSISTENCE
# =============================================================================

def append_rows(path: Union[str, Path], rows: RowsLike) -> int:
    """
    Append rows to a CSV file, writing the header only for a new file.

    Returns:
        Number of rows written
    """
    df = rows_to_frame(rows)
    if len(df) == 0:
        return 0

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not path.exists() or path.stat().st_size == 0
    df.to_csv(path, mode='a', header=write_header, index=False)

    return len(df)


def load_results(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a result file written by append_rows.

    Boolean columns come back as pandas nullable booleans, so cells where a
    comparison was not possible stay <NA> instead of False.
    """
    df = pd.read_csv(path)
    return _restore_types(rows_to_frame(df))


# =============================================================================
# SUMMARIES
# =============================================================================

@dataclass
class BenchmarkSummary:
    """Aggregates over a set of benchmark rows."""
    n_rows: int
    convergence_by_n: Dict[int, float]
    win_rate_by_n: Dict[int, float]
    status_counts: Dict[str, int]
    by_condition: pd.DataFrame = field(default_factory=pd.DataFrame)

    def summary(self) -> str:
        lines = [f"Benchmark rows: {self.n_rows}"]
        lines.append("Status: " + ", ".join(f"{k}={v}" for k, v in self.status_counts.items()))
        lines.append("MNP convergence rate by n:")
        lines.extend(f"  n = {n:4d}: {100 * rate:.1f}%" for n, rate in self.convergence_by_n.items())
        lines.append("MNL win rate by n (both models available):")
        lines.extend(f"  n = {n:4d}: {100 * rate:.1f}%" for n, rate in self.win_rate_by_n.items())
        return "\n".join(lines)


def summarize_results(results: RowsLike) -> BenchmarkSummary:
    """
    Convergence and win-rate summaries by sample size.

    - convergence_by_n: share of fragile fits that converged, over cells in
      which the fragile model actually ran
    - win_rate_by_n: share of cells where the robust model had lower RMSE,
      over cells where both models produced probabilities
    """
    df = _restore_types(rows_to_frame(results))

    ran = df[df['status'].isin([STATUS_OK, STATUS_FRAGILE_FAILED])]
    convergence_by_n = {
        int(n): float(group['fragile_model_converged'].fillna(False).astype(bool).mean())
        for n, group in ran.groupby('n', sort=True)
    }

    both = df[df['robust_rmse'].notna() & df['fragile_rmse'].notna()]
    win_rate_by_n = {
        int(n): float(group['robust_model_is_better'].astype(bool).mean())
        for n, group in both.groupby('n', sort=True)
    }

    counts = df['status'].value_counts()
    status_counts = {status: int(counts.get(status, 0)) for status in CELL_STATUSES}
    for status in counts.index:
        if status not in status_counts:
            status_counts[status] = int(counts[status])

    if len(df):
        by_condition = df.groupby(['n', 'correlation', 'functional_form'], sort=True).agg(
            cells=('cell_id', 'count'),
            fragile_converged=('fragile_model_converged', lambda s: s.fillna(False).astype(bool).mean()),
            robust_rmse=('robust_rmse', 'mean'),
            fragile_rmse=('fragile_rmse', 'mean'),
            robust_wins=('robust_model_is_better', lambda s: s.dropna().astype(bool).mean()
                         if s.notna().any() else np.nan),
        ).reset_index()
    else:
        by_condition = pd.DataFrame()

    return BenchmarkSummary(
        n_rows=len(df),
        convergence_by_n=convergence_by_n,
        win_rate_by_n=win_rate_by_n,
        status_counts=status_counts,
        by_condition=by_condition,
    )

