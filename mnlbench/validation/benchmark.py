"""
MNL vs MNP Benchmark Simulation
===============================

Monte Carlo study over a full factorial design:

    sample size x error correlation x effect size x functional form x replication

Each cell:
1. Generate data with known true probabilities (seed = base_seed + cell index)
2. Fit the robust model (MNL) once
3. Fit the fragile model (MNP) with fallback='none', so a failure is recorded
   as a failure instead of being masked by a robust refit
4. Score both against the truth (RMSE, Brier) and record AIC
5. robust_model_is_better = robust RMSE < fragile RMSE, only when both
   models produced probabilities

Cells are independent, so they run either sequentially in design order or
in a process pool (results then arrive in completion order). A failing cell
is tagged and kept; it never stops the run.

Key outputs:
- Per-cell rows (see result_store.RESULT_COLUMNS)
- MNP convergence rate by sample size
- MNL win rate by sample size (cells where both models succeeded)

Author: DCM Research Team
"""

import itertools
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..config import BenchmarkConfig
from ..constants import (
    PROGRESS_EVERY, SECONDS_PER_CELL, STATUS_DATA_FAILED, STATUS_FRAGILE_FAILED,
    STATUS_FRAGILE_UNAVAILABLE, STATUS_OK, STATUS_ROBUST_FAILED
)
from ..estimation.safe_fit import FallbackPolicy, SafeDualModelFitter
from ..models.base import FittedChoiceModel, ModelType
from ..models.mnl import BiogemeLogitCapability
from ..models.mnp import GibbsProbitCapability
from ..simulation.choice_data import ChoiceDataset, generate_choice_data
from ..utils.logging_config import BenchmarkLogger
from .metrics import brier, rmse
from .result_store import (
    BenchmarkResultRow, BenchmarkSummary, RESULT_COLUMNS, append_rows,
    rows_to_frame, summarize_results
)

__all__ = [
    'BenchmarkCell', 'BenchmarkDriver', 'BenchmarkResult', 'BenchmarkResultRow',
    'RESULT_COLUMNS', 'build_design', 'run_cell',
]


# =============================================================================
# DESIGN
# =============================================================================

@dataclass(frozen=True)
class BenchmarkCell:
    """One design point and replication."""
    cell_id: int
    n: int
    correlation: float
    effect_size: float
    functional_form: str
    replication: int
    seed: int


def build_design(sample_sizes: Sequence[int],
                 correlations: Sequence[float],
                 effect_sizes: Sequence[float],
                 functional_forms: Sequence[str],
                 n_replications: int = 1,
                 base_seed: int = 0) -> List[BenchmarkCell]:
    """
    Cartesian product of the factors, sample size varying fastest.

    Cell ids are 1-based and the cell seed is base_seed + cell_id.
    """
    combos = itertools.product(range(1, n_replications + 1), functional_forms,
                               effect_sizes, correlations, sample_sizes)
    cells = []
    for cell_id, (rep, form, es, corr, n) in enumerate(combos, start=1):
        cells.append(BenchmarkCell(
            cell_id=cell_id,
            n=int(n),
            correlation=float(corr),
            effect_size=float(es),
            functional_form=form,
            replication=rep,
            seed=base_seed + cell_id,
        ))
    return cells


# =============================================================================
# SINGLE CELL
# =============================================================================

def _aligned_probabilities(model: FittedChoiceModel, data: ChoiceDataset) -> np.ndarray:
    """
    In-sample probabilities laid out in the dataset's alternative order.

    Alternatives never chosen in a small sample are absent from the fit and
    get probability 0.
    """
    fitted = model.fitted_probabilities()
    probs = np.zeros((data.n, data.n_alternatives))
    for col, label in enumerate(model.alternatives):
        probs[:, data.alternatives.index(label)] = fitted[:, col]
    return probs


def run_cell(cell: BenchmarkCell,
             fitter: SafeDualModelFitter,
             n_alternatives: int = 3,
             n_vars: int = 2,
             fragile_max_attempts: int = 1) -> BenchmarkResultRow:
    """
    Run one benchmark cell.

    Model failures become a status tag and null metrics on the row.
    """
    row = BenchmarkResultRow(
        cell_id=cell.cell_id, n=cell.n, correlation=cell.correlation,
        effect_size=cell.effect_size, functional_form=cell.functional_form,
        replication=cell.replication, seed=cell.seed,
    )

    try:
        data = generate_choice_data(
            n=cell.n, n_alternatives=n_alternatives, n_vars=n_vars,
            correlation=cell.correlation, functional_form=cell.functional_form,
            effect_size=cell.effect_size, seed=cell.seed,
        )
    except Exception as e:
        row.status = STATUS_DATA_FAILED
        row.error_message = f"{type(e).__name__}: {e}"
        return row

    messages = []
    robust_probs = None
    robust_coefficients = None
    fragile_probs = None

    # Robust model
    start = time.perf_counter()
    try:
        outcome = fitter.fit(data.formula, data.data, model=ModelType.ROBUST, seed=cell.seed)
        robust_probs = _aligned_probabilities(outcome.model, data)
        if fitter.smart_start:
            robust_coefficients = outcome.model.coefficients
        row.robust_aic = float(outcome.model.aic)
    except Exception as e:
        row.status = STATUS_ROBUST_FAILED
        messages.append(f"robust: {type(e).__name__}: {e}")
    row.robust_fit_seconds = time.perf_counter() - start

    # Fragile model, warm-started from the robust fit above
    start = time.perf_counter()
    try:
        outcome = fitter.fit(data.formula, data.data, fallback=FallbackPolicy.NONE,
                             max_attempts=fragile_max_attempts, seed=cell.seed,
                             starting_values=robust_coefficients)
        row.fragile_attempts = outcome.attempts_used
        row.fragile_model_converged = outcome.fragile_converged

        if outcome.succeeded:
            fragile_probs = _aligned_probabilities(outcome.model, data)
            row.fragile_aic = float(outcome.model.aic)
        else:
            if row.status == STATUS_OK:
                row.status = (STATUS_FRAGILE_UNAVAILABLE if outcome.capability_absent
                              else STATUS_FRAGILE_FAILED)
            if outcome.errors:
                messages.append(f"fragile: {outcome.errors[-1]}")
    except Exception as e:
        if row.status == STATUS_OK:
            row.status = STATUS_FRAGILE_FAILED
        messages.append(f"fragile: {type(e).__name__}: {e}")
    row.fragile_fit_seconds = time.perf_counter() - start

    # Scores against the truth
    if robust_probs is not None:
        row.robust_rmse = rmse(robust_probs, data.true_probs)
        row.robust_brier = brier(robust_probs, data.choices)
    if fragile_probs is not None:
        row.fragile_rmse = rmse(fragile_probs, data.true_probs)
        row.fragile_brier = brier(fragile_probs, data.choices)
    if robust_probs is not None and fragile_probs is not None:
        row.robust_model_is_better = bool(row.robust_rmse < row.fragile_rmse)

    if messages:
        row.error_message = " | ".join(messages)

    return row


def _run_cell_isolated(cell: BenchmarkCell,
                       fitter: SafeDualModelFitter,
                       n_alternatives: int,
                       n_vars: int,
                       fragile_max_attempts: int) -> BenchmarkResultRow:
    """run_cell with a last-resort boundary so one cell cannot stop the run."""
    try:
        return run_cell(cell, fitter, n_alternatives, n_vars, fragile_max_attempts)
    except Exception as e:
        return BenchmarkResultRow(
            cell_id=cell.cell_id, n=cell.n, correlation=cell.correlation,
            effect_size=cell.effect_size, functional_form=cell.functional_form,
            replication=cell.replication, seed=cell.seed,
            status=STATUS_DATA_FAILED, error_message=f"{type(e).__name__}: {e}",
        )


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class BenchmarkResult:
    """Rows and aggregates of a benchmark run."""
    rows: List[BenchmarkResultRow]
    summary: BenchmarkSummary
    total_time: float = 0.0
    config: Optional[BenchmarkConfig] = None
    output_path: Optional[str] = None

    @property
    def results(self) -> pd.DataFrame:
        """Rows as a DataFrame in design order."""
        return rows_to_frame(self.rows).sort_values('cell_id').reset_index(drop=True)

    @property
    def convergence_by_n(self) -> Dict[int, float]:
        return self.summary.convergence_by_n

    @property
    def win_rate_by_n(self) -> Dict[int, float]:
        return self.summary.win_rate_by_n

    def __len__(self) -> int:
        return len(self.rows)


# =============================================================================
# DRIVER
# =============================================================================

class BenchmarkDriver:
    """
    Run the MNL vs MNP benchmark over a factorial design.

    Example:
        >>> driver = BenchmarkDriver()
        >>> result = driver.run(sample_sizes=[100, 250], correlations=[0.0, 0.5],
        ...                     effect_sizes=[0.5], functional_forms=['linear'])
        >>> result.win_rate_by_n
    """

    def __init__(self,
                 fitter: Optional[SafeDualModelFitter] = None,
                 fragile_max_attempts: int = 1,
                 progress_every: int = PROGRESS_EVERY,
                 verbose: bool = True,
                 seconds_per_cell: float = SECONDS_PER_CELL):
        """
        Args:
            fitter: Safe fitter shared by every cell (default capabilities if None)
            fragile_max_attempts: Fragile attempts per cell
            progress_every: Sequential progress interval in cells
            verbose: Print the plan, progress and summaries
            seconds_per_cell: Duration estimate used for the plan
        """
        self.fitter = fitter if fitter is not None else SafeDualModelFitter(verbose=False)
        self.fragile_max_attempts = fragile_max_attempts
        self.progress_every = progress_every
        self.verbose = verbose
        self.seconds_per_cell = seconds_per_cell
        self.logger = BenchmarkLogger(verbose=verbose)

    @classmethod
    def from_config(cls, config: BenchmarkConfig, verbose: bool = True) -> 'BenchmarkDriver':
        """Driver whose fragile sampler follows the config's MCMC settings."""
        fitter = SafeDualModelFitter(
            robust=BiogemeLogitCapability(),
            fragile=GibbsProbitCapability(n_draws=config.mcmc_draws, burnin=config.mcmc_burnin),
            attempt_timeout=config.attempt_timeout,
            verbose=False,
        )
        return cls(fitter=fitter, fragile_max_attempts=config.fragile_max_attempts,
                   verbose=verbose)

    # ------------------------------------------------------------------
    def design_matrix(self,
                      sample_sizes: Sequence[int],
                      correlations: Sequence[float],
                      effect_sizes: Sequence[float],
                      functional_forms: Sequence[str],
                      n_replications: int = 1,
                      base_seed: int = 0) -> pd.DataFrame:
        """Design as a DataFrame, one row per cell in execution order."""
        cells = build_design(sample_sizes, correlations, effect_sizes,
                             functional_forms, n_replications, base_seed)
        return pd.DataFrame([asdict(cell) for cell in cells])

    def plan(self,
             sample_sizes: Sequence[int],
             correlations: Sequence[float],
             effect_sizes: Sequence[float],
             functional_forms: Sequence[str],
             n_replications: int = 1) -> Dict[str, float]:
        """Cell count and a rough duration estimate."""
        n_cells = (len(sample_sizes) * len(correlations) * len(effect_sizes)
                   * len(functional_forms) * n_replications)
        estimated_seconds = n_cells * self.seconds_per_cell
        return {
            'n_cells': n_cells,
            'estimated_seconds': estimated_seconds,
            'estimated_hours': estimated_seconds / 3600,
        }

    # ------------------------------------------------------------------
    def run(self,
            sample_sizes: Sequence[int],
            correlations: Sequence[float],
            effect_sizes: Sequence[float],
            functional_forms: Sequence[str],
            n_alternatives: int = 3,
            n_vars: int = 2,
            n_replications: int = 1,
            parallel: bool = False,
            n_workers: int = 4,
            base_seed: int = 0,
            output_path: Optional[str] = None,
            checkpoint_every: Optional[int] = None) -> BenchmarkResult:
        """
        Run every cell of the design.

        Args:
            sample_sizes: Sample size levels
            correlations: Error correlation levels, in [0, 1]
            effect_sizes: Coefficient SD levels, > 0
            functional_forms: Utility forms ('linear', 'quadratic', 'log')
            n_alternatives: Alternatives per dataset
            n_vars: Covariates per dataset
            n_replications: Replications per condition
            parallel: Run cells in a process pool
            n_workers: Pool size
            base_seed: Cell seed = base_seed + cell index
            output_path: CSV file rows are appended to
            checkpoint_every: Append completed rows every this many cells

        Returns:
            BenchmarkResult

        Raises:
            ValidationError: Invalid factor levels, before any cell runs
        """
        config = BenchmarkConfig(
            sample_sizes=list(sample_sizes), correlations=list(correlations),
            effect_sizes=list(effect_sizes), functional_forms=list(functional_forms),
            n_alternatives=n_alternatives, n_vars=n_vars, n_replications=n_replications,
            base_seed=base_seed, parallel=parallel, n_workers=n_workers,
            output_path=output_path, checkpoint_every=checkpoint_every,
            fragile_max_attempts=self.fragile_max_attempts,
        )
        config.raise_if_invalid()

        cells = build_design(sample_sizes, correlations, effect_sizes,
                             functional_forms, n_replications, base_seed)
        plan = self.plan(sample_sizes, correlations, effect_sizes,
                         functional_forms, n_replications)
        self.logger.plan(
            n_cells=len(cells),
            factors={
                'sample sizes': list(sample_sizes),
                'correlations': list(correlations),
                'effect sizes': list(effect_sizes),
                'functional forms': list(functional_forms),
            },
            n_replications=n_replications,
            estimated_seconds=plan['estimated_seconds'],
            parallel=parallel,
            n_workers=n_workers,
        )

        start_time = time.time()
        rows: List[BenchmarkResultRow] = []
        pending: List[BenchmarkResultRow] = []

        def record(row: BenchmarkResultRow) -> None:
            rows.append(row)
            pending.append(row)
            if row.status != STATUS_OK:
                self.logger.cell_failed(row.cell_id, row.status, row.error_message or '')
            if output_path and checkpoint_every and len(pending) >= checkpoint_every:
                append_rows(output_path, pending)
                pending.clear()

        try:
            if parallel:
                with ProcessPoolExecutor(max_workers=n_workers) as executor:
                    futures = [
                        executor.submit(_run_cell_isolated, cell, self.fitter, n_alternatives,
                                        n_vars, self.fragile_max_attempts)
                        for cell in cells
                    ]
                    for done, future in enumerate(as_completed(futures), start=1):
                        record(future.result())
                        if done % self.progress_every == 0:
                            self.logger.progress(done, len(cells))
            else:
                for done, cell in enumerate(cells, start=1):
                    record(_run_cell_isolated(cell, self.fitter, n_alternatives,
                                              n_vars, self.fragile_max_attempts))
                    if done % self.progress_every == 0:
                        self.logger.progress(done, len(cells))
        finally:
            # Partial runs still leave valid rows on disk
            if output_path and pending:
                append_rows(output_path, pending)
                pending.clear()

        total_time = time.time() - start_time
        summary = summarize_results(rows)
        self.logger.summary(summary.convergence_by_n, summary.win_rate_by_n, total_time)

        return BenchmarkResult(
            rows=rows,
            summary=summary,
            total_time=total_time,
            config=config,
            output_path=output_path,
        )

    def run_config(self, config: BenchmarkConfig) -> BenchmarkResult:
        """Run the design described by a BenchmarkConfig."""
        return self.run(
            sample_sizes=config.sample_sizes,
            correlations=config.correlations,
            effect_sizes=config.effect_sizes,
            functional_forms=config.functional_forms,
            n_alternatives=config.n_alternatives,
            n_vars=config.n_vars,
            n_replications=config.n_replications,
            parallel=config.parallel,
            n_workers=config.n_workers,
            base_seed=config.base_seed,
            output_path=config.output_path,
            checkpoint_every=config.checkpoint_every,
        )
