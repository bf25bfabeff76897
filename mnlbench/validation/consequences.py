"""
Consequences of Model Choice
============================

Replicates one benchmark cell many times at a fixed sample size and asks
what choosing MNL or MNP costs under a known data-generating process:
- mean and spread of prediction RMSE against the true probabilities
- mean Brier score
- how often each model produced predictions at all
- how often MNL beats MNP when both did

A "safe zone" is declared when the two models predict within 10% of each
other (RMSE ratio) and both estimate reliably; the model choice then
hardly matters.

Replications reuse run_cell, so each one is seeded, timed and failure
isolated exactly like a benchmark cell.

Author: DCM Research Team
"""

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from ..constants import (
    PREFERENCE_RMSE_BAND, SAFE_ZONE_FRAGILE_CONVERGENCE, SAFE_ZONE_RMSE_BAND,
    SAFE_ZONE_ROBUST_CONVERGENCE, STATUS_OK, UNRELIABLE_FRAGILE_CONVERGENCE
)
from ..errors import ValidationError
from ..estimation.safe_fit import SafeDualModelFitter
from ..models.base import ModelType
from ..simulation.choice_data import validate_generation_parameters
from ..utils.logging_config import BenchmarkLogger
from .benchmark import build_design, run_cell
from .result_store import BenchmarkResultRow, rows_to_frame


@dataclass
class ModelChoiceConsequences:
    """Per-model accuracy over replications and the resulting advice."""
    table: pd.DataFrame
    rows: List[BenchmarkResultRow]
    rmse_ratio: Optional[float]
    robust_win_rate: Optional[float]
    safe_zone: bool
    recommendation: str
    n: int
    correlation: float
    n_sims: int
    warnings: List[str] = field(default_factory=list)

    @property
    def results(self) -> pd.DataFrame:
        return rows_to_frame(self.rows)

    def summary(self) -> str:
        lines = [
            f"n = {self.n}, correlation = {self.correlation:.2f}, {self.n_sims} simulations",
            self.table.to_string(index=False, float_format=lambda v: f"{v:.4f}"),
            "",
        ]
        if self.rmse_ratio is not None:
            lines.append(f"RMSE Ratio (MNP/MNL): {self.rmse_ratio:.3f}")
        if self.robust_win_rate is not None:
            lines.append(f"MNL win rate: {100 * self.robust_win_rate:.1f}%")
        if self.safe_zone:
            lines.append("SAFE ZONE: model choice does not matter much")
        lines.append(f"Recommendation: {self.recommendation}")
        return "\n".join(lines)


def _numeric(frame: pd.DataFrame, column: str) -> pd.Series:
    return pd.to_numeric(frame[column], errors='coerce')


def _model_summary(label: str, rmse: pd.Series, brier: pd.Series, n_sims: int) -> dict:
    valid = rmse.dropna()
    return {
        'Model': label,
        'Mean_RMSE': valid.mean() if len(valid) else np.nan,
        'SD_RMSE': valid.std() if len(valid) > 1 else np.nan,
        'Mean_Brier': brier.dropna().mean() if len(valid) else np.nan,
        'Convergence_Rate': len(valid) / n_sims,
        'N_Valid': len(valid),
    }


def _recommend(robust_rate: float, fragile_rate: float,
               rmse_ratio: Optional[float], safe_zone: bool) -> str:
    robust, fragile = ModelType.ROBUST.label, ModelType.FRAGILE.label

    if rmse_ratio is None:
        if robust_rate > 0:
            return f"Use {robust} ({fragile} failed to converge)"
        return "Unclear - insufficient convergence"
    if safe_zone:
        return "SAFE ZONE: Either model is fine"
    if fragile_rate < UNRELIABLE_FRAGILE_CONVERGENCE:
        return f"Use {robust} ({fragile} convergence too unreliable)"
    if rmse_ratio < PREFERENCE_RMSE_BAND[0]:
        return f"Prefer {fragile} (lower prediction error)"
    if rmse_ratio > PREFERENCE_RMSE_BAND[1]:
        return f"Prefer {robust} (lower prediction error)"
    return f"Slight preference for {robust} (more reliable)"


def quantify_model_choice_consequences(n: int,
                                       n_alternatives: int = 3,
                                       n_vars: int = 2,
                                       correlation: float = 0.0,
                                       effect_size: float = 0.5,
                                       functional_form: str = 'linear',
                                       n_sims: int = 100,
                                       base_seed: int = 0,
                                       fitter: Optional[SafeDualModelFitter] = None,
                                       fragile_max_attempts: int = 1,
                                       verbose: bool = True) -> ModelChoiceConsequences:
    """
    Replicated MNL vs MNP accuracy study at a fixed sample size.

    Args:
        n: Sample size of every replication
        n_alternatives: Alternatives per dataset
        n_vars: Covariates per dataset
        correlation: True error correlation (0 means IIA holds)
        effect_size: SD of the true coefficients
        functional_form: Data-generating form
        n_sims: Number of replications; replication r uses seed base_seed + r
        base_seed: Seed offset
        fitter: Safe fitter providing both capabilities
        fragile_max_attempts: Attempts per fragile fit
        verbose: Print progress and the summary

    Returns:
        ModelChoiceConsequences

    Raises:
        ValidationError: Invalid generation parameters or n_sims, before
            any replication runs
    """
    if not isinstance(n_sims, (int, np.integer)) or n_sims < 1:
        raise ValidationError(f"n_sims must be a positive integer, got {n_sims!r}")
    validate_generation_parameters(n, n_alternatives, n_vars, correlation,
                                   functional_form, effect_size)
    fitter = fitter if fitter is not None else SafeDualModelFitter(verbose=False)
    log = BenchmarkLogger(verbose=verbose)

    if verbose:
        print("\nQuantifying model choice consequences...")
        print(f"  n = {n}, correlation = {correlation:.2f}, {n_sims} simulations")
        print(f"  predictors = {n_vars}, alternatives = {n_alternatives}\n")

    cells = build_design([n], [correlation], [effect_size], [functional_form],
                         n_replications=n_sims, base_seed=base_seed)
    rows = []
    for done, cell in enumerate(cells, start=1):
        row = run_cell(cell, fitter, n_alternatives, n_vars, fragile_max_attempts)
        if row.status != STATUS_OK:
            log.cell_failed(row.cell_id, row.status, row.error_message or '')
        rows.append(row)
        if done % 20 == 0:
            log.progress(done, n_sims)

    frame = rows_to_frame(rows)
    robust_rmse = _numeric(frame, 'robust_rmse')
    fragile_rmse = _numeric(frame, 'fragile_rmse')

    table = pd.DataFrame([
        _model_summary(ModelType.ROBUST.label, robust_rmse,
                       _numeric(frame, 'robust_brier'), n_sims),
        _model_summary(ModelType.FRAGILE.label, fragile_rmse,
                       _numeric(frame, 'fragile_brier'), n_sims),
    ])
    robust_rate = float(table['Convergence_Rate'].iloc[0])
    fragile_rate = float(table['Convergence_Rate'].iloc[1])

    rmse_ratio = None
    robust_win_rate = None
    if robust_rmse.notna().any() and fragile_rmse.notna().any():
        rmse_ratio = float(fragile_rmse.mean() / robust_rmse.mean())
        both = robust_rmse.notna() & fragile_rmse.notna()
        if both.any():
            robust_win_rate = float((robust_rmse[both] < fragile_rmse[both]).mean())

    safe_zone = bool(
        rmse_ratio is not None
        and SAFE_ZONE_RMSE_BAND[0] < rmse_ratio < SAFE_ZONE_RMSE_BAND[1]
        and robust_rate > SAFE_ZONE_ROBUST_CONVERGENCE
        and fragile_rate > SAFE_ZONE_FRAGILE_CONVERGENCE
    )

    notes = []
    if fragile_rate == 0:
        notes.append(f"{ModelType.FRAGILE.label} produced no predictions in {n_sims} replications")
    if robust_rate == 0:
        notes.append(f"{ModelType.ROBUST.label} produced no predictions in {n_sims} replications")

    result = ModelChoiceConsequences(
        table=table,
        rows=rows,
        rmse_ratio=rmse_ratio,
        robust_win_rate=robust_win_rate,
        safe_zone=safe_zone,
        recommendation=_recommend(robust_rate, fragile_rate, rmse_ratio, safe_zone),
        n=n,
        correlation=correlation,
        n_sims=n_sims,
        warnings=notes,
    )

    if verbose:
        print("\n=== Model Choice Consequences ===\n")
        print(result.summary())

    return result
