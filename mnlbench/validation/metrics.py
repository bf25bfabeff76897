"""
Prediction Performance Metrics
==============================

Pure functions scoring an n x J predicted-probability matrix against true
probabilities or realized outcomes.

Key metrics:
- RMSE: sqrt(mean((P_hat - P)^2)) against known probabilities
- Brier: mean((Y - P_hat)^2) against one-hot outcomes
- Log-loss: -mean(log P_hat[i, y_i]), clamped to [1e-15, 1 - 1e-15]
- Accuracy: share of rows whose argmax equals the realized outcome

A 1-D prediction is treated as the binary case and promoted to [1-p, p].

Outcome encoding: with explicit ``alternatives`` labels map to their
position; integer outcomes in 1..J are read as 1-based codes; anything else
uses sorted unique labels. When fewer labels than columns are observed, an
implicit reference column (1 - row sum) is inserted first.

Author: DCM Research Team
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..constants import LOG_LOSS_EPS
from ..errors import ValidationError
from ..models.formula import encode_choices


# =============================================================================
# INPUT HANDLING
# =============================================================================

def as_probability_matrix(pred) -> np.ndarray:
    """Float matrix view of predictions; vectors become [1-p, p]."""
    P = np.asarray(pred, dtype=float)
    if P.ndim == 1:
        return np.column_stack([1 - P, P])
    if P.ndim != 2:
        raise ValidationError(f"predictions must be a vector or matrix, got {P.ndim} dimensions")
    return P


def _outcome_codes(actual, n_alternatives: int,
                   alternatives: Optional[Sequence]) -> Tuple[np.ndarray, int]:
    """0-based outcome codes and the number of encoded levels."""
    if alternatives is not None:
        return encode_choices(actual, alternatives), len(alternatives)

    if isinstance(actual, pd.Series) and isinstance(actual.dtype, pd.CategoricalDtype):
        return actual.cat.codes.to_numpy(), len(actual.cat.categories)
    if isinstance(actual, pd.Categorical):
        return np.asarray(actual.codes), len(actual.categories)

    values = np.asarray(actual)
    if np.issubdtype(values.dtype, np.number):
        if (np.all(np.mod(values, 1) == 0)
                and values.min() >= 1 and values.max() <= n_alternatives):
            return values.astype(int) - 1, n_alternatives

    levels = sorted(pd.unique(values).tolist())
    return encode_choices(values, levels), len(levels)


def encode_outcomes(actual, n_alternatives: int,
                    alternatives: Optional[Sequence] = None) -> np.ndarray:
    """0-based column index of each realized outcome in the prediction matrix."""
    codes, n_levels = _outcome_codes(actual, n_alternatives, alternatives)

    if n_levels > n_alternatives:
        raise ValidationError(
            f"outcomes have {n_levels} levels but predictions have {n_alternatives} columns"
        )
    if n_levels < n_alternatives:
        # Unobserved reference category occupies the first column
        codes = codes + (n_alternatives - n_levels)
    return codes


def one_hot(actual, n_alternatives: int,
            alternatives: Optional[Sequence] = None) -> np.ndarray:
    """
    n x J indicator matrix of realized outcomes.

    A rank-deficient encoding (fewer levels than J) gets a reference column
    equal to 1 - row sum of the observed-level indicators.
    """
    codes, n_levels = _outcome_codes(actual, n_alternatives, alternatives)
    if n_levels > n_alternatives:
        raise ValidationError(
            f"outcomes have {n_levels} levels but predictions have {n_alternatives} columns"
        )

    indicators = np.zeros((len(codes), n_levels))
    indicators[np.arange(len(codes)), codes] = 1.0

    while indicators.shape[1] < n_alternatives:
        indicators = np.column_stack([1 - indicators.sum(axis=1), indicators])

    return indicators


def _check_rows(P: np.ndarray, n: int) -> None:
    if P.shape[0] != n:
        raise ValidationError(f"predictions have {P.shape[0]} rows but outcomes have {n}")


# =============================================================================
# METRICS
# =============================================================================

def rmse(pred, true_probs) -> float:
    """Root mean squared error between predicted and true probabilities."""
    P = as_probability_matrix(pred)
    T = as_probability_matrix(true_probs)
    if P.shape != T.shape:
        raise ValidationError(f"prediction shape {P.shape} does not match truth {T.shape}")
    return float(np.sqrt(np.mean((P - T) ** 2)))


def brier(pred, actual, alternatives: Optional[Sequence] = None) -> float:
    """Mean squared error against one-hot encoded outcomes."""
    P = as_probability_matrix(pred)
    Y = one_hot(actual, P.shape[1], alternatives)
    _check_rows(P, len(Y))
    return float(np.mean((Y - P) ** 2))


def log_loss(pred, actual, alternatives: Optional[Sequence] = None,
             eps: float = LOG_LOSS_EPS) -> float:
    """Negative mean log predicted probability of the realized outcome."""
    P = as_probability_matrix(pred)
    codes = encode_outcomes(actual, P.shape[1], alternatives)
    _check_rows(P, len(codes))
    chosen = np.clip(P[np.arange(len(codes)), codes], eps, 1 - eps)
    return float(-np.mean(np.log(chosen)))


def accuracy(pred, actual, alternatives: Optional[Sequence] = None) -> float:
    """Share of rows whose most likely alternative was chosen."""
    P = as_probability_matrix(pred)
    codes = encode_outcomes(actual, P.shape[1], alternatives)
    _check_rows(P, len(codes))
    return float(np.mean(P.argmax(axis=1) == codes))


def evaluate_performance(pred,
                         true_probs=None,
                         actual=None,
                         metrics: Sequence[str] = ('RMSE', 'Brier', 'LogLoss', 'Accuracy'),
                         alternatives: Optional[Sequence] = None) -> Dict[str, float]:
    """
    Compute every requested metric whose inputs are available.

    RMSE needs true_probs; Brier, LogLoss and Accuracy need actual outcomes.
    """
    results = {}

    if 'RMSE' in metrics and true_probs is not None:
        results['RMSE'] = rmse(pred, true_probs)
    if actual is not None:
        if 'Brier' in metrics:
            results['Brier'] = brier(pred, actual, alternatives)
        if 'LogLoss' in metrics:
            results['LogLoss'] = log_loss(pred, actual, alternatives)
        if 'Accuracy' in metrics:
            results['Accuracy'] = accuracy(pred, actual, alternatives)

    return results


# =============================================================================
# BRIER DECOMPOSITION
# =============================================================================

@dataclass
class BrierDecomposition:
    """
    Murphy decomposition of the Brier score.

    BS ~= uncertainty - resolution + reliability, computed over all
    (row, alternative) forecast/outcome pairs grouped into probability bins.
    """
    brier: float
    uncertainty: float
    resolution: float
    reliability: float
    by_alternative: Dict[str, float]
    n_bins: int
    notes: List[str] = field(default_factory=list)

    @property
    def refinement(self) -> float:
        return self.resolution

    @property
    def calibration(self) -> float:
        return self.reliability

    def summary(self) -> str:
        lines = [
            f"Overall Brier Score: {self.brier:.4f}",
            "BS = Uncertainty - Resolution + Reliability",
            f"  Uncertainty:  {self.uncertainty:.4f}",
            f"  Resolution:   {self.resolution:.4f}",
            f"  Reliability:  {self.reliability:.4f}",
        ]
        lines.extend(f"  {note}" for note in self.notes)
        return "\n".join(lines)


def brier_decomposition(pred, actual,
                        alternatives: Optional[Sequence] = None,
                        n_bins: Optional[int] = None) -> BrierDecomposition:
    """
    Brier score with reliability/resolution/uncertainty and per-alternative scores.

    Args:
        pred: n x J predicted probabilities
        actual: Realized outcomes
        alternatives: Optional outcome labels in column order
        n_bins: Probability bins (default min(10, ceil(n / 20)))
    """
    P = as_probability_matrix(pred)
    n, J = P.shape
    Y = one_hot(actual, J, alternatives)
    _check_rows(P, len(Y))

    if n_bins is None:
        n_bins = int(min(10, max(1, np.ceil(n / 20))))

    p = P.ravel()
    o = Y.ravel()
    o_bar = o.mean()

    edges = np.linspace(0.0, 1.0, n_bins + 1)
    bins = np.clip(np.digitize(p, edges[1:-1], right=True), 0, n_bins - 1)

    reliability = 0.0
    resolution = 0.0
    for b in np.unique(bins):
        in_bin = bins == b
        weight = in_bin.mean()
        reliability += weight * (p[in_bin].mean() - o[in_bin].mean()) ** 2
        resolution += weight * (o[in_bin].mean() - o_bar) ** 2

    labels = list(alternatives) if alternatives is not None else [f"Alt{j}" for j in range(1, J + 1)]
    by_alternative = {
        str(label): float(np.mean((Y[:, j] - P[:, j]) ** 2)) for j, label in enumerate(labels)
    }

    notes = []
    if reliability > 0.1:
        notes.append("High calibration error: probabilities systematically wrong")
    if resolution < 0.05:
        notes.append("Low resolution: model struggles to distinguish cases")

    return BrierDecomposition(
        brier=float(np.mean((Y - P) ** 2)),
        uncertainty=float(o_bar * (1 - o_bar)),
        resolution=float(resolution),
        reliability=float(reliability),
        by_alternative=by_alternative,
        n_bins=n_bins,
        notes=notes,
    )
