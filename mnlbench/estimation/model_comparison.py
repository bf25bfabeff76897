"""
Cross-Validated MNL vs MNP Comparison
=====================================

Compares the robust and fragile models on one dataset with:
- K-fold out-of-sample prediction (RMSE against true probabilities when
  available, Brier score, log-loss, accuracy)
- In-sample information criteria (AIC, BIC) and log-likelihood

Folds come from scikit-learn's KFold with a fixed seed, so both models see
the same splits. A model that fails on any fold gets NaN out-of-sample
metrics and a warning.

Author: DCM Research Team
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold

from ..constants import DEFAULT_BASE_SEED
from ..errors import CapabilityUnavailableError, ModelFitError, ValidationError
from ..models.base import FittedChoiceModel, ModelType
from ..models.formula import ChoiceFormula, FormulaLike, resolve_alternatives
from ..validation.metrics import evaluate_performance
from .safe_fit import FallbackPolicy, SafeDualModelFitter

# Metrics where a larger value is better
HIGHER_IS_BETTER = ('Accuracy', 'LogLik')


@dataclass
class ModelComparisonResult:
    """Metric table (metrics x models), winners and a recommendation."""
    table: pd.DataFrame
    winners: Dict[str, str]
    recommendation: str
    n_folds: int
    failed_models: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [self.table.to_string(float_format=lambda v: f"{v:.4f}"), ""]
        lines.extend(f"  {metric}: {winner}" for metric, winner in self.winners.items())
        lines.append(f"\nRecommendation: {self.recommendation}")
        return "\n".join(lines)


def _fit(fitter: SafeDualModelFitter, model: str, formula: ChoiceFormula,
         data: pd.DataFrame, seed: int) -> Optional[FittedChoiceModel]:
    if model == ModelType.ROBUST.value:
        try:
            return fitter.fit(formula, data, model=ModelType.ROBUST, seed=seed).model
        except (ModelFitError, CapabilityUnavailableError):
            return None
    return fitter.fit(formula, data, fallback=FallbackPolicy.NONE, seed=seed).model


def aligned_predict(model: FittedChoiceModel, data: pd.DataFrame,
                    alternatives: list, seed: int) -> np.ndarray:
    """Predictions laid out in ``alternatives`` order, 0 for labels the model lacks."""
    probs = model.predict(data, rng=np.random.default_rng(seed))
    aligned = np.zeros((len(data), len(alternatives)))
    for col, label in enumerate(model.alternatives):
        aligned[:, alternatives.index(label)] = probs[:, col]
    return aligned


def compare_models(formula: FormulaLike,
                   data: pd.DataFrame,
                   true_probs: Optional[np.ndarray] = None,
                   n_folds: int = 5,
                   seed: int = DEFAULT_BASE_SEED,
                   models: Sequence[str] = (ModelType.ROBUST.value, ModelType.FRAGILE.value),
                   fitter: Optional[SafeDualModelFitter] = None,
                   verbose: bool = True) -> ModelComparisonResult:
    """
    Compare models by K-fold cross-validation and information criteria.

    Args:
        formula: Choice formula
        data: Observed choices
        true_probs: Optional n x J true probabilities (enables RMSE)
        n_folds: Number of folds (>= 2)
        seed: Seed for fold assignment and model fits
        models: Subset of ('robust', 'fragile')
        fitter: Safe fitter providing both capabilities
        verbose: Print the comparison table

    Returns:
        ModelComparisonResult
    """
    formula = ChoiceFormula.coerce(formula)
    formula.check_columns(data)
    fitter = fitter if fitter is not None else SafeDualModelFitter(verbose=False)

    if not isinstance(n_folds, (int, np.integer)) or n_folds < 2:
        raise ValidationError(f"n_folds must be an integer >= 2, got {n_folds!r}")
    if n_folds > len(data):
        raise ValidationError(f"n_folds={n_folds} exceeds the number of rows ({len(data)})")
    models = [m.value if isinstance(m, ModelType) else m for m in models]
    if not models or any(m not in (ModelType.ROBUST.value, ModelType.FRAGILE.value) for m in models):
        raise ValidationError(f"models must be drawn from ('robust', 'fragile'), got {list(models)}")

    alternatives = resolve_alternatives(data[formula.outcome])
    if true_probs is not None:
        true_probs = np.asarray(true_probs, dtype=float)
        if true_probs.shape != (len(data), len(alternatives)):
            raise ValidationError(
                f"true_probs must have shape {(len(data), len(alternatives))}, got {true_probs.shape}"
            )

    data = data.reset_index(drop=True)
    folds = list(KFold(n_splits=n_folds, shuffle=True, random_state=seed).split(data))
    notes: List[str] = []
    columns: Dict[str, Dict[str, float]] = {}
    failed: List[str] = []

    for model in models:
        label = ModelType(model).label
        if verbose:
            print(f"\nCross-validating {label} ({n_folds} folds)...")

        oof = np.full((len(data), len(alternatives)), np.nan)
        for k, (train_idx, test_idx) in enumerate(folds, start=1):
            fit = _fit(fitter, model, formula, data.iloc[train_idx], seed + k)
            if fit is None:
                notes.append(f"{label} failed on fold {k}; out-of-sample metrics unavailable")
                oof = None
                break
            oof[test_idx] = aligned_predict(fit, data.iloc[test_idx], alternatives, seed + k)

        metrics: Dict[str, float] = {
            'RMSE': np.nan, 'Brier': np.nan, 'LogLoss': np.nan, 'Accuracy': np.nan,
        }
        if oof is not None:
            metrics.update(evaluate_performance(
                oof, true_probs=true_probs, actual=data[formula.outcome], alternatives=alternatives
            ))

        full_fit = _fit(fitter, model, formula, data, seed)
        if full_fit is None:
            notes.append(f"{label} failed on the full dataset")
            metrics.update({'AIC': np.nan, 'BIC': np.nan, 'LogLik': np.nan})
        else:
            metrics.update({'AIC': full_fit.aic, 'BIC': full_fit.bic,
                            'LogLik': full_fit.log_likelihood})

        if oof is None and full_fit is None:
            failed.append(model)
        columns[label] = metrics

    table = pd.DataFrame(columns)
    table = table.loc[['RMSE', 'Brier', 'LogLoss', 'Accuracy', 'AIC', 'BIC', 'LogLik']]

    winners: Dict[str, str] = {}
    for metric, row in table.iterrows():
        values = row.dropna()
        if values.empty:
            continue
        best = values.idxmax() if metric in HIGHER_IS_BETTER else values.idxmin()
        ties = values[values == values[best]]
        winners[metric] = best if len(ties) == 1 else 'tie'

    recommendation = _recommend(winners, failed)

    for note in notes:
        warnings.warn(note, UserWarning, stacklevel=2)

    result = ModelComparisonResult(
        table=table,
        winners=winners,
        recommendation=recommendation,
        n_folds=n_folds,
        failed_models=failed,
        warnings=notes,
    )

    if verbose:
        print(f"\n{'='*60}")
        print("  MODEL COMPARISON (cross-validated)")
        print(f"{'='*60}")
        print(result.summary())

    return result


def _recommend(winners: Dict[str, str], failed: List[str]) -> str:
    robust, fragile = ModelType.ROBUST.label, ModelType.FRAGILE.label

    if ModelType.FRAGILE.value in failed and ModelType.ROBUST.value not in failed:
        return f"Use {robust} ({fragile} failed to estimate)"
    if ModelType.ROBUST.value in failed and ModelType.FRAGILE.value not in failed:
        return f"Use {fragile} ({robust} failed to estimate)"
    if not winners:
        return "No recommendation (no model could be evaluated)"

    # Out-of-sample prediction decides; information criteria break ties
    predictive = [winners[m] for m in ('RMSE', 'Brier', 'LogLoss') if m in winners]
    votes = predictive or [winners[m] for m in ('AIC', 'BIC') if m in winners]
    robust_votes = votes.count(robust)
    fragile_votes = votes.count(fragile)

    if robust_votes > fragile_votes:
        return f"Use {robust} (better out-of-sample prediction; simpler and always converges)"
    if fragile_votes > robust_votes:
        return f"Consider {fragile} (better out-of-sample prediction)"
    return f"Models comparable; prefer {robust} for simplicity"
