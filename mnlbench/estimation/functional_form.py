"""
Flexible MNL: Functional Form Selection
=======================================

Fits the robust model under several covariate specifications and picks the
one that predicts best:

    linear        choice ~ x1 + x2
    quadratic     choice ~ x1 + x2 + x1_sq + x2_sq
    log           choice ~ log_x1 + log_x2        (log(x + 1) where x > 0)
    interactions  choice ~ x1 + x2 + x1_x_x2      (all pairwise products)

The log specification uses the same transform as the 'log' data-generating
form, so a dataset simulated with it can be recovered.

Selection criteria:
- rmse / brier: prediction error, out-of-fold when cross-validating.
  RMSE is taken against the true probabilities when they are given,
  otherwise against the one-hot outcomes.
- aic / bic: in-sample information criteria
- cv: out-of-fold RMSE, cross-validation forced on

Folds come from scikit-learn's KFold, shared by every specification.

Author: DCM Research Team
"""

import itertools
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold

from ..constants import (
    DEFAULT_BASE_SEED, DEFAULT_N_FOLDS, SELECTION_CRITERIA, SPECIFICATION_FORMS
)
from ..errors import CapabilityUnavailableError, ModelFitError, ValidationError
from ..models.base import FittedChoiceModel, ModelType
from ..models.formula import ChoiceFormula, FormulaLike, resolve_alternatives
from ..simulation.choice_data import transform_covariates
from ..validation.metrics import brier, log_loss, one_hot, rmse
from .model_comparison import aligned_predict
from .safe_fit import SafeDualModelFitter


TABLE_COLUMNS = ['Form', 'Formula', 'NParams', 'RMSE', 'Brier', 'LogLoss', 'AIC', 'BIC', 'LogLik']

# Table column each selection criterion minimizes
CRITERION_COLUMNS = {
    'rmse': 'RMSE',
    'brier': 'Brier',
    'aic': 'AIC',
    'bic': 'BIC',
    'cv': 'RMSE',
}


# =============================================================================
# SPECIFICATIONS
# =============================================================================

def expand_specification(formula: FormulaLike,
                         data: pd.DataFrame,
                         form: str) -> Tuple[ChoiceFormula, pd.DataFrame]:
    """
    Formula and data for one functional form.

    Derived covariates are added as new columns of a copy of ``data``.

    Raises:
        ValidationError: Unknown form, or a form the covariates cannot
            support (interactions need two covariates, log needs a
            positive value)
    """
    formula = ChoiceFormula.coerce(formula)
    covariates = list(formula.covariates)

    if form == 'linear':
        return formula, data

    data = data.copy()

    if form == 'quadratic':
        squares = []
        for name in covariates:
            data[f"{name}_sq"] = data[name].astype(float) ** 2
            squares.append(f"{name}_sq")
        return ChoiceFormula(formula.outcome, tuple(covariates + squares)), data

    if form == 'log':
        X = data[covariates].to_numpy(dtype=float)
        if not np.any(X > 0):
            raise ValidationError("log form needs at least one positive covariate value")
        logged = transform_covariates(X, 'log')
        names = []
        for j, name in enumerate(covariates):
            data[f"log_{name}"] = logged[:, j]
            names.append(f"log_{name}")
        return ChoiceFormula(formula.outcome, tuple(names)), data

    if form == 'interactions':
        if len(covariates) < 2:
            raise ValidationError("interactions form needs at least two covariates")
        products = []
        for a, b in itertools.combinations(covariates, 2):
            data[f"{a}_x_{b}"] = data[a].astype(float) * data[b].astype(float)
            products.append(f"{a}_x_{b}")
        return ChoiceFormula(formula.outcome, tuple(covariates + products)), data

    raise ValidationError(f"form must be one of {SPECIFICATION_FORMS}, got {form!r}")


def _resolve_forms(forms: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(forms, str):
        forms = [forms]
    forms = list(forms)
    if 'all' in forms:
        return list(SPECIFICATION_FORMS)

    unknown = [f for f in forms if f not in SPECIFICATION_FORMS]
    if unknown or not forms:
        raise ValidationError(
            f"forms must be a non-empty subset of {SPECIFICATION_FORMS} or 'all', got {forms}"
        )
    return list(dict.fromkeys(forms))


def _resolve_criterion(selection: str) -> str:
    criterion = str(selection).lower()
    if criterion not in SELECTION_CRITERIA:
        raise ValidationError(f"selection must be one of {SELECTION_CRITERIA}, got {selection!r}")
    return criterion


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class FlexibleMNLResult:
    """Comparison of robust-model specifications and the selected one."""
    best_form: str
    best_model: FittedChoiceModel
    table: pd.DataFrame
    recommendation: str
    selection: str
    cross_validated: bool
    models: Dict[str, FittedChoiceModel] = field(default_factory=dict)
    formulas: Dict[str, ChoiceFormula] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> str:
        scope = "cross-validated" if self.cross_validated else "in-sample"
        lines = [
            f"Selection: {self.selection} ({scope} prediction metrics)",
            self.table.to_string(index=False, float_format=lambda v: f"{v:.4f}"),
            "",
            f"Best specification: {self.best_form}",
            f"  {self.recommendation}",
        ]
        return "\n".join(lines)


@dataclass
class FunctionalFormTestResult:
    """Specifications ranked by one metric, with the gain over linear."""
    best_form: str
    best_model: FittedChoiceModel
    ranked: pd.DataFrame
    improvement: Optional[float]
    recommendation: str
    metric: str
    cross_validated: bool
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> str:
        scope = "cross-validated" if self.cross_validated else "in-sample"
        lines = [
            f"Ranked by {CRITERION_COLUMNS[self.metric]} ({scope}):",
            self.ranked.to_string(index=False, float_format=lambda v: f"{v:.4f}"),
            "",
            f"Best form: {self.best_form}",
        ]
        if self.improvement is not None and self.improvement > 0:
            lines.append(f"  {self.improvement:.1f}% improvement over linear baseline")
        lines.append(self.recommendation)
        return "\n".join(lines)


# =============================================================================
# SELECTION
# =============================================================================

def _fit_robust(fitter: SafeDualModelFitter, formula: ChoiceFormula,
                data: pd.DataFrame, seed: int) -> Optional[FittedChoiceModel]:
    try:
        return fitter.fit(formula, data, model=ModelType.ROBUST, seed=seed).model
    except (ModelFitError, CapabilityUnavailableError):
        return None


def _prediction_metrics(probs: np.ndarray, outcomes: pd.Series, alternatives: list,
                        true_probs: Optional[np.ndarray]) -> Dict[str, float]:
    if true_probs is not None:
        error = rmse(probs, true_probs)
    else:
        Y = one_hot(outcomes, len(alternatives), alternatives)
        error = float(np.sqrt(np.mean((Y - probs) ** 2)))
    return {
        'RMSE': error,
        'Brier': brier(probs, outcomes, alternatives),
        'LogLoss': log_loss(probs, outcomes, alternatives),
    }


def flexible_mnl(formula: FormulaLike,
                 data: pd.DataFrame,
                 forms: Union[str, Sequence[str]] = ('linear', 'quadratic'),
                 selection: str = 'rmse',
                 cross_validate: bool = True,
                 n_folds: int = DEFAULT_N_FOLDS,
                 true_probs: Optional[np.ndarray] = None,
                 seed: int = DEFAULT_BASE_SEED,
                 fitter: Optional[SafeDualModelFitter] = None,
                 verbose: bool = True) -> FlexibleMNLResult:
    """
    Fit the robust model under several functional forms and select one.

    Args:
        formula: Base choice formula (linear in its covariates)
        data: Observed choices
        forms: Subset of SPECIFICATION_FORMS, or 'all'
        selection: 'rmse', 'brier', 'aic', 'bic' or 'cv' (case-insensitive)
        cross_validate: Score prediction metrics out-of-fold
        n_folds: Number of folds (>= 2) when cross-validating
        true_probs: Optional n x J true probabilities for RMSE
        seed: Seed for fold assignment and fits
        fitter: Safe fitter providing the robust capability
        verbose: Print the comparison table

    Returns:
        FlexibleMNLResult

    Raises:
        ValidationError: Bad forms, selection, n_folds or true_probs shape
        ModelFitError: No specification could be fitted
    """
    formula = ChoiceFormula.coerce(formula)
    formula.check_columns(data)
    forms = _resolve_forms(forms)
    criterion = _resolve_criterion(selection)
    cross_validate = cross_validate or criterion == 'cv'
    fitter = fitter if fitter is not None else SafeDualModelFitter(verbose=False)

    if cross_validate:
        if not isinstance(n_folds, (int, np.integer)) or n_folds < 2:
            raise ValidationError(f"n_folds must be an integer >= 2, got {n_folds!r}")
        if n_folds > len(data):
            raise ValidationError(f"n_folds={n_folds} exceeds the number of rows ({len(data)})")

    alternatives = resolve_alternatives(data[formula.outcome])
    if true_probs is not None:
        true_probs = np.asarray(true_probs, dtype=float)
        if true_probs.shape != (len(data), len(alternatives)):
            raise ValidationError(
                f"true_probs must have shape {(len(data), len(alternatives))}, got {true_probs.shape}"
            )

    if verbose:
        print(f"\n{'='*70}")
        print("  FLEXIBLE MNL: Functional Form Selection")
        print(f"{'='*70}\n")
        print(f"Testing forms: {', '.join(forms)}")
        print(f"Selection criterion: {criterion}")
        print(f"Using {n_folds}-fold cross-validation\n" if cross_validate else "Using in-sample fit\n")

    data = data.reset_index(drop=True)
    outcomes = data[formula.outcome]
    folds = (list(KFold(n_splits=n_folds, shuffle=True, random_state=seed).split(data))
             if cross_validate else [])

    notes: List[str] = []
    rows = []
    models: Dict[str, FittedChoiceModel] = {}
    formulas: Dict[str, ChoiceFormula] = {}

    for form in forms:
        try:
            form_formula, form_data = expand_specification(formula, data, form)
        except ValidationError as e:
            notes.append(f"Skipping {form} form: {e}")
            continue

        if verbose:
            print(f"  - {form}: {form_formula}")

        model = _fit_robust(fitter, form_formula, form_data, seed)
        if model is None:
            notes.append(f"{form} specification failed to estimate")
            continue
        models[form] = model
        formulas[form] = form_formula

        if cross_validate:
            probs = np.full((len(data), len(alternatives)), np.nan)
            for k, (train_idx, test_idx) in enumerate(folds, start=1):
                fold_model = _fit_robust(fitter, form_formula, form_data.iloc[train_idx], seed + k)
                if fold_model is None:
                    notes.append(f"{form} specification failed on fold {k}; "
                                 f"out-of-sample metrics unavailable")
                    probs = None
                    break
                probs[test_idx] = aligned_predict(fold_model, form_data.iloc[test_idx],
                                                  alternatives, seed + k)
        else:
            probs = aligned_predict(model, form_data, alternatives, seed)

        row = {
            'Form': form,
            'Formula': str(form_formula),
            'NParams': model.n_params,
            'RMSE': np.nan,
            'Brier': np.nan,
            'LogLoss': np.nan,
            'AIC': model.aic,
            'BIC': model.bic,
            'LogLik': model.log_likelihood,
        }
        if probs is not None:
            row.update(_prediction_metrics(probs, outcomes, alternatives, true_probs))
        rows.append(row)

    if not models:
        for note in notes:
            warnings.warn(note, UserWarning, stacklevel=2)
        raise ModelFitError(f"No specification could be fitted (tried {', '.join(forms)})")

    table = pd.DataFrame(rows, columns=TABLE_COLUMNS)

    column = CRITERION_COLUMNS[criterion]
    if table[column].isna().all():
        notes.append(f"{column} unavailable for every specification; selecting by AIC")
        criterion, column = 'aic', 'AIC'

    best_idx = table[column].idxmin()
    best_form = table.loc[best_idx, 'Form']
    recommendation = _recommend(table, best_form, criterion, column)

    for note in notes:
        warnings.warn(note, UserWarning, stacklevel=2)

    result = FlexibleMNLResult(
        best_form=best_form,
        best_model=models[best_form],
        table=table,
        recommendation=recommendation,
        selection=criterion,
        cross_validated=cross_validate,
        models=models,
        formulas=formulas,
        warnings=notes,
    )

    if verbose:
        print(f"\n{'='*70}")
        print("  RESULTS: Functional Form Comparison")
        print(f"{'='*70}\n")
        print(result.summary())
        if best_form != 'linear':
            print("\nFlexible MNL outperforms the linear specification.")

    return result


def _improvement(table: pd.DataFrame, best_form: str, column: str) -> Optional[float]:
    """Percent reduction of ``column`` from linear to the best form."""
    linear = table.loc[table['Form'] == 'linear', column]
    if linear.empty or not np.isfinite(linear.iloc[0]) or linear.iloc[0] == 0:
        return None
    baseline = float(linear.iloc[0])
    best = float(table.loc[table['Form'] == best_form, column].iloc[0])
    return 100 * (baseline - best) / baseline


def _recommend(table: pd.DataFrame, best_form: str, criterion: str, column: str) -> str:
    value = float(table.loc[table['Form'] == best_form, column].iloc[0])
    label = 'CV' if criterion == 'cv' else column

    if criterion in ('aic', 'bic'):
        return f"Use {best_form} specification ({label}={value:.1f})"

    improvement = _improvement(table, best_form, column)
    if improvement is None:
        return f"Use {best_form} specification ({label}={value:.4f})"
    return (f"Use {best_form} specification ({label}={value:.4f}, "
            f"{improvement:.1f}% improvement over linear)")


def functional_form_test(formula: FormulaLike,
                         data: pd.DataFrame,
                         forms: Union[str, Sequence[str]] = ('linear', 'quadratic', 'log'),
                         metric: str = 'rmse',
                         cross_validate: bool = True,
                         n_folds: int = DEFAULT_N_FOLDS,
                         true_probs: Optional[np.ndarray] = None,
                         seed: int = DEFAULT_BASE_SEED,
                         fitter: Optional[SafeDualModelFitter] = None,
                         verbose: bool = True) -> FunctionalFormTestResult:
    """
    Rank functional forms by one metric and recommend the best.

    Runs flexible_mnl quietly, then orders its table by ``metric``
    (unavailable values last) and reports the percent gain of the best
    form over the linear baseline when linear was tested.
    """
    result = flexible_mnl(formula, data, forms=forms, selection=metric,
                          cross_validate=cross_validate, n_folds=n_folds,
                          true_probs=true_probs, seed=seed, fitter=fitter, verbose=False)

    column = CRITERION_COLUMNS[result.selection]
    ranked = (result.table.sort_values(column, na_position='last', kind='mergesort')
              .reset_index(drop=True))
    improvement = _improvement(ranked, result.best_form, column)

    test_result = FunctionalFormTestResult(
        best_form=result.best_form,
        best_model=result.best_model,
        ranked=ranked,
        improvement=improvement,
        recommendation=result.recommendation,
        metric=result.selection,
        cross_validated=result.cross_validated,
        warnings=result.warnings,
    )

    if verbose:
        print(f"\n{'='*70}")
        print("  FUNCTIONAL FORM TEST RESULTS")
        print(f"{'='*70}\n")
        print(test_result.summary())

    return test_result
