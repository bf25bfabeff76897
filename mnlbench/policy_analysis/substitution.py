"""
Substitution Patterns and Dropout Scenarios
===========================================

When an alternative leaves the market, where does its support go? MNL
answers by IIA: proportionally to the remaining shares. MNP lets correlated
errors redirect the flow. This module measures how well each model predicts
the redistribution.

Dropout scenario (DropoutSubstitutionSimulator.simulate):
1. Fit the models on the full choice set
2. Ground truth: draw n_sims choices per row from the full-set
   probabilities; every draw that lands on the dropped alternative is
   redistributed over the remaining ones in proportion to that row's
   renormalized probabilities
3. Refit each model on the rows that did not choose the dropped alternative
4. Predict for the rows that did, and average
5. Score each model by the L1 distance to the true transitions

Known limitation: the ground truth is generated from the robust full-set
fit (the fragile one when no robust fit exists), so it favours the model it
came from. The comparison is still useful for relative ranking between
datasets; for an unbiased truth use data with known probabilities.

Substitution matrix (DropoutSubstitutionSimulator.matrix): the same
transition computation for every possible dropout, as a From x To matrix.

Author: DCM Research Team
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..constants import (
    DROPOUT_N_SIMS, DROPOUT_SEED, MATRIX_METHODS, MATRIX_N_SIMS, MIN_DROPOUT_ALTERNATIVES,
    TRANSITION_TOLERANCE
)
from ..errors import CapabilityUnavailableError, ModelFitError, ValidationError
from ..estimation.safe_fit import FallbackPolicy, SafeDualModelFitter
from ..models.base import FittedChoiceModel, ModelType
from ..models.formula import ChoiceFormula, FormulaLike, resolve_alternatives
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


# =============================================================================
# RESULT CONTAINERS
# =============================================================================

@dataclass
class SubstitutionRecord:
    """Outcome of one dropout scenario."""
    dropped_alternative: object
    remaining_alternatives: List
    true_transitions: pd.Series
    predictions: Dict[str, Optional[pd.Series]]
    errors: Dict[str, float]
    winner: str
    n_sims: int
    warnings: List[str] = field(default_factory=list)

    def summary_table(self) -> pd.DataFrame:
        """True and predicted transition shares with absolute errors."""
        table = pd.DataFrame({
            'Alternative': self.remaining_alternatives,
            'True_Probability': self.true_transitions.to_numpy(),
        })
        for model, prediction in self.predictions.items():
            if prediction is None:
                continue
            label = ModelType(model).label
            table[f'{label}_Predicted'] = prediction.to_numpy()
            table[f'{label}_Error'] = np.abs(table[f'{label}_Predicted'] - table['True_Probability'])
        return table


@dataclass
class SubstitutionMatrix:
    """Transition shares for every dropout scenario of one fitted model."""
    transition_matrix: pd.DataFrame
    flow_table: pd.DataFrame
    summary: List[str]
    method: str
    alternatives: List
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# TRANSITIONS
# =============================================================================

def simulated_transitions(probs: np.ndarray,
                          from_index: int,
                          n_sims: int,
                          rng: np.random.Generator) -> Tuple[np.ndarray, int]:
    """
    Redistribution of the draws that hit one alternative.

    Args:
        probs: n x J choice probabilities
        from_index: Column of the alternative that drops out
        n_sims: Categorical draws per row
        rng: Random generator

    Returns:
        (transition shares over the remaining columns, total hits)
    """
    probs = np.asarray(probs, dtype=float)
    probs = probs / probs.sum(axis=1, keepdims=True)
    remaining = [j for j in range(probs.shape[1]) if j != from_index]

    counts = rng.multinomial(n_sims, probs)
    hits = counts[:, from_index]

    stay = probs[:, remaining]
    renormalized = stay / stay.sum(axis=1, keepdims=True)

    flows = (renormalized * hits[:, None]).sum(axis=0)
    total = int(hits.sum())
    if total == 0:
        return np.full(len(remaining), np.nan), 0
    return flows / flows.sum(), total


def analytical_transitions(probs: np.ndarray, from_index: int) -> np.ndarray:
    """IIA transitions: average shares of the remaining alternatives, renormalized."""
    avg = np.asarray(probs, dtype=float).mean(axis=0)
    remaining = np.delete(avg, from_index)
    return remaining / remaining.sum()


def _align_columns(probs: np.ndarray, model_alternatives: Sequence,
                   alternatives: Sequence) -> np.ndarray:
    """Probability columns in ``alternatives`` order, 0 for labels the model lacks."""
    aligned = np.zeros((probs.shape[0], len(alternatives)))
    for col, label in enumerate(model_alternatives):
        if label in alternatives:
            aligned[:, list(alternatives).index(label)] = probs[:, col]
    return aligned


def _drop_unused_categories(data: pd.DataFrame, outcome: str) -> pd.DataFrame:
    data = data.copy()
    if isinstance(data[outcome].dtype, pd.CategoricalDtype):
        data[outcome] = data[outcome].cat.remove_unused_categories()
    return data


def iia_divergence(a: Union[SubstitutionMatrix, pd.DataFrame],
                   b: Union[SubstitutionMatrix, pd.DataFrame]) -> float:
    """Largest absolute difference between two transition matrices (diagonal ignored)."""
    A = a.transition_matrix if isinstance(a, SubstitutionMatrix) else a
    B = b.transition_matrix if isinstance(b, SubstitutionMatrix) else b
    if list(A.index) != list(B.index) or list(A.columns) != list(B.columns):
        raise ValidationError("transition matrices have different alternatives")
    diff = np.abs(A.to_numpy(dtype=float) - B.to_numpy(dtype=float))
    return float(np.nanmax(diff))


def pick_winner(errors: Dict[str, float]) -> str:
    """Lower L1 error wins; equal errors tie; a lone model wins by default."""
    robust = errors.get(ModelType.ROBUST.value, np.nan)
    fragile = errors.get(ModelType.FRAGILE.value, np.nan)

    if np.isfinite(robust) and np.isfinite(fragile):
        if robust < fragile:
            return ModelType.ROBUST.value
        if fragile < robust:
            return ModelType.FRAGILE.value
        return 'tie'
    if np.isfinite(robust):
        return f"{ModelType.ROBUST.value} (only available)"
    if np.isfinite(fragile):
        return f"{ModelType.FRAGILE.value} (only available)"
    return 'none (both failed)'


# =============================================================================
# SIMULATOR
# =============================================================================

class DropoutSubstitutionSimulator:
    """
    Compare robust and fragile substitution predictions.

    Example:
        >>> sim = DropoutSubstitutionSimulator(seed=12345)
        >>> record = sim.simulate("choice ~ x1 + x2", df, drop_alternative="B")
        >>> record.winner, record.errors
    """

    def __init__(self,
                 fitter: Optional[SafeDualModelFitter] = None,
                 seed: int = DROPOUT_SEED,
                 verbose: bool = True):
        self.fitter = fitter if fitter is not None else SafeDualModelFitter(verbose=False)
        self.seed = seed
        self.verbose = verbose

    def _print(self, message: str) -> None:
        if self.verbose:
            print(message)

    def _warn(self, message: str, collected: List[str]) -> None:
        collected.append(message)
        warnings.warn(message, UserWarning, stacklevel=3)
        logger.warning(message)

    # ------------------------------------------------------------------
    def _fit(self, model: str, formula: ChoiceFormula, data: pd.DataFrame,
             notes: List[str], context: str) -> Optional[FittedChoiceModel]:
        """Robust or fragile fit; failures become warnings and None."""
        if model == ModelType.ROBUST.value:
            try:
                return self.fitter.fit(formula, data, model=ModelType.ROBUST, seed=self.seed).model
            except (ModelFitError, CapabilityUnavailableError) as e:
                self._warn(f"MNL failed on {context}: {e}", notes)
                return None

        outcome = self.fitter.fit(formula, data, fallback=FallbackPolicy.NONE, seed=self.seed)
        if not outcome.succeeded:
            reason = outcome.errors[-1] if outcome.errors else outcome.status.value
            self._warn(f"MNP failed to converge on {context}: {reason}", notes)
            return None
        return outcome.model

    def simulate(self,
                 formula: FormulaLike,
                 data: pd.DataFrame,
                 drop_alternative,
                 n_sims: int = DROPOUT_N_SIMS,
                 models: Sequence[str] = (ModelType.ROBUST.value, ModelType.FRAGILE.value),
                 fitted: Optional[Dict[str, FittedChoiceModel]] = None) -> SubstitutionRecord:
        """
        Run one dropout scenario.

        Args:
            formula: Choice formula
            data: Observed choices
            drop_alternative: Label of the alternative that leaves
            n_sims: Simulated choices per row for the ground truth
            models: Subset of ('robust', 'fragile') to evaluate
            fitted: Optional full-set models keyed by 'robust'/'fragile';
                used instead of fitting them again

        Returns:
            SubstitutionRecord

        Raises:
            ValidationError: Bad label, too few alternatives, n_sims < 1 or
                unknown model names
            ModelFitError: No full-set model could be fitted
        """
        formula = ChoiceFormula.coerce(formula)
        formula.check_columns(data)

        models = [m.value if isinstance(m, ModelType) else m for m in models]
        unknown = [m for m in models if m not in (ModelType.ROBUST.value, ModelType.FRAGILE.value)]
        if unknown or not models:
            raise ValidationError(f"models must be drawn from ('robust', 'fragile'), got {list(models)}")
        if not isinstance(n_sims, (int, np.integer)) or n_sims < 1:
            raise ValidationError(f"n_sims must be a positive integer, got {n_sims!r}")

        alternatives = resolve_alternatives(data[formula.outcome])
        if drop_alternative not in alternatives:
            raise ValidationError(
                f"drop_alternative {drop_alternative!r} not found in response variable. "
                f"Available: {alternatives}"
            )
        if len(alternatives) < MIN_DROPOUT_ALTERNATIVES:
            raise ValidationError(
                f"Need at least {MIN_DROPOUT_ALTERNATIVES} alternatives for dropout "
                f"scenario analysis, found {len(alternatives)}"
            )

        remaining = [a for a in alternatives if a != drop_alternative]
        drop_index = alternatives.index(drop_alternative)
        notes: List[str] = []
        fitted = dict(fitted or {})

        self._print(f"\n{'='*70}")
        self._print("  DROPOUT SCENARIO ANALYSIS")
        self._print(f"{'='*70}\n")
        self._print(f"Dropping alternative: {drop_alternative}")
        self._print(f"Remaining alternatives: {', '.join(str(a) for a in remaining)}")
        self._print(f"Simulation size for ground truth: {n_sims}\n")

        # Step 1: full choice set
        full_models: Dict[str, Optional[FittedChoiceModel]] = {}
        for model in models:
            full_models[model] = fitted.get(model) or self._fit(
                model, formula, data, notes, "the full dataset")
        if (ModelType.FRAGILE.value in models and ModelType.ROBUST.value in models
                and full_models[ModelType.FRAGILE.value] is None):
            self._warn("Dropout analysis will be MNL-only.", notes)

        truth_model = full_models.get(ModelType.ROBUST.value) or full_models.get(ModelType.FRAGILE.value)
        if truth_model is None:
            raise ModelFitError("No models successfully fitted on the full choice set")

        # Step 2: ground truth from simulated choices
        probs_full = _align_columns(truth_model.fitted_probabilities(),
                                    truth_model.alternatives, alternatives)
        rng = np.random.default_rng(self.seed)
        transitions, hits = simulated_transitions(probs_full, drop_index, n_sims, rng)
        if hits == 0:
            self._warn(
                f"No simulated draw chose {drop_alternative!r}; using expected flows instead", notes
            )
            stay = np.delete(probs_full, drop_index, axis=1)
            weights = probs_full[:, drop_index][:, None] * stay / stay.sum(axis=1, keepdims=True)
            transitions = weights.sum(axis=0) / weights.sum()
        true_transitions = pd.Series(transitions, index=remaining, name='true_transition')

        if abs(true_transitions.sum() - 1) > TRANSITION_TOLERANCE:
            raise ModelFitError("ground-truth transitions do not sum to one")

        # Steps 3-4: refit without the dropped alternative, predict for droppers
        outcome = data[formula.outcome]
        restricted = _drop_unused_categories(data[outcome != drop_alternative], formula.outcome)
        droppers = data[outcome == drop_alternative]
        if len(droppers) == 0:
            self._warn(f"No observation chose {drop_alternative!r}; nothing to predict", notes)

        predictions: Dict[str, Optional[pd.Series]] = {}
        errors: Dict[str, float] = {}

        for model in models:
            predictions[model] = None
            errors[model] = np.nan
            if full_models[model] is None or len(droppers) == 0:
                continue

            restricted_model = self._fit(model, formula, restricted, notes, "the restricted dataset")
            if restricted_model is None:
                continue

            probs = restricted_model.predict(droppers, rng=np.random.default_rng(self.seed))
            probs = _align_columns(probs, restricted_model.alternatives, remaining)
            prediction = pd.Series(probs.mean(axis=0), index=remaining, name=model)

            predictions[model] = prediction
            errors[model] = float(np.abs(prediction - true_transitions).sum())

        winner = pick_winner(errors)
        record = SubstitutionRecord(
            dropped_alternative=drop_alternative,
            remaining_alternatives=remaining,
            true_transitions=true_transitions,
            predictions=predictions,
            errors=errors,
            winner=winner,
            n_sims=n_sims,
            warnings=notes,
        )

        if self.verbose:
            self._print(f"\n{'='*70}")
            self._print("  RESULTS: Substitution Pattern Accuracy")
            self._print(f"{'='*70}\n")
            self._print(f"When '{drop_alternative}' drops out, support flows to:\n")
            self._print(record.summary_table().to_string(index=False, float_format=lambda v: f"{v:.3f}"))
            self._print("\nTotal prediction error:")
            for model, error in errors.items():
                if np.isfinite(error):
                    self._print(f"  {ModelType(model).label}: {100 * error:.1f}%")
            self._print(f"\nWinner: {winner}")
            self._print(f"{'='*70}\n")

        return record

    # ------------------------------------------------------------------
    def matrix(self,
               model: FittedChoiceModel,
               data: pd.DataFrame,
               from_alternative=None,
               method: str = 'simulation',
               n_sims: int = MATRIX_N_SIMS) -> SubstitutionMatrix:
        """
        From x To transition matrix for every (or one) dropout.

        Args:
            model: Fitted choice model
            data: Rows whose probabilities drive the transitions
            from_alternative: Only compute this row of the matrix
            method: 'simulation' (draws from the model's probabilities) or
                'analytical' (average shares renormalized, assumes IIA)
            n_sims: Draws per row for the simulation method

        Returns:
            SubstitutionMatrix with a NaN diagonal
        """
        alternatives = list(model.alternatives)
        if len(alternatives) < MIN_DROPOUT_ALTERNATIVES:
            raise ValidationError(
                f"Need at least {MIN_DROPOUT_ALTERNATIVES} alternatives for substitution matrix"
            )
        if method not in MATRIX_METHODS:
            raise ValidationError(f"method must be one of {list(MATRIX_METHODS)}, got {method!r}")
        if method == 'simulation' and (not isinstance(n_sims, (int, np.integer)) or n_sims < 1):
            raise ValidationError(f"n_sims must be a positive integer, got {n_sims!r}")
        if from_alternative is not None and from_alternative not in alternatives:
            raise ValidationError(
                f"from_alternative {from_alternative!r} not found. Available: {alternatives}"
            )

        from_alts = [from_alternative] if from_alternative is not None else alternatives
        probs = model.predict(data, rng=np.random.default_rng(self.seed))
        notes: List[str] = []

        self._print(f"\n{'='*70}")
        self._print("  SUBSTITUTION MATRIX ANALYSIS")
        self._print(f"{'='*70}\n")
        self._print(f"Alternatives: {', '.join(str(a) for a in alternatives)}")
        self._print(f"Method: {method}")
        if method == 'simulation':
            self._print(f"Simulations: {n_sims}")

        trans = pd.DataFrame(np.nan, index=pd.Index(alternatives, name='From'),
                             columns=pd.Index(alternatives, name='To'))
        flows = []

        for from_alt in from_alts:
            from_index = alternatives.index(from_alt)
            to_alts = [a for a in alternatives if a != from_alt]

            if method == 'simulation':
                # Same seed for every row of the matrix
                shares, hits = simulated_transitions(probs, from_index, n_sims,
                                                     np.random.default_rng(self.seed))
                if hits == 0:
                    self._warn(f"No simulated draw chose {from_alt!r}; row left empty", notes)
            else:
                shares = analytical_transitions(probs, from_index)

            for to_alt, share in zip(to_alts, shares):
                trans.loc[from_alt, to_alt] = share
                flows.append({'From': from_alt, 'To': to_alt,
                              'Probability': share, 'Percentage': 100 * share})

        flow_table = pd.DataFrame(flows, columns=['From', 'To', 'Probability', 'Percentage'])
        flow_table['Asymmetry'] = [
            abs(row.Probability - trans.loc[row.To, row.From])
            if not np.isnan(trans.loc[row.To, row.From]) else 0.0
            for row in flow_table.itertuples(index=False)
        ]

        if from_alternative is not None:
            main = flow_table.sort_values('Probability', ascending=False)
            summary = [f"When {from_alternative} drops out:"]
            summary.extend(
                f"  -> {row.Percentage:.1f}% flows to {row.To}"
                for row in main.head(2).itertuples(index=False)
            )
        else:
            most = flow_table.sort_values('Asymmetry', ascending=False).iloc[0]
            summary = [
                "Key patterns:",
                f"  Most asymmetric flow: {most.From} -> {most.To} ({most.Percentage:.1f}%) "
                f"vs {most.To} -> {most.From}",
            ]

        if self.verbose:
            self._print("\nWhen FROM alternative drops out, support flows TO:\n")
            self._print((100 * trans).to_string(float_format=lambda v: f"{v:.1f}%", na_rep='--'))
            self._print("\nSUMMARY:")
            for line in summary:
                self._print(line)

        return SubstitutionMatrix(
            transition_matrix=trans,
            flow_table=flow_table,
            summary=summary,
            method=method,
            alternatives=alternatives,
            warnings=notes,
        )
