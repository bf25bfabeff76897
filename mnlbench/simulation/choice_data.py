"""
Synthetic Choice Data with Known Ground Truth
=============================================

Generates individual-level multinomial choice data from a random-utility
model whose systematic part is fully known:

1. Covariates: n x k independent standard normals (x1..xk)
2. Coefficients: one N(0, effect_size) vector per non-reference alternative;
   alternative 1 is the reference with zero systematic utility
3. Systematic utility by functional form:
       linear     V_j = X b_j
       quadratic  V_j = X b_j + 0.3 * sum_k x_k^2
       log        V_j = X~ b_j, where x~ = log(x + 1) for x > 0 and x otherwise
4. Errors: independent N(0, 1), or equicorrelated normals when
   correlation > 0
5. Choice: argmax of V + error

The ground-truth probabilities are the logit softmax of V (not of V + error),
which gives an exact probability vector regardless of how the errors were
drawn.

The log form transforms only positive covariate values, so a column mixes
log and linear values. Benchmark comparisons depend on this exact
transform.

Author: DCM Research Team
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ..constants import (
    COVARIATE_PREFIX, ERROR_METHODS, FUNCTIONAL_FORMS, OUTCOME_NAME,
    PROBABILITY_PREFIX, QUADRATIC_WEIGHT
)
from ..errors import ValidationError
from ..models.formula import ChoiceFormula


# =============================================================================
# DATASET
# =============================================================================

@dataclass(frozen=True)
class ChoiceDataset:
    """
    One generated study unit. Arrays are read-only.

    Attributes:
        data: DataFrame with the categorical outcome column and x1..xk
        covariates: n x k covariate matrix
        choices: Chosen alternative per row, 1..J
        true_probs: n x J logit probabilities of the systematic utilities
        true_betas: k x (J-1) coefficients (columns alt2..altJ)
        correlation_matrix: J x J error correlation matrix
        functional_form: 'linear', 'quadratic' or 'log'
        formula: ChoiceFormula binding the outcome to x1..xk
        alternatives: Labels used in the outcome column, in code order
    """
    data: pd.DataFrame
    covariates: np.ndarray
    choices: np.ndarray
    true_probs: np.ndarray
    true_betas: np.ndarray
    correlation_matrix: np.ndarray
    functional_form: str
    formula: ChoiceFormula
    alternatives: List
    effect_size: float
    correlation: float
    seed: Optional[int] = None
    error_method: str = 'mvnormal'
    metadata: dict = field(default_factory=dict)

    @property
    def n(self) -> int:
        return len(self.choices)

    @property
    def n_alternatives(self) -> int:
        return self.true_probs.shape[1]

    @property
    def n_vars(self) -> int:
        return self.covariates.shape[1]

    def probability_frame(self) -> pd.DataFrame:
        """True probabilities as prob_alt1..prob_altJ columns."""
        columns = [f"{PROBABILITY_PREFIX}{j}" for j in range(1, self.n_alternatives + 1)]
        return pd.DataFrame(self.true_probs, columns=columns)

    def beta_frame(self) -> pd.DataFrame:
        """True coefficients with x1..xk rows and alt2..altJ columns."""
        return pd.DataFrame(
            self.true_betas,
            index=list(self.formula.covariates),
            columns=[f"alt{j}" for j in range(2, self.n_alternatives + 1)],
        )


# =============================================================================
# VALIDATION
# =============================================================================

def validate_generation_parameters(n: int,
                                   n_alternatives: int,
                                   n_vars: int,
                                   correlation: float,
                                   functional_form: str,
                                   effect_size: float,
                                   error_method: str = 'mvnormal') -> None:
    """
    Check generator inputs before any sampling.

    Raises:
        ValidationError: naming the offending parameter
    """
    if not isinstance(n, (int, np.integer)) or n < 1:
        raise ValidationError(f"n must be a positive integer, got {n!r}")
    if not isinstance(n_alternatives, (int, np.integer)) or n_alternatives < 2:
        raise ValidationError(f"n_alternatives must be at least 2, got {n_alternatives!r}")
    if not isinstance(n_vars, (int, np.integer)) or n_vars < 1:
        raise ValidationError(f"n_vars must be at least 1, got {n_vars!r}")
    if not np.isfinite(correlation) or correlation < 0 or correlation > 1:
        raise ValidationError(f"correlation must be between 0 and 1, got {correlation!r}")
    if functional_form not in FUNCTIONAL_FORMS:
        raise ValidationError(
            f"functional_form must be one of {list(FUNCTIONAL_FORMS)}, got {functional_form!r}"
        )
    if not np.isfinite(effect_size) or effect_size <= 0:
        raise ValidationError(f"effect_size must be positive, got {effect_size!r}")
    if error_method not in ERROR_METHODS:
        raise ValidationError(
            f"error_method must be one of {list(ERROR_METHODS)}, got {error_method!r}"
        )


# =============================================================================
# UTILITY COMPONENTS
# =============================================================================

def transform_covariates(X: np.ndarray, functional_form: str) -> np.ndarray:
    """Covariates entering the dot product (log form only touches x > 0)."""
    if functional_form != 'log':
        return X
    X_log = X.copy()
    positive = X > 0
    X_log[positive] = np.log(X[positive] + 1)
    return X_log


def systematic_utilities(X: np.ndarray, betas: np.ndarray, functional_form: str) -> np.ndarray:
    """n x J systematic utilities with V_1 = 0."""
    n = X.shape[0]
    V = np.zeros((n, betas.shape[1] + 1))
    V[:, 1:] = transform_covariates(X, functional_form) @ betas

    if functional_form == 'quadratic':
        V[:, 1:] += QUADRATIC_WEIGHT * np.sum(X ** 2, axis=1, keepdims=True)

    return V


def equicorrelation_matrix(n_alternatives: int, correlation: float) -> np.ndarray:
    """Unit diagonal, constant off-diagonal."""
    R = np.full((n_alternatives, n_alternatives), float(correlation))
    np.fill_diagonal(R, 1.0)
    return R


def draw_errors(n: int,
                correlation_matrix: np.ndarray,
                correlation: float,
                rng: np.random.Generator,
                error_method: str = 'mvnormal') -> np.ndarray:
    """
    n x J utility errors.

    'mvnormal' draws exactly from N(0, R). 'factor' is an approximation:
    sqrt(c) * common + sqrt(1 - c) * z with one common factor per row,
    which reproduces the equicorrelated structure without a multivariate
    sampler.
    """
    J = correlation_matrix.shape[0]

    if correlation == 0:
        return rng.standard_normal((n, J))

    if error_method == 'factor':
        z = rng.standard_normal((n, J))
        common = rng.standard_normal((n, 1))
        return np.sqrt(correlation) * common + np.sqrt(1 - correlation) * z

    return rng.multivariate_normal(np.zeros(J), correlation_matrix, size=n)


def logit_probabilities(V: np.ndarray) -> np.ndarray:
    """Row-wise softmax."""
    V = V - V.max(axis=1, keepdims=True)
    exp_V = np.exp(V)
    return exp_V / exp_V.sum(axis=1, keepdims=True)


def _read_only(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


# =============================================================================
# SYNTHESIZER
# =============================================================================

class ChoiceDataSynthesizer:
    """
    Generator of synthetic choice datasets with recoverable truth.

    Example:
        >>> synth = ChoiceDataSynthesizer()
        >>> ds = synth.generate(n=100, n_alternatives=3, seed=123)
        >>> ds.true_probs.shape
        (100, 3)
    """

    def generate(self,
                 n: int,
                 n_alternatives: int = 3,
                 n_vars: int = 2,
                 correlation: float = 0.0,
                 functional_form: str = 'linear',
                 effect_size: float = 0.5,
                 seed: Optional[int] = None,
                 rng: Optional[np.random.Generator] = None,
                 error_method: str = 'mvnormal',
                 alternative_labels: Optional[Sequence] = None) -> ChoiceDataset:
        """
        Generate one dataset.

        Args:
            n: Number of rows
            n_alternatives: Number of alternatives J (>= 2)
            n_vars: Number of covariates k (>= 1)
            correlation: Equicorrelation of utility errors, in [0, 1]
            functional_form: 'linear', 'quadratic' or 'log'
            effect_size: Standard deviation of the true coefficients (> 0)
            seed: Seed for a fresh generator (ignored when rng is given)
            rng: Generator to draw from
            error_method: 'mvnormal' (exact) or 'factor' (approximation)
            alternative_labels: Optional J labels for the outcome column

        Returns:
            ChoiceDataset

        Raises:
            ValidationError: On invalid parameters, before any sampling
        """
        validate_generation_parameters(n, n_alternatives, n_vars, correlation,
                                       functional_form, effect_size, error_method)

        if alternative_labels is None:
            alternatives = list(range(1, n_alternatives + 1))
        else:
            alternatives = list(alternative_labels)
            if len(alternatives) != n_alternatives or len(set(alternatives)) != n_alternatives:
                raise ValidationError(
                    f"alternative_labels must hold {n_alternatives} distinct labels, got {alternatives}"
                )

        if rng is None:
            rng = np.random.default_rng(seed)

        X = rng.standard_normal((n, n_vars))
        # One coefficient vector per non-reference alternative
        betas = rng.normal(0.0, effect_size, size=(n_alternatives - 1, n_vars)).T

        V = systematic_utilities(X, betas, functional_form)

        if correlation > 0:
            R = equicorrelation_matrix(n_alternatives, correlation)
        else:
            R = np.eye(n_alternatives)
        errors = draw_errors(n, R, correlation, rng, error_method)

        choices = np.argmax(V + errors, axis=1) + 1
        true_probs = logit_probabilities(V)

        covariate_names = [f"{COVARIATE_PREFIX}{i}" for i in range(1, n_vars + 1)]
        data = pd.DataFrame(X.copy(), columns=covariate_names)
        outcome = [alternatives[c - 1] for c in choices]
        # Levels are the observed alternatives only
        chosen = set(outcome)
        levels = [a for a in alternatives if a in chosen]
        data.insert(0, OUTCOME_NAME, pd.Categorical(outcome, categories=levels))

        return ChoiceDataset(
            data=data,
            covariates=_read_only(X),
            choices=_read_only(choices),
            true_probs=_read_only(true_probs),
            true_betas=_read_only(betas.copy()),
            correlation_matrix=_read_only(R),
            functional_form=functional_form,
            formula=ChoiceFormula(OUTCOME_NAME, tuple(covariate_names)),
            alternatives=alternatives,
            effect_size=effect_size,
            correlation=correlation,
            seed=seed,
            error_method=error_method,
        )


def generate_choice_data(n: int,
                         n_alternatives: int = 3,
                         n_vars: int = 2,
                         correlation: float = 0.0,
                         functional_form: str = 'linear',
                         effect_size: float = 0.5,
                         seed: Optional[int] = None,
                         **kwargs) -> ChoiceDataset:
    """Convenience wrapper around ChoiceDataSynthesizer.generate."""
    return ChoiceDataSynthesizer().generate(
        n=n, n_alternatives=n_alternatives, n_vars=n_vars, correlation=correlation,
        functional_form=functional_form, effect_size=effect_size, seed=seed, **kwargs
    )
