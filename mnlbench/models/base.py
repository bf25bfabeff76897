"""
Fitting Capability Interface
============================

The benchmark treats both estimators as external capabilities with one
contract:

    capability.fit(formula, data, seed, starting_values, timeout) -> FitResult

``FitResult`` is a Result type: it carries either a fitted model handle or a
``FitError`` describing why estimation failed. Capabilities convert their own
numerical exceptions into FitError values, so the safe fitter's retry and
fallback logic operates on data rather than intercepting exceptions.

Every handle carries its ``model_type`` from the moment it is created.

Author: DCM Research Team
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..constants import LOG_LOSS_EPS, MODEL_FRAGILE, MODEL_ROBUST
from ..errors import ValidationError
from .formula import (
    ChoiceFormula, FormulaLike, design_matrix, encode_choices, resolve_alternatives
)


# =============================================================================
# TAGS
# =============================================================================

class ModelType(str, Enum):
    """Discriminant carried by every fit outcome and model handle."""
    ROBUST = MODEL_ROBUST
    FRAGILE = MODEL_FRAGILE

    @property
    def label(self) -> str:
        return 'MNL' if self is ModelType.ROBUST else 'MNP'


class FitErrorKind(str, Enum):
    NUMERICAL = 'numerical'
    NON_CONVERGENCE = 'non_convergence'
    TIMEOUT = 'timeout'
    UNAVAILABLE = 'unavailable'
    INVALID_INPUT = 'invalid_input'
    UNEXPECTED = 'unexpected'


@dataclass(frozen=True)
class FitError:
    """Why a single estimation call failed."""
    kind: FitErrorKind
    message: str
    seed: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class FitResult:
    """Either a fitted model or a FitError, never both."""
    model: Optional['FittedChoiceModel'] = None
    error: Optional[FitError] = None

    def __post_init__(self):
        if (self.model is None) == (self.error is None):
            raise ValueError("FitResult needs exactly one of model or error")

    @property
    def ok(self) -> bool:
        return self.model is not None

    @classmethod
    def success(cls, model: 'FittedChoiceModel') -> 'FitResult':
        return cls(model=model)

    @classmethod
    def failure(cls, kind: FitErrorKind, message: str, seed: Optional[int] = None) -> 'FitResult':
        return cls(error=FitError(kind=kind, message=message, seed=seed))


# =============================================================================
# DATA PREPARATION
# =============================================================================

@dataclass
class PreparedChoiceData:
    """Numeric view of a choice dataset for one formula."""
    formula: ChoiceFormula
    Z: np.ndarray              # n x (k+1), intercept first
    y: np.ndarray              # 0-based alternative index
    alternatives: list

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_alternatives(self) -> int:
        return len(self.alternatives)


def prepare_choice_data(formula: FormulaLike,
                        data: pd.DataFrame,
                        alternatives: Optional[List] = None) -> PreparedChoiceData:
    """
    Validate a dataset against a formula and encode it.

    Raises:
        ValidationError: missing columns, non-finite covariates, or fewer
            than two observed alternatives
    """
    formula = ChoiceFormula.coerce(formula)
    formula.check_columns(data)

    if len(data) == 0:
        raise ValidationError("data has no rows")

    outcome = data[formula.outcome]
    alternatives = resolve_alternatives(outcome, alternatives)
    if len(alternatives) < 2:
        raise ValidationError(
            f"outcome '{formula.outcome}' needs at least 2 alternatives, found {alternatives}"
        )

    return PreparedChoiceData(
        formula=formula,
        Z=design_matrix(formula, data),
        y=encode_choices(outcome, alternatives),
        alternatives=alternatives,
    )


def softmax_with_reference(V: np.ndarray) -> np.ndarray:
    """Logit probabilities for utilities of non-reference alternatives (reference V=0)."""
    V_full = np.column_stack([np.zeros(V.shape[0]), V])
    V_full = V_full - V_full.max(axis=1, keepdims=True)
    exp_V = np.exp(V_full)
    return exp_V / exp_V.sum(axis=1, keepdims=True)


# =============================================================================
# MODEL HANDLE
# =============================================================================

class FittedChoiceModel(ABC):
    """
    Handle to an estimated choice model.

    Subclasses implement ``predict``. The base class keeps the coefficient
    matrix ((k+1) x (J-1), intercept first, reference alternative omitted),
    the in-sample fitted probabilities and the fit statistics.
    """

    model_type: ModelType

    def __init__(self,
                 formula: ChoiceFormula,
                 alternatives: list,
                 coefficients: np.ndarray,
                 n_obs: int,
                 n_params: int,
                 seed: Optional[int] = None):
        self.formula = formula
        self.alternatives = list(alternatives)
        self._coefficients = np.asarray(coefficients, dtype=float)
        self.n_obs = n_obs
        self.n_params = n_params
        self.seed = seed
        self.log_likelihood = np.nan
        self.warnings: List[str] = []
        self._fitted_probs: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    @abstractmethod
    def predict(self, newdata: pd.DataFrame, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """n x J probability matrix for newdata, columns in ``alternatives`` order."""

    # ------------------------------------------------------------------
    @property
    def coefficients(self) -> pd.DataFrame:
        return pd.DataFrame(
            self._coefficients,
            index=self.formula.terms,
            columns=self.alternatives[1:],
        )

    @property
    def coefficient_matrix(self) -> np.ndarray:
        return self._coefficients.copy()

    @property
    def n_alternatives(self) -> int:
        return len(self.alternatives)

    def fitted_probabilities(self) -> np.ndarray:
        if self._fitted_probs is None:
            raise RuntimeError("fitted probabilities were not stored for this model")
        return self._fitted_probs.copy()

    def _set_fit(self, fitted_probs: np.ndarray, y: np.ndarray) -> None:
        """Store in-sample probabilities and the implied log-likelihood."""
        self._fitted_probs = fitted_probs
        chosen = np.clip(fitted_probs[np.arange(len(y)), y], LOG_LOSS_EPS, 1.0)
        self.log_likelihood = float(np.sum(np.log(chosen)))

    @property
    def aic(self) -> float:
        return 2 * self.n_params - 2 * self.log_likelihood

    @property
    def bic(self) -> float:
        return self.n_params * np.log(self.n_obs) - 2 * self.log_likelihood

    def summary(self) -> Dict[str, Any]:
        return {
            'model_type': self.model_type.value,
            'formula': str(self.formula),
            'alternatives': self.alternatives,
            'n_obs': self.n_obs,
            'n_params': self.n_params,
            'log_likelihood': self.log_likelihood,
            'aic': self.aic,
            'bic': self.bic,
        }

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(formula='{self.formula}', "
                f"alternatives={self.alternatives}, LL={self.log_likelihood:.2f})")


# =============================================================================
# CAPABILITY
# =============================================================================

class FittingCapability(ABC):
    """An estimation backend the safe fitter can call."""

    model_type: ModelType
    name: str = 'capability'

    def is_available(self) -> bool:
        """False when the backend's libraries are missing."""
        return True

    @abstractmethod
    def fit(self,
            formula: FormulaLike,
            data: pd.DataFrame,
            seed: Optional[int] = None,
            starting_values: Optional[pd.DataFrame] = None,
            timeout: Optional[float] = None) -> FitResult:
        """Estimate the model; failures are returned, not raised."""


def align_starting_values(starting_values: Optional[pd.DataFrame],
                          shape: Tuple[int, int]) -> Optional[np.ndarray]:
    """Coefficient matrix from a previous fit, or None if shapes disagree."""
    if starting_values is None:
        return None
    values = np.asarray(starting_values, dtype=float)
    if values.shape != shape or not np.all(np.isfinite(values)):
        return None
    return values
