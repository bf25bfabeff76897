"""
Multinomial Logit (robust model)
================================

Estimates an MNL with alternative-specific constants and alternative-specific
coefficients on every individual covariate using Biogeme. Alternative 1 (the
first label in sorted order) is the reference with zero utility:

    V_1 = 0
    V_j = ASC_j + sum_k B_k_j * x_k        (j = 2..J)

Probabilities are recomputed from the estimated betas (softmax), and the
coefficient covariance comes from the analytic Fisher information of the
logit log-likelihood, so handles can also be built directly from a known
coefficient matrix.

Author: DCM Research Team
"""

import itertools
import os
from typing import Dict, Optional

import numpy as np
import pandas as pd

from ..errors import ValidationError
from ..utils.cleanup import remove_estimation_artifacts
from .base import (
    FitErrorKind, FitResult, FittedChoiceModel, FittingCapability, ModelType,
    PreparedChoiceData, prepare_choice_data, softmax_with_reference
)
from .formula import ChoiceFormula, FormulaLike, design_matrix

try:
    import biogeme.biogeme as bio
    import biogeme.database as db
    from biogeme import models
    from biogeme.expressions import Beta, Numeric, Variable
    BIOGEME_AVAILABLE = True
except ImportError:
    BIOGEME_AVAILABLE = False


CHOICE_COLUMN = 'CHOICE'

_model_counter = itertools.count(1)


# =============================================================================
# FITTED MODEL
# =============================================================================

class LogitFit(FittedChoiceModel):
    """Estimated multinomial logit."""

    model_type = ModelType.ROBUST

    def __init__(self,
                 formula: ChoiceFormula,
                 alternatives: list,
                 coefficients: np.ndarray,
                 Z: np.ndarray,
                 y: np.ndarray,
                 seed: Optional[int] = None,
                 converged: bool = True):
        coefficients = np.asarray(coefficients, dtype=float)
        super().__init__(formula, alternatives, coefficients,
                         n_obs=len(y), n_params=coefficients.size, seed=seed)
        self.converged = converged
        probs = softmax_with_reference(Z @ coefficients)
        self._set_fit(probs, y)
        self.covariance = logit_covariance(Z, probs)

    @classmethod
    def from_data(cls, formula: FormulaLike, data: pd.DataFrame,
                  coefficients: np.ndarray, alternatives: Optional[list] = None) -> 'LogitFit':
        """Build a handle from a known coefficient matrix."""
        prepared = prepare_choice_data(formula, data, alternatives)
        return cls(prepared.formula, prepared.alternatives, coefficients, prepared.Z, prepared.y)

    def predict(self, newdata: pd.DataFrame, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        Z = design_matrix(self.formula, newdata)
        return softmax_with_reference(Z @ self._coefficients)

    @property
    def std_errors(self) -> pd.DataFrame:
        """Standard errors laid out like ``coefficients``."""
        p, m = self._coefficients.shape
        se = np.sqrt(np.clip(np.diag(self.covariance), 0, None))
        return pd.DataFrame(se.reshape(m, p).T, index=self.formula.terms,
                            columns=self.alternatives[1:])


def logit_covariance(Z: np.ndarray, probs: np.ndarray) -> np.ndarray:
    """
    Inverse Fisher information of the MNL log-likelihood.

    Parameters are ordered alternative by alternative: all coefficients of
    alternative 2, then alternative 3, and so on. The information is
    sum_i (diag(p_i) - p_i p_i') kron z_i z_i' over non-reference
    alternatives. A pseudo-inverse keeps separated samples finite.
    """
    P = probs[:, 1:]
    n, m = P.shape
    p = Z.shape[1]

    D = np.einsum('nj,jl->njl', P, np.eye(m)) - np.einsum('nj,nl->njl', P, P)
    info = np.einsum('njl,na,nb->jalb', D, Z, Z).reshape(m * p, m * p)
    return np.linalg.pinv(info)


# =============================================================================
# BIOGEME SPECIFICATION
# =============================================================================

def create_mnl_specification(prepared: PreparedChoiceData):
    """
    Create the Biogeme MNL specification for a prepared dataset.

    Returns:
        Tuple of (database, log_probability, beta_index) where beta_index
        maps each Beta name to its (row, column) in the coefficient matrix
    """
    J = prepared.n_alternatives
    k = len(prepared.formula.covariates)

    columns = {CHOICE_COLUMN: prepared.y + 1}
    for c in range(k):
        columns[f'X{c}'] = prepared.Z[:, c + 1]
    df = pd.DataFrame(columns)

    database = db.Database('mnlbench_mnl', df)

    CHOICE = Variable(CHOICE_COLUMN)
    X = [Variable(f'X{c}') for c in range(k)]

    beta_index: Dict[str, tuple] = {}
    V = {1: Numeric(0)}

    for j in range(1, J):
        asc_name = f'ASC_{j + 1}'
        utility = Beta(asc_name, 0, None, None, 0)
        beta_index[asc_name] = (0, j - 1)

        for c in range(k):
            name = f'B_{c + 1}_{j + 1}'
            utility = utility + Beta(name, 0, None, None, 0) * X[c]
            beta_index[name] = (c + 1, j - 1)

        V[j + 1] = utility

    av = {j: 1 for j in range(1, J + 1)}
    logprob = models.loglogit(V, av, CHOICE)

    return database, logprob, beta_index


# =============================================================================
# CAPABILITY
# =============================================================================

class BiogemeLogitCapability(FittingCapability):
    """
    Robust-model backend estimated with Biogeme.

    Example:
        >>> capability = BiogemeLogitCapability()
        >>> result = capability.fit("choice ~ x1 + x2", df)
        >>> result.model.coefficients
    """

    model_type = ModelType.ROBUST
    name = 'MNL (biogeme)'

    def __init__(self, cleanup: bool = True):
        self.cleanup = cleanup

    def is_available(self) -> bool:
        return BIOGEME_AVAILABLE

    def fit(self,
            formula: FormulaLike,
            data: pd.DataFrame,
            seed: Optional[int] = None,
            starting_values: Optional[pd.DataFrame] = None,
            timeout: Optional[float] = None) -> FitResult:
        if not BIOGEME_AVAILABLE:
            return FitResult.failure(FitErrorKind.UNAVAILABLE, "biogeme is not installed")

        try:
            prepared = prepare_choice_data(formula, data)
        except ValidationError as e:
            return FitResult.failure(FitErrorKind.INVALID_INPUT, str(e))

        model_name = f"mnlbench_mnl_{os.getpid()}_{next(_model_counter)}"

        try:
            database, logprob, beta_index = create_mnl_specification(prepared)

            biogeme_model = bio.BIOGEME(database, logprob)
            biogeme_model.model_name = model_name
            results = biogeme_model.estimate()

            betas = results.get_beta_values()
            converged = bool(getattr(results, 'algorithm_has_converged', True))
        except (ArithmeticError, np.linalg.LinAlgError) as e:
            return FitResult.failure(FitErrorKind.NUMERICAL, str(e), seed)
        except Exception as e:
            return FitResult.failure(FitErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}", seed)
        finally:
            if self.cleanup:
                remove_estimation_artifacts(model_name)

        coefficients = np.zeros((prepared.Z.shape[1], prepared.n_alternatives - 1))
        for name, (row, col) in beta_index.items():
            coefficients[row, col] = betas[name]

        if not np.all(np.isfinite(coefficients)):
            return FitResult.failure(FitErrorKind.NUMERICAL, "non-finite logit coefficients", seed)

        model = LogitFit(prepared.formula, prepared.alternatives, coefficients,
                         prepared.Z, prepared.y, seed=seed, converged=converged)
        if not converged:
            model.warnings.append("biogeme reported that the optimizer did not converge")

        return FitResult.success(model)
