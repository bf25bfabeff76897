"""
Pytest Configuration and Shared Fixtures
=========================================

Provides common fixtures and deterministic fitting capabilities for
benchmark testing.

The capabilities defined here are module-level classes so fitters built
from them can be pickled into benchmark worker processes.
"""

import pytest
import pandas as pd
import numpy as np
from pathlib import Path
import sys
import warnings

from scipy.optimize import minimize

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mnlbench.estimation.safe_fit import SafeDualModelFitter
from mnlbench.models.base import (
    FitErrorKind, FitResult, FittingCapability, ModelType, prepare_choice_data,
    softmax_with_reference
)
from mnlbench.models.mnl import LogitFit
from mnlbench.models.mnp import GibbsProbitCapability
from mnlbench.simulation.choice_data import generate_choice_data

# Selective warning suppression - allow important warnings through
warnings.filterwarnings('ignore', category=FutureWarning)
warnings.filterwarnings('ignore', message='.*overflow.*')
warnings.filterwarnings('ignore', message='.*divide by zero.*')


# =============================================================================
# Deterministic Capabilities
# =============================================================================

def logit_mle(Z: np.ndarray, y: np.ndarray, n_alternatives: int) -> np.ndarray:
    """Maximum likelihood logit coefficients ((k+1) x (J-1)) via BFGS."""
    p = Z.shape[1]
    m = n_alternatives - 1
    Y = np.zeros((len(y), n_alternatives))
    Y[np.arange(len(y)), y] = 1.0

    def negative_loglik(theta):
        probs = softmax_with_reference(Z @ theta.reshape(p, m))
        chosen = np.clip(probs[np.arange(len(y)), y], 1e-300, None)
        gradient = -(Z.T @ (Y[:, 1:] - probs[:, 1:]))
        return -np.sum(np.log(chosen)), gradient.ravel()

    result = minimize(negative_loglik, np.zeros(p * m), jac=True, method='BFGS')
    return result.x.reshape(p, m)


class MaximumLikelihoodLogit(FittingCapability):
    """Robust capability fitting the logit by scipy BFGS."""

    model_type = ModelType.ROBUST
    name = 'MNL (test)'

    def __init__(self):
        self.calls = []

    def fit(self, formula, data, seed=None, starting_values=None, timeout=None):
        self.calls.append(seed)
        prepared = prepare_choice_data(formula, data)
        coefficients = logit_mle(prepared.Z, prepared.y, prepared.n_alternatives)
        return FitResult.success(LogitFit(prepared.formula, prepared.alternatives,
                                          coefficients, prepared.Z, prepared.y, seed=seed))


class LogitAsProbitFit(LogitFit):
    """Logit handle tagged as the fragile model."""
    model_type = ModelType.FRAGILE


class StandInProbit(FittingCapability):
    """
    Fragile capability that fails its first ``n_failures`` calls.

    Successful calls return logit estimates tagged as fragile, shrunk by
    ``shrink`` so robust and fragile predictions differ.
    """

    model_type = ModelType.FRAGILE
    name = 'MNP (test)'

    def __init__(self, n_failures: int = 0, kind: FitErrorKind = FitErrorKind.NUMERICAL,
                 shrink: float = 0.8):
        self.n_failures = n_failures
        self.kind = kind
        self.shrink = shrink
        self.calls = []
        self.starting_values = []

    def fit(self, formula, data, seed=None, starting_values=None, timeout=None):
        self.calls.append(seed)
        self.starting_values.append(starting_values)
        if len(self.calls) <= self.n_failures:
            return FitResult.failure(self.kind, f"forced failure {len(self.calls)}", seed)
        prepared = prepare_choice_data(formula, data)
        coefficients = self.shrink * logit_mle(prepared.Z, prepared.y, prepared.n_alternatives)
        return FitResult.success(LogitAsProbitFit(prepared.formula, prepared.alternatives,
                                                  coefficients, prepared.Z, prepared.y, seed=seed))


class AlwaysFailing(FittingCapability):
    """Capability whose every call fails."""

    name = 'always failing'

    def __init__(self, model_type: ModelType = ModelType.FRAGILE,
                 kind: FitErrorKind = FitErrorKind.NON_CONVERGENCE):
        self.model_type = model_type
        self.kind = kind
        self.calls = []

    def fit(self, formula, data, seed=None, starting_values=None, timeout=None):
        self.calls.append(seed)
        return FitResult.failure(self.kind, "did not converge", seed)


class Raising(FittingCapability):
    """Capability that raises instead of returning a FitResult."""

    name = 'raising'

    def __init__(self, model_type: ModelType = ModelType.FRAGILE):
        self.model_type = model_type
        self.calls = []

    def fit(self, formula, data, seed=None, starting_values=None, timeout=None):
        self.calls.append(seed)
        raise RuntimeError("backend crashed")


class Missing(FittingCapability):
    """Capability whose backend is not installed."""

    name = 'missing'

    def __init__(self, model_type: ModelType = ModelType.FRAGILE):
        self.model_type = model_type
        self.calls = []

    def is_available(self) -> bool:
        return False

    def fit(self, formula, data, seed=None, starting_values=None, timeout=None):
        self.calls.append(seed)
        return FitResult.failure(FitErrorKind.UNAVAILABLE, "not installed", seed)


# =============================================================================
# Fitter Fixtures
# =============================================================================

@pytest.fixture
def robust_capability():
    return MaximumLikelihoodLogit()


@pytest.fixture
def fragile_capability():
    return StandInProbit()


@pytest.fixture
def fitter(robust_capability, fragile_capability):
    """Safe fitter over the deterministic test capabilities."""
    return SafeDualModelFitter(robust=robust_capability, fragile=fragile_capability)


@pytest.fixture
def robust_only_fitter(robust_capability):
    """Safe fitter whose fragile backend is missing."""
    return SafeDualModelFitter(robust=robust_capability, fragile=Missing())


@pytest.fixture
def gibbs_fitter(robust_capability):
    """Safe fitter with a short real Gibbs chain as the fragile model."""
    return SafeDualModelFitter(
        robust=robust_capability,
        fragile=GibbsProbitCapability(n_draws=60, burnin=20),
    )


# =============================================================================
# Data Fixtures - Synthetic Data with Known Ground Truth
# =============================================================================

@pytest.fixture
def choice_dataset():
    """300 rows, 3 alternatives coded 1..3, two covariates."""
    return generate_choice_data(n=300, n_alternatives=3, n_vars=2,
                                effect_size=0.8, seed=42)


@pytest.fixture
def labelled_dataset():
    """400 rows with alternatives labelled A, B, C."""
    return generate_choice_data(n=400, n_alternatives=3, n_vars=2, effect_size=0.8,
                                seed=7, alternative_labels=['A', 'B', 'C'])


@pytest.fixture
def four_alternative_dataset():
    """500 rows, 4 alternatives, correlated errors."""
    return generate_choice_data(n=500, n_alternatives=4, n_vars=2, correlation=0.5,
                                effect_size=0.8, seed=11)


@pytest.fixture
def small_choice_frame():
    """Tiny hand-made frame for formula and encoding tests."""
    return pd.DataFrame({
        'choice': ['bus', 'car', 'train', 'car', 'bus', 'train'],
        'x1': [0.1, -1.2, 0.4, 2.0, -0.3, 0.8],
        'x2': [1.0, 0.0, -0.5, 0.2, 0.3, -1.1],
    })
