"""
Bayesian Multinomial Probit (fragile model)
===========================================

Gibbs sampler for the multinomial probit in utility differences relative to
the reference alternative (McCulloch & Rossi, 1994):

    W_i = B' z_i + e_i,   e_i ~ N(0, Sigma),   W_i in R^(J-1)
    y_i = reference      if max(W_i) < 0
    y_i = argmax(W_i)+1  otherwise

Each sweep draws
    1. W_ij | W_i,-j, B, Sigma      truncated normal (scipy.stats.truncnorm)
    2. B | W, Sigma                 multivariate normal, prior N(0, A^-1)
    3. Sigma | W, B                 inverse Wishart (scipy.stats.invwishart)

The chain runs on the unidentified scale and stores identified draws
(B / sqrt(Sigma_11), Sigma / Sigma_11). Small samples and strong error
correlation can push the latent draws to collapsing truncation bounds or a
singular Sigma; the sampler raises SamplerError in those cases and the
capability reports them as numerical fit failures.

Predicted probabilities are simulated from posterior draws.

Author: DCM Research Team
"""

import time
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.linalg import cho_solve, solve_triangular

from ..constants import (
    MCMC_BURNIN, MCMC_N_DRAWS, MCMC_THIN, PREDICTION_ERROR_DRAWS,
    PREDICTION_POSTERIOR_DRAWS, PRIOR_PRECISION
)
from ..errors import SamplerError, SamplerTimeout, ValidationError
from .base import (
    FitErrorKind, FitResult, FittedChoiceModel, FittingCapability, ModelType,
    align_starting_values, prepare_choice_data
)
from .formula import ChoiceFormula, FormulaLike, design_matrix


# =============================================================================
# GIBBS SAMPLER
# =============================================================================

class ProbitGibbsSampler:
    """
    Data-augmentation Gibbs sampler for the multinomial probit.

    Args:
        n_draws: Posterior draws kept after burn-in
        burnin: Sweeps discarded at the start of the chain
        thin: Keep every thin-th draw
        prior_precision: Precision of the N(0, I/prior_precision) prior on B
        prior_df: Inverse-Wishart degrees of freedom (default J-1+2)
    """

    def __init__(self,
                 n_draws: int = MCMC_N_DRAWS,
                 burnin: int = MCMC_BURNIN,
                 thin: int = MCMC_THIN,
                 prior_precision: float = PRIOR_PRECISION,
                 prior_df: Optional[float] = None):
        if n_draws < 2:
            raise ValidationError(f"n_draws must be >= 2, got {n_draws}")
        if burnin < 0:
            raise ValidationError(f"burnin must be >= 0, got {burnin}")
        if thin < 1:
            raise ValidationError(f"thin must be >= 1, got {thin}")
        if prior_precision <= 0:
            raise ValidationError(f"prior_precision must be > 0, got {prior_precision}")

        self.n_draws = n_draws
        self.burnin = burnin
        self.thin = thin
        self.prior_precision = prior_precision
        self.prior_df = prior_df

    def run(self,
            Z: np.ndarray,
            y: np.ndarray,
            n_alternatives: int,
            rng: np.random.Generator,
            starting_values: Optional[np.ndarray] = None,
            deadline: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Run the chain.

        Args:
            Z: n x p design matrix (intercept first)
            y: 0-based chosen alternative (0 = reference)
            n_alternatives: J
            rng: Random generator (the only source of randomness)
            starting_values: Optional p x (J-1) initial coefficients
            deadline: time.monotonic() value after which SamplerTimeout is raised

        Returns:
            (beta_draws, sigma_draws) with shapes (T, p, J-1) and (T, J-1, J-1)
        """
        n, p = Z.shape
        m = n_alternatives - 1

        A0 = self.prior_precision * np.eye(p * m)
        nu0 = self.prior_df if self.prior_df is not None else m + 2
        V0 = np.eye(m)
        ZtZ = Z.T @ Z

        B = np.zeros((p, m)) if starting_values is None else np.array(starting_values, dtype=float)
        Sigma = np.eye(m)
        W = _initial_latent_utilities(y, m)

        n_keep = self.n_draws
        beta_draws = np.empty((n_keep, p, m))
        sigma_draws = np.empty((n_keep, m, m))

        kept = 0
        sweep = 0
        while kept < n_keep:
            if deadline is not None and time.monotonic() > deadline:
                raise SamplerTimeout(f"sampler timed out after {sweep} sweeps")

            Sigma_inv = _invert(Sigma)
            W = draw_latent_utilities(W, Z @ B, Sigma_inv, y, rng)
            B = draw_coefficients(Z, W, Sigma_inv, ZtZ, A0, rng)
            Sigma = draw_covariance(W - Z @ B, nu0, V0, rng)

            if sweep >= self.burnin and (sweep - self.burnin) % self.thin == 0:
                scale = Sigma[0, 0]
                beta_draws[kept] = B / np.sqrt(scale)
                sigma_draws[kept] = Sigma / scale
                kept += 1
            sweep += 1

        return beta_draws, sigma_draws


def _initial_latent_utilities(y: np.ndarray, m: int) -> np.ndarray:
    """Latent utilities consistent with the observed choices."""
    W = np.zeros((len(y), m))
    W[y == 0] = -1.0
    chosen = y > 0
    W[chosen, y[chosen] - 1] = 1.0
    return W


def _invert(Sigma: np.ndarray) -> np.ndarray:
    try:
        Sigma_inv = np.linalg.inv(Sigma)
    except np.linalg.LinAlgError as e:
        raise SamplerError(f"singular error covariance: {e}") from e
    if not np.all(np.isfinite(Sigma_inv)):
        raise SamplerError("non-finite inverse error covariance")
    return Sigma_inv


def draw_latent_utilities(W: np.ndarray,
                          mean: np.ndarray,
                          Sigma_inv: np.ndarray,
                          y: np.ndarray,
                          rng: np.random.Generator) -> np.ndarray:
    """One Gibbs pass over the latent utility columns."""
    W = W.copy()
    n, m = W.shape
    base = y == 0

    for j in range(m):
        others = [l for l in range(m) if l != j]
        h = Sigma_inv[j, j]
        if not np.isfinite(h) or h <= 0:
            raise SamplerError("error covariance lost positive definiteness")
        cond_sd = np.sqrt(1.0 / h)

        if others:
            resid = W[:, others] - mean[:, others]
            cond_mean = mean[:, j] - resid @ Sigma_inv[j, others] / h
            max_other = np.maximum(W[:, others].max(axis=1), 0.0)
        else:
            cond_mean = mean[:, j]
            max_other = np.zeros(n)

        chosen_j = y == j + 1
        chosen_other = ~chosen_j & ~base

        lower = np.where(chosen_j, max_other, -np.inf)
        upper = np.full(n, np.inf)
        upper[base] = 0.0
        upper[chosen_other] = W[chosen_other, y[chosen_other] - 1]

        a = (lower - cond_mean) / cond_sd
        b = (upper - cond_mean) / cond_sd
        if np.any(np.isnan(a) | np.isnan(b)) or np.any(a >= b):
            raise SamplerError("truncated normal bounds collapsed (lower >= upper)")

        draws = stats.truncnorm.rvs(a, b, loc=cond_mean, scale=cond_sd,
                                    size=n, random_state=rng)
        if not np.all(np.isfinite(draws)):
            raise SamplerError("non-finite latent utility draw")
        W[:, j] = draws

    return W


def draw_coefficients(Z: np.ndarray,
                      W: np.ndarray,
                      Sigma_inv: np.ndarray,
                      ZtZ: np.ndarray,
                      A0: np.ndarray,
                      rng: np.random.Generator) -> np.ndarray:
    """Draw B from its conditional normal posterior."""
    p = Z.shape[1]
    m = W.shape[1]

    precision = np.kron(Sigma_inv, ZtZ) + A0
    rhs = (Z.T @ W @ Sigma_inv).ravel(order='F')

    try:
        L = np.linalg.cholesky(precision)
    except np.linalg.LinAlgError as e:
        raise SamplerError(f"coefficient posterior precision is not positive definite: {e}") from e

    mean = cho_solve((L, True), rhs)
    draw = mean + solve_triangular(L.T, rng.standard_normal(p * m), lower=False)

    if not np.all(np.isfinite(draw)):
        raise SamplerError("non-finite coefficient draw")

    return draw.reshape(m, p).T


def draw_covariance(E: np.ndarray,
                    nu0: float,
                    V0: np.ndarray,
                    rng: np.random.Generator) -> np.ndarray:
    """Draw Sigma from its inverse-Wishart conditional."""
    scale = V0 + E.T @ E
    if not np.all(np.isfinite(scale)):
        raise SamplerError("non-finite residual cross-product")

    Sigma = np.atleast_2d(stats.invwishart.rvs(df=nu0 + E.shape[0], scale=scale,
                                                random_state=rng))
    if not np.all(np.isfinite(Sigma)) or Sigma[0, 0] <= 0:
        raise SamplerError("degenerate error covariance draw")

    return Sigma


def _covariance_factor(Sigma: np.ndarray) -> np.ndarray:
    """Matrix L with L L' = Sigma (eigen factor, tolerant of near-singularity)."""
    w, v = np.linalg.eigh((Sigma + Sigma.T) / 2)
    return v * np.sqrt(np.clip(w, 0.0, None))


# =============================================================================
# FITTED MODEL
# =============================================================================

class ProbitFit(FittedChoiceModel):
    """Posterior summary of a multinomial probit chain."""

    model_type = ModelType.FRAGILE

    def __init__(self,
                 formula: ChoiceFormula,
                 alternatives: list,
                 beta_draws: np.ndarray,
                 sigma_draws: np.ndarray,
                 Z: np.ndarray,
                 y: np.ndarray,
                 seed: Optional[int] = None,
                 n_posterior_draws: int = PREDICTION_POSTERIOR_DRAWS,
                 n_error_draws: int = PREDICTION_ERROR_DRAWS):
        p, m = beta_draws.shape[1:]
        # Sigma_11 is fixed at 1 for identification
        n_params = p * m + m * (m + 1) // 2 - 1
        super().__init__(formula, alternatives, beta_draws.mean(axis=0),
                         n_obs=len(y), n_params=n_params, seed=seed)

        self.beta_draws = beta_draws
        self.sigma_draws = sigma_draws
        self.sigma = sigma_draws.mean(axis=0)
        self.n_posterior_draws = n_posterior_draws
        self.n_error_draws = n_error_draws
        self.diagnostics = None
        self._prediction_seed = seed if seed is not None else 0

        probs = self._simulate_probabilities(Z, np.random.default_rng(self._prediction_seed))
        self._set_fit(probs, y)

    def predict(self, newdata: pd.DataFrame, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        Z = design_matrix(self.formula, newdata)
        if rng is None:
            rng = np.random.default_rng(self._prediction_seed)
        return self._simulate_probabilities(Z, rng)

    def _simulate_probabilities(self, Z: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """Share of simulated argmax choices over thinned posterior draws."""
        T = len(self.beta_draws)
        n = Z.shape[0]
        m = self.beta_draws.shape[2]
        R = self.n_error_draws

        idx = np.unique(np.linspace(0, T - 1, min(self.n_posterior_draws, T)).astype(int))
        counts = np.zeros((n, m + 1))

        for t in idx:
            mean = Z @ self.beta_draws[t]
            L = _covariance_factor(self.sigma_draws[t])
            utilities = mean[None, :, :] + rng.standard_normal((R, n, m)) @ L.T
            utilities = np.concatenate([np.zeros((R, n, 1)), utilities], axis=2)
            choice = utilities.argmax(axis=2)
            for j in range(m + 1):
                counts[:, j] += (choice == j).sum(axis=0)

        return counts / counts.sum(axis=1, keepdims=True)

    @property
    def draws(self) -> pd.DataFrame:
        """Identified posterior draws, one column per free parameter."""
        terms = self.formula.terms
        alts = self.alternatives[1:]
        columns = {}

        for j, alt in enumerate(alts):
            for a, term in enumerate(terms):
                columns[f"{term}:{alt}"] = self.beta_draws[:, a, j]

        m = len(alts)
        for r in range(m):
            for c in range(r, m):
                if r == 0 and c == 0:
                    continue
                columns[f"Sigma.{alts[r]}.{alts[c]}"] = self.sigma_draws[:, r, c]

        return pd.DataFrame(columns)

    @property
    def correlation_matrix(self) -> np.ndarray:
        d = np.sqrt(np.diag(self.sigma))
        return self.sigma / np.outer(d, d)


# =============================================================================
# CAPABILITY
# =============================================================================

class GibbsProbitCapability(FittingCapability):
    """
    Fragile-model backend: the Gibbs probit sampler.

    Args:
        n_draws: Posterior draws kept
        burnin: Burn-in sweeps
        thin: Thinning interval
        require_convergence: Report failed MCMC diagnostics as a
            non-convergence failure instead of returning the fit
        available: Set False to simulate a missing backend
    """

    model_type = ModelType.FRAGILE
    name = 'MNP (Gibbs)'

    def __init__(self,
                 n_draws: int = MCMC_N_DRAWS,
                 burnin: int = MCMC_BURNIN,
                 thin: int = MCMC_THIN,
                 prior_precision: float = PRIOR_PRECISION,
                 require_convergence: bool = False,
                 available: bool = True):
        self.sampler = ProbitGibbsSampler(n_draws=n_draws, burnin=burnin, thin=thin,
                                          prior_precision=prior_precision)
        self.require_convergence = require_convergence
        self.available = available

    def is_available(self) -> bool:
        return self.available

    def fit(self,
            formula: FormulaLike,
            data: pd.DataFrame,
            seed: Optional[int] = None,
            starting_values: Optional[pd.DataFrame] = None,
            timeout: Optional[float] = None) -> FitResult:
        if not self.available:
            return FitResult.failure(FitErrorKind.UNAVAILABLE, "probit sampler disabled", seed)

        try:
            prepared = prepare_choice_data(formula, data)
        except ValidationError as e:
            return FitResult.failure(FitErrorKind.INVALID_INPUT, str(e), seed)

        p = prepared.Z.shape[1]
        m = prepared.n_alternatives - 1
        start = align_starting_values(starting_values, (p, m))
        deadline = time.monotonic() + timeout if timeout else None
        rng = np.random.default_rng(seed)

        try:
            beta_draws, sigma_draws = self.sampler.run(
                prepared.Z, prepared.y, prepared.n_alternatives, rng,
                starting_values=start, deadline=deadline
            )
            model = ProbitFit(prepared.formula, prepared.alternatives,
                              beta_draws, sigma_draws, prepared.Z, prepared.y, seed=seed)
        except SamplerTimeout as e:
            return FitResult.failure(FitErrorKind.TIMEOUT, str(e), seed)
        except (SamplerError, np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
            return FitResult.failure(FitErrorKind.NUMERICAL, str(e), seed)
        except Exception as e:
            return FitResult.failure(FitErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}", seed)

        from ..estimation.convergence_diagnostics import convergence_report
        diagnostics = convergence_report(model, verbose=False)
        model.diagnostics = diagnostics
        model.warnings.extend(diagnostics.warnings)

        if self.require_convergence and not diagnostics.converged:
            return FitResult.failure(FitErrorKind.NON_CONVERGENCE,
                                     "; ".join(diagnostics.failures()), seed)

        return FitResult.success(model)
