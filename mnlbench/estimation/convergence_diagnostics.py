"""
MCMC Convergence Diagnostics
============================

Convergence checks for the probit Gibbs sampler's posterior draws.

Key Features:
- Geweke test (first 10% vs last 50% of the chain, |z| < 2)
- Effective sample size from the autocorrelation sum
- Lag-1 autocorrelation (> 0.8 indicates poor mixing)
- Error correlations near the +/-1 boundary

Degenerate chains (all draws identical) are reported as warnings on the
result instead of failing the check.

Author: DCM Research Team
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from ..constants import (
    ACF_LAG1_THRESHOLD, ACF_MAX_LAG, CORRELATION_BOUNDARY, ESS_MIN_PROPORTION,
    ESS_TARGET, GEWEKE_FIRST, GEWEKE_LAST, GEWEKE_Z_THRESHOLD
)


@dataclass
class MCMCDiagnostics:
    """Container for MCMC convergence diagnostic results."""
    table: pd.DataFrame
    n_draws: int
    ess_target: float
    boundary_warnings: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def geweke_failures(self) -> List[str]:
        return self.table.loc[self.table['Geweke_OK'] == False, 'Parameter'].tolist()  # noqa: E712

    @property
    def low_ess(self) -> List[str]:
        return self.table.loc[self.table['ESS_OK'] == False, 'Parameter'].tolist()  # noqa: E712

    @property
    def high_autocorrelation(self) -> List[str]:
        return self.table.loc[self.table['High_Autocorr'] == True, 'Parameter'].tolist()  # noqa: E712

    @property
    def converged(self) -> bool:
        return not (self.geweke_failures or self.low_ess or self.high_autocorrelation)

    def failures(self) -> List[str]:
        """Human-readable list of failed checks."""
        messages = []
        if self.geweke_failures:
            messages.append(f"{len(self.geweke_failures)} parameters failed Geweke test")
        if self.low_ess:
            messages.append(f"{len(self.low_ess)} parameters have ESS < {self.ess_target:.0f}")
        if self.high_autocorrelation:
            messages.append(f"{len(self.high_autocorrelation)} parameters have lag-1 ACF > {ACF_LAG1_THRESHOLD}")
        return messages

    def summary(self) -> str:
        """Generate summary string."""
        status = "PASS" if self.converged else "FAIL"
        lines = [
            f"MCMC Convergence Status: {status}",
            f"  Draws analyzed: {self.n_draws}",
            f"  ESS target: {self.ess_target:.0f}",
        ]
        lines.extend(f"  {msg}" for msg in self.failures())
        lines.extend(f"  Boundary: {msg}" for msg in self.boundary_warnings)
        lines.extend(f"  Warning: {msg}" for msg in self.warnings)
        return "\n".join(lines)


# =============================================================================
# CHAIN STATISTICS
# =============================================================================

def geweke_z(draws: np.ndarray,
             first: float = GEWEKE_FIRST,
             last: float = GEWEKE_LAST) -> float:
    """
    Geweke z-score comparing the early and late parts of a chain.

    Returns NaN when both windows have zero variance.
    """
    draws = np.asarray(draws, dtype=float)
    n = len(draws)
    head = draws[:max(int(math.floor(first * n)), 2)]
    tail = draws[max(int(math.ceil(last * n)) - 1, 0):]

    se2 = np.var(head, ddof=1) / len(head) + np.var(tail, ddof=1) / len(tail)
    if se2 <= 0:
        return np.nan
    return float((head.mean() - tail.mean()) / np.sqrt(se2))


def autocorrelation(draws: np.ndarray, max_lag: int = ACF_MAX_LAG) -> np.ndarray:
    """Sample autocorrelation at lags 0..max_lag (NaN for a constant chain)."""
    x = np.asarray(draws, dtype=float)
    n = len(x)
    max_lag = min(max_lag, n - 1)
    x = x - x.mean()
    denom = np.dot(x, x)
    if denom == 0:
        return np.full(max_lag + 1, np.nan)
    return np.array([np.dot(x[:n - k], x[k:]) / denom for k in range(max_lag + 1)])


def effective_sample_size(draws: np.ndarray, max_lag: int = ACF_MAX_LAG) -> float:
    """ESS = n / (1 + 2 * sum of autocorrelations at lags 1..max_lag-1)."""
    n = len(draws)
    acf = autocorrelation(draws, max_lag)
    if np.isnan(acf[0]):
        return np.nan
    denom = 1 + 2 * np.sum(acf[1:max_lag])
    if denom <= 0:
        return float(n)
    return float(n / denom)


# =============================================================================
# DIAGNOSTICS
# =============================================================================

def check_mcmc_convergence(draws: pd.DataFrame,
                           sigma: Optional[np.ndarray] = None,
                           ess_target: Optional[float] = None,
                           z_threshold: float = GEWEKE_Z_THRESHOLD) -> MCMCDiagnostics:
    """
    Run Geweke, ESS and autocorrelation checks on every column of draws.

    Args:
        draws: One column per parameter, one row per kept draw
        sigma: Optional posterior mean error covariance for boundary checks
        ess_target: ESS required per parameter (default: 1000, or 10% of the
            chain length when the chain is shorter than that target allows)
        z_threshold: Geweke |z| bound

    Returns:
        MCMCDiagnostics
    """
    n_draws = len(draws)
    if ess_target is None:
        ess_target = min(ESS_TARGET, ESS_MIN_PROPORTION * n_draws)

    records = []
    degenerate = []

    for name in draws.columns:
        chain = draws[name].to_numpy(dtype=float)

        if np.all(chain == chain[0]):
            degenerate.append(name)
            records.append({
                'Parameter': name, 'Geweke_Z': np.nan, 'Geweke_OK': None,
                'ESS': np.nan, 'ESS_OK': None, 'Lag1_ACF': np.nan, 'High_Autocorr': None,
            })
            continue

        z = geweke_z(chain)
        ess = effective_sample_size(chain)
        acf = autocorrelation(chain, 1)
        lag1 = float(acf[1]) if len(acf) > 1 else np.nan

        records.append({
            'Parameter': name,
            'Geweke_Z': z,
            'Geweke_OK': bool(abs(z) < z_threshold) if np.isfinite(z) else None,
            'ESS': ess,
            'ESS_OK': bool(ess > ess_target),
            'Lag1_ACF': lag1,
            'High_Autocorr': bool(lag1 > ACF_LAG1_THRESHOLD),
        })

    warnings_list = [f"all draws identical for {name}" for name in degenerate]

    boundary = []
    if sigma is not None and np.shape(sigma)[0] > 1:
        d = np.sqrt(np.diag(sigma))
        rho = sigma / np.outer(d, d)
        m = rho.shape[0]
        for r in range(m):
            for c in range(r + 1, m):
                if abs(rho[r, c]) > CORRELATION_BOUNDARY:
                    boundary.append(
                        f"error correlation ({r + 1},{c + 1}) = {rho[r, c]:.3f} near boundary"
                    )

    return MCMCDiagnostics(
        table=pd.DataFrame(records, columns=[
            'Parameter', 'Geweke_Z', 'Geweke_OK', 'ESS', 'ESS_OK', 'Lag1_ACF', 'High_Autocorr'
        ]),
        n_draws=n_draws,
        ess_target=ess_target,
        boundary_warnings=boundary,
        warnings=warnings_list + boundary,
    )


def convergence_report(probit_fit, verbose: bool = True,
                       ess_target: Optional[float] = None) -> MCMCDiagnostics:
    """
    Convergence diagnostics for a fitted probit model.

    Args:
        probit_fit: ProbitFit (anything exposing ``draws`` and ``sigma``)
        verbose: Print the diagnostic tables
        ess_target: Override the ESS target

    Returns:
        MCMCDiagnostics
    """
    diagnostics = check_mcmc_convergence(probit_fit.draws, sigma=probit_fit.sigma,
                                         ess_target=ess_target)

    if verbose:
        print(f"\n{'='*70}")
        print("  MNP CONVERGENCE DIAGNOSTICS")
        print(f"{'='*70}\n")
        print(f"MCMC draws analyzed: {diagnostics.n_draws}")
        print("\n--- Geweke / ESS / Autocorrelation ---")
        print(diagnostics.table.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
        print()
        print(diagnostics.summary())

    return diagnostics
