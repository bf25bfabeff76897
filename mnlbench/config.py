"""
Benchmark Run Configuration
===========================

A benchmark run is described by one flat JSON object:

{
    "sample_sizes": [50, 100, 250],       # rows per dataset
    "correlations": [0.0, 0.4],           # error equicorrelation, in [0, 1]
    "effect_sizes": [0.5],                # SD of true coefficients, > 0
    "functional_forms": ["linear"],       # linear | quadratic | log
    "n_alternatives": 3,                  # J >= 2
    "n_vars": 2,                          # k >= 1
    "n_replications": 1,
    "base_seed": 0,                       # cell seed = base_seed + cell index
    "parallel": false,
    "n_workers": 4,
    "output_path": "results/benchmark.csv",
    "checkpoint_every": null,             # append rows every this many cells
    "fragile_max_attempts": 1,
    "mcmc_draws": 2000,
    "mcmc_burnin": 500,
    "attempt_timeout": null               # seconds per fragile attempt
}

Validation collects every problem before reporting, so a bad file can be
fixed in one pass.

Author: DCM Research Team
"""

import json
import math
import numbers
import warnings
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_CORRELATIONS, DEFAULT_EFFECT_SIZES, DEFAULT_FUNCTIONAL_FORMS,
    DEFAULT_SAMPLE_SIZES, FUNCTIONAL_FORMS, MCMC_BURNIN, MCMC_N_DRAWS
)
from .errors import ValidationError


# =============================================================================
# SCHEMA VALIDATION
# =============================================================================

@dataclass
class ValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _is_int(value: Any) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    """Finite real number; NaN and infinities are rejected."""
    return (isinstance(value, numbers.Real) and not isinstance(value, bool)
            and math.isfinite(value))


@dataclass
class BenchmarkConfig:
    """Factor levels and execution settings of a benchmark run."""
    sample_sizes: List[int] = field(default_factory=lambda: list(DEFAULT_SAMPLE_SIZES))
    correlations: List[float] = field(default_factory=lambda: list(DEFAULT_CORRELATIONS))
    effect_sizes: List[float] = field(default_factory=lambda: list(DEFAULT_EFFECT_SIZES))
    functional_forms: List[str] = field(default_factory=lambda: list(DEFAULT_FUNCTIONAL_FORMS))
    n_alternatives: int = 3
    n_vars: int = 2
    n_replications: int = 1
    base_seed: int = 0
    parallel: bool = False
    n_workers: int = 4
    output_path: Optional[str] = None
    checkpoint_every: Optional[int] = None
    fragile_max_attempts: int = 1
    mcmc_draws: int = MCMC_N_DRAWS
    mcmc_burnin: int = MCMC_BURNIN
    attempt_timeout: Optional[float] = None

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'BenchmarkConfig':
        """Build from a dict; unknown keys are an error."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {unknown}")
        return cls(**config)

    @classmethod
    def from_json(cls, config_path) -> 'BenchmarkConfig':
        """
        Load and validate configuration from a JSON file.

        Raises:
            ValidationError: If the file has unknown keys or invalid values
        """
        with open(Path(config_path)) as f:
            config = cls.from_dict(json.load(f))
        config.raise_if_invalid()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def n_cells(self) -> int:
        return (len(self.sample_sizes) * len(self.correlations) * len(self.effect_sizes)
                * len(self.functional_forms) * self.n_replications)

    # ------------------------------------------------------------------
    def validate(self) -> ValidationResult:
        """
        Validate every setting.

        Returns:
            ValidationResult with validity status and any errors/warnings
        """
        errors = []
        warnings_list = []

        factors = {
            'sample_sizes': self.sample_sizes,
            'correlations': self.correlations,
            'effect_sizes': self.effect_sizes,
            'functional_forms': self.functional_forms,
        }
        for name, levels in factors.items():
            if not isinstance(levels, (list, tuple)) or len(levels) == 0:
                errors.append(f"{name} must be a non-empty list")

        if errors:
            return ValidationResult(False, errors, warnings_list)

        for n in self.sample_sizes:
            if not _is_int(n) or n < 1:
                errors.append(f"sample_sizes: {n!r} is not a positive integer")
            elif n < 50:
                warnings_list.append(f"sample_sizes: n={n} is very small for the probit sampler")

        for c in self.correlations:
            if not _is_number(c) or c < 0 or c > 1:
                errors.append(f"correlations: {c!r} is outside [0, 1]")

        for es in self.effect_sizes:
            if not _is_number(es) or es <= 0:
                errors.append(f"effect_sizes: {es!r} must be a finite positive number")

        for form in self.functional_forms:
            if form not in FUNCTIONAL_FORMS:
                errors.append(f"functional_forms: {form!r} is not one of {list(FUNCTIONAL_FORMS)}")

        if not _is_int(self.n_alternatives) or self.n_alternatives < 2:
            errors.append(f"n_alternatives must be an integer >= 2, got {self.n_alternatives!r}")
        if not _is_int(self.n_vars) or self.n_vars < 1:
            errors.append(f"n_vars must be an integer >= 1, got {self.n_vars!r}")
        if not _is_int(self.n_replications) or self.n_replications < 1:
            errors.append(f"n_replications must be an integer >= 1, got {self.n_replications!r}")
        if not _is_int(self.base_seed):
            errors.append(f"base_seed must be an integer, got {self.base_seed!r}")
        if not _is_int(self.n_workers) or self.n_workers < 1:
            errors.append(f"n_workers must be an integer >= 1, got {self.n_workers!r}")
        if self.checkpoint_every is not None and (
                not _is_int(self.checkpoint_every) or self.checkpoint_every < 1):
            errors.append(f"checkpoint_every must be a positive integer, got {self.checkpoint_every!r}")
        if not _is_int(self.fragile_max_attempts) or self.fragile_max_attempts < 1:
            errors.append(f"fragile_max_attempts must be an integer >= 1, got {self.fragile_max_attempts!r}")
        if not _is_int(self.mcmc_draws) or self.mcmc_draws < 2:
            errors.append(f"mcmc_draws must be an integer >= 2, got {self.mcmc_draws!r}")
        if not _is_int(self.mcmc_burnin) or self.mcmc_burnin < 0:
            errors.append(f"mcmc_burnin must be a non-negative integer, got {self.mcmc_burnin!r}")
        if self.attempt_timeout is not None and (
                not _is_number(self.attempt_timeout) or self.attempt_timeout <= 0):
            errors.append(f"attempt_timeout must be positive, got {self.attempt_timeout!r}")

        if self.checkpoint_every is not None and self.output_path is None:
            warnings_list.append("checkpoint_every is set but output_path is not; no rows will be saved")
        if self.parallel and self.n_workers == 1:
            warnings_list.append("parallel=True with a single worker")

        return ValidationResult(len(errors) == 0, errors, warnings_list)

    def raise_if_invalid(self) -> None:
        """Emit warnings and raise ValidationError listing every error."""
        result = self.validate()

        for w in result.warnings:
            warnings.warn(w, UserWarning)

        if not result.is_valid:
            raise ValidationError("Invalid configuration:\n" + "\n".join(result.errors))
