"""
Exception types raised by the benchmark engine.

Validation errors fail fast before any sampling or fitting. Fitting
problems inside a capability never surface as exceptions; they come back
as ``FitResult`` failures and only the safe fitter's fallback policy turns
them into ``ModelFitError`` subclasses.
"""


class MnlBenchError(Exception):
    """Base class for all package errors."""


class ValidationError(MnlBenchError, ValueError):
    """Malformed input parameter (names the offending parameter)."""


class CapabilityUnavailableError(MnlBenchError):
    """A required estimation backend is not installed."""


class ModelFitError(MnlBenchError):
    """A fit request could not be satisfied."""


class RobustFitError(ModelFitError):
    """The robust (logit) model failed to estimate."""


class FragileFitError(ModelFitError):
    """The fragile (probit) model failed and fallback='error'."""


class SamplerError(MnlBenchError):
    """Numerical failure inside the probit Gibbs sampler."""


class SamplerTimeout(SamplerError):
    """The sampler exceeded its per-attempt time budget."""
