"""
Safe Dual-Model Fitting
=======================

Bounded-retry, fallback state machine around the two fitting capabilities.

States per fit request:

    NOT_STARTED -> ATTEMPTING_FRAGILE(k) -> CONVERGED
                                          | RETRY_FRAGILE(k+1)
                                          | EXHAUSTED_ATTEMPTS
    EXHAUSTED_ATTEMPTS -> FALLBACK_TO_ROBUST | RETURN_FAILURE -> DONE

- A missing fragile backend skips straight to the fallback branch and is
  recorded as capability absence, not as a convergence failure.
- Attempt k is seeded with base_seed + k * 100, so failures are reproducible.
- The first attempt starts from a quick robust fit when one is available.
- Capabilities report failures as FitResult values; anything they raise is
  converted to an UNEXPECTED FitError and counted as a failed attempt.

Fallback policies once attempts are exhausted:
    robust - exactly one robust fit (RobustFitError if it fails,
             CapabilityUnavailableError if its backend is missing)
    error  - raise FragileFitError
    none   - return a failure outcome without a model

Author: DCM Research Team
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..constants import (
    ATTEMPT_SEED_STRIDE, DEFAULT_BASE_SEED, DEFAULT_MAX_ATTEMPTS, FALLBACK_POLICIES
)
from ..errors import (
    CapabilityUnavailableError, FragileFitError, RobustFitError, ValidationError
)
from ..models.base import (
    FitError, FitErrorKind, FitResult, FittedChoiceModel, FittingCapability, ModelType
)
from ..models.formula import ChoiceFormula, FormulaLike
from ..models.mnl import BiogemeLogitCapability
from ..models.mnp import GibbsProbitCapability
from ..utils.logging_config import FitLogger


class FallbackPolicy(str, Enum):
    ROBUST = 'robust'
    ERROR = 'error'
    NONE = 'none'


class FitStatus(str, Enum):
    CONVERGED = 'converged'
    FALLBACK_AFTER_FAILURE = 'fallback_after_failure'
    FALLBACK_CAPABILITY_ABSENT = 'fallback_capability_absent'
    FAILED = 'failed'
    CAPABILITY_ABSENT = 'capability_absent'


class FitState(str, Enum):
    NOT_STARTED = 'not_started'
    ATTEMPTING_FRAGILE = 'attempting_fragile'
    RETRY_FRAGILE = 'retry_fragile'
    CONVERGED = 'converged'
    EXHAUSTED_ATTEMPTS = 'exhausted_attempts'
    FALLBACK_TO_ROBUST = 'fallback_to_robust'
    RETURN_FAILURE = 'return_failure'
    DONE = 'done'


@dataclass(frozen=True)
class FitOutcome:
    """
    Tagged result of a safe fit request.

    Attributes:
        attempted_model: Model the caller asked for
        status: How the request was resolved
        model: Fitted handle, present iff the request succeeded
        attempts_used: Fragile attempts made (robust-only requests count 1)
        fallback_used: True when the returned model is a robust fallback
        attempt_seeds: Seed of every fragile attempt, in order
        errors: FitError of every failed attempt
        states: State-machine trace
    """
    attempted_model: ModelType
    status: FitStatus
    model: Optional[FittedChoiceModel] = None
    attempts_used: int = 0
    fallback_used: bool = False
    attempt_seeds: Tuple[int, ...] = ()
    errors: Tuple[FitError, ...] = ()
    states: Tuple[FitState, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.model is not None

    @property
    def model_handle(self) -> Optional[FittedChoiceModel]:
        return self.model

    @property
    def model_type(self) -> Optional[ModelType]:
        """Discriminant of the returned handle (None on failure)."""
        return self.model.model_type if self.model is not None else None

    @property
    def capability_absent(self) -> bool:
        return self.status in (FitStatus.CAPABILITY_ABSENT, FitStatus.FALLBACK_CAPABILITY_ABSENT)

    @property
    def fragile_converged(self) -> bool:
        return self.status is FitStatus.CONVERGED and self.model_type is ModelType.FRAGILE


def derive_attempt_seed(base_seed: int, attempt: int) -> int:
    """Seed for fragile attempt ``attempt`` (1-based)."""
    return base_seed + attempt * ATTEMPT_SEED_STRIDE


def _coerce_policy(fallback: Union[str, FallbackPolicy]) -> FallbackPolicy:
    try:
        return FallbackPolicy(fallback)
    except ValueError:
        raise ValidationError(
            f"fallback must be one of {list(FALLBACK_POLICIES)}, got {fallback!r}"
        ) from None


def _coerce_model(model: Union[str, ModelType]) -> ModelType:
    try:
        return ModelType(model)
    except ValueError:
        raise ValidationError(
            f"model must be 'robust' or 'fragile', got {model!r}"
        ) from None


class SafeDualModelFitter:
    """
    Fit the fragile model with retries and fall back to the robust one.

    Example:
        >>> fitter = SafeDualModelFitter()
        >>> outcome = fitter.fit("choice ~ x1 + x2", df, fallback="robust")
        >>> outcome.model_type, outcome.attempts_used
    """

    def __init__(self,
                 robust: Optional[FittingCapability] = None,
                 fragile: Optional[FittingCapability] = None,
                 base_seed: int = DEFAULT_BASE_SEED,
                 attempt_timeout: Optional[float] = None,
                 smart_start: bool = True,
                 verbose: bool = False):
        """
        Args:
            robust: Robust-model capability (default: Biogeme MNL)
            fragile: Fragile-model capability (default: Gibbs MNP)
            base_seed: Base for per-attempt seeds when fit() gets no seed
            attempt_timeout: Seconds allowed per fragile attempt
            smart_start: Seed the first attempt from a quick robust fit
            verbose: Print attempt progress
        """
        self.robust = robust if robust is not None else BiogemeLogitCapability()
        self.fragile = fragile if fragile is not None else GibbsProbitCapability()
        self.base_seed = base_seed
        self.attempt_timeout = attempt_timeout
        self.smart_start = smart_start
        self.verbose = verbose

    # ------------------------------------------------------------------
    def fit(self,
            formula: FormulaLike,
            data: pd.DataFrame,
            fallback: Union[str, FallbackPolicy] = FallbackPolicy.ROBUST,
            max_attempts: int = DEFAULT_MAX_ATTEMPTS,
            model: Union[str, ModelType] = ModelType.FRAGILE,
            seed: Optional[int] = None,
            rng: Optional[np.random.Generator] = None,
            starting_values: Optional[pd.DataFrame] = None) -> FitOutcome:
        """
        Run one fit request through the state machine.

        Args:
            formula: Choice formula ("choice ~ x1 + x2")
            data: Estimation data
            fallback: 'robust', 'error' or 'none'
            max_attempts: Fragile attempts before the fallback branch
            model: 'fragile' (default) or 'robust' for a robust-only fit
            seed: Base seed for attempt seeds
            rng: Generator used to draw the base seed when seed is None
            starting_values: Coefficients for the first fragile attempt; when
                given, no warm-start robust fit is run

        Returns:
            FitOutcome

        Raises:
            ValidationError: Bad policy, model or max_attempts
            FragileFitError: fallback='error' and every attempt failed
            CapabilityUnavailableError: A required backend is missing
            RobustFitError: The robust fit failed
        """
        policy = _coerce_policy(fallback)
        requested = _coerce_model(model)
        if not isinstance(max_attempts, (int, np.integer)) or max_attempts < 1:
            raise ValidationError(f"max_attempts must be an integer >= 1, got {max_attempts!r}")

        formula = ChoiceFormula.coerce(formula)
        if seed is None:
            seed = int(rng.integers(0, 2**31 - 1)) if rng is not None else self.base_seed

        if requested is ModelType.ROBUST:
            robust_model = self._fit_robust(formula, data, seed)
            return FitOutcome(
                attempted_model=ModelType.ROBUST,
                status=FitStatus.CONVERGED,
                model=robust_model,
                attempts_used=1,
                states=(FitState.NOT_STARTED, FitState.CONVERGED, FitState.DONE),
            )

        return self._fit_fragile(formula, data, policy, max_attempts, seed, starting_values)

    # ------------------------------------------------------------------
    def _fit_fragile(self, formula: ChoiceFormula, data: pd.DataFrame,
                     policy: FallbackPolicy, max_attempts: int, base_seed: int,
                     starting_values: Optional[pd.DataFrame] = None) -> FitOutcome:
        log = FitLogger(ModelType.FRAGILE.label, verbose=self.verbose)
        states: List[FitState] = [FitState.NOT_STARTED]
        seeds: List[int] = []
        errors: List[FitError] = []

        if not self.fragile.is_available():
            log.unavailable()
            errors.append(FitError(FitErrorKind.UNAVAILABLE, f"{self.fragile.name} not available"))
            return self._resolve(formula, data, policy, base_seed, states, seeds, errors,
                                 absent=True, log=log)

        if starting_values is None:
            starting_values = self._smart_starting_values(formula, data, base_seed, log)
        else:
            log.warm_start('supplied values', starting_values.size)

        for attempt in range(1, max_attempts + 1):
            attempt_seed = derive_attempt_seed(base_seed, attempt)
            seeds.append(attempt_seed)
            states.append(FitState.ATTEMPTING_FRAGILE)
            log.attempt(attempt, max_attempts, attempt_seed)

            result = self._attempt(formula, data, attempt_seed,
                                   starting_values if attempt == 1 else None)

            if result.ok:
                log.converged(result.model.log_likelihood, result.model.n_params, result.model.aic)
                states.extend([FitState.CONVERGED, FitState.DONE])
                return FitOutcome(
                    attempted_model=ModelType.FRAGILE,
                    status=FitStatus.CONVERGED,
                    model=result.model,
                    attempts_used=attempt,
                    attempt_seeds=tuple(seeds),
                    errors=tuple(errors),
                    states=tuple(states),
                )

            errors.append(result.error)
            log.attempt_failed(attempt, result.error.kind.value, result.error.message)

            if result.error.kind is FitErrorKind.UNAVAILABLE:
                # Backend vanished at call time; retrying cannot help
                return self._resolve(formula, data, policy, base_seed, states, seeds, errors,
                                     absent=True, log=log)

            if attempt < max_attempts:
                states.append(FitState.RETRY_FRAGILE)

        log.exhausted(max_attempts)
        return self._resolve(formula, data, policy, base_seed, states, seeds, errors,
                             absent=False, log=log)

    def _attempt(self, formula: ChoiceFormula, data: pd.DataFrame, seed: int,
                 starting_values: Optional[pd.DataFrame]) -> FitResult:
        try:
            return self.fragile.fit(formula, data, seed=seed,
                                    starting_values=starting_values,
                                    timeout=self.attempt_timeout)
        except Exception as e:
            return FitResult.failure(FitErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}", seed)

    def _smart_starting_values(self, formula: ChoiceFormula, data: pd.DataFrame,
                               seed: int, log: FitLogger) -> Optional[pd.DataFrame]:
        """Coefficients of a quick robust fit, or None."""
        if not self.smart_start or not self.robust.is_available():
            return None
        try:
            result = self.robust.fit(formula, data, seed=seed)
        except Exception:
            return None
        if not result.ok:
            return None
        coefficients = result.model.coefficients
        log.warm_start(ModelType.ROBUST.label, coefficients.size)
        return coefficients

    def _resolve(self, formula: ChoiceFormula, data: pd.DataFrame, policy: FallbackPolicy,
                 seed: int, states: List[FitState], seeds: List[int], errors: List[FitError],
                 absent: bool, log: FitLogger) -> FitOutcome:
        if not absent:
            states.append(FitState.EXHAUSTED_ATTEMPTS)
        log.fallback(policy.value)

        if policy is FallbackPolicy.ROBUST:
            states.append(FitState.FALLBACK_TO_ROBUST)
            robust_model = self._fit_robust(formula, data, seed)
            states.append(FitState.DONE)
            return FitOutcome(
                attempted_model=ModelType.FRAGILE,
                status=FitStatus.FALLBACK_CAPABILITY_ABSENT if absent else FitStatus.FALLBACK_AFTER_FAILURE,
                model=robust_model,
                attempts_used=len(seeds),
                fallback_used=True,
                attempt_seeds=tuple(seeds),
                errors=tuple(errors),
                states=tuple(states),
            )

        if policy is FallbackPolicy.ERROR:
            if absent:
                raise CapabilityUnavailableError(
                    f"{self.fragile.name} is not available and fallback='error'"
                )
            raise FragileFitError(
                f"{self.fragile.name} failed to converge after {len(seeds)} attempts "
                f"and fallback='error': {errors[-1]}"
            )

        states.extend([FitState.RETURN_FAILURE, FitState.DONE])
        return FitOutcome(
            attempted_model=ModelType.FRAGILE,
            status=FitStatus.CAPABILITY_ABSENT if absent else FitStatus.FAILED,
            attempts_used=len(seeds),
            attempt_seeds=tuple(seeds),
            errors=tuple(errors),
            states=tuple(states),
        )

    def _fit_robust(self, formula: ChoiceFormula, data: pd.DataFrame, seed: int) -> FittedChoiceModel:
        if not self.robust.is_available():
            raise CapabilityUnavailableError(f"{self.robust.name} is not available")

        try:
            result = self.robust.fit(formula, data, seed=seed)
        except Exception as e:
            raise RobustFitError(f"{self.robust.name} raised {type(e).__name__}: {e}") from e

        if not result.ok:
            if result.error.kind is FitErrorKind.UNAVAILABLE:
                raise CapabilityUnavailableError(result.error.message)
            raise RobustFitError(f"{self.robust.name} failed: {result.error}")

        return result.model


def fit_fragile_safe(formula: FormulaLike,
                     data: pd.DataFrame,
                     fallback: Union[str, FallbackPolicy] = FallbackPolicy.ROBUST,
                     max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                     seed: Optional[int] = None,
                     verbose: bool = True,
                     **fitter_kwargs) -> FitOutcome:
    """One-shot fragile fit with the default capabilities."""
    fitter = SafeDualModelFitter(verbose=verbose, **fitter_kwargs)
    return fitter.fit(formula, data, fallback=fallback, max_attempts=max_attempts, seed=seed)
