"""
Choice Formula and Design Helpers
=================================

A choice formula binds an outcome column to a list of individual-specific
covariates, written as ``"choice ~ x1 + x2"``. Both estimators use
alternative-specific coefficients on an intercept plus every covariate, with
the first alternative (in sorted label order) as the reference.

Author: DCM Research Team
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..errors import ValidationError


INTERCEPT = '(Intercept)'


@dataclass(frozen=True)
class ChoiceFormula:
    """Outcome name bound to an ordered covariate list."""
    outcome: str
    covariates: Tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> 'ChoiceFormula':
        """Parse ``"y ~ a + b"`` into a ChoiceFormula."""
        if '~' not in text:
            raise ValidationError(f"formula must contain '~': {text!r}")

        lhs, rhs = text.split('~', 1)
        outcome = lhs.strip()
        covariates = tuple(term.strip() for term in rhs.split('+') if term.strip())

        if not outcome:
            raise ValidationError(f"formula has no outcome: {text!r}")
        if not covariates:
            raise ValidationError(f"formula has no covariates: {text!r}")

        return cls(outcome=outcome, covariates=covariates)

    @classmethod
    def coerce(cls, formula: Union[str, 'ChoiceFormula']) -> 'ChoiceFormula':
        if isinstance(formula, ChoiceFormula):
            return formula
        if isinstance(formula, str):
            return cls.parse(formula)
        raise ValidationError(f"formula must be a string or ChoiceFormula, got {type(formula).__name__}")

    @property
    def terms(self) -> List[str]:
        """Coefficient row names, intercept first."""
        return [INTERCEPT] + list(self.covariates)

    def check_columns(self, data: pd.DataFrame) -> None:
        missing = [c for c in (self.outcome,) + self.covariates if c not in data.columns]
        if missing:
            raise ValidationError(f"data is missing formula columns: {missing}")

    def __str__(self) -> str:
        return f"{self.outcome} ~ {' + '.join(self.covariates)}"


FormulaLike = Union[str, ChoiceFormula]


def resolve_alternatives(values: Sequence, alternatives: Optional[Sequence] = None) -> list:
    """
    Ordered alternative labels for an outcome column.

    Categorical columns keep their category order; anything else is
    sorted.
    """
    if alternatives is not None:
        return list(alternatives)
    if isinstance(values, pd.Series) and isinstance(values.dtype, pd.CategoricalDtype):
        return list(values.cat.categories)
    return sorted(pd.unique(np.asarray(values)).tolist())


def encode_choices(values: Sequence, alternatives: Sequence) -> np.ndarray:
    """Map outcome labels to 0-based alternative indices."""
    lookup = {label: i for i, label in enumerate(alternatives)}
    codes = np.empty(len(values), dtype=int)

    for i, value in enumerate(np.asarray(values).tolist()):
        if value not in lookup:
            raise ValidationError(
                f"outcome value {value!r} is not one of the alternatives {list(alternatives)}"
            )
        codes[i] = lookup[value]

    return codes


def design_matrix(formula: ChoiceFormula, data: pd.DataFrame) -> np.ndarray:
    """n x (k+1) matrix of [1, covariates] for the formula's columns."""
    missing = [c for c in formula.covariates if c not in data.columns]
    if missing:
        raise ValidationError(f"data is missing covariates: {missing}")

    X = data[list(formula.covariates)].to_numpy(dtype=float)
    if not np.all(np.isfinite(X)):
        raise ValidationError("covariates contain missing or non-finite values")

    return np.column_stack([np.ones(len(X)), X])
