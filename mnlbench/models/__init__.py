"""
Fitting capabilities for the benchmark.

    - formula: choice formula parsing and design matrices
    - base: FitResult, FittedChoiceModel and the FittingCapability contract
    - mnl: multinomial logit estimated with Biogeme (robust model)
    - mnp: Bayesian multinomial probit Gibbs sampler (fragile model)

Usage:
    from mnlbench.models.mnl import BiogemeLogitCapability
    from mnlbench.models.mnp import GibbsProbitCapability
"""
from .base import FitError, FitErrorKind, FitResult, FittedChoiceModel, FittingCapability, ModelType
from .formula import ChoiceFormula
