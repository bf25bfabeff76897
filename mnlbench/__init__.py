"""
mnlbench: Monte Carlo benchmark of multinomial logit vs multinomial probit.

Subpackages:
    simulation       - synthetic choice data with known ground truth
    models           - fitting capabilities (Biogeme MNL, Gibbs MNP)
    estimation       - safe fitting, IIA test, diagnostics, functional form search
    validation       - metrics, benchmark driver, result store, power, consequences
    policy_analysis  - dropout scenarios and substitution matrices
    utils            - logging and estimation-artifact cleanup
"""

__version__ = "0.3.0"
