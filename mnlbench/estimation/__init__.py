"""
Estimation module for the benchmark.

Contains:
    - safe_fit: bounded-retry fragile fitting with robust fallback
    - convergence_diagnostics: Geweke, ESS and autocorrelation checks
    - iia_test: Hausman-McFadden test of IIA
    - model_comparison: cross-validated MNL vs MNP comparison
    - functional_form: flexible MNL specification search and form test
"""
