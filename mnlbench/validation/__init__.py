"""
Validation module for the benchmark.

    - metrics: RMSE, Brier, log-loss, accuracy and the Brier decomposition
    - benchmark: factorial MNL vs MNP Monte Carlo driver
    - result_store: append-only CSV rows and their summaries
    - power_analysis: simulation-based power for the robust model
    - consequences: replicated MNL vs MNP study at a fixed sample size
"""
