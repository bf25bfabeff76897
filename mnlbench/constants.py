"""
Centralized Constants for the MNL/MNP Benchmark
================================================

This module defines the magic numbers and defaults shared across the
benchmark engine. Import from here to keep the simulator, the safe fitter
and the benchmark driver consistent.

Usage:
    from mnlbench.constants import ATTEMPT_SEED_STRIDE, LOG_LOSS_EPS
    # or
    import mnlbench.constants as C

Author: DCM Research Team
"""

# =============================================================================
# DATA GENERATION
# =============================================================================

FUNCTIONAL_FORMS = ('linear', 'quadratic', 'log')

# 'mvnormal' draws exact equicorrelated errors, 'factor' uses the
# sqrt(c)*common + sqrt(1-c)*idiosyncratic approximation
ERROR_METHODS = ('mvnormal', 'factor')

# Weight on the row-sum of squared covariates for the quadratic form
QUADRATIC_WEIGHT = 0.3

# Rows of true probabilities must sum to one within this tolerance
PROBABILITY_TOLERANCE = 1e-10

# Outcome and covariate naming for generated datasets
OUTCOME_NAME = 'choice'
COVARIATE_PREFIX = 'x'
PROBABILITY_PREFIX = 'prob_alt'


# =============================================================================
# PERFORMANCE METRICS
# =============================================================================

# Predictions are clamped to [eps, 1 - eps] before taking logs
LOG_LOSS_EPS = 1e-15

# Substitution vectors must sum to one within this tolerance
TRANSITION_TOLERANCE = 1e-6


# =============================================================================
# SAFE FITTING
# =============================================================================

MODEL_ROBUST = 'robust'
MODEL_FRAGILE = 'fragile'

FALLBACK_POLICIES = ('robust', 'error', 'none')

# Attempt k of the fragile model is seeded with BASE + k * STRIDE
DEFAULT_BASE_SEED = 12345
ATTEMPT_SEED_STRIDE = 100
DEFAULT_MAX_ATTEMPTS = 3


# =============================================================================
# BAYESIAN PROBIT SAMPLER
# =============================================================================

MCMC_N_DRAWS = 2000
MCMC_BURNIN = 500
MCMC_THIN = 1

# Prior precision on coefficients (beta ~ N(0, 1/PRIOR_PRECISION))
PRIOR_PRECISION = 0.01

# Posterior draws and error draws used for predicted probabilities
PREDICTION_POSTERIOR_DRAWS = 200
PREDICTION_ERROR_DRAWS = 10


# =============================================================================
# CONVERGENCE DIAGNOSTICS
# =============================================================================

GEWEKE_FIRST = 0.1
GEWEKE_LAST = 0.5
GEWEKE_Z_THRESHOLD = 2.0

ESS_TARGET = 1000
# Short chains are judged against this share of their length instead
ESS_MIN_PROPORTION = 0.10
ACF_MAX_LAG = 50
ACF_LAG1_THRESHOLD = 0.8

CORRELATION_BOUNDARY = 0.95


# =============================================================================
# BENCHMARK
# =============================================================================

DEFAULT_SAMPLE_SIZES = [50, 100, 250, 500, 1000, 2000]
DEFAULT_CORRELATIONS = [0.0, 0.2, 0.4, 0.6, 0.8]
DEFAULT_EFFECT_SIZES = [0.3, 0.5, 0.8]
DEFAULT_FUNCTIONAL_FORMS = ['linear', 'quadratic']

# Rough duration estimate used for the pre-run hint
SECONDS_PER_CELL = 2.0

# Sequential runs report progress every this many cells
PROGRESS_EVERY = 100

STATUS_OK = 'ok'
STATUS_FRAGILE_FAILED = 'fragile_failed'
STATUS_FRAGILE_UNAVAILABLE = 'fragile_unavailable'
STATUS_ROBUST_FAILED = 'robust_failed'
STATUS_DATA_FAILED = 'data_failed'

CELL_STATUSES = (
    STATUS_OK,
    STATUS_FRAGILE_FAILED,
    STATUS_FRAGILE_UNAVAILABLE,
    STATUS_ROBUST_FAILED,
    STATUS_DATA_FAILED,
)


# =============================================================================
# DROPOUT SCENARIOS
# =============================================================================

DROPOUT_N_SIMS = 10000
MATRIX_N_SIMS = 5000
DROPOUT_SEED = 12345
MIN_DROPOUT_ALTERNATIVES = 3

MATRIX_METHODS = ('simulation', 'analytical')


# =============================================================================
# HYPOTHESIS TESTS
# =============================================================================

SIGNIFICANCE_LEVEL = 0.05


# =============================================================================
# FUNCTIONAL FORM SELECTION
# =============================================================================

SPECIFICATION_FORMS = ('linear', 'quadratic', 'log', 'interactions')
SELECTION_CRITERIA = ('rmse', 'brier', 'aic', 'bic', 'cv')
DEFAULT_N_FOLDS = 5


# =============================================================================
# MODEL CHOICE CONSEQUENCES
# =============================================================================

# Fragile/robust mean RMSE ratio inside this band counts as similar accuracy
SAFE_ZONE_RMSE_BAND = (0.90, 1.10)
SAFE_ZONE_ROBUST_CONVERGENCE = 0.95
SAFE_ZONE_FRAGILE_CONVERGENCE = 0.80

# Below this fragile convergence rate the robust model is recommended outright
UNRELIABLE_FRAGILE_CONVERGENCE = 0.70

# Ratios outside this band express a preference for one model
PREFERENCE_RMSE_BAND = (0.95, 1.05)
