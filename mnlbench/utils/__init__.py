"""Utils module for the benchmark."""
from .cleanup import remove_estimation_artifacts
from .logging_config import (
    setup_logging,
    get_logger,
    FitLogger,
    BenchmarkLogger,
    configure_warnings
)
