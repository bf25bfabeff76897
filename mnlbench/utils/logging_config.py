"""
Structured Logging for the MNL/MNP Benchmark
=============================================

Provides consistent logging across the benchmark engine.

Usage:
    from mnlbench.utils.logging_config import get_logger, FitLogger

    # Simple logging
    logger = get_logger(__name__)
    logger.info("Starting benchmark")

    # Structured fit logging
    fit_log = FitLogger("fragile", verbose=True)
    fit_log.attempt(1, 3, seed=12445)
    fit_log.converged(ll=-812.4, k=8, aic=1640.8)

Author: DCM Research Team
"""

import logging
import sys
import warnings
from datetime import datetime, timezone
from typing import Optional, Dict
import json


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_style: str = "standard"
) -> None:
    """
    Configure logging for the benchmark package.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for log output
        format_style: "standard", "detailed", or "json"
    """
    formats = {
        "standard": "%(asctime)s | %(levelname)-8s | %(message)s",
        "detailed": "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
        "json": None  # Handled by JsonFormatter
    }

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if format_style == "json":
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(formats.get(format_style, formats["standard"]),
                              datefmt="%Y-%m-%d %H:%M:%S")
        )
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(formats["detailed"], datefmt="%Y-%m-%d %H:%M:%S")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # Route warnings.warn() output (degenerate statistics) into the log
    logging.captureWarnings(True)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra_data"):
            log_data["data"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


# =============================================================================
# FIT LOGGER
# =============================================================================

class FitLogger:
    """
    Structured logger for safe-fit attempts.

    Example:
        logger = FitLogger("fragile")
        logger.attempt(1, 3, seed=12445)
        logger.attempt_failed(1, "numerical", "Sigma not positive definite")
        logger.fallback("robust")
    """

    def __init__(self, model_name: str, verbose: bool = True):
        self.model_name = model_name
        self.verbose = verbose
        self.start_time: Optional[datetime] = None
        self._logger = get_logger(f"mnlbench.estimation.{model_name}")

    def _print(self, message: str) -> None:
        """Print if verbose mode is on."""
        if self.verbose:
            print(message)

    def _elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return (datetime.now() - self.start_time).total_seconds()

    def attempt(self, k: int, max_attempts: int, seed: int) -> None:
        """Log the start of a fragile-model attempt."""
        self.start_time = datetime.now()
        if max_attempts > 1:
            self._print(f"  {self.model_name} attempt {k} of {max_attempts} (seed {seed})...")
        self._logger.debug(f"Attempt {k}/{max_attempts}: seed={seed}")

    def attempt_failed(self, k: int, kind: str, message: str) -> None:
        """Log a failed attempt."""
        self._print(f"  Attempt {k} failed [{kind}]: {message}")
        self._logger.warning(f"{self.model_name} attempt {k} failed | {kind} | {message}")

    def warm_start(self, from_model: str, n_params: int) -> None:
        """Log warm-start initialization."""
        self._print(f"  Warm-start from {from_model} ({n_params} params)")
        self._logger.info(f"Warm-start from {from_model}: {n_params} parameters")

    def converged(self, ll: float, k: int, aic: float) -> None:
        """Log successful estimation."""
        elapsed = self._elapsed()
        self._print(f"  {self.model_name} CONVERGED in {elapsed:.1f}s | LL: {ll:.2f} | K: {k} | AIC: {aic:.2f}")
        self._logger.info(
            f"Converged: {self.model_name} | LL={ll:.2f} | K={k} | "
            f"AIC={aic:.2f} | time={elapsed:.1f}s"
        )

    def unavailable(self) -> None:
        """Log capability absence."""
        self._print(f"  {self.model_name} backend not available")
        self._logger.warning(f"Capability absent: {self.model_name}")

    def exhausted(self, max_attempts: int) -> None:
        """Log that every attempt failed."""
        self._print(f"  {self.model_name} failed after {max_attempts} attempts")
        self._logger.warning(f"{self.model_name} exhausted {max_attempts} attempts")

    def fallback(self, policy: str) -> None:
        """Log the fallback branch taken."""
        self._print(f"  Fallback policy: {policy}")
        self._logger.info(f"{self.model_name} fallback -> {policy}")


# =============================================================================
# BENCHMARK LOGGER
# =============================================================================

class BenchmarkLogger:
    """Logger for benchmark progress."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self._logger = get_logger("mnlbench.benchmark")

    def _print(self, message: str) -> None:
        if self.verbose:
            print(message)

    def plan(self, n_cells: int, factors: Dict[str, list], n_replications: int,
             estimated_seconds: float, parallel: bool, n_workers: int) -> None:
        """Log the design size before execution."""
        self._print(f"\n{'='*60}")
        self._print("MNL vs MNP BENCHMARK SIMULATION")
        self._print(f"{'='*60}")
        self._print(f"Total simulations: {n_cells}")
        for name, levels in factors.items():
            self._print(f"  {len(levels)} {name}: {', '.join(str(v) for v in levels)}")
        self._print(f"  {n_replications} replications per condition")
        if parallel:
            self._print(f"Using parallel processing with {n_workers} workers")
        self._print(f"Estimated time: {estimated_seconds / 3600:.1f} hours")
        self._logger.info(
            f"Benchmark plan: cells={n_cells} | est={estimated_seconds:.0f}s | "
            f"parallel={parallel} | workers={n_workers}"
        )

    def progress(self, done: int, total: int) -> None:
        """Log completed cell count."""
        self._print(f"  Completed {done} / {total} simulations ({100 * done / total:.1f}%)")
        self._logger.debug(f"Progress: {done}/{total}")

    def cell_failed(self, cell_id: int, status: str, message: str) -> None:
        """Log an isolated cell failure."""
        self._logger.warning(f"Cell {cell_id} {status}: {message}")

    def summary(self, convergence_by_n: Dict[int, float],
                win_rate_by_n: Dict[int, float], total_time: float) -> None:
        """Log the aggregate summaries."""
        self._print(f"\n{'='*60}")
        self._print("SIMULATION COMPLETE")
        self._print(f"{'='*60}")
        self._print("MNP convergence rates by sample size:")
        for n, rate in convergence_by_n.items():
            self._print(f"  n = {n:4d}: {100 * rate:.1f}%")
        self._print("MNL win rate (when both converge):")
        for n, rate in win_rate_by_n.items():
            self._print(f"  n = {n:4d}: {100 * rate:.1f}%")
        self._print(f"Total time: {total_time:.1f}s")
        self._logger.info(f"Benchmark complete in {total_time:.1f}s")


# =============================================================================
# WARNING CONFIGURATION
# =============================================================================

def configure_warnings(debug_mode: bool = False) -> None:
    """
    Configure warning filters for estimation runs.

    By default, suppresses expected warnings from Biogeme optimization.
    Set debug_mode=True to see all warnings for troubleshooting.

    Args:
        debug_mode: If True, show all warnings. If False, suppress expected ones.
    """
    if debug_mode:
        warnings.filterwarnings('default')
        logging.info("Debug mode: All warnings enabled")
    else:
        warnings.filterwarnings('ignore', category=FutureWarning)
        warnings.filterwarnings('ignore', message='.*overflow.*')
        warnings.filterwarnings('ignore', message='.*divide by zero.*')
        warnings.filterwarnings('ignore', message='.*invalid value.*')
