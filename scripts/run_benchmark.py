"""
Run the MNL vs MNP Benchmark
============================

Runs the factorial benchmark either from a JSON configuration file or from
factor levels given on the command line, appends result rows to a CSV and
prints convergence and win-rate summaries.

Usage:
    python scripts/run_benchmark.py --config config/benchmark.json
    python scripts/run_benchmark.py --sample-sizes 100 250 --correlations 0 0.5 \\
        --output results/benchmark.csv --parallel --workers 4

Author: DCM Research Team
"""

import argparse
import logging
import sys
from pathlib import Path

# =============================================================================
# PROJECT ROOT SETUP
# =============================================================================
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mnlbench.config import BenchmarkConfig
from mnlbench.errors import ValidationError
from mnlbench.utils.logging_config import configure_warnings, get_logger, setup_logging
from mnlbench.validation.benchmark import BenchmarkDriver

logger = get_logger(__name__)


def build_config(args: argparse.Namespace) -> BenchmarkConfig:
    """Config from --config, with command-line factor levels layered on top."""
    if args.config:
        config = BenchmarkConfig.from_json(args.config)
    else:
        config = BenchmarkConfig()

    overrides = {
        'sample_sizes': args.sample_sizes,
        'correlations': args.correlations,
        'effect_sizes': args.effect_sizes,
        'functional_forms': args.forms,
        'n_replications': args.replications,
        'base_seed': args.seed,
        'n_workers': args.workers,
        'output_path': args.output,
        'checkpoint_every': args.checkpoint_every,
        'fragile_max_attempts': args.max_attempts,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    if args.parallel:
        config.parallel = True
    return config


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Benchmark robust MNL against fragile MNP")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--sample-sizes", type=int, nargs="+", help="Sample size levels")
    parser.add_argument("--correlations", type=float, nargs="+", help="Error correlation levels")
    parser.add_argument("--effect-sizes", type=float, nargs="+", help="Coefficient SD levels")
    parser.add_argument("--forms", nargs="+", help="Functional forms (linear, quadratic, log)")
    parser.add_argument("--replications", type=int, help="Replications per condition")
    parser.add_argument("--seed", type=int, help="Base seed")
    parser.add_argument("--parallel", action="store_true", help="Run cells in a process pool")
    parser.add_argument("--workers", type=int, help="Number of worker processes")
    parser.add_argument("--output", help="CSV file result rows are appended to")
    parser.add_argument("--checkpoint-every", type=int, help="Append rows every N cells")
    parser.add_argument("--max-attempts", type=int, help="Fragile fit attempts per cell")
    parser.add_argument("--plan-only", action="store_true", help="Print the plan and exit")
    parser.add_argument("--log-file", help="Optional log file")
    parser.add_argument("--debug", action="store_true", help="Show all warnings and debug logs")
    args = parser.parse_args(argv)

    setup_logging(level=logging.DEBUG if args.debug else logging.INFO, log_file=args.log_file)
    configure_warnings(debug_mode=args.debug)

    try:
        config = build_config(args)
        config.raise_if_invalid()
    except ValidationError as e:
        logger.error(str(e))
        return 2

    driver = BenchmarkDriver.from_config(config)

    if args.plan_only:
        plan = driver.plan(config.sample_sizes, config.correlations, config.effect_sizes,
                           config.functional_forms, config.n_replications)
        print(f"Cells: {plan['n_cells']}")
        print(f"Estimated time: {plan['estimated_hours']:.2f} hours")
        return 0

    result = driver.run_config(config)

    print(f"\n{'='*60}")
    print("  BENCHMARK SUMMARY")
    print(f"{'='*60}")
    print(result.summary.summary())
    if result.output_path:
        print(f"\nResults written to: {result.output_path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
