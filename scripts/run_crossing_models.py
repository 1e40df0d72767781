#!/usr/bin/env python3
"""
Fit the elk highway-crossing model set and print the results.

Runs every binomial GLMM in the analysis (random intercept for individual x
winter), prints a summary per model with marginal and conditional R2, then the
AIC comparisons between model groups.

Usage:
    # Full analysis on the processed dataset
    python scripts/run_crossing_models.py

    # Different input file, four fitting threads, CSV tables alongside the report
    python scripts/run_crossing_models.py --data path/to/steps.csv --workers 4 --output-dir results/

    # A subset of models
    python scripts/run_crossing_models.py --models traffic group_size traffic_x_group_size

    # Demo on a synthetic dataset with a known traffic effect
    python scripts/run_crossing_models.py --synthetic 2000 --seed 7
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from elk_crossing.analysis.crossing_models import (
    MODEL_SPECS,
    render_report,
    run_analysis,
    select_specs,
)
from elk_crossing.data.loader import DEFAULT_DATA_PATH, DataFormatError, load_crossing_data
from elk_crossing.data.simulate import simulate_crossing_data
from elk_crossing.reporting.summary import write_tables

logger = logging.getLogger(__name__)


def list_models():
    """Print the model set."""
    print(f"{'model':<24} formula")
    print("-" * 72)
    for spec in MODEL_SPECS:
        print(f"{spec.name:<24} {spec.lme4_formula()}")
        if spec.description:
            print(f"{'':<24} {spec.description}")


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Fit binomial GLMMs of elk highway crossing and compare them by AIC",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '--data',
        type=Path,
        default=DEFAULT_DATA_PATH,
        help=f'Crossing dataset CSV (default: {DEFAULT_DATA_PATH})'
    )
    parser.add_argument(
        '--models',
        nargs='+',
        default=None,
        help='Fit only these models (default: all; see --list-models)'
    )
    parser.add_argument(
        '--list-models',
        action='store_true',
        help='List the model set and exit'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=1,
        help='Threads for fitting models in parallel (default: 1)'
    )
    parser.add_argument(
        '--n-agq',
        type=int,
        default=1,
        help='Quadrature points per group; 1 = Laplace approximation (default: 1)'
    )
    parser.add_argument(
        '--output-dir',
        type=Path,
        default=None,
        help='Also write CSV tables (models, coefficients, AIC comparisons) here'
    )
    parser.add_argument(
        '--synthetic',
        type=int,
        metavar='N',
        default=None,
        help='Use N simulated steps instead of --data'
    )
    parser.add_argument(
        '--seed',
        type=int,
        default=0,
        help='Seed for restarts and --synthetic data (default: 0)'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Debug logging'
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    if args.list_models:
        list_models()
        return 0

    try:
        specs = select_specs(args.models)
    except KeyError as e:
        logger.error(f"{e.args[0]} (use --list-models)")
        return 2

    if args.synthetic is not None:
        logger.info(f"Simulating {args.synthetic} steps (seed {args.seed})")
        data = simulate_crossing_data(n_rows=args.synthetic, seed=args.seed)
    else:
        try:
            data = load_crossing_data(args.data)
        except DataFormatError as e:
            logger.error(f"Cannot load crossing data: {e}")
            return 1

    report = run_analysis(data, specs, workers=args.workers, n_agq=args.n_agq, seed=args.seed)
    print(render_report(report))

    if args.output_dir is not None:
        write_tables(report, args.output_dir)

    return 0


if __name__ == "__main__":
    sys.exit(main())
