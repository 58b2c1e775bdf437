"""Command-line helpers shared by the study entry points."""

import argparse
import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def print_header(title: str) -> None:
    """Print a formatted header."""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def setup_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )
    # Pyomo is chatty at INFO when solutions are loaded
    logging.getLogger("pyomo").setLevel(logging.WARNING)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config', help='JSON file with configuration overrides')
    parser.add_argument('--solver', help='Pyomo solver name (e.g. gurobi, appsi_highs, ipopt)')
    parser.add_argument('--epsilon', type=float, nargs='+', help='Wasserstein radius (or radii)')
    parser.add_argument('--rho', type=float, nargs='+', help='Risk weight factor(s)')
    parser.add_argument('--output-dir', default='results', help='Directory for CSV results and plots')
    parser.add_argument('--log-file', help='Also write the log to this file')
    parser.add_argument('--synthetic', action='store_true',
                        help='Use synthetic forecast errors instead of the time series directory')
    parser.add_argument('--no-plots', action='store_true', help='Skip report plots')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
