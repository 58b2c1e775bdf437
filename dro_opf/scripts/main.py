#!/usr/bin/env python3
"""
Data-driven DRO power scheduling - Unified Analysis Script
==========================================================

This script provides a unified interface to the two studies:
- Receding-horizon DRO/CVaR scheduling of a PV-rich distribution feeder
- Parametric DRO N-1 secure dispatch of a meshed transmission grid
- Report plots from archived CSV results

Usage:
    python dro_opf/scripts/main.py --distribution --synthetic --start 140 --end 150
    python dro_opf/scripts/main.py --transmission --synthetic --epsilon 0 0.02
    python dro_opf/scripts/main.py --plots
    python dro_opf/scripts/main.py --all --synthetic

Options after the study selector are forwarded to the study script, so
``--config``, ``--solver``, ``--epsilon``, ``--rho`` and ``--output-dir`` work
the same way here.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dro_opf.scripts.common import print_header


def run_distribution(argv) -> None:
    from dro_opf.scripts.run_distribution_mpc import main as distribution_main
    distribution_main(argv)


def run_transmission(argv) -> None:
    from dro_opf.scripts.run_transmission_n1 import main as transmission_main
    transmission_main(argv)


def run_plots(results_dir: str) -> None:
    print_header("GENERATING REPORT PLOTS")
    from dro_opf.analysis.report_plots import main as plots_main
    plots_main(Path(results_dir))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Data-driven DRO power scheduling studies',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python dro_opf/scripts/main.py --distribution --synthetic   Feeder MPC study
  python dro_opf/scripts/main.py --transmission --synthetic   N-1 dispatch sweep
  python dro_opf/scripts/main.py --plots                      Plots from results/
        """
    )
    parser.add_argument('--all', action='store_true', help='Run both studies and the plots')
    parser.add_argument('--distribution', action='store_true', help='Run the feeder DRO-MPC study')
    parser.add_argument('--transmission', action='store_true', help='Run the DRO N-1 dispatch sweep')
    parser.add_argument('--plots', action='store_true', help='Plot archived results')
    parser.add_argument('--results-dir', default='results', help='Results directory read by --plots')

    args, forwarded = parser.parse_known_args()

    if not (args.all or args.distribution or args.transmission or args.plots):
        parser.print_help()
        return

    if args.all or args.distribution:
        run_distribution(forwarded)
    if args.all or args.transmission:
        run_transmission(forwarded)
    if args.all or args.plots:
        run_plots(args.results_dir)

    if args.all:
        print_header("ALL ANALYSES COMPLETE")


if __name__ == '__main__':
    main()
