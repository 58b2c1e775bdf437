"""
Parametric DRO N-1 dispatch sweep on the IEEE 118-bus system.

Usage:
    python dro_opf/scripts/run_transmission_n1.py --synthetic --epsilon 0 0.02 --rho 1 30 300
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

import pandas as pd

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dro_opf.core.config import TransmissionConfig, load_config
from dro_opf.core.data_loader import TransmissionDataLoader
from dro_opf.core.timeseries_loader import TimeseriesLoader, synthetic_wind_errors
from dro_opf.core.transmission_dro import TransmissionDRO
from dro_opf.scripts.common import add_common_arguments, print_header, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='DRO N-1 secure dispatch with affine reserve policy')
    add_common_arguments(parser)
    parser.add_argument('--data-dir', default='data/ieee118', help='Transmission CSV directory')
    parser.add_argument('--timeseries-dir', default='data/ieee118/timeseries',
                        help='Directory holding wind_errors.npy/.csv')
    parser.add_argument('--no-contingencies', action='store_true', help='Drop all N-1 constraints')
    parser.add_argument('--out-of-sample', type=int, default=0,
                        help='Number of unseen synthetic wind samples for a violation check')
    return parser


def apply_overrides(cfg: TransmissionConfig, args) -> TransmissionConfig:
    if args.solver:
        cfg.solver = args.solver
    if args.epsilon:
        cfg.epsilon_values = list(args.epsilon)
    if args.rho:
        cfg.rho_values = list(args.rho)
    if args.no_contingencies:
        cfg.include_load_contingencies = False
        cfg.include_generator_contingencies = False
        cfg.include_line_contingencies = False
    cfg.validate()
    return cfg


def load_wind_errors(cfg: TransmissionConfig, network, args):
    ts = TimeseriesLoader(args.timeseries_dir)
    if not args.synthetic and os.path.isdir(ts.data_dir):
        return ts.load_wind_errors(cfg.n_scenarios)
    if not args.synthetic:
        logger.warning("Time series directory %s not found, using synthetic wind errors", ts.data_dir)
    return synthetic_wind_errors(network.wind_nominal(), n_samples=cfg.n_scenarios)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, args.verbose)
    cfg = apply_overrides(load_config(args.config, TransmissionConfig), args)

    print_header("DRO N-1 SECURE DISPATCH")
    loader = TransmissionDataLoader(args.data_dir)
    network = loader.build_network(cfg.reference_bus)
    for key, val in loader.get_system_summary().items():
        print(f"  {key:18s}: {val}")
    print(f"  {'reference_bus':18s}: {network.reference_bus}")

    study = TransmissionDRO(network, load_wind_errors(cfg, network, args), cfg)
    islanding = {lid: eff for lid, eff in study.outages.items() if not eff.is_empty}
    print(f"  Islanding lines     : {sorted(islanding)}")

    store = study.run_sweep()
    study.print_summary()

    os.makedirs(args.output_dir, exist_ok=True)
    out_csv = os.path.join(args.output_dir, 'transmission_results.csv')
    store.to_csv(out_csv)
    print(f"\nResults saved to {out_csv}")

    if args.out_of_sample > 0 and study.outcome is not None and study.outcome.ok:
        unseen = synthetic_wind_errors(network.wind_nominal(), n_samples=args.out_of_sample, seed=1)
        violation = study.out_of_sample_violation(unseen)
        oos_csv = os.path.join(args.output_dir, 'transmission_out_of_sample.csv')
        pd.DataFrame(
            [{'line_id': lid, 'violation_probability': p} for lid, p in violation.items()]
        ).to_csv(oos_csv, index=False)
        print(f"Out-of-sample violation probabilities saved to {oos_csv}")

    if not args.no_plots:
        from dro_opf.analysis.report_plots import plot_line_cvar, plot_transmission_tradeoff
        frame = store.to_frame()
        plot_transmission_tradeoff(frame, Path(args.output_dir) / 'plots')
        plot_line_cvar(frame, Path(args.output_dir) / 'plots')
    return store


if __name__ == '__main__':
    main()
