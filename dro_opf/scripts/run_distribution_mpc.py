"""
Receding-horizon DRO scheduling of the IEEE 37-node feeder.

Usage:
    python dro_opf/scripts/run_distribution_mpc.py --synthetic --rho 1 10 --start 72 --end 84
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dro_opf.core.config import DistributionConfig, load_config
from dro_opf.core.data_loader import FeederDataLoader
from dro_opf.core.distribution_dro import DistributionDRO
from dro_opf.core.flow_recovery import SDPVoltageRecovery
from dro_opf.core.scenarios import FeederScenarioEngine
from dro_opf.core.timeseries_loader import TimeseriesLoader, synthetic_pv_day
from dro_opf.scripts.common import add_common_arguments, print_header, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='DRO-MPC overvoltage study on a radial feeder')
    add_common_arguments(parser)
    parser.add_argument('--data-dir', default='data/ieee37', help='Feeder CSV directory')
    parser.add_argument('--timeseries-dir', default='data/ieee37/timeseries',
                        help='Directory with PV forecast, errors, loads and Monte Carlo arrays')
    parser.add_argument('--start', type=int, help='First decision epoch (0-based)')
    parser.add_argument('--end', type=int, help='Epoch after the last one solved')
    parser.add_argument('--horizon', type=int, help='Look-ahead steps')
    parser.add_argument('--no-recovery', action='store_true', help='Skip SDP voltage recovery')
    parser.add_argument('--no-monte-carlo', action='store_true', help='Skip Monte Carlo verification')
    return parser


def apply_overrides(cfg: DistributionConfig, args) -> DistributionConfig:
    if args.solver:
        cfg.solver = args.solver
    if args.epsilon:
        cfg.epsilon = args.epsilon[0]
    if args.rho:
        cfg.rho_values = list(args.rho)
    if args.start is not None:
        cfg.start_epoch = args.start
    if args.end is not None:
        cfg.end_epoch = args.end
    if args.horizon is not None:
        cfg.horizon = args.horizon
    cfg.validate()
    return cfg


def load_inputs(cfg: DistributionConfig, feeder, loader: FeederDataLoader, args):
    """PV forecast/errors/Monte Carlo samples and nodal loads, all in per unit."""
    ts = TimeseriesLoader(args.timeseries_dir)
    if not args.synthetic and os.path.isdir(ts.data_dir):
        forecast = ts.load_pv_forecast()
        errors = ts.load_pv_errors()
        monte_carlo = ts.load_monte_carlo()
        load_p, load_q = ts.load_nodal_loads(feeder.p_load, feeder.q_load)
    else:
        if not args.synthetic:
            logger.warning("Time series directory %s not found, using a synthetic PV day", ts.data_dir)
        pv_kva = loader.nodes['pv_kva'][loader.nodes['pv_kva'] > 0]
        forecast, errors, monte_carlo = synthetic_pv_day(
            peak_kw=0.9 * float(pv_kva.mean()),
            epochs_per_day=cfg.epochs_per_day,
            horizon=cfg.horizon,
            n_scenarios=cfg.n_scenarios,
            n_monte_carlo=cfg.n_monte_carlo,
        )
        load_p, load_q = feeder.p_load[None, :], feeder.q_load[None, :]

    if monte_carlo is not None:
        monte_carlo = feeder.kw_to_pu(monte_carlo[:cfg.n_monte_carlo])
    return feeder.kw_to_pu(forecast), feeder.kw_to_pu(errors), monte_carlo, load_p, load_q


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, args.verbose)
    cfg = apply_overrides(load_config(args.config, DistributionConfig), args)

    print_header("DRO-MPC FEEDER OVERVOLTAGE STUDY")
    loader = FeederDataLoader(args.data_dir, v_base=cfg.v_base, z_base=cfg.z_base)
    for key, val in loader.get_system_summary().items():
        print(f"  {key:15s}: {val}")
    feeder = loader.build_feeder()

    forecast, errors, monte_carlo, load_p, load_q = load_inputs(cfg, feeder, loader, args)
    engine = FeederScenarioEngine(forecast, errors, feeder.pv_capacity, cfg.n_scenarios)
    recovery = None if args.no_recovery else SDPVoltageRecovery(feeder.y_net, cfg.v_pcc, cfg.recovery_solver)

    study = DistributionDRO(
        feeder,
        engine,
        load_p,
        load_q,
        config=cfg,
        recovery=recovery,
        monte_carlo=None if args.no_monte_carlo else monte_carlo,
    )
    store = study.run()
    study.print_summary()

    os.makedirs(args.output_dir, exist_ok=True)
    out_csv = os.path.join(args.output_dir, 'distribution_results.csv')
    store.to_csv(out_csv)
    print(f"\nResults saved to {out_csv}")

    if not args.no_plots:
        from dro_opf.analysis.report_plots import plot_distribution_epochs, plot_monte_carlo
        frame = store.to_frame()
        plot_distribution_epochs(frame, Path(args.output_dir) / 'plots')
        plot_monte_carlo(frame, Path(args.output_dir) / 'plots')
    return store


if __name__ == '__main__':
    main()
