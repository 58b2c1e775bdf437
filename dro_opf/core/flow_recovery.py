"""
Flow-recovery oracles
=====================

Translate fixed setpoints into physical network quantities for reporting:

- ``SDPVoltageRecovery`` solves the semidefinite relaxation of the AC power
  flow of a radial feeder with ``cvxpy`` and extracts bus voltage magnitudes
  when the optimal lifted matrix is rank one.
- ``DCFlowRecovery`` maps nodal injections to line flows with the PTDF of a
  ``DCNetwork`` and checks them against the thermal limits.

Neither oracle raises for a solver or realizability failure; the outcome is
reported through ``RecoveryResult.success``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cvxpy as cp
import numpy as np

from .admittance import trace_matrices

logger = logging.getLogger(__name__)

_SOLVED = {cp.OPTIMAL, cp.OPTIMAL_INACCURATE}


@dataclass
class RecoveryResult:
    """Physical quantities recovered for one set of setpoints."""
    success: bool
    status: str
    voltages: Optional[np.ndarray] = None
    substation_power: Optional[float] = None
    flows: Optional[np.ndarray] = None
    message: str = ""


class SDPVoltageRecovery:
    """
    Voltage magnitudes from the SDP relaxation of the feeder power flow.

    Parameters
    ----------
    y_net : np.ndarray
        Complex nodal admittance matrix, node 0 is the substation
    v_pcc : float
        Substation voltage magnitude (p.u.)
    solver : str, optional
        cvxpy solver name; the cvxpy default SDP solver when None
    rank_tol : float
        Eigenvalues above this threshold count towards the rank
    """

    def __init__(self, y_net: np.ndarray, v_pcc: float, solver: Optional[str] = None, rank_tol: float = 0.01):
        self.y_net = y_net
        self.n = y_net.shape[0]
        self.v_pcc = v_pcc
        self.solver = solver
        self.rank_tol = rank_tol
        self.yp, self.yq = trace_matrices(y_net)

    def recover(self, p_net: np.ndarray, q_net: np.ndarray) -> RecoveryResult:
        """
        Parameters
        ----------
        p_net, q_net : np.ndarray
            Net active/reactive injection (generation minus demand) of nodes
            1..n-1 in p.u.
        """
        p_net = np.asarray(p_net, dtype=float)
        q_net = np.asarray(q_net, dtype=float)
        if p_net.shape != (self.n - 1,) or q_net.shape != (self.n - 1,):
            raise ValueError(f"Expected injections of length {self.n - 1}")

        v = cp.Variable((self.n, self.n), hermitian=True)
        constraints = [v >> 0, cp.real(v[0, 0]) == self.v_pcc ** 2]
        for k in range(1, self.n):
            constraints.append(cp.real(cp.trace(self.yp[k] @ v)) == p_net[k - 1])
            constraints.append(cp.real(cp.trace(self.yq[k] @ v)) == q_net[k - 1])
        problem = cp.Problem(cp.Minimize(cp.real(cp.trace(self.yp[0] @ v))), constraints)

        try:
            problem.solve(solver=self.solver)
        except cp.error.SolverError as exc:
            logger.warning("SDP recovery solver error: %s", exc)
            return RecoveryResult(False, "failed", message=str(exc))

        if problem.status not in _SOLVED or v.value is None:
            logger.warning("SDP recovery ended with status %s", problem.status)
            return RecoveryResult(False, str(problem.status))

        vmat = v.value
        eigvals = np.linalg.eigvalsh(vmat)
        rank = int(np.sum(eigvals > self.rank_tol))
        psub = float(np.real(np.trace(self.yp[0] @ vmat)))
        if rank != 1:
            logger.warning("SDP solution has rank %d, voltages not recoverable", rank)
            return RecoveryResult(False, str(problem.status), substation_power=psub,
                                  message=f"rank {rank}")
        voltages = np.sqrt(np.abs(np.real(np.diag(vmat))))
        return RecoveryResult(True, str(problem.status), voltages=voltages, substation_power=psub)


class DCFlowRecovery:
    """Line flows of a ``DCNetwork`` for given nodal injections."""

    def __init__(self, network, tolerance: float = 1e-6):
        self.network = network
        self.tolerance = tolerance

    def recover(self, injections: np.ndarray, exclude_line: Optional[int] = None) -> RecoveryResult:
        gamma, _ = self.network.ptdf(exclude_line)
        limits = self.network.line_limits(exclude_line)
        flows = gamma @ np.asarray(injections, dtype=float)
        within = bool(np.all(np.abs(flows) <= limits + self.tolerance))
        return RecoveryResult(within, "ok" if within else "overload", flows=flows)
