"""
Feeder admittance matrix and voltage sensitivities
==================================================

Single-phase equivalent of a radial distribution feeder. Node 0 is the
substation (point of common coupling, PCC) with a known voltage; every other
node is a PQ node.

- ``form_admittance`` assembles the nodal admittance matrix from pi-model lines.
- ``voltage_sensitivities`` linearises voltage magnitudes around the no-load
  profile ``Vnom = -Y^-1 Y0 V_pcc``: ``|v| ~ |Vnom| + G p + H q``.
- ``trace_matrices`` returns the Hermitian matrices ``Yp_k``, ``Yq_k`` with
  ``p_k = tr(Yp_k V)`` and ``q_k = tr(Yq_k V)`` for the lifted variable
  ``V = v v^H`` used by the semidefinite recovery.
"""
from typing import Iterable, List, Tuple

import numpy as np


def form_admittance(n_nodes: int, lines: Iterable[Tuple[int, int, complex, float]]) -> np.ndarray:
    """
    Nodal admittance matrix of a feeder.

    Parameters
    ----------
    n_nodes : int
        Number of nodes including the substation (index 0)
    lines : iterable of (from_index, to_index, z_series, b_shunt)
        Series impedance and total line charging susceptance, per unit
    """
    y = np.zeros((n_nodes, n_nodes), dtype=complex)
    for f, t, z, b in lines:
        if z == 0:
            raise ValueError(f"Line {f}-{t} has zero series impedance")
        ys = 1.0 / z
        ysh = 0.5j * b
        y[f, f] += ys + ysh
        y[t, t] += ys + ysh
        y[f, t] -= ys
        y[t, f] -= ys
    return y


def voltage_sensitivities(y_net: np.ndarray, v_pcc: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    No-load voltage profile and linear sensitivities of the PQ-node magnitudes.

    Returns
    -------
    vnom : np.ndarray
        Complex no-load voltages of nodes 1..n-1
    g : np.ndarray
        d|v| / dp, shape (n-1, n-1)
    h : np.ndarray
        d|v| / dq, shape (n-1, n-1)
    """
    y = y_net[1:, 1:]
    y0 = y_net[1:, 0]
    z = np.linalg.inv(y)
    r, x = z.real, z.imag
    vnom = -z @ y0 * v_pcc

    cos_over_mag = np.diag(np.cos(np.angle(vnom)) / np.abs(vnom))
    sin_over_v = np.diag(np.sin(np.angle(vnom)) / vnom)
    g = np.real(r @ cos_over_mag - x @ sin_over_v)
    h = np.real(x @ cos_over_mag + r @ sin_over_v)
    return vnom, g, h


def trace_matrices(y_net: np.ndarray) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """Per-node ``Yp_k`` and ``Yq_k`` for the lifted power-flow equations."""
    n = y_net.shape[0]
    yp, yq = [], []
    for k in range(n):
        ek = np.zeros((n, n))
        ek[k, k] = 1.0
        yk = ek @ y_net
        yp.append(0.5 * (yk + yk.conj().T))
        yq.append(0.5j * (yk - yk.conj().T))
    return yp, yq
