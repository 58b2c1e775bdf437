"""
Wasserstein-ball CVaR robust counterparts for operational risk constraints
==========================================================================

Every risk-bearing limit ``g(x, xi) <= 0`` (voltage bound, line-flow bound, ...)
is moved into the objective through the worst-case CVaR over a Wasserstein ball
of radius ``epsilon`` centred on the empirical distribution of N samples. For an
affine ``g`` this worst case has the exact finite dual

    min  (1/N) sum_i s_i + epsilon * lambda
    s.t. rho * (g(x, xi_i) + t - t*alpha) <= s_i      for all i
         rho * (-t*alpha)                 <= s_i      for all i
         || rho * grad_xi g(x) ||_*       <= lambda

where ``t`` is the value-at-risk proxy and ``||.||_*`` the dual of the norm
used as transport cost. With ``epsilon = 0`` the ``lambda`` term vanishes from
the objective and the program collapses to the sample-average CVaR.

Since ``max(g + t(1-alpha), -t alpha) = -t alpha + max(g + t, 0)``, the optimal
contribution equals ``rho * alpha * CVaR_{1-alpha}(g)`` under the empirical
measure; ``sample_average_cvar`` computes that value directly for checks.

The same module builds the sample-average CVaR chance constraints
``(1/N) sum_i max(0, y + f_i) <= y * tolerance`` used as hard constraints for
the voltage lower bound and the inverter rating on feeders.
"""
from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
from pyomo.environ import (
    Block,
    Constraint,
    Expression,
    NonNegativeReals,
    RangeSet,
    Reals,
    Var,
    value,
)

from .config import WASSERSTEIN_NORMS

logger = logging.getLogger(__name__)


def _plain(values: Sequence) -> list:
    """Numpy scalars become floats so they never lead a Pyomo expression."""
    return [float(v) if isinstance(v, numbers.Number) else v for v in values]


def sample_average_cvar(violations: Sequence[float], alpha: float) -> float:
    """
    Optimal value of ``min_t (1/N) sum_i max(g_i + t - t*alpha, -t*alpha)``.

    The objective is convex piecewise linear in ``t`` with breakpoints at
    ``t = -g_i``, so the minimum is attained at one of them.
    """
    g = np.asarray(violations, dtype=float).ravel()
    if g.size == 0:
        raise ValueError("Empty violation sample")
    best = np.inf
    for t in -g:
        val = np.mean(np.maximum(g + t - t * alpha, -t * alpha))
        best = min(best, val)
    return float(best)


@dataclass
class RiskTerm:
    """One registered risk constraint and the Pyomo block holding its counterpart."""
    name: str
    kind: str
    block: Block

    def contribution(self) -> float:
        return value(self.block.contribution)

    def var_proxy(self) -> float:
        return value(self.block.t)


class RiskConstraintBuilder:
    """
    Assembles CVaR/DRO robust counterparts that share one empirical measure.

    Parameters
    ----------
    n_scenarios : int
        N, identical for every constraint registered with this builder
    rho : float
        Risk weight multiplying each constraint's CVaR in the objective
    alpha : float
        Constraint-violation tolerance of the CVaR
    epsilon : float
        Wasserstein radius
    norm : str
        Transport-cost norm, 'l1' (dual infinity norm) or 'linf' (dual l1 norm)
    """

    def __init__(self, n_scenarios: int, rho: float, alpha: float, epsilon: float, norm: str = "l1"):
        if n_scenarios < 1:
            raise ValueError("At least one scenario is required")
        if rho <= 0:
            raise ValueError(f"rho must be positive, got {rho}")
        if not 0.0 < alpha < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {alpha}")
        if epsilon < 0:
            raise ValueError(f"epsilon must be non-negative, got {epsilon}")
        if norm not in WASSERSTEIN_NORMS:
            raise ValueError(f"Unknown Wasserstein norm {norm!r}")
        self.n_scenarios = n_scenarios
        self.rho = rho
        self.alpha = alpha
        self.epsilon = epsilon
        self.norm = norm
        self.terms: List[RiskTerm] = []

    def add(self, parent, name: str, violations: Sequence, gradients: Sequence, kind: str = "") -> RiskTerm:
        """
        Attach the robust counterpart of one risk constraint to ``parent``.

        Parameters
        ----------
        parent : Block or ConcreteModel
            Model receiving a new sub-block called ``name``
        violations : sequence
            ``g(x, xi_i)`` for i = 1..N (Pyomo expressions or numbers), limit
            already subtracted so that ``g <= 0`` means satisfied
        gradients : sequence
            Components of ``d g / d xi`` (affine in the decision variables)
        """
        if len(violations) != self.n_scenarios:
            raise ValueError(
                f"{name}: expected {self.n_scenarios} scenario violations, got {len(violations)}"
            )
        violations = _plain(violations)
        rho, alpha, n = self.rho, self.alpha, self.n_scenarios

        blk = Block()
        parent.add_component(name, blk)
        blk.scenarios = RangeSet(0, n - 1)
        blk.t = Var(domain=Reals)
        blk.s = Var(blk.scenarios, domain=Reals)
        blk.lam = Var(domain=NonNegativeReals)

        blk.shortfall = Constraint(
            blk.scenarios,
            rule=lambda b, i: rho * (violations[i] + b.t - b.t * alpha) <= b.s[i],
        )
        blk.floor = Constraint(
            blk.scenarios,
            rule=lambda b, i: rho * (-b.t * alpha) <= b.s[i],
        )

        grads = _plain(gradients)
        blk.coords = RangeSet(0, len(grads) - 1) if grads else RangeSet(0, -1)
        if self.norm == "l1":
            # ||rho * grad||_inf <= lam
            blk.dual_upper = Constraint(blk.coords, rule=lambda b, k: rho * grads[k] <= b.lam)
            blk.dual_lower = Constraint(blk.coords, rule=lambda b, k: -rho * grads[k] <= b.lam)
        else:
            # ||rho * grad||_1 <= lam
            blk.abs_grad = Var(blk.coords, domain=NonNegativeReals)
            blk.dual_upper = Constraint(blk.coords, rule=lambda b, k: rho * grads[k] <= b.abs_grad[k])
            blk.dual_lower = Constraint(blk.coords, rule=lambda b, k: -rho * grads[k] <= b.abs_grad[k])
            blk.dual_sum = Constraint(expr=sum(blk.abs_grad[k] for k in blk.coords) <= blk.lam)

        blk.contribution = Expression(
            expr=sum(blk.s[i] for i in blk.scenarios) / n + blk.lam * self.epsilon
        )

        term = RiskTerm(name=name, kind=kind, block=blk)
        self.terms.append(term)
        return term

    def objective_term(self):
        """Sum of all registered contributions (0 when nothing is registered)."""
        return sum(term.block.contribution for term in self.terms)

    def total_contribution(self) -> float:
        return sum(term.contribution() for term in self.terms)

    def total_cvar(self) -> float:
        return self.total_contribution() / self.rho

    def cvar_by_constraint(self) -> Dict[str, float]:
        return {term.name: term.contribution() / self.rho for term in self.terms}


def add_cvar_chance_constraint(parent, name: str, exprs: Sequence, tolerance: float) -> Block:
    """
    Sample-average CVaR approximation of ``P(f(x, xi) > 0) <= tolerance``.

    Adds ``(1/N) sum_i max(0, y + f_i) <= y * tolerance`` with the ``max`` written
    through non-negative excess variables; ``f_i`` may be convex quadratic.
    """
    exprs = _plain(exprs)
    n = len(exprs)
    if n == 0:
        raise ValueError(f"{name}: no scenario expressions")
    blk = Block()
    parent.add_component(name, blk)
    blk.scenarios = RangeSet(0, n - 1)
    blk.y = Var(domain=Reals)
    blk.excess = Var(blk.scenarios, domain=NonNegativeReals)
    blk.excess_def = Constraint(blk.scenarios, rule=lambda b, i: b.excess[i] >= b.y + exprs[i])
    blk.budget = Constraint(
        expr=sum(blk.excess[i] for i in blk.scenarios) / n <= blk.y * tolerance
    )
    return blk
