"""Pyomo solver adapter: one blocking solve, one terminal status, never an exception."""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pyomo.common.errors import ApplicationError
from pyomo.environ import value
from pyomo.opt import SolverFactory, SolverStatus, TerminationCondition
from pyomo.opt.results.container import UndefinedData

logger = logging.getLogger(__name__)


class SolveStatus(str, Enum):
    OPTIMAL = "optimal"
    INFEASIBLE = "infeasible"
    INACCURATE = "inaccurate"
    FAILED = "failed"

    @property
    def has_solution(self) -> bool:
        return self in (SolveStatus.OPTIMAL, SolveStatus.INACCURATE)


_OPTIMAL_CONDITIONS = {
    TerminationCondition.optimal,
    TerminationCondition.globallyOptimal,
    TerminationCondition.locallyOptimal,
}
_INFEASIBLE_CONDITIONS = {
    TerminationCondition.infeasible,
    TerminationCondition.infeasibleOrUnbounded,
    TerminationCondition.invalidProblem,
}
_INACCURATE_CONDITIONS = {
    TerminationCondition.feasible,
    TerminationCondition.maxIterations,
    TerminationCondition.maxTimeLimit,
    TerminationCondition.maxEvaluations,
    TerminationCondition.minStepLength,
    TerminationCondition.minFunctionValue,
}


@dataclass
class SolveOutcome:
    """Terminal result of one solver call."""
    status: SolveStatus
    objective: Optional[float] = None
    termination: str = ""
    message: str = ""
    solve_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status.has_solution


def solver_message(message) -> str:
    """Solver message as text; unset result fields come back empty."""
    if message is None or isinstance(message, UndefinedData):
        return ""
    return str(message)


def classify_termination(termination, solver_status=None) -> SolveStatus:
    """Map a Pyomo termination condition onto the four-way status taxonomy."""
    if termination in _OPTIMAL_CONDITIONS:
        if solver_status == SolverStatus.warning:
            return SolveStatus.INACCURATE
        return SolveStatus.OPTIMAL
    if termination in _INFEASIBLE_CONDITIONS:
        return SolveStatus.INFEASIBLE
    if termination in _INACCURATE_CONDITIONS:
        return SolveStatus.INACCURATE
    return SolveStatus.FAILED


class SolverOracle:
    """Wraps ``SolverFactory`` so every model is solved the same way."""

    def __init__(self, solver: str = "gurobi", options: Optional[dict] = None, tee: bool = False):
        self.solver_name = solver
        self.options = dict(options or {})
        self.tee = tee

    def available(self) -> bool:
        try:
            return bool(SolverFactory(self.solver_name).available(exception_flag=False))
        except (ApplicationError, RuntimeError, ValueError):
            return False

    def solve(self, model, objective=None) -> SolveOutcome:
        """
        Solve ``model`` and load the primal values when a solution exists.

        Parameters
        ----------
        model : ConcreteModel
            Fully assembled Pyomo model
        objective : Objective, optional
            Component evaluated for ``SolveOutcome.objective``; defaults to ``model.obj``
        """
        start = time.perf_counter()
        try:
            opt = SolverFactory(self.solver_name)
            for key, val in self.options.items():
                opt.options[key] = val
            results = opt.solve(model, tee=self.tee, load_solutions=False)
        except (ApplicationError, RuntimeError, ValueError) as exc:
            elapsed = time.perf_counter() - start
            logger.warning("Solver %s failed: %s", self.solver_name, exc)
            return SolveOutcome(SolveStatus.FAILED, message=str(exc), solve_time=elapsed)

        elapsed = time.perf_counter() - start
        termination = results.solver.termination_condition
        status = classify_termination(termination, results.solver.status)

        outcome = SolveOutcome(
            status=status,
            termination=str(termination),
            message=solver_message(results.solver.message),
            solve_time=elapsed,
        )
        if status.has_solution:
            try:
                model.solutions.load_from(results)
            except (RuntimeError, ValueError) as exc:
                logger.warning("Could not load solution from %s: %s", self.solver_name, exc)
                outcome.status = SolveStatus.FAILED
                outcome.message = str(exc)
                return outcome
            obj = objective if objective is not None else model.obj
            outcome.objective = value(obj)

        if status is SolveStatus.OPTIMAL:
            logger.debug("Optimal solution found in %.2fs", elapsed)
        else:
            logger.warning("Solver termination: %s (%s)", termination, status.value)
        return outcome
