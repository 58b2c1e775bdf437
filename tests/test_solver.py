import pytest
from pyomo.opt import SolverStatus, TerminationCondition
from pyomo.opt.results.container import undefined

from dro_opf.core.solver import SolveOutcome, SolveStatus, classify_termination, solver_message


@pytest.mark.parametrize(
    "termination, solver_status, expected",
    [
        (TerminationCondition.optimal, SolverStatus.ok, SolveStatus.OPTIMAL),
        (TerminationCondition.locallyOptimal, None, SolveStatus.OPTIMAL),
        (TerminationCondition.optimal, SolverStatus.warning, SolveStatus.INACCURATE),
        (TerminationCondition.maxTimeLimit, SolverStatus.aborted, SolveStatus.INACCURATE),
        (TerminationCondition.maxIterations, SolverStatus.warning, SolveStatus.INACCURATE),
        (TerminationCondition.feasible, SolverStatus.ok, SolveStatus.INACCURATE),
        (TerminationCondition.infeasible, SolverStatus.warning, SolveStatus.INFEASIBLE),
        (TerminationCondition.infeasibleOrUnbounded, SolverStatus.warning, SolveStatus.INFEASIBLE),
        (TerminationCondition.unbounded, SolverStatus.warning, SolveStatus.FAILED),
        (TerminationCondition.error, SolverStatus.error, SolveStatus.FAILED),
        (TerminationCondition.unknown, None, SolveStatus.FAILED),
    ],
)
def test_termination_conditions_map_to_status(termination, solver_status, expected):
    assert classify_termination(termination, solver_status) is expected


def test_only_optimal_and_inaccurate_carry_a_solution():
    assert SolveOutcome(SolveStatus.OPTIMAL).ok
    assert SolveOutcome(SolveStatus.INACCURATE).ok
    assert not SolveOutcome(SolveStatus.INFEASIBLE).ok
    assert not SolveOutcome(SolveStatus.FAILED).ok


def test_unset_solver_message_is_empty():
    assert solver_message(undefined) == ""
    assert solver_message(None) == ""
    assert solver_message("Model status: Optimal") == "Model status: Optimal"
