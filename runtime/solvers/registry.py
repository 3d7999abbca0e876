# runtime/solvers/registry.py
"""Map METHOD formulations to solver classes."""

from __future__ import annotations

from parameters.solve_config import SolutionType
from parameters.solver_settings import SolverType
from runtime.solvers.ddm import DDM1Solver
from runtime.solvers.ddmac import DDMACSolver
from runtime.solvers.poisson import PoissonSolver

SOLVER_REGISTRY = {
    SolverType.POISSON: PoissonSolver,
    SolverType.DDML1: DDM1Solver,
    SolverType.DDMAC: DDMACSolver,
}


def get_solver_class(solver_type: SolverType, solution_type: SolutionType):
    """Solver class for the pair, or ``None`` when the combination is unsupported."""
    cls = SOLVER_REGISTRY.get(solver_type)
    if cls is None or not cls.supports(solution_type):
        return None
    return cls
