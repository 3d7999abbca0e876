"""Physics formulations available to the SOLVE orchestrator."""

from .base import SolverBase
from .ddm import DDM1Solver
from .ddmac import DDMACSolver
from .poisson import PoissonSolver
from .registry import SOLVER_REGISTRY, get_solver_class

__all__ = [
    "SolverBase",
    "DDM1Solver",
    "DDMACSolver",
    "PoissonSolver",
    "SOLVER_REGISTRY",
    "get_solver_class",
]
