# runtime/solvers/ddm.py
"""Level-1 drift-diffusion formulation (``METHOD type: ddml1``)."""

from __future__ import annotations

from parameters.solve_config import SolutionType
from runtime.solvers.semiconductor import SemiconductorSolver


class DDM1Solver(SemiconductorSolver):
    """Poisson coupled to current continuity through a Gummel loop."""

    formulation = "ddml1"
    supported_types = frozenset(
        {
            SolutionType.EQUILIBRIUM,
            SolutionType.STEADYSTATE,
            SolutionType.OP,
            SolutionType.DCSWEEP,
            SolutionType.TRACE,
            SolutionType.TRANSIENT,
        }
    )
    transport = True
