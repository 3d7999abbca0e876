# runtime/solvers/poisson.py
"""Nonlinear Poisson formulation (``METHOD type: poisson``)."""

from __future__ import annotations

from parameters.solve_config import SolutionType
from runtime.solvers.semiconductor import SemiconductorSolver


class PoissonSolver(SemiconductorSolver):
    """Electrostatics only; carriers follow the quasi-Fermi levels of the contacts.

    Without a continuity equation no terminal current flows, so only
    voltage-driven operating points and voltage sweeps are supported.
    """

    formulation = "poisson"
    supported_types = frozenset(
        {
            SolutionType.EQUILIBRIUM,
            SolutionType.STEADYSTATE,
            SolutionType.OP,
            SolutionType.DCSWEEP,
        }
    )
    transport = False
