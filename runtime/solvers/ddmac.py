# runtime/solvers/ddmac.py
"""Small-signal AC analysis around a converged DC point (``METHOD type: ddmac``)."""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp

from parameters.solve_config import SolutionType
from runtime.materials import Q
from runtime.solvers.ddm import DDM1Solver
from runtime.solvers.discretization import solve_with_dirichlet

logger = logging.getLogger("device_solver")


class DDMACSolver(DDM1Solver):
    """Linearised continuity ``(G + j w C) dphi = 0`` driven by one electrode."""

    formulation = "ddmac"
    supported_types = frozenset({SolutionType.ACSWEEP})

    def solve_ac(self, frequency: float, electrode: str, vac: float) -> dict:
        """Conductance and capacitance of every electrode at ``frequency``.

        Parameters
        ----------
        frequency : float
            Small-signal frequency in Hz.
        electrode : str
            Electrode carrying the AC excitation ``vac``; all others are AC
            grounded.
        vac : float
            Excitation amplitude in volts.

        Returns
        -------
        dict
            ``{label: {"conductance": G, "capacitance": C}}`` in S and F.
        """
        disc = self.disc
        omega = 2.0 * np.pi * frequency
        cond, n, p = self.conduction_matrix(self.psi, self.phi)
        storage = Q * (n + p) / disc.vt * disc.node_vol_semi
        matrix = cond.astype(complex) + sp.diags(1j * omega * storage + self.gmin * disc.semi_node)

        (_, _), (phi_nodes, _) = disc.contact_values(self.voltages)
        excited = set(disc.electrode_nodes(electrode).tolist())
        values = np.array([vac if i in excited else 0.0 for i in phi_nodes], dtype=complex)
        outside = np.setdiff1d(np.flatnonzero(~disc.semi_node), phi_nodes)
        fixed = np.concatenate([phi_nodes, outside]).astype(int)
        values = np.concatenate([values, np.zeros(len(outside), dtype=complex)])
        dphi = solve_with_dirichlet(matrix, np.zeros(disc.n, dtype=complex), fixed, values)

        flux = matrix @ dphi
        result = {}
        for label in self.electrode_labels():
            nodes = disc.electrode_nodes(label)
            y = complex(flux[nodes].sum()) / vac if len(nodes) else 0j
            result[label] = {"conductance": y.real, "capacitance": y.imag / omega}
        logger.debug("AC %.4e Hz: %s", frequency, result[electrode])
        return result
