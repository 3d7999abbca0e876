# runtime/solvers/discretization.py
"""P1 finite-element assembly on the system mesh (lengths converted to cm)."""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from runtime.boundary import BCType
from runtime.materials import EPS0, UM_TO_CM, thermal_voltage

logger = logging.getLogger("device_solver")

# Devices simulated in 2D are taken to be 1 um deep.
DEPTH_2D = UM_TO_CM


def basis_gradients(points: np.ndarray, cells: np.ndarray):
    """Gradients of the barycentric basis per cell and cell volumes."""
    dim = points.shape[1]
    v0 = points[cells[:, 0]]
    mats = np.stack([points[cells[:, j + 1]] - v0 for j in range(dim)], axis=1)
    inv = np.linalg.inv(mats)  # columns: gradients of lambda_1..lambda_d
    grads = np.empty((len(cells), dim + 1, dim))
    grads[:, 1:, :] = np.transpose(inv, (0, 2, 1))
    grads[:, 0, :] = -grads[:, 1:, :].sum(axis=1)
    factorial = 2.0 if dim == 2 else 6.0
    vols = np.abs(np.linalg.det(mats)) / factorial
    return grads, vols


def solve_with_dirichlet(matrix, rhs, fixed: np.ndarray, values: np.ndarray) -> np.ndarray:
    """Solve ``matrix @ x = rhs`` with ``x[fixed] = values`` by elimination."""
    n = matrix.shape[0]
    x = np.zeros(n, dtype=np.result_type(matrix.dtype, rhs.dtype, values.dtype))
    x[fixed] = values
    free = np.ones(n, dtype=bool)
    free[fixed] = False
    if not free.any():
        return x
    a_ff = matrix[free][:, free]
    a_fd = matrix[free][:, fixed]
    b = rhs[free] - a_fd @ x[fixed]
    x[free] = spsolve(a_ff.tocsc(), b)
    return x


class DeviceDiscretization:
    """Geometry, material coefficients and contact data for one solve."""

    def __init__(self, system) -> None:
        mesh = system.mesh
        mesh.require_prepared()
        self.system = system
        self.mesh = mesh
        self.n = mesh.n_points
        self.temperature = 300.0
        self.vt = thermal_voltage(self.temperature)

        points = mesh.points * UM_TO_CM
        self.grads, vols = basis_gradients(points, mesh.cells)
        self.vols = vols * (DEPTH_2D if mesh.dimension == 2 else 1.0)
        n_vertices = mesh.cells.shape[1]

        m = mesh.n_cells
        self.cell_eps = np.zeros(m)
        self.cell_semi = np.zeros(m, dtype=bool)
        self.cell_mun = np.zeros(m)
        self.cell_mup = np.zeros(m)
        self.cell_vsat_n = np.ones(m)
        self.cell_vsat_p = np.ones(m)
        self.cell_hfield = np.zeros(m, dtype=bool)
        self.ni = np.zeros(self.n)
        self.net_doping = np.zeros(self.n)
        self.semi_node = np.zeros(self.n, dtype=bool)

        for region in system.regions:
            mat = region.material
            cells = region.cell_ids
            self.cell_eps[cells] = EPS0 * mat.permittivity
            if not region.is_semiconductor:
                continue
            mobility = region.pmi.get("mobility")
            constant_mobility = mobility is not None and mobility.model.lower() == "constant"
            params = mobility.params if mobility is not None else {}
            self.cell_semi[cells] = True
            self.cell_mun[cells] = float(params.get("mun", mat.mun))
            self.cell_mup[cells] = float(params.get("mup", mat.mup))
            self.cell_vsat_n[cells] = mat.vsat_n
            self.cell_vsat_p[cells] = mat.vsat_p
            self.cell_hfield[cells] = region.advanced_model.high_field_mobility and not constant_mobility
            self.ni[region.node_ids] = mat.ni
            self.net_doping[region.node_ids] = region.net_doping()
            self.semi_node[region.node_ids] = True

        lumped = np.repeat(self.vols[:, None] / n_vertices, n_vertices, axis=1)
        self.node_vol_semi = np.bincount(
            mesh.cells[self.cell_semi].ravel(),
            weights=lumped[self.cell_semi].ravel(),
            minlength=self.n,
        )
        self.k_eps = self.stiffness(self.cell_eps)
        self._intrinsic_wf = self._reference_workfunction(system)

    @staticmethod
    def _reference_workfunction(system) -> float:
        from runtime.materials import REFERENCE_WORKFUNCTION

        for region in system.regions:
            if region.is_semiconductor:
                return region.material.intrinsic_workfunction
        return REFERENCE_WORKFUNCTION

    def stiffness(self, coef: np.ndarray):
        """``sum_c coef_c * vol_c * grad(phi_i) . grad(phi_j)`` as CSR."""
        cells = self.mesh.cells
        local = np.einsum("cid,cjd->cij", self.grads, self.grads)
        local *= (coef * self.vols)[:, None, None]
        k = cells.shape[1]
        rows = np.repeat(cells, k, axis=1).ravel()
        cols = np.tile(cells, (1, k)).ravel()
        return sp.coo_matrix((local.ravel(), (rows, cols)), shape=(self.n, self.n)).tocsr()

    def cell_field(self, psi: np.ndarray) -> np.ndarray:
        """Electric field magnitude per cell (V/cm)."""
        grad = np.einsum("cid,ci->cd", self.grads, psi[self.mesh.cells])
        return np.linalg.norm(grad, axis=1)

    def carriers(self, psi: np.ndarray, phi: np.ndarray):
        arg = np.clip((psi - phi) / self.vt, -80.0, 80.0)
        n = self.ni * np.exp(arg)
        p = self.ni * np.exp(-arg)
        return n, p

    def contact_values(self, voltages: dict):
        """Dirichlet nodes/values for potential and quasi-Fermi level."""
        psi_nodes, psi_vals, phi_nodes, phi_vals = [], [], [], []
        builtin = self.vt * np.arcsinh(
            np.divide(0.5 * self.net_doping, self.ni, out=np.zeros(self.n), where=self.ni > 0)
        )
        for bc in self.system.boundaries:
            if not bc.is_electrode or len(bc.nodes) == 0:
                continue
            v = voltages.get(bc.electrode_label, 0.0)
            nodes = bc.nodes
            if bc.bc_type is BCType.OHMIC:
                psi_nodes.append(nodes)
                psi_vals.append(v + builtin[nodes])
                phi_nodes.append(nodes)
                phi_vals.append(np.full(len(nodes), v))
            elif bc.bc_type is BCType.SCHOTTKY:
                psi_nodes.append(nodes)
                psi_vals.append(np.full(len(nodes), v - (bc.workfunction - self._intrinsic_wf)))
                phi_nodes.append(nodes)
                phi_vals.append(np.full(len(nodes), v))
            elif bc.bc_type is BCType.GATE:
                psi_nodes.append(nodes)
                psi_vals.append(np.full(len(nodes), v - (bc.workfunction - self._intrinsic_wf)))
        return _merge(psi_nodes, psi_vals), _merge(phi_nodes, phi_vals)

    def electrode_nodes(self, label: str) -> np.ndarray:
        return self.system.boundaries.electrode_nodes(label)


def _merge(nodes_list, values_list):
    if not nodes_list:
        return np.zeros(0, dtype=int), np.zeros(0)
    nodes = np.concatenate(nodes_list)
    values = np.concatenate(values_list)
    # Last assignment wins for nodes shared by several contacts.
    uniq, idx = np.unique(nodes[::-1], return_index=True)
    return uniq, values[::-1][idx]
