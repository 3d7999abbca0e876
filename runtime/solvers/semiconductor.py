# runtime/solvers/semiconductor.py
"""Nonlinear Poisson / single quasi-Fermi transport on the P1 discretisation.

Unknowns are the node potential ``psi`` and one quasi-Fermi level ``phi``
(both in volts). The Poisson equation is solved by damped Newton iteration;
with ``transport`` enabled the current-continuity equation is coupled by a
Gummel loop. Electrodes driven by a current source are handled by a secant
iteration on their voltage around the fixed-bias solve.
"""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp

from core.exceptions import UnsupportedOperationError
from parameters.solver_settings import Damping, Truncation
from runtime.materials import Q
from runtime.solvers.base import SolverBase
from runtime.solvers.discretization import DeviceDiscretization, solve_with_dirichlet

logger = logging.getLogger("device_solver")

_SECANT_ITERATIONS = 30
_BANKROSE_MIN_STEP = 1.0 / 64.0


class SemiconductorSolver(SolverBase):
    """Shared machinery of the Poisson and drift-diffusion formulations."""

    transport = False

    def __init__(self, system, settings, config) -> None:
        super().__init__(system, settings, config)
        self.disc: DeviceDiscretization | None = None
        self.psi = np.zeros(0)
        self.phi = np.zeros(0)
        self.truncated: np.ndarray | None = None

    # -- state ---------------------------------------------------------------

    def setup(self) -> None:
        self.disc = DeviceDiscretization(self.system)
        n = self.disc.n
        self.psi = np.zeros(n)
        self.phi = np.zeros(n)
        self.truncated = self._truncation_mask()
        # Semiconductor values win on interface nodes.
        for region in sorted(self.system.regions, key=lambda r: r.is_semiconductor):
            self.psi[region.node_ids] = region.variables["potential"]
            if region.is_semiconductor:
                self.phi[region.node_ids] = region.variables["qfermi"]
        logger.debug(
            "%s solver set up on %d nodes (%d semiconductor)",
            self.formulation,
            n,
            int(self.disc.semi_node.sum()),
        )

    def teardown(self) -> None:
        self.disc = None

    def save_state(self) -> dict:
        return {
            "psi": self.psi.copy(),
            "phi": self.phi.copy(),
            "voltages": dict(self.voltages),
            "currents": dict(self.currents),
        }

    def restore_state(self, state: dict) -> None:
        self.psi = state["psi"].copy()
        self.phi = state["phi"].copy()
        self.voltages = dict(state["voltages"])
        self.currents = dict(state["currents"])

    def sync_to_system(self) -> None:
        n, p = self.disc.carriers(self.psi, self.phi)
        for region in self.system.regions:
            ids = region.node_ids
            region.variables["potential"][:] = self.psi[ids]
            if region.is_semiconductor:
                region.variables["qfermi"][:] = self.phi[ids]
                region.variables["electron"][:] = n[ids]
                region.variables["hole"][:] = p[ids]
        for label in self.electrode_labels():
            self.system.boundaries.set_electrode_state(
                label, potential=self.voltages.get(label, 0.0), current=self.currents.get(label, 0.0)
            )

    def lte_norm(self, predicted: dict, rtol: float, atol: float) -> float:
        err = 0.0
        for key, value in (("psi", self.psi), ("phi", self.phi)):
            scale = atol + rtol * np.abs(value)
            err = max(err, float(np.max(np.abs(value - predicted[key]) / scale, initial=0.0)))
        return err

    # -- point solve ---------------------------------------------------------

    def solve_point(self) -> bool:
        self.notify("pre_solve")
        current_driven = []
        for label in self.electrode_labels():
            mode, value = self.drive(label)
            if mode == "voltage":
                self.voltages[label] = value
            else:
                current_driven.append(label)
        if current_driven and not self.transport:
            raise UnsupportedOperationError(
                f"formulation '{self.formulation}' cannot drive electrodes {current_driven} by current"
            )
        try:
            if current_driven:
                return self._solve_current_driven(current_driven)
            return self._solve_fixed_bias()
        except (np.linalg.LinAlgError, RuntimeError, FloatingPointError) as exc:
            logger.debug("%s: linear solve failed: %s", self.formulation, exc)
            return False

    def _solve_fixed_bias(self) -> bool:
        (psi_nodes, psi_vals), (phi_nodes, phi_vals) = self.disc.contact_values(self.voltages)
        if self.transport:
            return self._gummel(psi_nodes, psi_vals, phi_nodes, phi_vals)
        phi = self._quasi_fermi_guess(phi_nodes, phi_vals)
        psi, ok, iterations = self._newton_poisson(self.psi, phi, psi_nodes, psi_vals, notify=True)
        self.last_iterations = iterations
        if ok:
            self.psi, self.phi = psi, phi
            for label in self.electrode_labels():
                self.currents[label] = 0.0
        return ok

    def _solve_current_driven(self, labels: list[str]) -> bool:
        for _ in range(_SECANT_ITERATIONS):
            satisfied = True
            for label in labels:
                target = self.drive(label)[1]
                if not self._secant(label, target):
                    return False
                satisfied = satisfied and self._current_ok(label, target)
            if satisfied:
                return True
        return False

    def _current_ok(self, label: str, target: float) -> bool:
        tol = max(self.settings.electrode_tol, 1e-4 * abs(target))
        return abs(self.currents.get(label, 0.0) - target) <= tol

    def _secant(self, label: str, target: float) -> bool:
        v0 = self.voltages.get(label, 0.0)
        if not self._solve_fixed_bias():
            return False
        f0 = self.currents[label] - target
        if self._current_ok(label, target):
            return True
        v1 = v0 + (0.1 if f0 < 0 else -0.1)
        for _ in range(_SECANT_ITERATIONS):
            self.voltages[label] = v1
            if not self._solve_fixed_bias():
                return False
            f1 = self.currents[label] - target
            if self._current_ok(label, target):
                return True
            if f1 == f0:
                return False
            v0, v1, f0 = v1, v1 - f1 * (v1 - v0) / (f1 - f0), f1
        logger.debug("secant on electrode %s did not reach %.3e A", label, target)
        return False

    # -- Poisson -------------------------------------------------------------

    def _poisson_residual(self, psi, phi):
        disc = self.disc
        n, p = disc.carriers(psi, phi)
        rho = Q * (p - n + disc.net_doping) * disc.node_vol_semi
        return disc.k_eps @ psi - rho, n, p

    def _newton_poisson(self, psi, phi, fixed, values, *, notify: bool):
        disc = self.disc
        s = self.settings
        psi = psi.copy()
        psi[fixed] = values
        free = np.ones(disc.n, dtype=bool)
        free[fixed] = False
        zeros = np.zeros(len(fixed))
        f0 = None
        for it in range(1, s.max_iteration + 1):
            residual, n, p = self._poisson_residual(psi, phi)
            fnorm = float(np.max(np.abs(residual[free]), initial=0.0))
            if not np.isfinite(fnorm):
                return psi, False, it
            if fnorm <= s.poisson_tol:
                return psi, True, it
            if f0 is None:
                f0 = max(fnorm, np.finfo(float).tiny)
            elif fnorm > s.divergence_factor * f0:
                logger.debug("Poisson iteration diverged (|F|=%.3e)", fnorm)
                return psi, False, it
            jac = disc.k_eps + sp.diags(Q * (n + p) / disc.vt * disc.node_vol_semi)
            dx = solve_with_dirichlet(jac, -residual, fixed, zeros)
            if not np.all(np.isfinite(dx)):
                return psi, False, it
            dx = self._damp(dx, psi, phi, fnorm, free)
            psi += dx
            update = float(np.max(np.abs(dx), initial=0.0))
            if notify:
                self.notify("post_iteration", it, update)
            tol = self._update_tolerance(psi)
            if update <= tol:
                return psi, True, it
            # Residual reduced by snes.rtol: accept an update within the relaxed bound.
            if it > 1 and fnorm <= s.snes_rtol * f0 and update <= s.toler_relax * tol:
                return psi, True, it
        return psi, False, s.max_iteration

    def _update_tolerance(self, psi) -> float:
        s = self.settings
        return s.absolute_tol + s.relative_tol * max(1.0, float(np.max(np.abs(psi), initial=0.0)))

    def _damp(self, dx, psi, phi, fnorm, free):
        damping = self.settings.damping
        if damping is Damping.POTENTIAL:
            peak = float(np.max(np.abs(dx), initial=0.0))
            limit = self.settings.potential_update
            return dx * (limit / peak) if peak > limit else dx
        if damping is Damping.SUPERPOTENTIAL:
            vt = self.disc.vt
            return np.sign(dx) * vt * np.log1p(np.abs(dx) / vt)
        if damping is Damping.BANKROSE:
            t = 1.0
            while t > _BANKROSE_MIN_STEP:
                trial, _, _ = self._poisson_residual(psi + t * dx, phi)
                if np.max(np.abs(trial[free]), initial=0.0) < (1.0 - 0.5 * t) * fnorm:
                    break
                t *= 0.5
            return t * dx
        return dx

    def _quasi_fermi_guess(self, fixed, values):
        """Quasi-Fermi level interpolated between contacts by a Laplace solve."""
        disc = self.disc
        if len(fixed) == 0 or not np.any(values):
            return np.zeros(disc.n)
        lap = disc.stiffness(disc.cell_semi.astype(float))
        diag = lap.diagonal()
        eps = 1e-9 * float(diag.max(initial=1.0))
        lap = lap + sp.diags(np.full(disc.n, eps))
        return solve_with_dirichlet(lap, np.zeros(disc.n), fixed, values)

    # -- continuity ----------------------------------------------------------

    def conduction_matrix(self, psi, phi):
        """Cell conductivity stiffness with field-dependent mobility where enabled."""
        disc = self.disc
        n, p = disc.carriers(psi, phi)
        cells = disc.mesh.cells
        mun, mup = disc.cell_mun, disc.cell_mup
        if disc.cell_hfield.any():
            field = disc.cell_field(psi)
            h = disc.cell_hfield
            mun = np.where(h, mun / (1.0 + mun * field / disc.cell_vsat_n), mun)
            mup = np.where(h, mup / (1.0 + mup * field / disc.cell_vsat_p), mup)
        sigma = Q * (mun * n[cells].mean(axis=1) + mup * p[cells].mean(axis=1))
        sigma = np.where(disc.cell_semi, sigma, 0.0)
        return disc.stiffness(sigma), n, p

    def _continuity(self, psi, phi, fixed, values):
        disc = self.disc
        cond, n, p = self.conduction_matrix(psi, phi)
        storage = Q * (n + p) / disc.vt * disc.node_vol_semi
        diag = self.gmin * disc.semi_node.astype(float)
        rhs = np.zeros(disc.n)

        opt_g = self._optical_generation()
        if opt_g is not None:
            rhs += Q * opt_g * disc.node_vol_semi * self.optical_scale

        if self.dt:
            prev = self.history[-1]["phi"]
            if self.order >= 2 and len(self.history) >= 2 and self.dt_history:
                w = self.dt / self.dt_history[-1]
                a0 = (1.0 + 2.0 * w) / (1.0 + w)
                a1 = -(1.0 + w)
                a2 = w * w / (1.0 + w)
                older = self.history[-2]["phi"]
                diag += a0 * storage / self.dt
                rhs -= (a1 * prev + a2 * older) * storage / self.dt
            else:
                diag += storage / self.dt
                rhs += storage / self.dt * prev
        elif self.pseudo_dt:
            diag += storage / self.pseudo_dt
            rhs += storage / self.pseudo_dt * phi

        # Nodes outside any semiconductor keep their value.
        outside = np.flatnonzero(~disc.semi_node)
        keep = np.setdiff1d(outside, fixed)
        all_fixed = np.concatenate([fixed, keep]).astype(int)
        all_vals = np.concatenate([values, phi[keep]])
        matrix = cond + sp.diags(diag)
        return solve_with_dirichlet(matrix, rhs, all_fixed, all_vals), cond

    def _optical_generation(self):
        if not self.optical_scale:
            return None
        g = np.zeros(self.disc.n)
        for region in self.system.regions:
            if region.has_variable("opt_g"):
                g[region.node_ids] = region.variables["opt_g"]
        return g

    def _gummel(self, psi_nodes, psi_vals, phi_nodes, phi_vals) -> bool:
        s = self.settings
        psi = self.psi.copy()
        phi = self.phi.copy()
        phi[phi_nodes] = phi_vals
        continuity_tol = s.elec_continuity_tol + s.hole_continuity_tol
        terminal = None
        # Outer Gummel iterations converge linearly; allow more than Newton.
        for it in range(1, 3 * s.max_iteration + 1):
            psi_new, ok, _ = self._newton_poisson(psi, phi, psi_nodes, psi_vals, notify=False)
            if not ok:
                return False
            phi_new, cond = self._continuity(psi_new, phi, phi_nodes, phi_vals)
            if not np.all(np.isfinite(phi_new)):
                return False
            phi_new = self._truncate(phi, phi_new)
            update = max(
                float(np.max(np.abs(psi_new - psi), initial=0.0)),
                float(np.max(np.abs(phi_new - phi), initial=0.0)),
            )
            psi, phi = psi_new, phi_new
            self.notify("post_iteration", it, update)
            previous, terminal = terminal, self._terminal_currents(cond, phi)
            tol = self._update_tolerance(psi)
            converged = update <= tol
            if not converged and previous is not None and update <= s.toler_relax * tol:
                change = max(abs(terminal[label] - previous[label]) for label in terminal) if terminal else 0.0
                converged = change <= continuity_tol
            if converged:
                self.psi, self.phi = psi, phi
                self.last_iterations = it
                self.currents.update(terminal)
                return True
        self.last_iterations = 3 * s.max_iteration
        return False

    def _terminal_currents(self, cond, phi) -> dict:
        flux = cond @ phi
        currents = {}
        for label in self.electrode_labels():
            nodes = self.disc.electrode_nodes(label)
            currents[label] = float(flux[nodes].sum()) if len(nodes) else 0.0
        return currents

    def _truncation_mask(self):
        """Nodes whose quasi-Fermi update is limited to ``potential_update`` per iteration."""
        truncation = self.settings.truncation
        if truncation is Truncation.NO:
            return None
        mask = self.disc.semi_node.copy()
        if truncation is Truncation.BOUNDARY:
            boundary = np.zeros(self.disc.n, dtype=bool)
            boundary[np.unique(self.disc.mesh.exterior_facets)] = True
            mask &= boundary
        return mask

    def _truncate(self, old, new):
        if self.truncated is None:
            return new
        limit = self.settings.potential_update
        step = np.clip(new - old, -limit, limit)
        return np.where(self.truncated, old + step, new)
