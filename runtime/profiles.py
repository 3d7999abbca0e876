# runtime/profiles.py
"""Analytic doping and mole-fraction profiles (PROFILE and MOLE cards).

Both solvers evaluate closed-form expressions at node coordinates, so
re-running them after a mesh rebuild reproduces the fields exactly.
"""

from __future__ import annotations

import logging
import re

import numpy as np

from core.exceptions import ConfigurationError

logger = logging.getLogger("device_solver")

_AXES = ("x", "y", "z")


def _window_mask(card, coords) -> np.ndarray:
    mask = np.ones(len(coords), dtype=bool)
    for idx, axis in enumerate(_AXES[: coords.shape[1]]):
        lo = card.get_real(f"{axis}.min", -np.inf)
        hi = card.get_real(f"{axis}.max", np.inf)
        mask &= (coords[:, idx] >= lo - 1e-12) & (coords[:, idx] <= hi + 1e-12)
    return mask


def _matching_regions(card, system, variable):
    pattern = card.get_string("region", ".*")
    return [
        r
        for r in system.regions
        if re.fullmatch(pattern, r.name) and r.has_variable(variable)
    ]


class DopingAnalytic:
    """Sum of uniform and Gaussian PROFILE cards into ``na``/``nd``."""

    def __init__(self, deck) -> None:
        self.cards = deck.cards_for("PROFILE")
        self.system = None

    def create_solver(self, system) -> None:
        self.system = system
        for card in self.cards:
            card.get_enum("type", ["uniform", "gauss", "analytic"], "uniform")
            card.get_enum("ion", ["donor", "acceptor", "n", "p"], "donor")
            if not card.is_parameter_exist("n.peak"):
                raise card.error("PROFILE requires 'n.peak'")

    def profile_value(self, card, coords) -> np.ndarray:
        peak = card.get_real("n.peak")
        kind = card.get_enum("type", ["uniform", "gauss", "analytic"], "uniform")
        inside = _window_mask(card, coords)
        if kind == "uniform":
            return np.where(inside, peak, 0.0)
        # Gaussian decay along y away from the [y.min, y.max] plateau,
        # confined laterally to the x (and z) window.
        y = coords[:, 1]
        y_top = card.get_real("y.min", float(y.min()))
        y_bottom = card.get_real("y.max", y_top)
        char = card.get_real("y.char", 0.1)
        if char <= 0.0:
            raise card.error("y.char must be positive")
        dy = np.where(y < y_top, y_top - y, np.where(y > y_bottom, y - y_bottom, 0.0))
        lateral = np.ones(len(coords), dtype=bool)
        for idx, axis in ((0, "x"), (2, "z")):
            if idx >= coords.shape[1]:
                continue
            lo = card.get_real(f"{axis}.min", -np.inf)
            hi = card.get_real(f"{axis}.max", np.inf)
            lateral &= (coords[:, idx] >= lo - 1e-12) & (coords[:, idx] <= hi + 1e-12)
        return np.where(lateral, peak * np.exp(-((dy / char) ** 2)), 0.0)

    def solve(self) -> None:
        if self.system is None:
            raise ConfigurationError("doping solver used before create_solver")
        for region in self.system.regions:
            if region.is_semiconductor:
                region.variables["na"][:] = 0.0
                region.variables["nd"][:] = 0.0
        for card in self.cards:
            acceptor = card.get_enum("ion", ["donor", "acceptor", "n", "p"], "donor") in ("acceptor", "p")
            target = "na" if acceptor else "nd"
            regions = _matching_regions(card, self.system, target)
            if not regions:
                raise card.error(f"no semiconductor region matches '{card.get_string('region', '.*')}'")
            for region in regions:
                coords = self.system.mesh.points[region.node_ids]
                region.variables[target] += self.profile_value(card, coords)
        logger.info("Doping profiles applied from %d PROFILE cards", len(self.cards))

    def destroy_solver(self) -> None:
        self.system = None


class MoleAnalytic:
    """Constant or linearly graded mole fractions for compound regions."""

    def __init__(self, deck) -> None:
        self.cards = deck.cards_for("MOLE")
        self.system = None

    def create_solver(self, system) -> None:
        self.system = system

    def solve(self) -> None:
        if self.system is None:
            raise ConfigurationError("mole solver used before create_solver")
        for card in self.cards:
            regions = _matching_regions(card, self.system, "mole_x")
            if not regions:
                raise card.error(
                    f"no compound region matches '{card.get_string('region', '.*')}'"
                )
            for region in regions:
                coords = self.system.mesh.points[region.node_ids]
                for name, var in (("x.mole", "mole_x"), ("y.mole", "mole_y")):
                    if not card.is_parameter_exist(name):
                        continue
                    region.variables[var][:] = self._graded(card, name, coords)
        logger.info("Mole fractions applied from %d MOLE cards", len(self.cards))

    def _graded(self, card, name, coords) -> np.ndarray:
        start = card.get_real(name)
        if not card.is_parameter_exist(f"{name}.end"):
            return np.full(len(coords), start)
        end = card.get_real(f"{name}.end")
        axis = _AXES.index(card.get_enum(f"{name}.axis", _AXES[: coords.shape[1]], "y"))
        lo, hi = coords[:, axis].min(), coords[:, axis].max()
        span = hi - lo if hi > lo else 1.0
        return start + (end - start) * (coords[:, axis] - lo) / span

    def destroy_solver(self) -> None:
        self.system = None
