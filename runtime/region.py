# runtime/region.py
"""Simulation regions: a material, its nodes and per-node variables."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from parameters.advanced_model import AdvancedModel
from runtime.materials import Material, T_DEFAULT, thermal_voltage

logger = logging.getLogger("device_solver")

SEMICONDUCTOR_VARIABLES = (
    "na",
    "nd",
    "mole_x",
    "mole_y",
    "potential",
    "qfermi",
    "electron",
    "hole",
    "opt_g",
    "temperature",
)
INSULATOR_VARIABLES = ("potential", "temperature")


@dataclass
class PMIModel:
    type: str
    model: str = "Default"
    params: dict = field(default_factory=dict)


class SimulationRegion:
    """Named sub-domain with its own copy of every nodal variable."""

    def __init__(self, name: str, material: Material, index: int, node_ids, cell_ids, local_cells) -> None:
        self.name = name
        self.material = material
        self.index = index
        self.node_ids = np.asarray(node_ids, dtype=int)
        self.cell_ids = np.asarray(cell_ids, dtype=int)
        self.local_cells = np.asarray(local_cells, dtype=int)
        self.advanced_model = AdvancedModel()
        self.pmi: dict[str, PMIModel] = {}
        names = SEMICONDUCTOR_VARIABLES if material.is_semiconductor else INSULATOR_VARIABLES
        self.variables: dict[str, np.ndarray] = {
            name: np.zeros(len(self.node_ids)) for name in names
        }
        if not material.compound:
            self.variables.pop("mole_x", None)
            self.variables.pop("mole_y", None)
        self.variables["temperature"][:] = T_DEFAULT

    @property
    def is_semiconductor(self) -> bool:
        return self.material.is_semiconductor

    @property
    def n_nodes(self) -> int:
        return len(self.node_ids)

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def set_variable(self, name: str, values) -> None:
        if name not in self.variables:
            raise KeyError(f"Variable '{name}' not found in region '{self.name}'.")
        self.variables[name][:] = values

    def net_doping(self) -> np.ndarray:
        if not self.is_semiconductor:
            return np.zeros(self.n_nodes)
        return self.variables["nd"] - self.variables["na"]

    def init_carriers(self) -> None:
        """Equilibrium carriers and potential from the local doping."""
        if not self.is_semiconductor:
            self.variables["potential"][:] = 0.0
            return
        ni = self.material.ni
        vt = thermal_voltage(float(np.mean(self.variables["temperature"])))
        half = 0.5 * self.net_doping()
        root = np.sqrt(half**2 + ni**2)
        n = np.where(half >= 0.0, half + root, ni**2 / (root - half))
        self.variables["electron"][:] = n
        self.variables["hole"][:] = ni**2 / n
        self.variables["potential"][:] = vt * np.arcsinh(half / ni)
        self.variables["qfermi"][:] = 0.0

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return f"SimulationRegion({self.name!r}, {self.material.name}, nodes={self.n_nodes})"
