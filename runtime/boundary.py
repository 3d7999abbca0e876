# runtime/boundary.py
"""Boundary conditions and electrode lookup."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class BCType(str, Enum):
    OHMIC = "ohmiccontact"
    SCHOTTKY = "schottkycontact"
    GATE = "gatecontact"
    NEUMANN = "neumann"


ELECTRODE_TYPES = (BCType.OHMIC, BCType.SCHOTTKY, BCType.GATE)


@dataclass
class BoundaryCondition:
    label: str
    bc_type: BCType
    nodes: np.ndarray
    electrode_label: str | None = None
    scalars: dict = field(default_factory=dict)
    potential: float = 0.0
    current: float = 0.0
    initial_potential: float | None = None

    @property
    def is_electrode(self) -> bool:
        return self.bc_type in ELECTRODE_TYPES

    @property
    def workfunction(self) -> float:
        return float(self.scalars.get("workfunction", 4.7))


class BoundaryConditionCollection:
    """All boundary conditions of a system, addressable by label or electrode."""

    def __init__(self, bcs: list[BoundaryCondition] | None = None) -> None:
        self._bcs: dict[str, BoundaryCondition] = {}
        for bc in bcs or []:
            self.add(bc)

    def add(self, bc: BoundaryCondition) -> None:
        if bc.label in self._bcs:
            raise ValueError(f"duplicate boundary label '{bc.label}'")
        if bc.is_electrode and bc.electrode_label is None:
            bc.electrode_label = bc.label
        self._bcs[bc.label] = bc

    def __iter__(self):
        return iter(self._bcs.values())

    def __len__(self) -> int:
        return len(self._bcs)

    def has_bc(self, label: str) -> bool:
        return label in self._bcs

    def get_bc(self, label: str) -> BoundaryCondition:
        if label not in self._bcs:
            raise KeyError(f"Boundary '{label}' not found.")
        return self._bcs[label]

    def electrode_labels(self) -> list[str]:
        labels = []
        for bc in self._bcs.values():
            if bc.is_electrode and bc.electrode_label not in labels:
                labels.append(bc.electrode_label)
        return labels

    def is_electrode(self, name: str) -> bool:
        return name in self.electrode_labels()

    def get_bcs_by_electrode_label(self, name: str) -> list[BoundaryCondition]:
        return [bc for bc in self._bcs.values() if bc.is_electrode and bc.electrode_label == name]

    def electrode_bc(self, name: str) -> BoundaryCondition:
        bcs = self.get_bcs_by_electrode_label(name)
        if not bcs:
            raise KeyError(f"Electrode '{name}' not found.")
        return bcs[0]

    def electrode_nodes(self, name: str) -> np.ndarray:
        bcs = self.get_bcs_by_electrode_label(name)
        if not bcs:
            return np.zeros(0, dtype=int)
        return np.unique(np.concatenate([bc.nodes for bc in bcs]))

    def set_electrode_state(self, name: str, *, potential=None, current=None) -> None:
        for bc in self.get_bcs_by_electrode_label(name):
            if potential is not None:
                bc.potential = float(potential)
            if current is not None:
                bc.current = float(current)
