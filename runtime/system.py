# runtime/system.py
"""Simulation system: regions, boundary conditions and sources on a prepared mesh."""

from __future__ import annotations

import logging

import numpy as np

from core.exceptions import ConfigurationError, MeshStateError
from geometry.mesh import Mesh
from runtime.boundary import BCType, BoundaryCondition, BoundaryConditionCollection
from runtime.materials import get_material
from runtime.region import SimulationRegion
from runtime.sources import ElectricalSources, FieldSource

logger = logging.getLogger("device_solver")

ERROR_MEASURES = ("linear", "signedlog")


class SimulationSystem:
    """Owns the field data attached to the live mesh."""

    def __init__(self, deck=None) -> None:
        self.deck = deck
        self.mesh: Mesh | None = None
        self.regions: list[SimulationRegion] = []
        self.boundaries = BoundaryConditionCollection()
        self.sources = ElectricalSources(deck)
        self.field_source = FieldSource(deck)
        self.has_dc_solution = False
        self.built = False

    # -- construction -----------------------------------------------------

    def build_simulation_system(self, mesh: Mesh) -> None:
        """Create regions and boundary conditions on a prepared mesh."""
        if mesh is None or not mesh.prepared:
            raise MeshStateError("build_simulation_system requires a prepared mesh")
        self.mesh = mesh
        self.regions = []
        for ridx, info in enumerate(mesh.regions):
            try:
                material = get_material(info.material)
            except KeyError:
                raise ConfigurationError(
                    f"region '{info.name}' uses unknown material '{info.material}'"
                ) from None
            cell_ids = mesh.region_cells(ridx)
            node_ids = mesh.region_nodes(ridx)
            remap = np.full(mesh.n_points, -1, dtype=int)
            remap[node_ids] = np.arange(len(node_ids))
            local_cells = remap[mesh.cells[cell_ids]]
            self.regions.append(
                SimulationRegion(info.name, material, ridx, node_ids, cell_ids, local_cells)
            )
        self.boundaries = self._build_boundaries(mesh)
        self.built = True
        logger.info(
            "Built simulation system: %d regions, %d boundaries, electrodes %s",
            len(self.regions),
            len(self.boundaries),
            self.boundaries.electrode_labels(),
        )

    def _build_boundaries(self, mesh: Mesh) -> BoundaryConditionCollection:
        cards = {}
        if self.deck is not None:
            for card in self.deck.cards_for("BOUNDARY"):
                label = card.get_string("id")
                if label is None:
                    raise card.error("BOUNDARY requires an 'id'")
                if label not in mesh.boundary_nodes:
                    raise card.error(f"boundary '{label}' does not exist in the mesh")
                cards[label] = card
        collection = BoundaryConditionCollection()
        for spec in mesh.boundary_specs:
            card = cards.get(spec.label)
            if card is None:
                bc_type = BCType.NEUMANN
                scalars = {}
                contact = None
            else:
                bc_type = BCType(card.get_enum("type", [t.value for t in BCType], "neumann"))
                scalars = {"workfunction": card.get_real("workfunction", 4.7)}
                contact = card.get_string("contact")
            collection.add(
                BoundaryCondition(
                    label=spec.label,
                    bc_type=bc_type,
                    nodes=mesh.boundary_nodes.get(spec.label, np.zeros(0, dtype=int)),
                    electrode_label=contact,
                    scalars=scalars,
                )
            )
        return collection

    def clear(self, preserve_geometry: bool = False) -> None:
        """Drop regions and boundaries; keep the mesh reference if asked."""
        self.regions = []
        self.boundaries = BoundaryConditionCollection()
        self.built = False
        if not preserve_geometry:
            self.mesh = None

    # -- queries ---------------------------------------------------------

    def _require_built(self) -> None:
        if not self.built:
            raise MeshStateError("simulation system has not been built")

    def region(self, name: str) -> SimulationRegion:
        self._require_built()
        for region in self.regions:
            if region.name == name:
                return region
        raise KeyError(f"Region '{name}' not found.")

    def has_region(self, name: str) -> bool:
        return any(r.name == name for r in self.regions)

    @property
    def dimension(self) -> int:
        return self.mesh.dimension if self.mesh is not None else 0

    # -- field initialisation ---------------------------------------------

    def init_region(self) -> None:
        """Equilibrium initial guess in every region from its doping."""
        self._require_built()
        for region in self.regions:
            region.init_carriers()
        self.field_source.update_source(self)
        for label in self.boundaries.electrode_labels():
            self.boundaries.set_electrode_state(label, potential=0.0, current=0.0)

    def enable_lattice_temperature_everywhere(self) -> bool:
        """Force the lattice-temperature equation on in every region if any enables it."""
        if not any(r.advanced_model.enable_tl() for r in self.regions):
            return False
        changed = False
        for region in self.regions:
            if not region.advanced_model.enable_tl():
                region.advanced_model = region.advanced_model.with_lattice_temperature()
                changed = True
        return changed

    # -- error estimation --------------------------------------------------

    def estimate_error(self, variable: str = "potential", measure: str = "linear") -> np.ndarray:
        """One error indicator per cell: ``|grad u| * h`` of the chosen variable."""
        self._require_built()
        if measure not in ERROR_MEASURES:
            raise ValueError(f"unknown error measure '{measure}'")
        mesh = self.mesh
        errors = np.zeros(mesh.n_cells)
        found = False
        for region in self.regions:
            if not region.has_variable(variable) or len(region.cell_ids) == 0:
                continue
            found = True
            values = region.variables[variable]
            if measure == "signedlog":
                values = np.sign(values) * np.log10(1.0 + np.abs(values))
            pts = mesh.points[region.node_ids]
            local = region.local_cells
            grads = _cell_gradients(pts, local, values)
            vols = mesh.cell_volumes()[region.cell_ids]
            h = vols ** (1.0 / mesh.dimension)
            errors[region.cell_ids] = np.linalg.norm(grads, axis=1) * h
        if not found:
            raise KeyError(f"Variable '{variable}' not found in any region.")
        return errors


def _cell_gradients(points, cells, values) -> np.ndarray:
    dim = points.shape[1]
    v0 = points[cells[:, 0]]
    mats = np.stack([points[cells[:, j + 1]] - v0 for j in range(dim)], axis=1)
    du = np.column_stack([values[cells[:, j + 1]] - values[cells[:, 0]] for j in range(dim)])
    return np.linalg.solve(mats, du[..., None])[..., 0]
