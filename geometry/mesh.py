# geometry/mesh.py
"""Simplex mesh (triangles in 2D, tetrahedra in 3D) with region and boundary tags.

Coordinates are stored in micrometres. A mesh is *unprepared* when created
or modified and becomes *prepared* after :meth:`Mesh.prepare_for_use`, which
builds exterior facets and resolves boundary node sets; field operations
require a prepared mesh.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np
from scipy.spatial import cKDTree

from core.exceptions import MeshStateError

logger = logging.getLogger("device_solver")

# location -> (axis, use maximum)
LOCATIONS = {
    "left": (0, False),
    "right": (0, True),
    "bottom": (1, False),
    "top": (1, True),
    "back": (2, False),
    "front": (2, True),
}
_AXES = ("x", "y", "z")


@dataclass
class RegionInfo:
    name: str
    material: str


@dataclass
class BoundarySpec:
    """A labelled exterior face: one side of the bounding box, optionally windowed.

    ``radial`` measures the x side as the distance from the y axis, which is
    how faces of a revolved mesh are addressed.
    """

    label: str
    location: str
    window: dict = field(default_factory=dict)
    radial: bool = False

    def axis_values(self, points: np.ndarray, axis: int) -> np.ndarray:
        if self.radial and axis == 0 and points.shape[1] == 3:
            return np.hypot(points[:, 0], points[:, 2])
        return points[:, axis]

    def in_window(self, points: np.ndarray) -> np.ndarray:
        mask = np.ones(len(points), dtype=bool)
        for axis_name, (lo, hi) in self.window.items():
            axis = _AXES.index(axis_name)
            if axis >= points.shape[1]:
                continue
            values = self.axis_values(points, axis)
            mask &= (values >= lo - 1e-9) & (values <= hi + 1e-9)
        return mask

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "location": self.location,
            "window": {k: list(v) for k, v in self.window.items()},
            "radial": self.radial,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BoundarySpec":
        return cls(
            label=data["label"],
            location=data["location"],
            window={k: tuple(v) for k, v in data.get("window", {}).items()},
            radial=bool(data.get("radial", False)),
        )


def simplex_volumes(points: np.ndarray, cells: np.ndarray) -> np.ndarray:
    dim = points.shape[1]
    v0 = points[cells[:, 0]]
    mats = np.stack([points[cells[:, j + 1]] - v0 for j in range(dim)], axis=2)
    return np.abs(np.linalg.det(mats)) / math.factorial(dim)


def barycentric_locate(points, cells, query, *, k: int = 16, tol: float = 1e-9):
    """Find the containing cell and barycentric coordinates of each query point.

    Returns ``(cell_index, bary)``; ``cell_index`` is ``-1`` where no cell
    among the ``k`` nearest centroids contains the point.
    """
    query = np.asarray(query, dtype=float)
    dim = points.shape[1]
    found = np.full(len(query), -1, dtype=int)
    bary = np.zeros((len(query), dim + 1))
    if len(cells) == 0 or len(query) == 0:
        return found, bary

    v0 = points[cells[:, 0]]
    mats = np.stack([points[cells[:, j + 1]] - v0 for j in range(dim)], axis=2)
    inv = np.linalg.inv(mats)
    tree = cKDTree(points[cells].mean(axis=1))
    k = min(k, len(cells))
    _, cand = tree.query(query, k=k)
    if k == 1:
        cand = cand[:, None]

    for j in range(k):
        pending = np.nonzero(found < 0)[0]
        if len(pending) == 0:
            break
        cc = cand[pending, j]
        lam = np.einsum("qij,qj->qi", inv[cc], query[pending] - v0[cc])
        full = np.column_stack([1.0 - lam.sum(axis=1), lam])
        ok = (full >= -tol).all(axis=1)
        found[pending[ok]] = cc[ok]
        bary[pending[ok]] = full[ok]
    return found, bary


class Mesh:
    """Triangle or tetrahedral mesh with per-cell region ids."""

    def __init__(
        self,
        points,
        cells,
        cell_region,
        regions: list[RegionInfo],
        boundary_specs: list[BoundarySpec] | None = None,
    ) -> None:
        self.points = np.asarray(points, dtype=float)
        self.cells = np.asarray(cells, dtype=int)
        self.cell_region = np.asarray(cell_region, dtype=int)
        self.regions = list(regions)
        self.boundary_specs = list(boundary_specs or [])
        self.refinement_history: list = []
        self.prepared = False
        self.exterior_facets = np.zeros((0, self.dimension), dtype=int)
        self.boundary_nodes: dict[str, np.ndarray] = {}

    @property
    def dimension(self) -> int:
        return int(self.points.shape[1])

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return (
            f"Mesh(dim={self.dimension}, points={self.n_points}, cells={self.n_cells}, "
            f"regions={[r.name for r in self.regions]}, prepared={self.prepared})"
        )

    def require_prepared(self) -> None:
        if not self.prepared:
            raise MeshStateError("mesh must be broadcast and prepared before field operations")

    def cell_volumes(self) -> np.ndarray:
        return simplex_volumes(self.points, self.cells)

    def cell_centroids(self) -> np.ndarray:
        return self.points[self.cells].mean(axis=1)

    def bounding_box(self) -> tuple[np.ndarray, np.ndarray]:
        return self.points.min(axis=0), self.points.max(axis=0)

    def region_cells(self, ridx: int) -> np.ndarray:
        return np.nonzero(self.cell_region == ridx)[0]

    def region_nodes(self, ridx: int) -> np.ndarray:
        return np.unique(self.cells[self.cell_region == ridx].ravel())

    def edges(self) -> np.ndarray:
        """Unique sorted vertex pairs of all cell edges."""
        n = self.cells.shape[1]
        pairs = [self.cells[:, [i, j]] for i in range(n) for j in range(i + 1, n)]
        all_edges = np.sort(np.vstack(pairs), axis=1)
        return np.unique(all_edges, axis=0)

    def copy(self) -> "Mesh":
        other = Mesh(
            self.points.copy(),
            self.cells.copy(),
            self.cell_region.copy(),
            [RegionInfo(r.name, r.material) for r in self.regions],
            [BoundarySpec.from_dict(b.to_dict()) for b in self.boundary_specs],
        )
        other.refinement_history = list(self.refinement_history)
        return other

    def invalidate(self) -> None:
        """Mark the mesh unprepared after a topology or geometry change."""
        self.prepared = False
        self.boundary_nodes = {}
        self.exterior_facets = np.zeros((0, self.dimension), dtype=int)

    def prepare_for_use(self) -> None:
        """Build exterior facets and resolve boundary node sets."""
        self._drop_unused_points()
        n = self.cells.shape[1]
        facets = np.vstack(
            [np.sort(np.delete(self.cells, i, axis=1), axis=1) for i in range(n)]
        )
        uniq, counts = np.unique(facets, axis=0, return_counts=True)
        self.exterior_facets = uniq[counts == 1]

        lo, hi = self.bounding_box()
        extent = float(np.max(hi - lo)) if self.n_points else 1.0
        tol = 1e-9 * max(extent, 1.0)
        self.boundary_nodes = {}
        for spec in self.boundary_specs:
            self.boundary_nodes[spec.label] = self._resolve_boundary(spec, tol)
            if len(self.boundary_nodes[spec.label]) == 0:
                logger.warning("Boundary '%s' does not touch any mesh node.", spec.label)
        self.prepared = True
        logger.debug("Prepared %r", self)

    def _resolve_boundary(self, spec: BoundarySpec, tol: float) -> np.ndarray:
        axis, use_max = LOCATIONS[spec.location]
        if axis >= self.dimension or len(self.exterior_facets) == 0:
            return np.zeros(0, dtype=int)
        coord = spec.axis_values(self.points, axis)
        target = coord.max() if use_max else coord.min()
        on_side = np.abs(coord - target) <= tol
        facet_ok = on_side[self.exterior_facets].all(axis=1)
        centroids = self.points[self.exterior_facets].mean(axis=1)
        facet_ok &= spec.in_window(centroids)
        return np.unique(self.exterior_facets[facet_ok].ravel())

    def _drop_unused_points(self) -> None:
        used = np.unique(self.cells.ravel())
        if len(used) == self.n_points:
            return
        remap = np.full(self.n_points, -1, dtype=int)
        remap[used] = np.arange(len(used))
        self.points = self.points[used]
        self.cells = remap[self.cells]
        self.refinement_history = []
        logger.debug("Dropped %d unused mesh points", len(remap) - len(used))

    def to_dict(self) -> dict:
        return {
            "dimension": self.dimension,
            "points": self.points.tolist(),
            "cells": self.cells.tolist(),
            "cell_region": self.cell_region.tolist(),
            "regions": [{"name": r.name, "material": r.material} for r in self.regions],
            "boundaries": [b.to_dict() for b in self.boundary_specs],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Mesh":
        return cls(
            data["points"],
            data["cells"],
            data["cell_region"],
            [RegionInfo(r["name"], r["material"]) for r in data["regions"]],
            [BoundarySpec.from_dict(b) for b in data.get("boundaries", [])],
        )
