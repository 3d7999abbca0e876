# geometry/generators.py
"""Structured mesh generators driven by X.MESH/Y.MESH/Z.MESH, REGION and FACE cards."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from itertools import permutations

import numpy as np
from scipy.spatial import Delaunay

from core.exceptions import ConfigurationError, MeshStateError
from geometry.mesh import LOCATIONS, BoundarySpec, Mesh, RegionInfo, barycentric_locate
from geometry.refinement import refine_elements

logger = logging.getLogger("device_solver")

_AXES = ("x", "y", "z")


def _axis_lines(deck, axis: str) -> np.ndarray:
    """Grid lines along ``axis`` from consecutive ``<AXIS>.MESH`` segments."""
    cards = deck.cards_for(f"{axis.upper()}.MESH")
    if not cards:
        raise ConfigurationError(f"mesh generation requires at least one {axis.upper()}.MESH card")
    lines = []
    cursor = None
    for card in cards:
        lo = card.get_real(f"{axis}.min", cursor if cursor is not None else 0.0)
        if card.is_parameter_exist("width"):
            hi = lo + card.get_real("width")
        else:
            hi = card.get_real(f"{axis}.max")
            if hi is None:
                raise card.error(f"either width or {axis}.max is required")
        if hi <= lo:
            raise card.error(f"segment must have positive extent, got [{lo}, {hi}]")
        n = card.get_int("n.spaces", 1)
        if n < 1:
            raise card.error("n.spaces must be at least 1")
        ratio = card.get_real("ratio", 1.0)
        if ratio <= 0.0:
            raise card.error("ratio must be positive")
        if abs(ratio - 1.0) < 1e-12:
            widths = np.full(n, 1.0)
        else:
            widths = ratio ** np.arange(n)
        edges = lo + (hi - lo) * np.concatenate([[0.0], np.cumsum(widths) / widths.sum()])
        if lines and abs(lines[-1] - lo) < 1e-12:
            edges = edges[1:]
        lines.extend(edges.tolist())
        cursor = hi
    return np.array(lines)


def _box_window(card, dim: int) -> dict:
    window = {}
    for axis in _AXES[:dim]:
        lo = card.get_real(f"{axis}.min", -np.inf)
        hi = card.get_real(f"{axis}.max", np.inf)
        if np.isfinite(lo) or np.isfinite(hi):
            window[axis] = (lo, hi)
    return window


def boundary_specs_from_deck(deck, dim: int) -> list[BoundarySpec]:
    specs = []
    seen = set()
    for card in deck.cards_for("FACE"):
        label = card.get_string("label")
        if label is None:
            raise card.error("FACE requires a 'label'")
        if label in seen:
            raise card.error(f"duplicate boundary label '{label}'")
        location = card.get_enum("location", list(LOCATIONS), "top")
        if LOCATIONS[location][0] >= dim:
            raise card.error(f"location '{location}' is not available in {dim}D")
        seen.add(label)
        specs.append(BoundarySpec(label, location, _box_window(card, dim)))
    return specs


def assign_regions(deck, centroids: np.ndarray):
    """Region id per cell from REGION boxes (later cards win, -1 = unassigned)."""
    dim = centroids.shape[1]
    regions: list[RegionInfo] = []
    cell_region = np.full(len(centroids), -1, dtype=int)
    for card in deck.cards_for("REGION"):
        label = card.get_string("label")
        material = card.get_string("material")
        if label is None or material is None:
            raise card.error("REGION requires 'label' and 'material'")
        if any(r.name == label for r in regions):
            raise card.error(f"duplicate region label '{label}'")
        mask = np.ones(len(centroids), dtype=bool)
        for axis, (lo, hi) in _box_window(card, dim).items():
            values = centroids[:, _AXES.index(axis)]
            mask &= (values >= lo) & (values <= hi)
        cell_region[mask] = len(regions)
        regions.append(RegionInfo(label, material))
    if not regions:
        raise ConfigurationError("mesh generation requires at least one REGION card")
    return regions, cell_region


class MeshGeneratorBase(ABC):
    """Base interface for mesh generators."""

    type_tag = ""
    dimension = 2

    def __init__(self, deck) -> None:
        self.deck = deck

    @abstractmethod
    def _structured_cells(self, shape) -> np.ndarray:
        """Cell connectivity over a structured grid of the given node shape."""

    def generate(self) -> Mesh:
        axes = _AXES[: self.dimension]
        lines = [_axis_lines(self.deck, a) for a in axes]
        grids = np.meshgrid(*lines, indexing="ij")
        points = np.column_stack([g.ravel() for g in grids])
        cells = self._structured_cells(tuple(len(l) for l in lines))
        regions, cell_region = assign_regions(self.deck, points[cells].mean(axis=1))
        keep = cell_region >= 0
        if not keep.any():
            raise ConfigurationError("no cell lies inside any REGION")
        mesh = Mesh(
            points,
            cells[keep],
            cell_region[keep],
            regions,
            boundary_specs_from_deck(self.deck, self.dimension),
        )
        mesh._drop_unused_points()
        for idx, info in enumerate(regions):
            if not np.any(mesh.cell_region == idx):
                logger.warning("Region '%s' contains no cells.", info.name)
        logger.info(
            "Generated %s mesh: %d points, %d cells, %d regions",
            self.type_tag,
            mesh.n_points,
            mesh.n_cells,
            len(regions),
        )
        return mesh

    @abstractmethod
    def refine(self, mesh: Mesh, refine_flags) -> Mesh:
        """Return a conforming mesh with flagged cells refined."""

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return f"{self.__class__.__name__}(type={self.type_tag!r})"


class Tri3Generator(MeshGeneratorBase):
    """2D triangles; each grid rectangle is cut along one diagonal."""

    type_tag = "s_tri3"
    dimension = 2

    def _structured_cells(self, shape) -> np.ndarray:
        nx, ny = shape
        idx = np.arange(nx * ny).reshape(nx, ny)
        a = idx[:-1, :-1].ravel()
        b = idx[1:, :-1].ravel()
        c = idx[1:, 1:].ravel()
        d = idx[:-1, 1:].ravel()
        return np.vstack([np.column_stack([a, b, c]), np.column_stack([a, c, d])])

    def refine(self, mesh: Mesh, refine_flags) -> Mesh:
        """Insert midpoints of the flagged cells' edges and re-triangulate per region.

        Each region is re-triangulated on its own nodes plus every new
        midpoint on an edge it owns, so shared interface edges receive the
        same points from both sides.
        """
        flags = np.asarray(refine_flags, dtype=bool)
        if mesh.dimension != 2:
            raise MeshStateError("Tri3Generator can only refine 2D meshes")
        if not flags.any():
            return mesh.copy()

        cells = mesh.cells
        flagged_edges = set()
        for cell in cells[flags]:
            a, b, c = sorted(int(v) for v in cell)
            flagged_edges.update({(a, b), (a, c), (b, c)})
        mids = {e: mesh.n_points + i for i, e in enumerate(sorted(flagged_edges))}
        new_points = np.vstack(
            [mesh.points, np.array([0.5 * (mesh.points[a] + mesh.points[b]) for a, b in sorted(mids)])]
        )

        all_cells = []
        all_regions = []
        for ridx in range(len(mesh.regions)):
            rcells = cells[mesh.cell_region == ridx]
            if len(rcells) == 0:
                continue
            node_ids = set(np.unique(rcells).tolist())
            for cell in rcells:
                a, b, c = sorted(int(v) for v in cell)
                for e in ((a, b), (a, c), (b, c)):
                    if e in mids:
                        node_ids.add(mids[e])
            node_ids = np.array(sorted(node_ids))
            tri = Delaunay(new_points[node_ids])
            local = node_ids[tri.simplices]
            # Keep only triangles inside the original region.
            centroids = new_points[local].mean(axis=1)
            found, _ = barycentric_locate(mesh.points, rcells, centroids)
            area = _signed_area(new_points, local)
            keep = (found >= 0) & (np.abs(area) > 1e-14 * max(1.0, np.abs(area).max()))
            all_cells.append(local[keep])
            all_regions.append(np.full(int(keep.sum()), ridx))

        refined = Mesh(
            new_points,
            np.vstack(all_cells),
            np.concatenate(all_regions),
            mesh.regions,
            mesh.boundary_specs,
        )
        logger.info(
            "Conforming refinement (%s): %d -> %d cells",
            self.type_tag,
            mesh.n_cells,
            refined.n_cells,
        )
        return refined


class Tet4Generator(MeshGeneratorBase):
    """3D tetrahedra; each grid box is split into six Kuhn tetrahedra."""

    type_tag = "s_tet4"
    dimension = 3

    def _structured_cells(self, shape) -> np.ndarray:
        nx, ny, nz = shape
        idx = np.arange(nx * ny * nz).reshape(nx, ny, nz)
        corners = {}
        for bits in np.ndindex(2, 2, 2):
            i, j, k = bits
            corners[bits] = idx[i : nx - 1 + i, j : ny - 1 + j, k : nz - 1 + k].ravel()
        tets = []
        for perm in permutations(range(3)):
            path = [(0, 0, 0)]
            cur = [0, 0, 0]
            for axis in perm:
                cur[axis] = 1
                path.append(tuple(cur))
            tets.append(np.column_stack([corners[p] for p in path]))
        return np.vstack(tets)

    def refine(self, mesh: Mesh, refine_flags) -> Mesh:
        refined = refine_elements(mesh, refine_flags)
        refined.refinement_history = []
        return refined


GENERATORS = {
    Tri3Generator.type_tag: Tri3Generator,
    Tet4Generator.type_tag: Tet4Generator,
}


def get_generator(type_tag: str, deck) -> MeshGeneratorBase:
    try:
        cls = GENERATORS[type_tag.lower()]
    except KeyError:
        raise ConfigurationError(
            f"unsupported mesh generator type '{type_tag}'; expected one of {', '.join(GENERATORS)}"
        ) from None
    return cls(deck)


def _signed_area(points, tris):
    p = points[tris]
    return 0.5 * (
        (p[:, 1, 0] - p[:, 0, 0]) * (p[:, 2, 1] - p[:, 0, 1])
        - (p[:, 2, 0] - p[:, 0, 0]) * (p[:, 1, 1] - p[:, 0, 1])
    )
