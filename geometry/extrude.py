# geometry/extrude.py
"""Build 3D tetrahedral meshes from a 2D triangle mesh by extrusion or revolution."""

from __future__ import annotations

import logging

import numpy as np

from core.exceptions import UnsupportedOperationError
from geometry.mesh import BoundarySpec, Mesh, simplex_volumes

logger = logging.getLogger("device_solver")


def _require_2d(mesh: Mesh, what: str) -> None:
    if mesh.dimension != 2:
        raise UnsupportedOperationError(f"{what} requires a 2D mesh, got {mesh.dimension}D")


def _sweep(mesh: Mesh, n_layers: int, node_id):
    """Split every prism between consecutive layers into three tetrahedra.

    Prism vertices are ordered by their 2D index, so neighbouring prisms pick
    the same diagonal on every shared quad face. Tetrahedra that collapse
    (vertices on a rotation axis) are dropped.
    """
    cells = []
    regions = []
    for layer in range(n_layers):
        for tri, region in zip(mesh.cells, mesh.cell_region):
            v0, v1, v2 = sorted(int(v) for v in tri)
            b0, b1, b2 = (node_id(layer, v) for v in (v0, v1, v2))
            t0, t1, t2 = (node_id(layer + 1, v) for v in (v0, v1, v2))
            for tet in ((b0, b1, b2, t2), (b0, b1, t1, t2), (b0, t0, t1, t2)):
                if len(set(tet)) == 4:
                    cells.append(tet)
                    regions.append(int(region))
    return np.array(cells, dtype=int), np.array(regions, dtype=int)


def extend_to_3d(mesh: Mesh, z_width: float, n_spaces: int = 1, z_min: float = 0.0) -> Mesh:
    """Extrude along z into ``n_spaces`` layers of tetrahedra."""
    _require_2d(mesh, "EXTEND")
    if z_width <= 0.0 or n_spaces < 1:
        raise ValueError("z width must be positive and n_spaces at least 1")
    n2 = mesh.n_points
    zs = z_min + z_width * np.arange(n_spaces + 1) / n_spaces
    points = np.vstack([np.column_stack([mesh.points, np.full(n2, z)]) for z in zs])
    cells, regions = _sweep(mesh, n_spaces, lambda level, v: level * n2 + v)
    specs = [BoundarySpec(b.label, b.location, dict(b.window)) for b in mesh.boundary_specs]
    extruded = Mesh(points, cells, regions, mesh.regions, specs)
    logger.info("Extended mesh to 3D: %d layers, %d tetrahedra", n_spaces, extruded.n_cells)
    return extruded


def rotate_to_3d(mesh: Mesh, angle_deg: float = 360.0, n_spaces: int = 8) -> Mesh:
    """Revolve the 2D mesh (x = radius, y = axis) about the y axis."""
    _require_2d(mesh, "ROTATE")
    if np.any(mesh.points[:, 0] < -1e-12):
        raise UnsupportedOperationError("ROTATE requires all x coordinates to be non-negative")
    if n_spaces < 1 or angle_deg <= 0.0 or angle_deg > 360.0:
        raise ValueError("angle must be in (0, 360] and n_spaces at least 1")
    full_turn = abs(angle_deg - 360.0) < 1e-9
    if full_turn and n_spaces < 3:
        raise ValueError("a full revolution needs at least 3 slices")

    on_axis = np.abs(mesh.points[:, 0]) <= 1e-12
    off_ids = np.nonzero(~on_axis)[0]
    n_axis = int(on_axis.sum())
    axis_index = np.full(mesh.n_points, -1, dtype=int)
    axis_index[on_axis] = np.arange(n_axis)
    off_index = np.full(mesh.n_points, -1, dtype=int)
    off_index[off_ids] = np.arange(len(off_ids))
    n_slices = n_spaces if full_turn else n_spaces + 1

    thetas = np.radians(angle_deg) * np.arange(n_slices) / n_spaces
    blocks = [np.column_stack([np.zeros(n_axis), mesh.points[on_axis, 1], np.zeros(n_axis)])]
    r = mesh.points[off_ids, 0]
    y = mesh.points[off_ids, 1]
    for theta in thetas:
        blocks.append(np.column_stack([r * np.cos(theta), y, r * np.sin(theta)]))
    points = np.vstack(blocks)

    def node_id(level, v):
        if on_axis[v]:
            return int(axis_index[v])
        level = level % n_slices if full_turn else level
        return n_axis + level * len(off_ids) + int(off_index[v])

    cells, regions = _sweep(mesh, n_spaces, node_id)
    if len(cells):
        vols = simplex_volumes(points, cells)
        keep = vols > 1e-14 * max(vols.max(), 1e-300)
        cells, regions = cells[keep], regions[keep]

    specs = []
    for b in mesh.boundary_specs:
        if b.location == "left" and mesh.points[:, 0].min() <= 1e-12:
            logger.warning("Boundary '%s' lies on the rotation axis and has no faces in 3D.", b.label)
        specs.append(BoundarySpec(b.label, b.location, dict(b.window), radial=True))
    rotated = Mesh(points, cells, regions, mesh.regions, specs)
    logger.info("Rotated mesh to 3D: %d slices, %d tetrahedra", n_spaces, rotated.n_cells)
    return rotated


def project_extruded(points: np.ndarray) -> np.ndarray:
    return points[:, :2]


def project_rotated(points: np.ndarray) -> np.ndarray:
    return np.column_stack([np.hypot(points[:, 0], points[:, 2]), points[:, 1]])
