import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from geometry.mesh import Mesh

logger = logging.getLogger("device_solver")


class RefinementState(str, Enum):
    STABLE = "stable"
    ERROR_ESTIMATED = "error_estimated"
    FLAGGED = "flagged"
    REBUILT = "rebuilt"
    REHYDRATED = "rehydrated"


@dataclass
class BisectionRecord:
    """One edge bisection: ``(parent, child_a, child_b, region)`` per split cell."""

    edge: tuple
    midpoint: int
    pairs: list


def _key(cell) -> tuple:
    return tuple(sorted(int(v) for v in cell))


def _cell_edges(key: tuple):
    n = len(key)
    for i in range(n):
        for j in range(i + 1, n):
            yield (key[i], key[j])


# ---------------------------------------------------------------------------
# Flagging policies
# ---------------------------------------------------------------------------


def flag_by_error_fraction(errors, refine_fraction: float, coarsen_fraction: float = 0.0):
    """Refine cells above ``(1 - refine_fraction) * max``; coarsen below
    ``min + coarsen_fraction * (max - min)``."""
    errors = np.asarray(errors, dtype=float)
    refine = np.zeros(len(errors), dtype=bool)
    coarsen = np.zeros(len(errors), dtype=bool)
    if len(errors) == 0:
        return refine, coarsen
    e_max, e_min = float(errors.max()), float(errors.min())
    if refine_fraction > 0.0:
        refine = errors > (1.0 - refine_fraction) * e_max
    if coarsen_fraction > 0.0:
        coarsen = errors <= e_min + coarsen_fraction * (e_max - e_min)
    return refine, coarsen & ~refine


def flag_by_cell_fraction(errors, refine_fraction: float, coarsen_fraction: float = 0.0):
    """Refine the ``refine_fraction`` share of cells with largest error and
    coarsen the ``coarsen_fraction`` share with smallest error."""
    errors = np.asarray(errors, dtype=float)
    n = len(errors)
    refine = np.zeros(n, dtype=bool)
    coarsen = np.zeros(n, dtype=bool)
    order = np.argsort(-errors, kind="stable")
    n_refine = int(refine_fraction * n)
    n_coarsen = int(coarsen_fraction * n)
    refine[order[:n_refine]] = True
    if n_coarsen:
        coarsen[order[n - n_coarsen:]] = True
    return refine, coarsen & ~refine


def flag_by_error_threshold(errors, refine_threshold: float, coarsen_threshold: float = 0.0):
    errors = np.asarray(errors, dtype=float)
    refine = errors > refine_threshold
    coarsen = errors < coarsen_threshold
    return refine, coarsen & ~refine


def combine_flags(flag_sets):
    """Union of several ``(refine, coarsen)`` pairs; refinement wins."""
    refine = None
    coarsen = None
    for r, c in flag_sets:
        refine = r.copy() if refine is None else refine | r
        coarsen = c.copy() if coarsen is None else coarsen | c
    return refine, coarsen & ~refine


# ---------------------------------------------------------------------------
# Hierarchical refinement
# ---------------------------------------------------------------------------


class _CellSet:
    """Mutable cell bookkeeping used while bisecting."""

    def __init__(self, mesh: Mesh) -> None:
        self.points = [p for p in mesh.points]
        self.live: dict[tuple, int] = {}
        self.edge_cells: dict[tuple, set] = {}
        for cell, region in zip(mesh.cells, mesh.cell_region):
            self.add(_key(cell), int(region))

    def add(self, key: tuple, region: int) -> None:
        self.live[key] = region
        for e in _cell_edges(key):
            self.edge_cells.setdefault(e, set()).add(key)

    def remove(self, key: tuple) -> int:
        region = self.live.pop(key)
        for e in _cell_edges(key):
            bucket = self.edge_cells.get(e)
            if bucket is not None:
                bucket.discard(key)
                if not bucket:
                    del self.edge_cells[e]
        return region

    def edge_length(self, e: tuple) -> float:
        return float(np.linalg.norm(self.points[e[0]] - self.points[e[1]]))

    def longest_edge(self, key: tuple) -> tuple:
        return min(_cell_edges(key), key=lambda e: (-round(self.edge_length(e), 12), e))

    def bisect(self, edge: tuple) -> BisectionRecord:
        a, b = edge
        m = len(self.points)
        self.points.append(0.5 * (self.points[a] + self.points[b]))
        pairs = []
        for parent in sorted(self.edge_cells[edge]):
            region = self.remove(parent)
            child_a = _key(m if v == b else v for v in parent)
            child_b = _key(m if v == a else v for v in parent)
            self.add(child_a, region)
            self.add(child_b, region)
            pairs.append((parent, child_a, child_b, region))
        return BisectionRecord(edge=edge, midpoint=m, pairs=pairs)

    def to_mesh(self, template: Mesh, history: list) -> Mesh:
        keys = list(self.live)
        cells = np.array(keys, dtype=int).reshape(-1, template.cells.shape[1])
        regions = np.array([self.live[k] for k in keys], dtype=int)
        mesh = Mesh(
            np.array(self.points),
            cells,
            regions,
            template.regions,
            template.boundary_specs,
        )
        mesh.refinement_history = history
        return mesh


def refine_elements(mesh: Mesh, refine_flags) -> Mesh:
    """Bisect every flagged cell across its longest edge.

    All cells sharing the bisected edge are split together, so the result is
    always conforming. Each bisection is recorded in the refinement history.
    """
    flags = np.asarray(refine_flags, dtype=bool)
    if not flags.any():
        return mesh.copy()
    work = _CellSet(mesh)
    marked = [_key(c) for c in mesh.cells[flags]]
    marked.sort(key=lambda k: (-work.edge_length(work.longest_edge(k)), k))
    history = list(mesh.refinement_history)
    for key in marked:
        if key not in work.live:
            continue
        history.append(work.bisect(work.longest_edge(key)))
    refined = work.to_mesh(mesh, history)
    logger.info("Refined %d flagged cells: %d -> %d cells", len(marked), mesh.n_cells, refined.n_cells)
    return refined


def coarsen_elements(mesh: Mesh, coarsen_flags) -> Mesh:
    """Undo bisections whose children are all flagged for coarsening."""
    flags = np.asarray(coarsen_flags, dtype=bool)
    if not flags.any() or not mesh.refinement_history:
        return mesh.copy()

    live = {_key(c): int(r) for c, r in zip(mesh.cells, mesh.cell_region)}
    flagged = {_key(c) for c in mesh.cells[flags]}
    history = list(mesh.refinement_history)
    kept = []
    restored = 0
    for record in reversed(history):
        children = [c for _, a, b, _ in record.pairs for c in (a, b)]
        usage = sum(1 for key in live if record.midpoint in key)
        if all(c in live and c in flagged for c in children) and usage == len(children):
            for parent, a, b, region in record.pairs:
                del live[a]
                del live[b]
                live[parent] = region
            restored += 1
        else:
            kept.append(record)
    kept.reverse()
    if restored == 0:
        return mesh.copy()

    keys = list(live)
    cells = np.array(keys, dtype=int)
    used = np.unique(cells.ravel())
    remap = np.full(mesh.n_points, -1, dtype=int)
    remap[used] = np.arange(len(used))

    def _map(key):
        return _key(remap[v] for v in key)

    new_history = []
    for record in kept:
        if remap[record.midpoint] < 0:
            continue
        new_history.append(
            BisectionRecord(
                edge=tuple(int(remap[v]) for v in record.edge),
                midpoint=int(remap[record.midpoint]),
                pairs=[(_map(p), _map(a), _map(b), r) for p, a, b, r in record.pairs],
            )
        )

    coarse = Mesh(
        mesh.points[used],
        remap[cells],
        np.array([live[k] for k in keys], dtype=int),
        mesh.regions,
        mesh.boundary_specs,
    )
    coarse.refinement_history = new_history
    logger.info("Coarsened %d families: %d -> %d cells", restored, mesh.n_cells, coarse.n_cells)
    return coarse


def refine_and_coarsen_elements(mesh: Mesh, refine_flags, coarsen_flags=None) -> Mesh:
    refine_flags = np.asarray(refine_flags, dtype=bool)
    if coarsen_flags is None or not np.any(coarsen_flags):
        return refine_elements(mesh, refine_flags)

    coarsen_flags = np.asarray(coarsen_flags, dtype=bool) & ~refine_flags
    refine_keys = {_key(c) for c in mesh.cells[refine_flags]}
    coarse = coarsen_elements(mesh, coarsen_flags)
    # Coarsening only touches cells not flagged for refinement, but point ids
    # may shift, so refine flags are matched by coordinates.
    wanted = {_coords_key(mesh, k) for k in refine_keys}
    flags = np.array([_coords_key(coarse, c) in wanted for c in coarse.cells], dtype=bool)
    return refine_elements(coarse, flags)


def _coords_key(mesh: Mesh, cell) -> bytes:
    return mesh.points[list(_key(cell))].round(12).tobytes()


# ---------------------------------------------------------------------------
# Uniform refinement
# ---------------------------------------------------------------------------


def uniformly_refine(mesh: Mesh, steps: int = 1) -> Mesh:
    """Split every edge ``steps`` times: 4 triangles or 8 tetrahedra per cell."""
    current = mesh
    for _ in range(max(0, int(steps))):
        current = _uniform_pass(current)
    if current is mesh:
        current = mesh.copy()
    current.refinement_history = []
    return current


def _uniform_pass(mesh: Mesh) -> Mesh:
    points = [p for p in mesh.points]
    mids: dict[tuple, int] = {}

    def mid(a, b):
        e = (a, b) if a < b else (b, a)
        if e not in mids:
            mids[e] = len(points)
            points.append(0.5 * (mesh.points[a] + mesh.points[b]))
        return mids[e]

    new_cells = []
    new_regions = []
    for cell, region in zip(mesh.cells, mesh.cell_region):
        cell = [int(v) for v in cell]
        if len(cell) == 3:
            a, b, c = cell
            ab, bc, ca = mid(a, b), mid(b, c), mid(c, a)
            children = [(a, ab, ca), (b, bc, ab), (c, ca, bc), (ab, bc, ca)]
        else:
            children = _split_tet(cell, mid, points)
        new_cells.extend(children)
        new_regions.extend([int(region)] * len(children))

    refined = Mesh(
        np.array(points),
        np.array(new_cells, dtype=int),
        np.array(new_regions, dtype=int),
        mesh.regions,
        mesh.boundary_specs,
    )
    logger.debug("Uniform refinement pass: %d -> %d cells", mesh.n_cells, refined.n_cells)
    return refined


def _split_tet(cell, mid, points):
    a, b, c, d = cell
    ab, ac, ad = mid(a, b), mid(a, c), mid(a, d)
    bc, bd, cd = mid(b, c), mid(b, d), mid(c, d)
    children = [(a, ab, ac, ad), (b, ab, bc, bd), (c, ac, bc, cd), (d, ad, bd, cd)]
    # Inner octahedron split along its shortest diagonal.
    diagonals = [((ab, cd), (ac, bd), (ad, bc)), ((ac, bd), (ab, cd), (ad, bc)), ((ad, bc), (ab, cd), (ac, bd))]
    lengths = [np.linalg.norm(points[p] - points[q]) for (p, q), _, _ in diagonals]
    (p, q), (u1, u2), (w1, w2) = diagonals[int(np.argmin(lengths))]
    ring = [u1, w1, u2, w2]
    for i in range(4):
        children.append((p, q, ring[i], ring[(i + 1) % 4]))
    return children
