# geometry/interpolation.py
"""Transfer of nodal fields from an old discretization to new points."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum

import numpy as np
from scipy.interpolate import LinearNDInterpolator, NearestNDInterpolator
from scipy.spatial import Delaunay

from geometry.mesh import barycentric_locate

logger = logging.getLogger("device_solver")


class InterpolationLaw(str, Enum):
    LINEAR = "linear"
    ASINH = "asinh"

    def forward(self, values: np.ndarray) -> np.ndarray:
        if self is InterpolationLaw.ASINH:
            return np.arcsinh(values)
        return values

    def inverse(self, values: np.ndarray) -> np.ndarray:
        if self is InterpolationLaw.ASINH:
            return np.sinh(values)
        return values


class Interpolator(ABC):
    """Fill named fields on the old geometry, then evaluate them at new points.

    Signed-log (``ASINH``) interpolation keeps concentration-like fields that
    span many decades and change sign well behaved.
    """

    def __init__(self, points, cells) -> None:
        self.points = np.asarray(points, dtype=float)
        self.cells = np.asarray(cells, dtype=int)
        self._fields: dict[str, tuple[np.ndarray, InterpolationLaw]] = {}

    def fill(self, name: str, values, law: InterpolationLaw = InterpolationLaw.LINEAR) -> None:
        values = np.asarray(values, dtype=float)
        if len(values) != len(self.points):
            raise ValueError(
                f"field '{name}' has {len(values)} values for {len(self.points)} points"
            )
        self._fields[name] = (law.forward(values), law)

    @property
    def field_names(self) -> list[str]:
        return list(self._fields)

    def evaluate(self, name: str, query) -> np.ndarray:
        transformed, law = self._fields[name]
        query = np.asarray(query, dtype=float)
        if len(query) == 0:
            return np.zeros(0)
        return law.inverse(self._evaluate(transformed, query))

    @abstractmethod
    def _evaluate(self, transformed: np.ndarray, query: np.ndarray) -> np.ndarray:
        """Evaluate transformed nodal data at ``query`` points."""

    def _nearest(self, transformed: np.ndarray, query: np.ndarray) -> np.ndarray:
        return NearestNDInterpolator(self.points, transformed)(query)


class Interpolation2D(Interpolator):
    """Piecewise-linear interpolation on a Delaunay triangulation of the old nodes."""

    def __init__(self, points, cells) -> None:
        super().__init__(points, cells)
        self._tri = None

    def _evaluate(self, transformed, query):
        if len(self.points) < 3:
            return self._nearest(transformed, query)
        if self._tri is None:
            self._tri = Delaunay(self.points)
        interp = LinearNDInterpolator(self._tri, transformed)
        out = interp(query)
        missing = np.isnan(out)
        if missing.any():
            out[missing] = self._nearest(transformed, query[missing])
        return out


class Interpolation3DNearestTet(Interpolator):
    """Linear interpolation inside the containing old tetrahedron."""

    def _evaluate(self, transformed, query):
        found, bary = barycentric_locate(self.points, self.cells, query)
        out = np.empty(len(query))
        hit = found >= 0
        if hit.any():
            nodes = self.cells[found[hit]]
            out[hit] = np.einsum("qi,qi->q", bary[hit], transformed[nodes])
        if (~hit).any():
            logger.debug("%d points outside the old mesh; using nearest node", int((~hit).sum()))
            out[~hit] = self._nearest(transformed, query[~hit])
        return out


def make_interpolator(points, cells) -> Interpolator:
    dim = np.asarray(points).shape[1]
    if dim == 2:
        return Interpolation2D(points, cells)
    return Interpolation3DNearestTet(points, cells)
