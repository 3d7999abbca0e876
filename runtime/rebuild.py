# runtime/rebuild.py
"""Solution-preserving rebuild of the simulation system after a mesh change.

Before the mesh changes, :func:`capture` snapshots every region's nodal
fields together with the old geometry. After the new mesh is broadcast and
the system rebuilt, :func:`rehydrate` restores each field: doping and mole
fractions are regenerated by their profile solvers when attached, everything
else is interpolated from the snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from geometry.interpolation import InterpolationLaw, make_interpolator

logger = logging.getLogger("device_solver")

ASINH_VARIABLES = ("na", "nd", "electron", "hole", "opt_g")
DOPING_VARIABLES = ("na", "nd")
MOLE_VARIABLES = ("mole_x", "mole_y")


def interpolation_law(variable: str) -> InterpolationLaw:
    if variable in ASINH_VARIABLES:
        return InterpolationLaw.ASINH
    return InterpolationLaw.LINEAR


@dataclass
class RegionSnapshot:
    points: np.ndarray
    cells: np.ndarray
    variables: dict
    advanced_model: object
    pmi: dict


@dataclass
class SystemSnapshot:
    dimension: int
    regions: dict = field(default_factory=dict)
    boundaries: dict = field(default_factory=dict)


def capture(system) -> SystemSnapshot:
    """Copy every region's fields and every boundary's scalars."""
    snap = SystemSnapshot(dimension=system.dimension)
    for region in system.regions:
        snap.regions[region.name] = RegionSnapshot(
            points=system.mesh.points[region.node_ids].copy(),
            cells=region.local_cells.copy(),
            variables={k: v.copy() for k, v in region.variables.items()},
            advanced_model=region.advanced_model,
            pmi=dict(region.pmi),
        )
    for bc in system.boundaries:
        snap.boundaries[bc.label] = (dict(bc.scalars), bc.potential, bc.initial_potential)
    return snap


def rehydrate(system, snapshot: SystemSnapshot, *, doping_solver=None, mole_solver=None, project=None) -> None:
    """Restore ``snapshot`` onto a freshly built ``system``.

    ``project`` maps new node coordinates into the snapshot's coordinate
    space (used when a 2D solution seeds an extruded or revolved 3D mesh).
    """
    system.init_region()
    regenerated = set()
    if doping_solver is not None:
        doping_solver.create_solver(system)
        doping_solver.solve()
        regenerated.update(DOPING_VARIABLES)
    if mole_solver is not None:
        mole_solver.create_solver(system)
        mole_solver.solve()
        regenerated.update(MOLE_VARIABLES)

    for region in system.regions:
        old = snapshot.regions.get(region.name)
        if old is None:
            logger.warning("Region '%s' has no pre-rebuild data; using defaults.", region.name)
            continue
        region.advanced_model = old.advanced_model
        region.pmi = dict(old.pmi)
        query = system.mesh.points[region.node_ids]
        if project is not None:
            query = project(query)
        interp = make_interpolator(old.points, old.cells)
        for name, values in old.variables.items():
            if name in regenerated or not region.has_variable(name):
                continue
            interp.fill(name, values, interpolation_law(name))
            region.variables[name][:] = interp.evaluate(name, query)
        logger.debug(
            "Region '%s': interpolated %s", region.name, ", ".join(interp.field_names) or "nothing"
        )

    for bc in system.boundaries:
        saved = snapshot.boundaries.get(bc.label)
        if saved is None:
            continue
        scalars, potential, initial = saved
        bc.scalars.update(scalars)
        bc.potential = potential
        bc.initial_potential = initial

    # Interpolated fields are an initial guess, not a converged solution.
    system.has_dc_solution = False
    logger.info(
        "Rehydrated %d regions (%s regenerated by profile solvers)",
        len(system.regions),
        ", ".join(sorted(regenerated)) or "no fields",
    )
