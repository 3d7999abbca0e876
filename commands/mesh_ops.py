import logging

from commands.base import Command
from core.exceptions import UnsupportedOperationError
from geometry.extrude import extend_to_3d, project_extruded, project_rotated, rotate_to_3d
from geometry.generators import Tri3Generator
from geometry.refinement import (
    RefinementState,
    combine_flags,
    flag_by_cell_fraction,
    flag_by_error_fraction,
    flag_by_error_threshold,
    refine_and_coarsen_elements,
    uniformly_refine,
)
from runtime.profiles import DopingAnalytic, MoleAnalytic
from runtime.rebuild import capture, rehydrate

logger = logging.getLogger("device_solver")

# (refine parameter, coarsen parameter, policy) in application order.
CONFORM_POLICIES = (
    ("error.fraction", None, flag_by_error_fraction),
    ("cell.fraction", None, flag_by_cell_fraction),
    ("error.threshold", None, flag_by_error_threshold),
)
HIERARCHICAL_POLICIES = (
    ("error.refine.fraction", "error.coarsen.fraction", flag_by_error_fraction),
    ("cell.refine.fraction", "cell.coarsen.fraction", flag_by_cell_fraction),
    ("error.refine.threshold", "error.coarsen.threshold", flag_by_error_threshold),
)


class MeshCommand(Command):
    """Generate, publish and populate the mesh (runs before the main pass)."""

    def execute(self, context, card):
        lifecycle = context.lifecycle
        system = context.system
        lifecycle.generate(context.deck)
        lifecycle.broadcast()
        system.build_simulation_system(lifecycle.mesh)

        if context.deck.has("PROFILE"):
            context.doping_solver = DopingAnalytic(context.deck)
            context.doping_solver.create_solver(system)
            context.doping_solver.solve()
        if context.deck.has("MOLE"):
            context.mole_solver = MoleAnalytic(context.deck)
            context.mole_solver.create_solver(system)
            context.mole_solver.solve()
        system.init_region()


def _advance(context, state):
    logger.debug("Refinement state %s -> %s", context.refinement_state.value, state.value)
    context.refinement_state = state


def rebuild_on(context, new_mesh, snapshot, *, project=None, regenerate=True):
    """Publish ``new_mesh``, rebuild the system on it and restore its fields."""
    lifecycle = context.lifecycle
    system = context.system
    lifecycle.clear(system)
    lifecycle.replace(new_mesh)
    _advance(context, RefinementState.REBUILT)
    lifecycle.broadcast()
    system.build_simulation_system(lifecycle.mesh)
    rehydrate(
        system,
        snapshot,
        doping_solver=context.doping_solver if regenerate else None,
        mole_solver=context.mole_solver if regenerate else None,
        project=project,
    )
    _advance(context, RefinementState.REHYDRATED)
    _advance(context, RefinementState.STABLE)


def _flags(card, errors, policies):
    sets = []
    for refine_name, coarsen_name, policy in policies:
        requested = card.is_parameter_exist(refine_name) or (
            coarsen_name is not None and card.is_parameter_exist(coarsen_name)
        )
        if not requested:
            continue
        refine_value = card.get_real(refine_name, 0.0)
        coarsen_value = card.get_real(coarsen_name, 0.0) if coarsen_name else 0.0
        sets.append(policy(errors, refine_value, coarsen_value))
    if not sets:
        names = ", ".join(n for r, c, _ in policies for n in (r, c) if n)
        raise card.error(f"refinement requires one of: {names}")
    return combine_flags(sets)


def _estimate(context, card):
    variable = card.get_string("variable", "potential").lower()
    measure = card.get_enum("measure", ["linear", "signedlog"], "linear")
    try:
        errors = context.system.estimate_error(variable, measure)
    except KeyError:
        raise card.error(f"variable '{variable}' does not exist in any region") from None
    _advance(context, RefinementState.ERROR_ESTIMATED)
    return errors


class RefineConformCommand(Command):
    """Error-driven refinement through the mesh generator."""

    def execute(self, context, card):
        lifecycle = context.lifecycle
        mesh = lifecycle.mesh
        generator = lifecycle.generator
        if generator is None or generator.dimension != mesh.dimension:
            if mesh.dimension != 2:
                raise UnsupportedOperationError(
                    f"{card.location} REFINE.CONFORM: 3D conforming refinement needs a mesh generator"
                )
            generator = Tri3Generator(context.deck)

        errors = _estimate(context, card)
        refine, _ = _flags(card, errors, CONFORM_POLICIES)
        _advance(context, RefinementState.FLAGGED)
        logger.info("REFINE.CONFORM: %d of %d cells flagged", int(refine.sum()), mesh.n_cells)

        snapshot = capture(context.system)
        old = lifecycle.gather()
        new_mesh = generator.refine(old, refine) if old is not None else None
        rebuild_on(context, new_mesh, snapshot)
        logger.info("REFINE.CONFORM: %d -> %d cells", len(errors), lifecycle.mesh.n_cells)


class RefineHierarchicalCommand(Command):
    """Error-driven bisection refinement and family coarsening on the live mesh."""

    def execute(self, context, card):
        lifecycle = context.lifecycle
        errors = _estimate(context, card)
        refine, coarsen = _flags(card, errors, HIERARCHICAL_POLICIES)
        _advance(context, RefinementState.FLAGGED)
        logger.info(
            "REFINE.HIERARCHICAL: %d cells to refine, %d to coarsen",
            int(refine.sum()),
            int(coarsen.sum()),
        )

        snapshot = capture(context.system)
        old = lifecycle.gather()
        new_mesh = refine_and_coarsen_elements(old, refine, coarsen) if old is not None else None
        rebuild_on(context, new_mesh, snapshot)
        logger.info("REFINE.HIERARCHICAL: %d -> %d cells", len(errors), lifecycle.mesh.n_cells)


class RefineUniformCommand(Command):
    """Split every cell ``step`` times; no estimation or flagging."""

    def execute(self, context, card):
        steps = card.get_int("step", 1)
        if steps < 0:
            raise card.error("step must not be negative")
        lifecycle = context.lifecycle
        before = lifecycle.mesh.n_cells
        snapshot = capture(context.system)
        old = lifecycle.gather()
        new_mesh = uniformly_refine(old, steps) if old is not None else None
        rebuild_on(context, new_mesh, snapshot)
        logger.info("REFINE.UNIFORM x%d: %d -> %d cells", steps, before, lifecycle.mesh.n_cells)


def _require_2d(context, card):
    if context.system.dimension != 2:
        raise UnsupportedOperationError(f"{card.location} {card.key}: the device is already 3D")


class ExtendCommand(Command):
    """Extrude the 2D device along z."""

    def execute(self, context, card):
        width = card.get_real("z.width", 1.0)
        n_spaces = card.get_int("n.spaces", 1)
        z_min = card.get_real("z.min", 0.0)
        if width <= 0.0 or n_spaces < 1:
            raise card.error("z.width must be positive and n.spaces at least 1")
        _require_2d(context, card)
        snapshot = capture(context.system)
        old = context.lifecycle.gather()
        new_mesh = extend_to_3d(old, width, n_spaces, z_min) if old is not None else None
        # 2D profile definitions do not describe the 3D device; fields are projected.
        rebuild_on(context, new_mesh, snapshot, project=project_extruded, regenerate=False)
        context.doping_solver = None
        context.mole_solver = None


class RotateCommand(Command):
    """Revolve the 2D device about the y axis."""

    def execute(self, context, card):
        angle = card.get_real("angle", 360.0)
        n_spaces = card.get_int("n.spaces", 8)
        if n_spaces < 1 or not 0.0 < angle <= 360.0:
            raise card.error("angle must be in (0, 360] and n.spaces at least 1")
        if angle == 360.0 and n_spaces < 3:
            raise card.error("a full revolution needs n.spaces >= 3")
        _require_2d(context, card)
        snapshot = capture(context.system)
        old = context.lifecycle.gather()
        new_mesh = rotate_to_3d(old, angle, n_spaces) if old is not None else None
        rebuild_on(context, new_mesh, snapshot, project=project_rotated, regenerate=False)
        context.doping_solver = None
        context.mole_solver = None


class PlotMeshCommand(Command):
    def execute(self, context, card):
        if not context.lifecycle.is_primary:
            return
        import matplotlib.pyplot as plt

        from visualization.plotting import plot_mesh

        output = card.get_string("tiff.out", "mesh.tiff")
        fig = plot_mesh(
            context.system.mesh,
            y_inverse=card.get_bool("y.inverse", False),
            no_axes=card.get_bool("no.axis", False),
            output=output,
        )
        if fig is not None:
            plt.close(fig)
