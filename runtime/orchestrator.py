# runtime/orchestrator.py
"""Turn one SOLVE card into a configured solver run and its recorded results."""

from __future__ import annotations

import logging

from core.exceptions import HookError
from parameters.solve_config import SolutionType, SolveConfig
from runtime.hooks import ControlHook, IVRecorderHook
from runtime.solvers.registry import get_solver_class

logger = logging.getLogger("device_solver")


def attach_hooks(solver, context, config: SolveConfig) -> None:
    """Default recorder first, registered hooks by id, control hook last."""
    if config.solution_type is not SolutionType.EQUILIBRIUM:
        solver.add_hook(IVRecorderHook("iv"))
    for hook in context.hooks.instantiate():
        solver.add_hook(hook)
    solver.add_hook(ControlHook(context.document, context.solution_file))


def run_solve(context, card):
    """Resolve, run and record one solve request.

    Parameters
    ----------
    context : CommandContext
        Shared run state: system, method settings, hooks and result document.
    card : Card
        The SOLVE card.

    Returns
    -------
    SolutionGroup | None
        The group holding the recorded snapshots, or ``None`` when nothing was
        recorded or the formulation does not support the solution type.
    """
    system = context.system
    # Configuration errors are fatal here, before any solver exists.
    config = SolveConfig.from_card(card, system)
    settings = context.settings
    solver_cls = get_solver_class(settings.solver_type, config.solution_type)
    if solver_cls is None:
        logger.error(
            "%s SOLVE: formulation '%s' does not support solution type '%s'",
            card.location,
            settings.solver_type.value,
            config.solution_type.value,
        )
        return None

    solver = solver_cls(system, settings, config)
    solver.is_primary = context.lifecycle.is_primary
    group = context.document.new_group(config.label, config.solution_type.value)
    solver.result_group = group
    attach_hooks(solver, context, config)

    field_source = system.field_source
    if config.optical_modulate is not None:
        field_source.set_effect_waveform(config.optical_modulate)

    logger.info(
        "SOLVE '%s' (%s) with %s formulation", config.label, config.solution_type.value, solver.formulation
    )
    try:
        solver.create_solver()
        solver.solve()
    except HookError as exc:
        logger.error("%s SOLVE: %s; continuing in degraded mode.", card.location, exc)
        context.degraded = True
    finally:
        try:
            solver.destroy_solver()
        except HookError as exc:
            logger.error("%s SOLVE: %s; continuing in degraded mode.", card.location, exc)
            context.degraded = True
        solver.clear_bias()
        field_source.clear_effect_waveform()
        removed = context.document.prune(group)

    if removed:
        logger.warning("SOLVE '%s' recorded no solutions.", config.label)
        return None
    logger.info("SOLVE '%s' finished with %d solutions.", config.label, len(group))
    return group
