"""Commands that configure models, methods, hooks, sources and field values."""

import logging
import re

from commands.base import Command
from core.units import eval_unit
from parameters.advanced_model import AdvancedModel
from parameters.solver_settings import MethodSettings
from runtime.region import PMIModel

logger = logging.getLogger("device_solver")


def _matching_regions(context, card):
    pattern = card.get_string("region", ".*")
    try:
        regions = [r for r in context.system.regions if re.fullmatch(pattern, r.name)]
    except re.error as exc:
        raise card.error(f"invalid region pattern '{pattern}': {exc}") from None
    if not regions:
        raise card.error(f"no region matches '{pattern}'")
    return regions


def _scaled_value(card):
    if not card.is_parameter_exist("value"):
        raise card.error(f"{card.key} requires a 'value'")
    unit_expr = card.get_string("unit", "1")
    try:
        unit = eval_unit(unit_expr)
    except (ValueError, SyntaxError, ZeroDivisionError) as exc:
        raise card.error(f"invalid unit '{unit_expr}': {exc}") from None
    return card.get_real("value") * unit


class ModelCommand(Command):
    """Assign an advanced model to every region matching ``region``."""

    def execute(self, context, card):
        model = AdvancedModel.from_card(card)
        regions = _matching_regions(context, card)
        for region in regions:
            region.advanced_model = model
        logger.info("MODEL applied to regions %s", [r.name for r in regions])
        if context.system.enable_lattice_temperature_everywhere():
            logger.warning(
                "%s MODEL: lattice temperature is enabled in some region; enabling it in all regions.",
                card.location,
            )


class MethodCommand(Command):
    def execute(self, context, card):
        context.settings = MethodSettings.from_card(card)
        logger.info(
            "METHOD %s (damping=%s, maxiteration=%d, relative.tol=%g)",
            context.settings.solver_type.value,
            context.settings.damping.value,
            context.settings.max_iteration,
            context.settings.relative_tol,
        )
        logger.debug("METHOD settings: %s", context.settings.as_dict())


class PMICommand(Command):
    """Select a physical model implementation for matching regions."""

    def execute(self, context, card):
        kind = card.get_string("type")
        if kind is None:
            raise card.error("PMI requires a 'type'")
        model = card.get_string("model", "Default")
        params = card.user_parameters({"region", "type", "model", "print"})
        for region in _matching_regions(context, card):
            region.pmi[kind.lower()] = PMIModel(kind.lower(), model, dict(params))
            if card.get_int("print", 0) > 0:
                logger.info("Region '%s': %s model '%s' %s", region.name, kind, model, params)


class HookCommand(Command):
    """Register (``load``) or remove (``unload``) a solver hook."""

    def execute(self, context, card):
        if card.is_parameter_exist("unload"):
            context.hooks.unregister(card.get_string("unload"))
            return
        implementation = card.get_string("load")
        if implementation is None:
            raise card.error("HOOK requires 'load' or 'unload'")
        hook_id = card.get_string("id", implementation)
        params = card.user_parameters({"load", "id"})
        try:
            context.hooks.register(hook_id, implementation.lower(), params)
        except KeyError:
            raise card.error(f"hook implementation '{implementation}' not found") from None
        logger.info("Hook '%s' (%s) loaded", hook_id, implementation)


class NodeSetCommand(Command):
    """Initial potential of an electrode."""

    def execute(self, context, card):
        electrode = card.get_string("electrode")
        if electrode is None or not context.system.boundaries.is_electrode(electrode):
            raise card.error(f"electrode '{electrode}' does not exist in the device structure")
        value = card.get_real("v", 0.0)
        for bc in context.system.boundaries.get_bcs_by_electrode_label(electrode):
            bc.initial_potential = value


class RegionSetCommand(Command):
    """Set one nodal variable of a region to ``value * unit``."""

    def execute(self, context, card):
        name = card.get_string("region")
        if name is None or not context.system.has_region(name):
            raise card.error(f"region '{name}' does not exist")
        region = context.system.region(name)
        variable = card.get_string("variable", "").lower()
        if not region.has_variable(variable):
            raise card.error(f"variable '{variable}' does not exist in region '{name}'")
        region.set_variable(variable, _scaled_value(card))
        if card.get_bool("reinit", False):
            region.init_carriers()


class BoundarySetCommand(Command):
    """Set one scalar of a boundary condition to ``value * unit``."""

    def execute(self, context, card):
        label = card.get_string("boundary", card.get_string("id"))
        if label is None or not context.system.boundaries.has_bc(label):
            raise card.error(f"boundary '{label}' does not exist")
        variable = card.get_string("variable")
        if variable is None:
            raise card.error("BOUNDARYSET requires a 'variable'")
        context.system.boundaries.get_bc(label).scalars[variable.lower()] = _scaled_value(card)


class AttachCommand(Command):
    """Bind constant values or named VSOURCE/ISOURCE waveforms to an electrode."""

    def execute(self, context, card):
        electrode = card.get_string("electrode", card.get_string("contact"))
        if electrode is None or not context.system.boundaries.is_electrode(electrode):
            raise card.error(f"electrode '{electrode}' does not exist in the device structure")
        voltage = card.is_parameter_exist("vconst") or card.is_parameter_exist("vapp")
        current = card.is_parameter_exist("iconst") or card.is_parameter_exist("iapp")
        if voltage and current:
            raise card.error("voltage and current sources can not be attached together")
        sources = context.system.sources
        try:
            if card.is_parameter_exist("vconst"):
                sources.attach_constant(electrode, "voltage", card.get_real("vconst"))
            elif card.is_parameter_exist("iconst"):
                sources.attach_constant(electrode, "current", card.get_real("iconst"))
            elif card.is_parameter_exist("vapp"):
                sources.attach_voltage(electrode, card.get_n_string("vapp"))
            elif card.is_parameter_exist("iapp"):
                sources.attach_current(electrode, card.get_n_string("iapp"))
            else:
                raise card.error("ATTACH requires vconst, iconst, vapp or iapp")
        except KeyError as exc:
            raise card.error(str(exc.args[0])) from None


class SourceApplyCommand(Command):
    def execute(self, context, card):
        context.system.field_source.update_source(context.system)
