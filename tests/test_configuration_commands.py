import logging
import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from commands.configuration import (
    AttachCommand,
    BoundarySetCommand,
    HookCommand,
    MethodCommand,
    ModelCommand,
    NodeSetCommand,
    PMICommand,
    RegionSetCommand,
    SourceApplyCommand,
)
from core.deck import Card
from core.exceptions import ConfigurationError
from parameters.solver_settings import Damping, SolverType
from sample_decks import build_context, moscap_cards, resistor_cards


def test_model_applies_to_matching_regions():
    context = build_context(resistor_cards())
    ModelCommand().execute(context, Card("MODEL", {"region": "bu.*", "h.mob": "false"}))
    assert context.system.region("bulk").advanced_model.high_field_mobility is False


def test_lattice_temperature_is_enabled_everywhere(caplog):
    context = build_context(moscap_cards())
    with caplog.at_level(logging.WARNING, logger="device_solver"):
        ModelCommand().execute(context, Card("MODEL", {"region": "substrate", "eb.level": "tl"}))
    assert context.system.region("oxide").advanced_model.enable_tl()
    assert "lattice temperature" in caplog.text


def test_region_patterns_must_match():
    context = build_context(resistor_cards())
    with pytest.raises(ConfigurationError, match="no region matches"):
        ModelCommand().execute(context, Card("MODEL", {"region": "gate.*"}))
    with pytest.raises(ConfigurationError, match="invalid region pattern"):
        ModelCommand().execute(context, Card("MODEL", {"region": "("}))


def test_method_replaces_the_settings():
    context = build_context(resistor_cards())
    MethodCommand().execute(
        context, Card("METHOD", {"type": "DDML1", "damping": "bankrose", "maxiteration": 12})
    )
    assert context.settings.solver_type is SolverType.DDML1
    assert context.settings.damping is Damping.BANKROSE
    assert context.settings.max_iteration == 12


def test_pmi_keeps_user_parameters():
    context = build_context(resistor_cards())
    PMICommand().execute(
        context, Card("PMI", {"region": "bulk", "type": "Mobility", "model": "Lucent", "fitting": 2})
    )
    pmi = context.system.region("bulk").pmi["mobility"]
    assert pmi.model == "Lucent"
    assert pmi.params == {"fitting": 2}
    with pytest.raises(ConfigurationError, match="requires a 'type'"):
        PMICommand().execute(context, Card("PMI", {"region": "bulk"}))


def test_hook_load_and_unload(caplog):
    context = build_context(resistor_cards())
    HookCommand().execute(context, Card("HOOK", {"load": "Monitor", "id": "p1", "x": 0.5}))
    assert "p1" in context.hooks
    assert context.hooks.get("p1").implementation == "monitor"
    assert context.hooks.get("p1").params == {"x": 0.5}

    with caplog.at_level(logging.WARNING, logger="device_solver"):
        HookCommand().execute(context, Card("HOOK", {"unload": "nope"}))
    assert "nothing to unload" in caplog.text

    HookCommand().execute(context, Card("HOOK", {"unload": "p1"}))
    assert len(context.hooks) == 0


def test_unknown_hook_implementation_is_fatal():
    context = build_context(resistor_cards())
    with pytest.raises(ConfigurationError, match="not found"):
        HookCommand().execute(context, Card("HOOK", {"load": "telemetry"}))
    with pytest.raises(ConfigurationError, match="'load' or 'unload'"):
        HookCommand().execute(context, Card("HOOK", {}))


def test_nodeset_sets_the_initial_contact_potential():
    context = build_context(resistor_cards())
    NodeSetCommand().execute(context, Card("NODESET", {"electrode": "anode", "v": 0.3}))
    bc = context.system.boundaries.electrode_bc("anode")
    assert bc.initial_potential == pytest.approx(0.3)
    assert bc.potential == 0.0
    with pytest.raises(ConfigurationError, match="does not exist"):
        NodeSetCommand().execute(context, Card("NODESET", {"electrode": "drain"}))


def test_regionset_scales_by_unit():
    context = build_context(resistor_cards())
    RegionSetCommand().execute(
        context, Card("REGIONSET", {"region": "bulk", "variable": "NA", "value": 2, "unit": "um^-3"})
    )
    assert np.allclose(context.system.region("bulk").variables["na"], 2e12)

    with pytest.raises(ConfigurationError, match="does not exist in region"):
        RegionSetCommand().execute(
            context, Card("REGIONSET", {"region": "bulk", "variable": "spin", "value": 1})
        )
    with pytest.raises(ConfigurationError, match="requires a 'value'"):
        RegionSetCommand().execute(context, Card("REGIONSET", {"region": "bulk", "variable": "na"}))
    with pytest.raises(ConfigurationError, match="invalid unit"):
        RegionSetCommand().execute(
            context, Card("REGIONSET", {"region": "bulk", "variable": "na", "value": 1, "unit": "furlong"})
        )


def test_regionset_reinit_recomputes_carriers():
    context = build_context(resistor_cards())
    RegionSetCommand().execute(
        context,
        Card("REGIONSET", {"region": "bulk", "variable": "nd", "value": 1e18, "reinit": True}),
    )
    assert np.allclose(context.system.region("bulk").variables["electron"], 1e18, rtol=1e-6)


def test_boundaryset_updates_a_scalar():
    context = build_context(moscap_cards())
    BoundarySetCommand().execute(
        context, Card("BOUNDARYSET", {"boundary": "gate", "variable": "WorkFunction", "value": 4.5})
    )
    assert context.system.boundaries.get_bc("gate").workfunction == pytest.approx(4.5)
    with pytest.raises(ConfigurationError, match="does not exist"):
        BoundarySetCommand().execute(context, Card("BOUNDARYSET", {"boundary": "drain", "value": 1}))


def test_attach_named_sources_adds_waveforms():
    extra = [
        {"VSOURCE": {"id": "bias", "type": "vdc", "vconst": 0.5}},
        {"VSOURCE": {"id": "ripple", "type": "vsin", "v0": 0.0, "vamp": 0.1, "freq": 1e6}},
    ]
    context = build_context(resistor_cards(extra=extra))
    AttachCommand().execute(context, Card("ATTACH", {"electrode": "anode", "vapp": "bias, ripple"}))
    sources = context.system.sources
    assert sources.is_attached("anode")
    mode, value = sources.drive("anode", 0.25e-6)
    assert mode == "voltage"
    assert value == pytest.approx(0.6)


def test_attach_rejects_bad_requests():
    context = build_context(resistor_cards())
    with pytest.raises(ConfigurationError, match="can not be attached together"):
        AttachCommand().execute(context, Card("ATTACH", {"electrode": "anode", "vconst": 1, "iconst": 1}))
    with pytest.raises(ConfigurationError, match="not defined"):
        AttachCommand().execute(context, Card("ATTACH", {"electrode": "anode", "vapp": "missing"}))
    with pytest.raises(ConfigurationError, match="does not exist"):
        AttachCommand().execute(context, Card("ATTACH", {"electrode": "gate", "vconst": 1}))
    with pytest.raises(ConfigurationError, match="requires vconst"):
        AttachCommand().execute(context, Card("ATTACH", {"electrode": "anode"}))


def test_attach_constant_current():
    context = build_context(resistor_cards())
    AttachCommand().execute(context, Card("ATTACH", {"electrode": "cathode", "iconst": "1e-6"}))
    assert context.system.sources.drive("cathode") == ("current", pytest.approx(1e-6))


def test_sourceapply_recomputes_optical_generation():
    extra = [{"LIGHT": {"region": "bulk", "opt.gen": 1e20, "x.max": 0.5}}]
    context = build_context(resistor_cards(extra=extra))
    bulk = context.system.region("bulk")
    bulk.variables["opt_g"][:] = 0.0
    SourceApplyCommand().execute(context, Card("SOURCEAPPLY", {}))
    x = context.system.mesh.points[bulk.node_ids, 0]
    assert np.allclose(bulk.variables["opt_g"][x <= 0.5], 1e20)
    assert np.allclose(bulk.variables["opt_g"][x > 0.5], 0.0)
