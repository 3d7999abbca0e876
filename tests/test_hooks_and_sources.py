import json
import logging
import os
import sys
from types import SimpleNamespace

import numpy as np
import pytest
import yaml

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from commands.mesh_ops import PlotMeshCommand
from core.deck import Card, Deck
from runtime.hooks import CVHook, ControlHook, HookRegistry, IVRecorderHook, MonitorHook
from runtime.results import ResultDocument
from runtime.sources import ElectricalSources, FieldSource, PulseWaveform, SinWaveform
from sample_decks import build_context, resistor_cards


def _solver(**kwargs):
    config = SimpleNamespace(out_prefix="result", out_append=False)
    return SimpleNamespace(is_primary=True, config=config, **kwargs)


def _snapshot(sweep, current):
    return {
        "sweep": sweep,
        "electrodes": {
            "anode": {"voltage": sweep, "current": current},
            "cathode": {"voltage": 0.0, "current": -current},
        },
    }


def test_result_document_prunes_and_saves_by_suffix(tmp_path):
    doc = ResultDocument()
    empty = doc.new_group("nothing")
    kept = doc.new_group("iv", "dcsweep")
    kept.add({"sweep": 0.0})
    assert doc.prune(empty) is True
    assert doc.prune(kept) is False
    assert doc.find("iv") == [kept]

    doc.save(str(tmp_path / "out.json"))
    doc.save(str(tmp_path / "out.yaml"))
    from_json = json.loads((tmp_path / "out.json").read_text())
    from_yaml = yaml.safe_load((tmp_path / "out.yaml").read_text())
    assert from_json == from_yaml == {
        "solutions": [{"label": "iv", "type": "dcsweep", "solution": [{"sweep": 0.0}]}]
    }
    assert not (tmp_path / "out.json.tmp").exists()


def test_control_hook_rewrites_the_document_each_step(tmp_path):
    doc = ResultDocument()
    group = doc.new_group("iv")
    path = tmp_path / "live.json"
    hook = ControlHook(doc, str(path))
    for step in range(2):
        group.add({"index": step})
        hook.post_solve(_solver(), group.solutions[-1])
        assert len(json.loads(path.read_text())["solutions"][0]["solution"]) == step + 1


def test_iv_recorder_writes_a_table(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    hook = IVRecorderHook()
    solver = _solver()
    hook.on_init(solver)
    hook.post_solve(solver, _snapshot(0.0, 0.0))
    hook.post_solve(solver, _snapshot(0.1, 2e-6))
    hook.on_close(solver)

    lines = (tmp_path / "result.dat").read_text().splitlines()
    assert lines[0] == "# sweep\tanode.V\tanode.I\tcathode.V\tcathode.I"
    assert [float(v) for v in lines[2].split("\t")] == pytest.approx([0.1, 0.1, 2e-6, 0.0, -2e-6])


def test_recorders_stay_silent_on_secondary_workers(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    hook = IVRecorderHook()
    solver = _solver()
    solver.is_primary = False
    hook.post_solve(solver, _snapshot(0.0, 0.0))
    hook.on_close(solver)
    assert list(tmp_path.iterdir()) == []


def test_monitor_hook_follows_the_nearest_node(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    context = build_context(resistor_cards())
    hook = MonitorHook("mid", {"variable": "potential", "x": 0.5, "y": 0.26})
    solver = _solver(system=context.system)
    hook.on_init(solver)

    region, idx = hook._target
    assert np.allclose(context.system.mesh.points[region.node_ids[idx]], [0.5, 0.25])
    region.variables["potential"][idx] = 0.3
    hook.post_solve(solver, {"sweep": 1.0})
    hook.on_close(solver)
    lines = (tmp_path / "mid.dat").read_text().splitlines()
    assert lines[0] == "# step\tpotential"
    assert [float(v) for v in lines[1].split("\t")] == pytest.approx([1.0, 0.3])


def test_monitor_hook_rejects_unknown_variables():
    context = build_context(resistor_cards())
    hook = MonitorHook("p", {"variable": "lattice"})
    with pytest.raises(KeyError, match="lattice"):
        hook.on_init(_solver(system=context.system))


def test_cv_hook_tabulates_the_scanned_electrode(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    hook = CVHook()
    solver = _solver()
    hook.on_init(solver)
    hook.post_solve(solver, {"frequency": 1e6, "sweep": 0.0})
    hook.post_solve(
        solver,
        {
            "frequency": 1e6,
            "acscan": "gate",
            "admittance": {"gate": {"capacitance": 1e-15, "conductance": 2e-9}},
        },
    )
    hook.on_close(solver)
    lines = (tmp_path / "result.cv.dat").read_text().splitlines()
    assert lines[0] == "# frequency\tC\tG"
    assert len(lines) == 2


def test_hook_registry_replaces_and_orders(caplog):
    registry = HookRegistry()
    registry.register("b", "iv")
    registry.register("a", "monitor", {"x": 0.1})
    with caplog.at_level(logging.WARNING, logger="device_solver"):
        registry.register("b", "cv")
    assert "already loaded" in caplog.text
    hooks = registry.instantiate()
    assert [(h.name, type(h)) for h in hooks] == [("a", MonitorHook), ("b", CVHook)]
    assert hooks[0].params == {"x": 0.1}
    with pytest.raises(KeyError):
        registry.register("c", "tracer")
    assert registry.unregister("a") is True
    assert len(registry) == 1


def test_waveforms():
    pulse = PulseWaveform(0.0, 1.0, td=1e-9, tr=1e-9, tf=1e-9, pw=2e-9, pr=1e-8)
    assert pulse.value(0.5e-9) == 0.0
    assert pulse.value(1.5e-9) == pytest.approx(0.5)
    assert pulse.value(3e-9) == 1.0
    assert pulse.value(4.5e-9) == pytest.approx(0.5)
    assert pulse.value(8e-9) == 0.0
    assert pulse.value(13e-9) == 1.0

    sine = SinWaveform(0.2, 0.1, 1e6, td=1e-6)
    assert sine.value(0.0) == 0.2
    assert sine.value(1e-6 + 0.25e-6) == pytest.approx(0.3)


def test_sources_from_deck_sum_on_an_electrode():
    deck = Deck.from_list(
        [
            {"VSOURCE": {"id": "bias", "type": "vdc", "vconst": 0.5}},
            {"VSOURCE": {"id": "step", "type": "vpulse", "v1": 0, "v2": 1, "td": 0, "tr": 1e-9, "pw": 1e-8, "pr": 0}},
            {"ISOURCE": {"id": "leak", "type": "idc", "iconst": 1e-9}},
        ]
    )
    sources = ElectricalSources(deck)
    assert sources.has_vsource("step") and sources.has_isource("leak")
    assert sources.drive("anode") == ("voltage", 0.0)

    sources.attach_voltage("anode", ["bias", "step"])
    assert sources.drive("anode", 0.0) == ("voltage", pytest.approx(0.5))
    assert sources.drive("anode", 5e-9) == ("voltage", pytest.approx(1.5))
    sources.attach_current("anode", ["leak"])
    assert sources.drive("anode") == ("current", pytest.approx(1e-9))
    with pytest.raises(KeyError, match="ghost"):
        sources.attach_voltage("cathode", ["ghost"])


def test_light_generation_follows_the_envelope():
    extra = [
        {"LIGHT": {"region": "bulk", "opt.gen": 1e20, "x.max": 0.5}},
        {"ENVELOP": {"id": "half", "type": "uniform", "amplitude": 0.5}},
    ]
    context = build_context(resistor_cards(extra=extra))
    field = FieldSource(context.deck)
    field.update_source(context.system)
    bulk = context.system.region("bulk")
    x = context.system.mesh.points[bulk.node_ids, 0]
    assert np.all(bulk.variables["opt_g"][x <= 0.5] == 1e20)
    assert np.all(bulk.variables["opt_g"][x > 0.5] == 0.0)

    assert field.scale(0.0) == 1.0
    field.set_effect_waveform("half")
    assert field.scale(0.0) == 0.5
    with pytest.raises(KeyError):
        field.set_effect_waveform("missing")


def test_mole_profile_grades_a_compound_region():
    cards = [
        {"MESH": {"type": "s_tri3"}},
        {"X.MESH": {"width": 1.0, "n.spaces": 2}},
        {"Y.MESH": {"width": 1.0, "n.spaces": 4}},
        {"REGION": {"label": "barrier", "material": "AlGaAs"}},
        {"MOLE": {"region": "barrier", "x.mole": 0.1, "x.mole.end": 0.3}},
    ]
    context = build_context(cards)
    barrier = context.system.region("barrier")
    y = context.system.mesh.points[barrier.node_ids, 1]
    assert np.allclose(barrier.variables["mole_x"], 0.1 + 0.2 * y)
    assert np.all(barrier.variables["mole_y"] == 0.0)
    assert context.mole_solver is not None


def test_mole_card_without_a_compound_region_is_fatal():
    from core.exceptions import ConfigurationError

    with pytest.raises(ConfigurationError, match="no compound region"):
        build_context(resistor_cards(extra=[{"MOLE": {"x.mole": 0.2}}]))


def test_plotmesh_saves_an_image(tmp_path):
    context = build_context(resistor_cards())
    out = tmp_path / "mesh.png"
    PlotMeshCommand().execute(context, Card("PLOTMESH", {"tiff.out": str(out)}))
    assert out.exists() and out.stat().st_size > 0
