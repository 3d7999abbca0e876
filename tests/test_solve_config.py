import os
import sys
from types import SimpleNamespace

import numpy as np
import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.deck import Card
from core.exceptions import ConfigurationError
from parameters.solve_config import SolutionType, SolveConfig, TSType
from runtime.boundary import BCType, BoundaryCondition, BoundaryConditionCollection


def _system(has_dc_solution=False, envelopes=()):
    boundaries = BoundaryConditionCollection(
        [
            BoundaryCondition("anode", BCType.OHMIC, np.array([0, 1])),
            BoundaryCondition("cathode", BCType.OHMIC, np.array([2, 3])),
            BoundaryCondition("drain_a", BCType.OHMIC, np.array([4]), electrode_label="drain"),
            BoundaryCondition("drain_b", BCType.OHMIC, np.array([5]), electrode_label="drain"),
            BoundaryCondition("side", BCType.NEUMANN, np.array([6])),
        ]
    )
    field_source = SimpleNamespace(has_envelope=lambda name: name in envelopes)
    return SimpleNamespace(
        boundaries=boundaries, field_source=field_source, has_dc_solution=has_dc_solution
    )


def _config(params, system=None):
    return SolveConfig.from_card(Card("SOLVE", params, "run.yaml:7"), system or _system())


def test_type_is_required():
    with pytest.raises(ConfigurationError, match="requires a 'type'"):
        _config({})


def test_equilibrium_defaults():
    config = _config({"type": "Equilibrium"})
    assert config.solution_type is SolutionType.EQUILIBRIUM
    assert config.label == "equilibrium"
    assert config.out_prefix == "result"
    assert config.dc is None and config.steady is None


def test_dcsweep_voltage_scan():
    config = _config(
        {"type": "dcsweep", "vscan": "anode", "vstart": 0, "vstep": 0.1, "vstop": 1, "label": "iv"}
    )
    assert config.label == "iv"
    assert config.dc.mode == "voltage"
    assert config.dc.electrodes == ("anode",)
    assert config.dc.stepmax == pytest.approx(0.1)


def test_dcsweep_stepmax_is_never_below_the_step():
    config = _config({"type": "dcsweep", "iscan": "cathode", "istep": 1e-6, "istop": 1e-5, "istepmax": 1e-8})
    assert config.dc.mode == "current"
    assert config.dc.stepmax == pytest.approx(1e-6)


@pytest.mark.parametrize(
    "params, message",
    [
        ({"vscan": "anode", "vstep": 0}, "vstep must not be zero"),
        ({"vscan": "anode", "vstep": -0.1, "vstop": 1}, "sign does not lead"),
        ({"vscan": "anode", "iscan": "cathode"}, "can not be given at the same time"),
        ({}, "either vscan or iscan"),
        ({"vscan": "gate"}, "electrode 'gate' does not exist"),
        ({"vscan": "side"}, "electrode 'side' does not exist"),
    ],
)
def test_dcsweep_validation(params, message):
    with pytest.raises(ConfigurationError, match=message) as excinfo:
        _config({"type": "dcsweep", **params})
    assert str(excinfo.value).startswith("ERROR at run.yaml:7 SOLVE:")


def test_steadystate_bias_requests():
    config = _config({"type": "op", "electrode": "anode", "vconst": 0.7})
    assert config.solution_type is SolutionType.OP
    assert config.steady.vconst == pytest.approx(0.7)
    assert config.steady.iconst is None

    with pytest.raises(ConfigurationError, match="same time"):
        _config({"type": "steadystate", "electrode": "anode", "vconst": 1, "iconst": 1})
    with pytest.raises(ConfigurationError, match="require an 'electrode'"):
        _config({"type": "steadystate", "vconst": 1})
    with pytest.raises(ConfigurationError, match="requires vconst or iconst"):
        _config({"type": "steadystate", "electrode": "anode"})


def test_trace_needs_a_single_boundary_electrode():
    config = _config({"type": "trace", "vscan": "anode", "vstep": 0.05, "istop": -1e-3})
    assert config.trace.istop == pytest.approx(1e-3)
    assert config.trace.vstepmax == pytest.approx(0.05)
    with pytest.raises(ConfigurationError, match="single boundary"):
        _config({"type": "trace", "vscan": "drain"})
    with pytest.raises(ConfigurationError, match="exactly one vscan"):
        _config({"type": "trace", "vscan": "anode, cathode"})


def test_acsweep_requires_a_dc_solution():
    params = {"type": "acsweep", "acscan": "anode", "f.start": 1e6, "f.stop": 1e9, "f.multiple": 10}
    with pytest.raises(ConfigurationError, match="converged steady-state or DC solution"):
        _config(params)
    config = _config(params, _system(has_dc_solution=True))
    assert config.solution_type is SolutionType.ACSWEEP
    assert config.ac.f_multiple == pytest.approx(10.0)


def test_acsweep_frequency_validation():
    system = _system(has_dc_solution=True)
    with pytest.raises(ConfigurationError, match="f.multiple"):
        _config({"type": "acsweep", "acscan": "anode", "f.multiple": 1.0}, system)
    with pytest.raises(ConfigurationError, match="f.stop"):
        _config({"type": "acsweep", "acscan": "anode", "f.start": 1e9, "f.stop": 1e6}, system)


def test_transient_scheme_and_window():
    config = _config({"type": "transient", "ts": "ImplicitEuler", "tstop": 1e-8})
    assert config.transient.scheme is TSType.BDF1
    with pytest.raises(ConfigurationError, match="tstop must be greater"):
        _config({"type": "transient", "tstart": 1e-6, "tstop": 1e-6})
    with pytest.raises(ConfigurationError, match="tstep must be positive"):
        _config({"type": "transient", "tstep": 0})


def test_optical_modulation_must_name_an_envelope():
    with pytest.raises(ConfigurationError, match="unknown envelope"):
        _config({"type": "equilibrium", "optical.modulate": "flash"})
    config = _config(
        {"type": "equilibrium", "optical.modulate": "flash"}, _system(envelopes=("flash",))
    )
    assert config.optical_modulate == "flash"
