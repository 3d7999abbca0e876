import os
import sys
from types import SimpleNamespace

import numpy as np
import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.deck import Card
from core.exceptions import ConvergenceError
from parameters.solve_config import SolveConfig
from parameters.solver_settings import MethodSettings
from runtime.boundary import BCType, BoundaryCondition, BoundaryConditionCollection
from runtime.continuation import extrapolate, ramp_bias, run_continuation
from runtime.results import SolutionGroup
from runtime.solvers.base import SolverBase
from runtime.sources import ElectricalSources


def _system():
    boundaries = BoundaryConditionCollection(
        [
            BoundaryCondition("anode", BCType.OHMIC, np.array([0])),
            BoundaryCondition("cathode", BCType.OHMIC, np.array([1])),
        ]
    )
    return SimpleNamespace(
        boundaries=boundaries,
        sources=ElectricalSources(),
        field_source=SimpleNamespace(has_envelope=lambda name: False),
        has_dc_solution=True,
    )


class FakeSolver(SolverBase):
    """Converges instantly unless ``fail_when(self)`` says otherwise."""

    formulation = "fake"

    def __init__(self, params, fail_when=None, iterations=2):
        system = _system()
        config = SolveConfig.from_card(Card("SOLVE", params), system)
        super().__init__(system, MethodSettings(), config)
        self.fail_when = fail_when or (lambda solver: False)
        self.iterations = iterations
        self.state = np.zeros(1)
        self.calls = 0
        self.successes = 0
        self.result_group = SolutionGroup(config.label)

    def setup(self):
        pass

    def solve_point(self):
        self.calls += 1
        if self.fail_when(self):
            return False
        for label in self.electrode_labels():
            mode, value = self.drive(label)
            if mode == "voltage":
                self.voltages[label] = value
                self.currents[label] = 1e-3 * value
            else:
                self.currents[label] = value
        self.state = np.array([self.voltages.get("anode", 0.0)])
        self.last_iterations = self.iterations
        self.successes += 1
        return True

    def save_state(self):
        return {"x": self.state.copy(), "voltages": dict(self.voltages)}

    def restore_state(self, state):
        self.state = state["x"].copy()
        self.voltages = dict(state["voltages"])

    def sync_to_system(self):
        pass

    def solve_ac(self, frequency, electrode, vac):
        return {electrode: {"conductance": 1e-6, "capacitance": 1e-15}}

    @property
    def swept(self):
        return [s["sweep"] for s in self.result_group.solutions]


def _anode_bias(solver):
    return solver.overrides["anode"][1]


def test_dc_sweep_records_every_step():
    solver = FakeSolver({"type": "dcsweep", "vscan": "anode", "vstart": 0, "vstep": 0.1, "vstop": 1})
    solver.create_solver()
    run_continuation(solver)
    assert len(solver.result_group) == 11
    assert solver.swept[0] == 0.0
    assert solver.swept[-1] == 1.0
    assert np.allclose(np.diff(solver.swept), 0.1)
    assert solver.system.has_dc_solution is True


def test_dc_sweep_points_sit_on_the_step_grid():
    solver = FakeSolver({"type": "dcsweep", "vscan": "anode", "vstart": 0, "vstep": 0.1, "vstop": 1})
    solver.create_solver()
    run_continuation(solver)
    assert solver.swept == [k / 10 for k in range(11)]


def test_dc_sweep_grows_only_after_a_full_step():
    solver = FakeSolver(
        {"type": "dcsweep", "vscan": "anode", "vstep": 0.1, "vstepmax": 0.4, "vstop": 1}
    )
    solver.create_solver()
    run_continuation(solver)
    assert solver.swept == [0.0, 0.1, 0.3, 0.7, 1.0]


def test_dc_sweep_keeps_the_nominal_step_when_iterations_are_slow():
    solver = FakeSolver(
        {"type": "dcsweep", "vscan": "anode", "vstep": 0.1, "vstepmax": 0.4, "vstop": 0.5},
        iterations=8,
    )
    solver.create_solver()
    run_continuation(solver)
    assert solver.swept == [0.0, 0.1, 0.2, 0.3, 0.4, 0.5]


def test_dc_sweep_runs_downwards():
    solver = FakeSolver({"type": "dcsweep", "vscan": "anode", "vstep": -0.1, "vstop": -0.5})
    solver.create_solver()
    run_continuation(solver)
    assert solver.swept == [0.0, -0.1, -0.2, -0.3, -0.4, -0.5]
    assert solver.voltages["anode"] == -0.5


def test_dc_sweep_halves_the_step_on_failure():
    solver = FakeSolver(
        {"type": "dcsweep", "vscan": "anode", "vstep": 0.1, "vstop": 1, "predict": False},
        fail_when=lambda s: abs(_anode_bias(s) - 0.3) < 1e-9,
    )
    solver.create_solver()
    run_continuation(solver)
    assert any(v == pytest.approx(0.25) for v in solver.swept)
    assert all(abs(v - 0.3) > 1e-9 for v in solver.swept)
    assert solver.swept[-1] == 1.0


def test_dc_sweep_gives_up_after_repeated_halving():
    solver = FakeSolver(
        {"type": "dcsweep", "vscan": "anode", "vstep": 0.1, "vstop": 1},
        fail_when=lambda s: s.successes >= 3,
    )
    solver.create_solver()
    with pytest.raises(ConvergenceError, match="fell below") as excinfo:
        run_continuation(solver)
    assert excinfo.value.parameter == "anode"
    assert len(solver.result_group) == 3


def test_dc_sweep_first_point_failure_is_fatal():
    solver = FakeSolver(
        {"type": "dcsweep", "vscan": "anode", "vstep": 0.1, "vstop": 1},
        fail_when=lambda s: True,
    )
    solver.create_solver()
    with pytest.raises(ConvergenceError, match="first sweep point"):
        run_continuation(solver)
    assert len(solver.result_group) == 0


def test_ac_sweep_is_geometric():
    solver = FakeSolver(
        {"type": "acsweep", "acscan": "anode", "f.start": 1e6, "f.stop": 1e9, "f.multiple": 10}
    )
    solver.create_solver()
    run_continuation(solver)
    freqs = [s["frequency"] for s in solver.result_group.solutions]
    assert freqs == pytest.approx([1e6, 1e7, 1e8, 1e9])
    assert solver.result_group.solutions[0]["acscan"] == "anode"


def test_equilibrium_grounds_every_electrode():
    solver = FakeSolver({"type": "equilibrium"})
    solver.system.has_dc_solution = False
    solver.create_solver()
    run_continuation(solver)
    assert len(solver.result_group) == 1
    assert solver.voltages == {"anode": 0.0, "cathode": 0.0}
    assert solver.system.has_dc_solution is True


def test_steady_state_falls_back_to_bias_ramping():
    solver = FakeSolver(
        {"type": "steadystate", "electrode": "anode", "vconst": 1.0},
        fail_when=lambda s: abs(_anode_bias(s) - s.voltages.get("anode", 0.0)) > 0.3,
    )
    solver.create_solver()
    run_continuation(solver)
    assert solver.voltages["anode"] == pytest.approx(1.0)
    assert len(solver.result_group) == 1
    assert solver.calls > 10


def test_steady_state_current_drive():
    solver = FakeSolver({"type": "op", "electrode": "cathode", "iconst": 2e-3})
    solver.create_solver()
    run_continuation(solver)
    snapshot = solver.result_group.solutions[0]
    assert snapshot["electrodes"]["cathode"]["current"] == pytest.approx(2e-3)


def test_transient_fixed_steps_reach_tstop():
    solver = FakeSolver(
        {"type": "transient", "tstep": 1e-9, "tstop": 1e-8, "autostep": False, "ts": "bdf1"}
    )
    solver.create_solver()
    run_continuation(solver)
    times = [s["time"] for s in solver.result_group.solutions]
    assert len(times) == 11
    assert times[0] == 0.0
    assert times[-1] == pytest.approx(1e-8)
    assert solver.dt is None


def test_transient_failure_without_rejection_is_fatal():
    solver = FakeSolver(
        {"type": "transient", "tstep": 1e-9, "tstop": 1e-8, "rejectstep": False},
        fail_when=lambda s: s.time > 0.0,
    )
    solver.create_solver()
    with pytest.raises(ConvergenceError, match="did not converge"):
        run_continuation(solver)


def test_ramp_bias_reaches_the_target():
    solver = FakeSolver({"type": "equilibrium"})
    solver.create_solver()
    assert ramp_bias(solver, {"anode": ("voltage", 2.0)}, 0.25, 0.5)
    assert solver.voltages["anode"] == pytest.approx(2.0)


def test_extrapolate_only_touches_arrays():
    newer = {"x": np.array([2.0]), "voltages": {"a": 1.0}, "n": 3}
    older = {"x": np.array([1.0]), "voltages": {"a": 0.0}, "n": 2}
    out = extrapolate(newer, older, 0.5)
    assert out["x"].tolist() == [2.5]
    assert out["voltages"] == {"a": 1.0}
    assert out["n"] == 3


def _bias_jump(limit):
    """Fail whenever the anode moves by more than ``limit`` in one solve."""
    return lambda s: abs(s.drive("anode")[1] - s.voltages.get("anode", 0.0)) > limit


def test_dc_sweep_ramps_to_a_distant_first_point():
    solver = FakeSolver(
        {"type": "dcsweep", "vscan": "anode", "vstep": 0.1, "vstop": 0.3},
        fail_when=_bias_jump(0.15),
    )
    solver.create_solver()
    solver.voltages["anode"] = 1.0
    run_continuation(solver)
    assert solver.swept == [0.0, 0.1, 0.2, 0.3]
    assert solver.calls > 4


def test_rampup_steps_are_bounded_by_rampup_vstep():
    seen = []
    solver = FakeSolver(
        {
            "type": "steadystate",
            "electrode": "anode",
            "vconst": 1.0,
            "rampup.steps": 2,
            "rampup.vstep": 0.25,
        },
        fail_when=lambda s: seen.append(_anode_bias(s)) or False,
    )
    solver.create_solver()
    run_continuation(solver)
    assert seen == pytest.approx([0.25, 0.5, 0.75, 1.0, 1.0])


def test_nodeset_seeds_the_operating_point():
    solver = FakeSolver(
        {"type": "steadystate", "electrode": "anode", "vconst": 1.0}, fail_when=_bias_jump(0.3)
    )
    anode = solver.system.boundaries.electrode_bc("anode")
    anode.initial_potential = 0.9
    solver.create_solver()
    run_continuation(solver)
    assert solver.calls == 1
    assert anode.initial_potential is None


def test_nodeset_can_be_ignored():
    solver = FakeSolver(
        {"type": "steadystate", "electrode": "anode", "vconst": 1.0, "nodeset": False},
        fail_when=_bias_jump(0.3),
    )
    anode = solver.system.boundaries.electrode_bc("anode")
    anode.initial_potential = 0.9
    solver.create_solver()
    run_continuation(solver)
    assert solver.calls > 1
    assert anode.initial_potential == 0.9


def _gmin_needed():
    tried = []

    def fail(solver):
        tried.append(solver.gmin)
        return max(tried) <= 1e-12

    return tried, fail


def test_equilibrium_falls_back_to_gmin_stepping():
    tried, fail = _gmin_needed()
    solver = FakeSolver({"type": "equilibrium"}, fail_when=fail)
    solver.create_solver()
    run_continuation(solver)
    assert len(solver.result_group) == 1
    assert tried[1] == pytest.approx(1e-6)
    assert solver.gmin == pytest.approx(1e-12)


def test_steady_state_falls_back_to_gmin_after_the_ramp():
    tried, fail = _gmin_needed()
    solver = FakeSolver({"type": "steadystate", "electrode": "anode", "vconst": 1.0}, fail_when=fail)
    solver.create_solver()
    run_continuation(solver)
    assert solver.voltages["anode"] == pytest.approx(1.0)
    assert 1e-6 in tried
    assert solver.gmin == pytest.approx(1e-12)


def test_steady_state_relaxes_in_pseudo_time():
    def fail(s):
        return s.pseudo_dt is None and abs(_anode_bias(s) - s.state[0]) > 1e-12

    solver = FakeSolver({"type": "steadystate", "electrode": "anode", "vconst": 1.0}, fail_when=fail)
    solver.create_solver()
    run_continuation(solver)
    assert len(solver.result_group) == 1
    assert solver.voltages["anode"] == pytest.approx(1.0)
    assert solver.pseudo_dt is None


def test_steady_state_without_pseudo_time_gives_up():
    def fail(s):
        return s.pseudo_dt is None and abs(_anode_bias(s) - s.state[0]) > 1e-12

    solver = FakeSolver(
        {"type": "steadystate", "electrode": "anode", "vconst": 1.0, "op.steadystate": False},
        fail_when=fail,
    )
    solver.create_solver()
    with pytest.raises(ConvergenceError, match="operating point"):
        run_continuation(solver)


def test_trace_stops_at_the_current_limit():
    solver = FakeSolver({"type": "trace", "vscan": "anode", "vstep": 0.1, "vstop": 5, "istop": 4.5e-4})
    solver.create_solver()
    run_continuation(solver)
    assert solver.swept[-1] == pytest.approx(0.5)
    assert len(solver.result_group) == 6
    assert solver.electrode_current("anode") >= 4.5e-4


def test_trace_rejects_large_current_jumps():
    solver = FakeSolver(
        {
            "type": "trace",
            "vscan": "anode",
            "vstep": 0.1,
            "vstepmax": 0.4,
            "vstop": 1.0,
            "istop": 1.0,
            "istepmax": 1.5e-4,
        }
    )
    solver.create_solver()
    run_continuation(solver)
    assert solver.swept[-1] == 1.0
    assert np.all(np.diff(solver.swept) < 0.15)
    assert solver.calls > len(solver.result_group)


def test_transient_rampup_reaches_the_source_bias():
    solver = FakeSolver(
        {"type": "transient", "tstep": 1e-9, "tstop": 2e-9, "autostep": False, "rampup.steps": 4},
        fail_when=_bias_jump(0.3),
    )
    solver.create_solver()
    solver.voltages["anode"] = 1.0
    run_continuation(solver)
    assert [s["time"] for s in solver.result_group.solutions] == pytest.approx([0.0, 1e-9, 2e-9])
    assert solver.voltages["anode"] == 0.0
    assert solver.overrides == {}


def test_transient_operating_point_falls_back_to_a_ramp():
    solver = FakeSolver(
        {"type": "transient", "tstep": 1e-9, "tstop": 2e-9, "autostep": False, "vstepmax": 0.2},
        fail_when=_bias_jump(0.3),
    )
    solver.create_solver()
    solver.voltages["anode"] = 1.0
    run_continuation(solver)
    assert len(solver.result_group) == 3
    assert solver.calls > 3
    assert solver.overrides == {}


def test_transient_rejects_a_step_with_large_lte():
    errors = [4.0]
    solver = FakeSolver({"type": "transient", "tstep": 1e-9, "tstop": 5e-9, "ts": "bdf2"})
    solver.lte_norm = lambda predicted, rtol, atol: errors.pop(0) if errors else 0.5
    solver.create_solver()
    run_continuation(solver)
    times = [s["time"] for s in solver.result_group.solutions]
    assert times[:3] == pytest.approx([0.0, 1e-9, 1.5e-9])
    assert times[-1] == pytest.approx(5e-9)
    assert np.all(np.diff(times) > 0)
    assert errors == []
