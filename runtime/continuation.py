# runtime/continuation.py
"""Continuation strategies: how each solution type walks its control parameter.

A strategy owns the outer loop of a solve. It sets electrode biases (or the
time step, or the frequency) on the solver, asks it to converge one point,
and decides how to recover when that fails: step halving, bias ramping, Gmin
stepping, pseudo-time relaxation or time-step rejection. Only once the local
recovery is exhausted does it raise :class:`ConvergenceError`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np

from core.exceptions import ConvergenceError
from parameters.solve_config import SolutionType, TSType

logger = logging.getLogger("device_solver")

MAX_HALVINGS = 10
FAST_ITERATIONS = 3
GMIN_FACTOR = 0.1


def attempt(solver) -> bool:
    """Solve the current point; on failure restore the previous state."""
    state = solver.save_state()
    if solver.solve_point():
        return True
    solver.restore_state(state)
    return False


def extrapolate(newer: dict, older: dict, ratio: float) -> dict:
    """Linear predictor ``newer + ratio * (newer - older)`` on array entries."""
    out = {}
    for key, value in newer.items():
        if isinstance(value, np.ndarray):
            out[key] = value + ratio * (value - older[key])
        elif isinstance(value, dict):
            out[key] = dict(value)
        else:
            out[key] = value
    return out


def state_change(a: dict, b: dict) -> float:
    change = 0.0
    for key, value in a.items():
        if isinstance(value, np.ndarray):
            change = max(change, float(np.max(np.abs(value - b[key]), initial=0.0)))
    return change


def attempt_predicted(solver, history: list, value: float, predict: bool) -> bool:
    """Try a point starting from the linear predictor, then from the last state."""
    if predict and len(history) >= 2:
        (v0, s0), (v1, s1) = history[-2], history[-1]
        if v1 != v0:
            base = solver.save_state()
            solver.restore_state(extrapolate(s1, s0, (value - v1) / (v1 - v0)))
            if solver.solve_point():
                return True
            solver.restore_state(base)
    return attempt(solver)


def gmin_stepping(solver, config) -> bool:
    """Converge with a large shunt conductance, then reduce it to its final value."""
    g = config.gmin.gmin_init
    final = config.gmin.gmin
    while True:
        solver.gmin = g
        if not attempt(solver):
            logger.debug("Gmin stepping failed at gmin=%.3e", g)
            solver.gmin = final
            return False
        if g <= final:
            break
        g = max(g * GMIN_FACTOR, final)
    solver.gmin = final
    return True


def ramp_bias(solver, targets: dict, fraction_step: float, fraction_max: float) -> bool:
    """Move every electrode drive linearly from its present state to ``targets``.

    ``targets`` maps electrode -> (mode, value). The ramp parameter advances
    by ``fraction_step`` (grown up to ``fraction_max`` after successes) and is
    halved on failure until it drops below 1/1024 of its initial value.
    """
    starts = {}
    for label, (mode, _) in targets.items():
        if mode == "voltage":
            starts[label] = solver.electrode_voltage(label)
        else:
            starts[label] = solver.electrode_current(label)
    frac = 0.0
    dfrac = min(fraction_step, 1.0)
    min_dfrac = dfrac / 1024.0
    while frac < 1.0:
        trial = min(1.0, frac + dfrac)
        for label, (mode, value) in targets.items():
            solver.set_bias(label, mode, starts[label] + trial * (value - starts[label]))
        if attempt(solver):
            frac = trial
            dfrac = min(2.0 * dfrac, fraction_max)
            continue
        dfrac *= 0.5
        if dfrac < min_dfrac:
            logger.debug("Bias ramp stalled at fraction %.4f", frac)
            for label, (mode, value) in targets.items():
                solver.set_bias(label, mode, value)
            return False
    return True


def _ramp_fraction(solver, targets: dict, vstep: float, istep: float) -> float:
    """Largest ramp fraction that moves no electrode by more than ``vstep``/``istep``."""
    frac = 1.0
    for label, (mode, value) in targets.items():
        if mode == "voltage":
            span = abs(value - solver.electrode_voltage(label))
            limit = vstep
        else:
            span = abs(value - solver.electrode_current(label))
            limit = istep
        if span > 0.0:
            frac = min(frac, limit / span)
    return frac


def ramp_up(solver, targets: dict, rampup) -> bool:
    """Ramp-up phase: at least ``rampup.steps`` steps of at most vstep/istep each."""
    frac = min(1.0 / rampup.steps, _ramp_fraction(solver, targets, rampup.vstep, rampup.istep))
    logger.info("%s: ramping up electrode bias in steps of %.3g.", solver.label, frac)
    return ramp_bias(solver, targets, frac, frac)


def apply_nodeset(solver) -> None:
    """Start electrodes from their NODESET guess; each guess seeds one solve."""
    boundaries = solver.system.boundaries
    for label in solver.electrode_labels():
        guess = boundaries.electrode_bc(label).initial_potential
        if guess is None:
            continue
        logger.debug("Electrode %s starts from nodeset %.4g V", label, guess)
        solver.voltages[label] = guess
        for bc in boundaries.get_bcs_by_electrode_label(label):
            bc.initial_potential = None


def _grid_value(start: float, n: float, step: float) -> float:
    """``start + n * step`` rounded far below the resolution of ``step``."""
    digits = 12 - int(np.floor(np.log10(abs(step))))
    return round(start + n * step, digits)


class ContinuationStrategy(ABC):
    """Base interface for the per-solution-type outer loops."""

    @abstractmethod
    def run(self, solver) -> None:
        """Drive ``solver`` through its control parameter, recording each point."""

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return f"{self.__class__.__name__}()"


class EquilibriumStrategy(ContinuationStrategy):
    """All electrodes grounded; Gmin stepping as the only fallback."""

    def run(self, solver) -> None:
        config = solver.config
        solver.gmin = config.gmin.gmin
        for label in solver.electrode_labels():
            solver.set_bias(label, "voltage", 0.0)
        if not (attempt(solver) or gmin_stepping(solver, config)):
            raise ConvergenceError("equilibrium solve did not converge", parameter="gmin")
        solver.record()
        solver.system.has_dc_solution = True


class SteadyStateStrategy(ContinuationStrategy):
    """Operating point with ramp-up, bias ramping, Gmin and pseudo-time fallbacks."""

    def run(self, solver) -> None:
        config = solver.config
        params = config.steady
        solver.gmin = config.gmin.gmin
        if params.electrode is not None:
            if params.vconst is not None:
                solver.set_bias(params.electrode, "voltage", params.vconst)
            else:
                solver.set_bias(params.electrode, "current", params.iconst)
        if params.nodeset:
            apply_nodeset(solver)
        targets = {label: solver.drive(label) for label in solver.electrode_labels()}

        if params.rampup.steps > 0 and not ramp_up(solver, targets, params.rampup):
            raise ConvergenceError("ramp-up phase did not converge", parameter="rampup")

        converged = attempt(solver)
        if not converged:
            logger.info("%s: direct solve failed; ramping electrode bias.", solver.label)
            frac = _ramp_fraction(solver, targets, params.vstepmax, params.istepmax)
            converged = ramp_bias(solver, targets, frac, frac)
        if not converged:
            logger.info("%s: bias ramp failed; trying Gmin stepping.", solver.label)
            converged = gmin_stepping(solver, config)
        if not converged and params.pseudotime.enabled:
            logger.info("%s: Gmin stepping failed; relaxing in pseudo time.", solver.label)
            converged = self._pseudo_time(solver, params.pseudotime)
        if not converged:
            raise ConvergenceError(f"{solver.label}: operating point did not converge")
        solver.record()
        solver.system.has_dc_solution = True

    @staticmethod
    def _pseudo_time(solver, params) -> bool:
        dt = params.tstep
        min_dt = params.tstep / 1024.0
        try:
            for it in range(params.iterations):
                solver.pseudo_dt = dt
                before = solver.save_state()
                if not attempt(solver):
                    dt *= 0.5
                    if dt < min_dt:
                        return False
                    continue
                change = state_change(solver.save_state(), before)
                logger.debug("pseudo-time step %d dt=%.3e change=%.3e", it, dt, change)
                if change < params.threshold:
                    break
                dt = min(2.0 * dt, params.tstepmax)
        finally:
            solver.pseudo_dt = None
        return attempt(solver)


class DCSweepStrategy(ContinuationStrategy):
    """Voltage or current sweep from ``start`` to ``stop``, bounded by ``stepmax``."""

    def run(self, solver) -> None:
        config = solver.config
        p = config.dc
        solver.gmin = config.gmin.gmin
        # Positions and steps are counted in units of the nominal step.
        total = (p.stop - p.start) / p.step
        grow_limit = p.stepmax / abs(p.step)
        min_step = 1.0 / 2**MAX_HALVINGS
        step = 1.0
        n = last_n = 0.0
        value = p.start
        history: list = []
        electrodes = ", ".join(p.electrodes)
        logger.info("DC sweep of %s (%s) from %g to %g", electrodes, p.mode, p.start, p.stop)
        while True:
            for label in p.electrodes:
                solver.set_bias(label, p.mode, value)
            ok = attempt_predicted(solver, history, value, p.predict)
            if not ok and not history:
                ok = self._recover_first_point(solver, p, value)
            if not ok:
                if not history:
                    raise ConvergenceError(
                        f"{solver.label}: first sweep point did not converge",
                        parameter=electrodes,
                        value=value,
                    )
                step *= 0.5
                if step < min_step:
                    raise ConvergenceError(
                        f"{solver.label}: sweep step fell below {min_step * abs(p.step):g} at {value:g}",
                        parameter=electrodes,
                        value=value,
                    )
                logger.debug("DC sweep step halved to %g", step * abs(p.step))
                n = min(last_n + step, total)
                value = self._point(p, n, total)
                continue
            solver.record(sweep=value)
            solver.system.has_dc_solution = True
            history = (history + [(value, solver.save_state())])[-2:]
            if n >= total:
                break
            taken, last_n = n - last_n, n
            if 0.0 < taken < 1.0:
                step = min(2.0 * step, 1.0)
            elif taken >= 1.0 and solver.last_iterations <= FAST_ITERATIONS:
                step = min(2.0 * step, grow_limit)
            if total - n <= step * (1.0 + 1e-6):
                n = total
            else:
                n = n + step
            value = self._point(p, n, total)

    @staticmethod
    def _point(p, n: float, total: float) -> float:
        if n >= total:
            return p.stop
        return _grid_value(p.start, n, p.step)

    @staticmethod
    def _recover_first_point(solver, p, value) -> bool:
        """Ramp from the present bias in steps of at most ``stepmax``, then Gmin stepping."""
        config = solver.config
        targets = {label: (p.mode, value) for label in p.electrodes}
        frac = _ramp_fraction(solver, targets, p.stepmax, p.stepmax)
        logger.info("%s: first sweep point failed; ramping from the present bias.", solver.label)
        if ramp_bias(solver, targets, frac, frac):
            return True
        logger.info("%s: bias ramp failed; trying Gmin stepping.", solver.label)
        return gmin_stepping(solver, config)


class TraceStrategy(ContinuationStrategy):
    """IV trace on one electrode until ``istop`` or ``vstop`` is reached."""

    def run(self, solver) -> None:
        config = solver.config
        p = config.trace
        solver.gmin = config.gmin.gmin
        label = p.electrode
        direction = 1.0 if p.vstep > 0 else -1.0
        step = abs(p.vstep)
        min_step = step / 2**MAX_HALVINGS
        value = p.vstart
        history: list = []
        prev_current = 0.0
        while True:
            solver.set_bias(label, "voltage", value)
            before = solver.save_state()
            ok = attempt_predicted(solver, history, value, p.predict)
            if ok and history:
                jump = abs(solver.electrode_current(label) - prev_current)
                if jump > p.istepmax and step > min_step:
                    solver.restore_state(before)
                    ok = False
            if not ok:
                if not history:
                    raise ConvergenceError(
                        f"{solver.label}: trace start point did not converge", parameter=label, value=value
                    )
                step *= 0.5
                if step < min_step:
                    raise ConvergenceError(
                        f"{solver.label}: trace step fell below {min_step:g} V", parameter=label, value=value
                    )
                value = history[-1][0] + direction * step
                continue
            solver.record(sweep=value)
            solver.system.has_dc_solution = True
            history = (history + [(value, solver.save_state())])[-2:]
            prev_current = solver.electrode_current(label)
            if abs(solver.electrode_current(label)) >= p.istop:
                logger.info("Trace on %s reached istop at %g V", label, value)
                break
            if (value - p.vstop) * direction >= 0.0:
                break
            step = min(2.0 * step, p.vstepmax)
            if (p.vstop - value) * direction <= step * (1.0 + 1e-6):
                value = p.vstop
            else:
                value = value + direction * step


class TransientStrategy(ContinuationStrategy):
    """Implicit BDF1/BDF2 time integration with optional LTE step control."""

    def run(self, solver) -> None:
        config = solver.config
        p = config.transient
        solver.gmin = config.gmin.gmin
        solver.time = p.tstart
        if p.tran_op and not p.uic:
            self._operating_point(solver, p)
        solver.record(time=p.tstart)

        order = 2 if p.scheme is TSType.BDF2 else 1
        cap = p.tstepmax if p.tstepmax > 0.0 else p.tstop - p.tstart
        t = p.tstart
        dt = min(p.tstep, cap)
        solver.begin_transient()
        try:
            while p.tstop - t > 1e-9 * dt:
                dt = min(dt, cap, p.tstop - t)
                solver.set_time_step(t + dt, dt, order)
                base = solver.save_state()
                predicted = None
                if p.predict and len(solver.history) >= 2 and solver.dt_history:
                    predicted = extrapolate(
                        solver.history[-1], solver.history[-2], dt / solver.dt_history[-1]
                    )
                    solver.restore_state(predicted)
                if not solver.solve_point():
                    solver.restore_state(base)
                    dt = self._reject(solver, p, t, dt, "did not converge")
                    continue
                next_dt = dt
                if p.autostep and predicted is not None:
                    err = solver.lte_norm(predicted, p.ts_rtol, p.ts_atol)
                    factor = 2.0 if err <= 0.0 else min(2.0, max(0.2, 0.9 * err ** (-1.0 / (solver.order + 1))))
                    if err > 1.0 and p.rejectstep:
                        solver.restore_state(base)
                        dt = self._reject(solver, p, t, dt * factor, f"LTE {err:.3g} too large")
                        continue
                    next_dt = dt * factor
                t = solver.time
                solver.accept_time_step()
                solver.record(time=t)
                dt = max(next_dt, p.tstepmin)
        finally:
            solver.end_transient()

    @staticmethod
    def _operating_point(solver, p) -> None:
        """Converge the sources at ``tstart``; leaves the bias to the sources afterwards."""
        targets = {label: solver.drive(label) for label in solver.electrode_labels()}
        try:
            if p.rampup.steps > 0 and not ramp_up(solver, targets, p.rampup):
                raise ConvergenceError(
                    f"{solver.label}: ramp-up phase did not converge", parameter="rampup"
                )
            converged = attempt(solver)
            if not converged:
                logger.info("%s: initial operating point failed; ramping electrode bias.", solver.label)
                frac = _ramp_fraction(solver, targets, p.vstepmax, p.istepmax)
                converged = ramp_bias(solver, targets, frac, frac)
            if not converged:
                converged = gmin_stepping(solver, solver.config)
            if not converged:
                raise ConvergenceError(
                    f"{solver.label}: initial operating point did not converge", parameter="time", value=p.tstart
                )
        finally:
            solver.clear_bias()

    @staticmethod
    def _reject(solver, p, t, dt_new, reason) -> float:
        solver.time = t
        dt_new = min(dt_new, 0.5 * (solver.dt or dt_new))
        if not p.rejectstep or dt_new < p.tstepmin:
            raise ConvergenceError(
                f"{solver.label}: time step at t={t:.4e} {reason}", parameter="time", value=t
            )
        logger.debug("Rejected step at t=%.4e (%s); dt -> %.3e", t, reason, dt_new)
        return dt_new


class ACSweepStrategy(ContinuationStrategy):
    """Geometric frequency sweep of the small-signal admittance."""

    def run(self, solver) -> None:
        p = solver.config.ac
        solver.gmin = solver.config.gmin.gmin
        f = p.f_start
        while f <= p.f_stop * (1.0 + 1e-12):
            try:
                admittance = solver.solve_ac(f, p.electrode, p.vac)
            except (np.linalg.LinAlgError, RuntimeError) as exc:
                raise ConvergenceError(
                    f"{solver.label}: AC solve failed at {f:.4e} Hz: {exc}", parameter="frequency", value=f
                ) from exc
            solver.record(frequency=f, acscan=p.electrode, admittance=admittance)
            f *= p.f_multiple


STRATEGIES = {
    SolutionType.EQUILIBRIUM: EquilibriumStrategy,
    SolutionType.STEADYSTATE: SteadyStateStrategy,
    SolutionType.OP: SteadyStateStrategy,
    SolutionType.DCSWEEP: DCSweepStrategy,
    SolutionType.TRACE: TraceStrategy,
    SolutionType.TRANSIENT: TransientStrategy,
    SolutionType.ACSWEEP: ACSweepStrategy,
}


def run_continuation(solver) -> None:
    strategy = STRATEGIES[solver.config.solution_type]()
    logger.debug("Running %r for '%s'", strategy, solver.label)
    strategy.run(solver)
