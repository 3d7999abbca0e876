# solve_config.py
"""Per-solve continuation parameters resolved from a SOLVE card.

A :class:`SolveConfig` is built fresh for every SOLVE card from the defaults
below plus the card's parameters, and only the branch that matches the
requested solution type is populated. Validation happens here, before any
solver is created, and every violation raises a located
:class:`~core.exceptions.ConfigurationError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SolutionType(str, Enum):
    EQUILIBRIUM = "equilibrium"
    STEADYSTATE = "steadystate"
    OP = "op"
    DCSWEEP = "dcsweep"
    TRACE = "trace"
    ACSWEEP = "acsweep"
    TRANSIENT = "transient"


class TSType(str, Enum):
    BDF1 = "bdf1"
    BDF2 = "bdf2"


_TS_ALIASES = {"impliciteuler": TSType.BDF1, "bdf1": TSType.BDF1, "bdf2": TSType.BDF2}


@dataclass(frozen=True)
class GminParams:
    gmin_init: float = 1e-6
    gmin: float = 1e-12


@dataclass(frozen=True)
class RampUp:
    steps: int = 0
    vstep: float = 0.25
    istep: float = 0.1


@dataclass(frozen=True)
class PseudoTimeParams:
    enabled: bool = True
    threshold: float = 1e-5
    tstep: float = 1e-10
    tstepmax: float = 1e-7
    iterations: int = 50


@dataclass(frozen=True)
class SteadyStateParams:
    electrode: str | None = None
    vconst: float | None = None
    iconst: float | None = None
    nodeset: bool = True
    rampup: RampUp = RampUp()
    vstepmax: float = 0.1
    istepmax: float = 1e-6
    pseudotime: PseudoTimeParams = PseudoTimeParams()


@dataclass(frozen=True)
class DCSweepParams:
    mode: str
    electrodes: tuple
    start: float
    step: float
    stepmax: float
    stop: float
    predict: bool = True


@dataclass(frozen=True)
class TraceParams:
    electrode: str
    vstart: float = 0.0
    vstep: float = 0.1
    vstepmax: float = 0.1
    vstop: float = 5.0
    istop: float = 1.0
    istepmax: float = 1.0
    predict: bool = True


@dataclass(frozen=True)
class ACSweepParams:
    electrode: str
    f_start: float = 1e6
    f_stop: float = 10e9
    f_multiple: float = 1.1
    vac: float = 0.0026


@dataclass(frozen=True)
class TransientParams:
    tstart: float = 0.0
    tstep: float = 1e-9
    tstepmin: float = 1e-14
    tstepmax: float = 0.0
    tstop: float = 1e-6
    autostep: bool = True
    rejectstep: bool = True
    predict: bool = True
    uic: bool = False
    tran_op: bool = True
    ts_rtol: float = 1e-3
    ts_atol: float = 1e-7
    scheme: TSType = TSType.BDF2
    vstepmax: float = 1.0
    istepmax: float = 1.0
    rampup: RampUp = RampUp()


@dataclass(frozen=True)
class SolveConfig:
    """Immutable description of one solve request."""

    solution_type: SolutionType
    label: str
    location: str = "<deck>"
    out_prefix: str = "result"
    out_append: bool = False
    optical_gen: bool = False
    optical_modulate: str | None = None
    gmin: GminParams = GminParams()
    steady: SteadyStateParams | None = None
    dc: DCSweepParams | None = None
    trace: TraceParams | None = None
    ac: ACSweepParams | None = None
    transient: TransientParams | None = None

    @classmethod
    def from_card(cls, card, system) -> "SolveConfig":
        """Resolve ``card`` against ``system`` (electrodes, envelopes, DC state)."""
        if not card.is_parameter_exist("type"):
            raise card.error("SOLVE requires a 'type' parameter")
        solution_type = SolutionType(
            card.get_enum("type", [t.value for t in SolutionType], "equilibrium")
        )

        common = dict(
            solution_type=solution_type,
            label=card.get_string("label", solution_type.value),
            location=card.location,
            out_prefix=card.get_string("out.prefix", "result"),
            out_append=card.get_bool("out.append", False),
            optical_gen=card.get_bool("optical.gen", False),
            gmin=GminParams(
                gmin_init=card.get_real("gmin.init", 1e-6),
                gmin=card.get_real("gmin", 1e-12),
            ),
        )
        if card.is_parameter_exist("optical.modulate"):
            envelope = card.get_string("optical.modulate")
            if not system.field_source.has_envelope(envelope):
                raise card.error(f"optical.modulate refers to unknown envelope '{envelope}'")
            common["optical_modulate"] = envelope

        if solution_type is SolutionType.EQUILIBRIUM:
            return cls(**common)
        if solution_type in (SolutionType.STEADYSTATE, SolutionType.OP):
            return cls(steady=_steady_params(card, system), **common)
        if solution_type is SolutionType.DCSWEEP:
            return cls(dc=_dc_params(card, system), **common)
        if solution_type is SolutionType.TRACE:
            return cls(trace=_trace_params(card, system), **common)
        if solution_type is SolutionType.ACSWEEP:
            return cls(ac=_ac_params(card, system), **common)
        return cls(transient=_transient_params(card), **common)


def _require_electrode(card, system, name: str) -> None:
    if not system.boundaries.is_electrode(name):
        raise card.error(f"electrode '{name}' does not exist in the device structure")


def _rampup(card) -> RampUp:
    return RampUp(
        steps=card.get_int("rampup.steps", 0),
        vstep=card.get_real("rampup.vstep", 0.25),
        istep=card.get_real("rampup.istep", 0.1),
    )


def _steady_params(card, system) -> SteadyStateParams:
    electrode = card.get_string("electrode")
    has_v = card.is_parameter_exist("vconst")
    has_i = card.is_parameter_exist("iconst")
    if has_v and has_i:
        raise card.error("vconst and iconst can not be given at the same time")
    if electrode is None and (has_v or has_i):
        raise card.error("vconst/iconst require an 'electrode'")
    if electrode is not None:
        _require_electrode(card, system, electrode)
        if not (has_v or has_i):
            raise card.error(f"electrode '{electrode}' requires vconst or iconst")
    rampup = _rampup(card)
    if rampup.steps < 0:
        raise card.error("rampup.steps must not be negative")
    return SteadyStateParams(
        electrode=electrode,
        vconst=card.get_real("vconst") if has_v else None,
        iconst=card.get_real("iconst") if has_i else None,
        nodeset=card.get_bool("nodeset", True),
        rampup=rampup,
        vstepmax=abs(card.get_real("vstepmax", 0.1)),
        istepmax=abs(card.get_real("istepmax", 1e-6)),
        pseudotime=PseudoTimeParams(
            enabled=card.get_bool("op.steadystate", True),
            threshold=card.get_real("op.threshold", 1e-5),
            tstep=card.get_real("pseudotime.tstep", card.get_real("tstep", 1e-10)),
            tstepmax=card.get_real("pseudotime.tstepmax", card.get_real("tstepmax", 1e-7)),
            iterations=card.get_int("pseudotime.iteration", 50),
        ),
    )


def _dc_params(card, system) -> DCSweepParams:
    vscan = card.get_n_string("vscan")
    iscan = card.get_n_string("iscan")
    if vscan and iscan:
        raise card.error("vscan and iscan can not be given at the same time")
    if not vscan and not iscan:
        raise card.error("DCSWEEP requires either vscan or iscan")
    if vscan:
        mode, electrodes, prefix = "voltage", vscan, "v"
        start = card.get_real("vstart", 0.0)
        step = card.get_real("vstep", 0.1)
        stop = card.get_real("vstop", 5.0)
    else:
        mode, electrodes, prefix = "current", iscan, "i"
        start = card.get_real("istart", 0.0)
        step = card.get_real("istep", 1e-5)
        stop = card.get_real("istop", 1e-2)
    for name in electrodes:
        _require_electrode(card, system, name)
    if step == 0.0:
        raise card.error(f"{prefix}step must not be zero")
    if (stop - start) * step < 0.0:
        raise card.error(f"{prefix}step sign does not lead from {prefix}start to {prefix}stop")
    stepmax = abs(card.get_real(f"{prefix}stepmax", abs(step)))
    return DCSweepParams(
        mode=mode,
        electrodes=tuple(electrodes),
        start=start,
        step=step,
        stepmax=max(stepmax, abs(step)),
        stop=stop,
        predict=card.get_bool("predict", True),
    )


def _trace_params(card, system) -> TraceParams:
    names = card.get_n_string("vscan")
    if len(names) != 1:
        raise card.error("TRACE requires exactly one vscan electrode")
    electrode = names[0]
    _require_electrode(card, system, electrode)
    if len(system.boundaries.get_bcs_by_electrode_label(electrode)) != 1:
        raise card.error(f"TRACE electrode '{electrode}' must consist of a single boundary")
    vstep = card.get_real("vstep", 0.1)
    if vstep == 0.0:
        raise card.error("vstep must not be zero")
    istop = abs(card.get_real("istop", 1.0))
    if istop == 0.0:
        raise card.error("istop must be positive")
    return TraceParams(
        electrode=electrode,
        vstart=card.get_real("vstart", 0.0),
        vstep=vstep,
        vstepmax=max(abs(card.get_real("vstepmax", abs(vstep))), abs(vstep)),
        vstop=card.get_real("vstop", 5.0),
        istop=istop,
        istepmax=abs(card.get_real("istepmax", istop)),
        predict=card.get_bool("predict", True),
    )


def _ac_params(card, system) -> ACSweepParams:
    names = card.get_n_string("acscan")
    if len(names) != 1:
        raise card.error("ACSWEEP requires exactly one acscan electrode")
    _require_electrode(card, system, names[0])
    params = ACSweepParams(
        electrode=names[0],
        f_start=card.get_real("f.start", 1e6),
        f_stop=card.get_real("f.stop", 10e9),
        f_multiple=card.get_real("f.multiple", 1.1),
        vac=card.get_real("vac", 0.0026),
    )
    if params.f_start <= 0.0:
        raise card.error("f.start must be positive")
    if params.f_stop < params.f_start:
        raise card.error("f.stop must not be smaller than f.start")
    if params.f_multiple <= 1.0:
        raise card.error("f.multiple must be greater than 1")
    if not system.has_dc_solution:
        raise card.error("ACSWEEP requires a converged steady-state or DC solution")
    return params


def _transient_params(card) -> TransientParams:
    scheme_raw = card.get_enum("ts", list(_TS_ALIASES), "bdf2")
    params = TransientParams(
        tstart=card.get_real("tstart", 0.0),
        tstep=card.get_real("tstep", 1e-9),
        tstepmin=card.get_real("tstepmin", 1e-14),
        tstepmax=card.get_real("tstepmax", 0.0),
        tstop=card.get_real("tstop", 1e-6),
        autostep=card.get_bool("autostep", True),
        rejectstep=card.get_bool("rejectstep", True),
        predict=card.get_bool("predict", True),
        uic=card.get_bool("uic", False),
        tran_op=card.get_bool("tran.op", True),
        ts_rtol=card.get_real("ts.rtol", 1e-3),
        ts_atol=card.get_real("ts.atol", 1e-7),
        scheme=_TS_ALIASES[scheme_raw],
        vstepmax=abs(card.get_real("vstepmax", 1.0)),
        istepmax=abs(card.get_real("istepmax", 1.0)),
        rampup=_rampup(card),
    )
    if params.tstop <= params.tstart:
        raise card.error("tstop must be greater than tstart")
    if params.tstep <= 0.0:
        raise card.error("tstep must be positive")
    if params.tstepmax < 0.0:
        raise card.error("tstepmax must not be negative")
    if params.tstepmin <= 0.0:
        raise card.error("tstepmin must be positive")
    if params.rampup.steps < 0:
        raise card.error("rampup.steps must not be negative")
    return params
