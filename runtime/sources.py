# runtime/sources.py
"""Electrical sources attached to electrodes and the optical field source."""

from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod

import numpy as np

logger = logging.getLogger("device_solver")


class Waveform(ABC):
    """Time-dependent source value."""

    @abstractmethod
    def value(self, t: float) -> float:
        """Source value at time ``t`` (seconds)."""

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        params = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{self.__class__.__name__}({params})"


class DCWaveform(Waveform):
    def __init__(self, level: float) -> None:
        self.level = level

    def value(self, t: float) -> float:
        return self.level


class SinWaveform(Waveform):
    def __init__(self, offset, amplitude, freq, td=0.0, alpha=0.0) -> None:
        self.offset = offset
        self.amplitude = amplitude
        self.freq = freq
        self.td = td
        self.alpha = alpha

    def value(self, t: float) -> float:
        if t < self.td:
            return self.offset
        dt = t - self.td
        return self.offset + self.amplitude * math.exp(-self.alpha * dt) * math.sin(
            2.0 * math.pi * self.freq * dt
        )


class PulseWaveform(Waveform):
    def __init__(self, v1, v2, td=0.0, tr=1e-9, tf=1e-9, pw=5e-9, pr=1e-8) -> None:
        self.v1 = v1
        self.v2 = v2
        self.td = td
        self.tr = tr
        self.tf = tf
        self.pw = pw
        self.pr = pr

    def value(self, t: float) -> float:
        if t < self.td:
            return self.v1
        t = (t - self.td) % self.pr if self.pr > 0 else t - self.td
        if t < self.tr:
            return self.v1 + (self.v2 - self.v1) * t / self.tr
        t -= self.tr
        if t < self.pw:
            return self.v2
        t -= self.pw
        if t < self.tf:
            return self.v2 + (self.v1 - self.v2) * t / self.tf
        return self.v1


class ExpWaveform(Waveform):
    def __init__(self, v1, v2, td1=0.0, tau1=1e-9, td2=1e-8, tau2=1e-9) -> None:
        self.v1 = v1
        self.v2 = v2
        self.td1 = td1
        self.tau1 = tau1
        self.td2 = td2
        self.tau2 = tau2

    def value(self, t: float) -> float:
        out = self.v1
        if t >= self.td1:
            out += (self.v2 - self.v1) * (1.0 - math.exp(-(t - self.td1) / self.tau1))
        if t >= self.td2:
            out += (self.v1 - self.v2) * (1.0 - math.exp(-(t - self.td2) / self.tau2))
        return out


def build_waveform(kind: str, card, p: str) -> Waveform:
    """Waveform from card parameters named with prefix ``p`` (``v`` or ``i``)."""
    if kind == "dc":
        return DCWaveform(card.get_real(f"{p}const", 0.0))
    if kind == "sin":
        return SinWaveform(
            card.get_real(f"{p}0", 0.0),
            card.get_real(f"{p}amp", 0.0),
            card.get_real("freq", 1e6),
            card.get_real("td", 0.0),
            card.get_real("alpha", 0.0),
        )
    if kind == "pulse":
        return PulseWaveform(
            card.get_real(f"{p}1", 0.0),
            card.get_real(f"{p}2", 0.0),
            card.get_real("td", 0.0),
            card.get_real("tr", 1e-9),
            card.get_real("tf", 1e-9),
            card.get_real("pw", 5e-9),
            card.get_real("pr", 1e-8),
        )
    if kind == "exp":
        return ExpWaveform(
            card.get_real(f"{p}1", 0.0),
            card.get_real(f"{p}2", 0.0),
            card.get_real("td1", 0.0),
            card.get_real("tau1", 1e-9),
            card.get_real("td2", 1e-8),
            card.get_real("tau2", 1e-9),
        )
    raise card.error(f"unknown waveform type '{kind}'")


def _source_from_card(card, p: str):
    name = card.get_string("id")
    if name is None:
        raise card.error("source requires an 'id'")
    kinds = [f"{p}{k}" for k in ("dc", "sin", "pulse", "exp")]
    kind = card.get_enum("type", kinds, f"{p}dc")
    return name, build_waveform(kind[1:], card, p)


class ElectricalSources:
    """VSOURCE/ISOURCE definitions and their attachment to electrodes."""

    def __init__(self, deck=None) -> None:
        self.vsources: dict[str, Waveform] = {}
        self.isources: dict[str, Waveform] = {}
        self._attached: dict[str, tuple[str, list]] = {}
        if deck is not None:
            for card in deck.cards_for("VSOURCE"):
                name, wave = _source_from_card(card, "v")
                self.vsources[name] = wave
            for card in deck.cards_for("ISOURCE"):
                name, wave = _source_from_card(card, "i")
                self.isources[name] = wave

    def has_vsource(self, name: str) -> bool:
        return name in self.vsources

    def has_isource(self, name: str) -> bool:
        return name in self.isources

    def attach_voltage(self, electrode: str, names) -> None:
        names = list(names)
        missing = [n for n in names if n not in self.vsources]
        if missing:
            raise KeyError(f"Voltage source(s) {missing} not defined.")
        self._attached[electrode] = ("voltage", [self.vsources[n] for n in names])

    def attach_current(self, electrode: str, names) -> None:
        names = list(names)
        missing = [n for n in names if n not in self.isources]
        if missing:
            raise KeyError(f"Current source(s) {missing} not defined.")
        self._attached[electrode] = ("current", [self.isources[n] for n in names])

    def attach_constant(self, electrode: str, mode: str, value: float) -> None:
        self._attached[electrode] = (mode, [DCWaveform(float(value))])

    def is_attached(self, electrode: str) -> bool:
        return electrode in self._attached

    def drive(self, electrode: str, t: float = 0.0) -> tuple[str, float]:
        """``(mode, value)`` applied to ``electrode`` at time ``t``."""
        if electrode not in self._attached:
            return "voltage", 0.0
        mode, waves = self._attached[electrode]
        return mode, float(sum(w.value(t) for w in waves))


class FieldSource:
    """Optical generation from LIGHT cards with an optional ENVELOP modulation."""

    def __init__(self, deck=None) -> None:
        self.envelopes: dict[str, Waveform] = {}
        self.light_cards = []
        self.active_envelope: str | None = None
        if deck is not None:
            for card in deck.cards_for("ENVELOP"):
                name = card.get_string("id")
                if name is None:
                    raise card.error("ENVELOP requires an 'id'")
                kind = card.get_enum("type", ["uniform", "sin", "pulse", "exp"], "uniform")
                if kind == "uniform":
                    wave = DCWaveform(card.get_real("amplitude", 1.0))
                else:
                    wave = build_waveform(kind, card, "v")
                self.envelopes[name] = wave
            self.light_cards = deck.cards_for("LIGHT")

    def has_envelope(self, name: str) -> bool:
        return name in self.envelopes

    def set_effect_waveform(self, name: str) -> None:
        if name not in self.envelopes:
            raise KeyError(f"Envelope '{name}' not found.")
        self.active_envelope = name

    def clear_effect_waveform(self) -> None:
        self.active_envelope = None

    def scale(self, t: float) -> float:
        if self.active_envelope is None:
            return 1.0
        return self.envelopes[self.active_envelope].value(t)

    def update_source(self, system) -> None:
        """Recompute the ``opt_g`` nodal generation of every semiconductor region."""
        for region in system.regions:
            if region.has_variable("opt_g"):
                region.variables["opt_g"][:] = 0.0
        for card in self.light_cards:
            pattern = card.get_string("region", ".*")
            rate = card.get_real("opt.gen", 0.0)
            matched = False
            for region in system.regions:
                if not re.fullmatch(pattern, region.name) or not region.has_variable("opt_g"):
                    continue
                matched = True
                coords = system.mesh.points[region.node_ids]
                mask = np.ones(len(coords), dtype=bool)
                for axis_idx, axis in enumerate(("x", "y", "z")[: coords.shape[1]]):
                    lo = card.get_real(f"{axis}.min", -np.inf)
                    hi = card.get_real(f"{axis}.max", np.inf)
                    mask &= (coords[:, axis_idx] >= lo) & (coords[:, axis_idx] <= hi)
                region.variables["opt_g"][mask] += rate
            if not matched:
                logger.warning("%s LIGHT: no semiconductor region matches '%s'", card.location, pattern)
