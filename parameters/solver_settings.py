# solver_settings.py
"""Nonlinear solver settings selected by the METHOD card.

Settings are immutable; every METHOD card builds a fresh value from the
defaults below and the card's parameters, and the value persists on the
command context until the next METHOD card.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum


class SolverType(str, Enum):
    POISSON = "poisson"
    DDML1 = "ddml1"
    DDML1MIX = "ddml1mix"
    DDML1MIXA = "ddml1mixa"
    DDML2 = "ddml2"
    DDML2MIXA = "ddml2mixa"
    EBML3 = "ebml3"
    EBML3MIXA = "ebml3mixa"
    DENSITY_GRADIENT = "densitygradient"
    HALLDDML1 = "hallddml1"
    DDMAC = "ddmac"
    HALF_IMPLICIT = "halfimplicit"


class Damping(str, Enum):
    NO = "no"
    POTENTIAL = "potential"
    SUPERPOTENTIAL = "superpotential"
    BANKROSE = "bankrose"


class Truncation(str, Enum):
    NO = "no"
    BOUNDARY = "boundary"
    ALWAYS = "always"


# card parameter name -> (field name, kind)
_CARD_FIELDS = {
    "ns": ("nonlinear_solver", str),
    "ls": ("linear_solver", str),
    "pc": ("preconditioner", str),
    "pclu.lag": ("pclu_lag", int),
    "jacobian.lag": ("jacobian_lag", int),
    "damping.spice": ("damping_spice", bool),
    "snes.rtol": ("snes_rtol", float),
    "ksp.rtol": ("ksp_rtol", float),
    "ksp.atol": ("ksp_atol", float),
    "ksp.atol.fnorm": ("ksp_atol_fnorm", float),
    "ksp.singular": ("ksp_singular", bool),
    "maxiteration": ("max_iteration", int),
    "potential.update": ("potential_update", float),
    "absolute.tol": ("absolute_tol", float),
    "relative.tol": ("relative_tol", float),
    "toler.relax": ("toler_relax", float),
    "poisson.tol": ("poisson_tol", float),
    "elec.continuity.tol": ("elec_continuity_tol", float),
    "hole.continuity.tol": ("hole_continuity_tol", float),
    "electrode.tol": ("electrode_tol", float),
    "divergence.factor": ("divergence_factor", float),
}


@dataclass(frozen=True)
class MethodSettings:
    """Formulation choice, damping policy and convergence tolerances."""

    solver_type: SolverType = SolverType.POISSON
    nonlinear_solver: str = "basic"
    linear_solver: str = "gmres"
    preconditioner: str = "lu"
    pclu_lag: int = 5
    jacobian_lag: int = 1
    damping: Damping = Damping.POTENTIAL
    damping_spice: bool = False
    truncation: Truncation = Truncation.BOUNDARY
    snes_rtol: float = 1e-5
    ksp_rtol: float = 1e-8
    ksp_atol: float = 1e-15
    ksp_atol_fnorm: float = 1e-7
    ksp_singular: bool = False
    max_iteration: int = 30
    potential_update: float = 1.0
    absolute_tol: float = 1e-12
    relative_tol: float = 1e-5
    toler_relax: float = 1e5
    poisson_tol: float = 1e-26
    elec_continuity_tol: float = 5e-18
    hole_continuity_tol: float = 5e-18
    electrode_tol: float = 1e-14
    divergence_factor: float = 1e20

    @classmethod
    def from_card(cls, card) -> "MethodSettings":
        """Build settings from defaults overwritten by a METHOD card."""
        kwargs = {}
        if card.is_parameter_exist("type"):
            kwargs["solver_type"] = SolverType(
                card.get_enum("type", [s.value for s in SolverType], "poisson")
            )
        if card.is_parameter_exist("damping"):
            kwargs["damping"] = Damping(
                card.get_enum("damping", [d.value for d in Damping], "potential")
            )
        if card.is_parameter_exist("truncation"):
            kwargs["truncation"] = Truncation(
                card.get_enum("truncation", [t.value for t in Truncation], "boundary")
            )
        for name, (attr, kind) in _CARD_FIELDS.items():
            if not card.is_parameter_exist(name):
                continue
            if kind is int:
                value = card.get_int(name)
            elif kind is bool:
                value = card.get_bool(name)
            elif kind is float:
                value = card.get_real(name)
            else:
                value = card.get_string(name).lower()
            kwargs[attr] = value
        settings = cls(**kwargs)
        if settings.max_iteration <= 0:
            raise card.error("maxiteration must be positive")
        if settings.potential_update <= 0:
            raise card.error("potential.update must be positive")
        return settings

    def as_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = value.value if isinstance(value, Enum) else value
        return out
