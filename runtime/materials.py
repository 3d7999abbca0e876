# runtime/materials.py
"""Physical constants and the built-in material table (300 K parameters)."""

from __future__ import annotations

from dataclasses import dataclass

Q = 1.602176634e-19  # C
KB = 1.380649e-23  # J/K
EPS0 = 8.8541878128e-14  # F/cm
UM_TO_CM = 1e-4
T_DEFAULT = 300.0


def thermal_voltage(temperature: float = T_DEFAULT) -> float:
    return KB * temperature / Q


@dataclass(frozen=True)
class Material:
    name: str
    kind: str
    permittivity: float
    ni: float = 0.0
    mun: float = 0.0
    mup: float = 0.0
    vsat_n: float = 1.0e7
    vsat_p: float = 8.0e6
    affinity: float = 0.0
    bandgap: float = 0.0
    compound: bool = False

    @property
    def is_semiconductor(self) -> bool:
        return self.kind == "semiconductor"

    @property
    def intrinsic_workfunction(self) -> float:
        return self.affinity + 0.5 * self.bandgap


MATERIALS = {
    "si": Material("Si", "semiconductor", 11.7, ni=1.0e10, mun=1417.0, mup=470.5,
                   vsat_n=1.07e7, vsat_p=8.37e6, affinity=4.05, bandgap=1.12),
    "gaas": Material("GaAs", "semiconductor", 12.9, ni=2.1e6, mun=8500.0, mup=400.0,
                     vsat_n=7.7e6, vsat_p=7.7e6, affinity=4.07, bandgap=1.424),
    "algaas": Material("AlGaAs", "semiconductor", 12.0, ni=2.1e3, mun=4000.0, mup=200.0,
                       vsat_n=7.7e6, vsat_p=7.7e6, affinity=3.74, bandgap=1.8, compound=True),
    "sio2": Material("SiO2", "insulator", 3.9),
    "si3n4": Material("Si3N4", "insulator", 7.5),
    "air": Material("Air", "insulator", 1.0),
}

ALIASES = {"silicon": "si", "oxide": "sio2", "nitride": "si3n4", "vacuum": "air"}

REFERENCE_WORKFUNCTION = MATERIALS["si"].intrinsic_workfunction


def get_material(name: str) -> Material:
    key = name.lower()
    key = ALIASES.get(key, key)
    if key not in MATERIALS:
        raise KeyError(f"Material '{name}' not found.")
    return MATERIALS[key]
