# advanced_model.py
"""Per-region physical model switches set by the MODEL card."""

from __future__ import annotations

from dataclasses import dataclass, replace

MOBILITY_FORCES = ("ej", "esimple", "eqf")
II_FORCES = ("edotj", "eside", "evector", "gradqf")
EB_LEVELS = ("none", "te", "th", "tl", "teth", "tetl", "thtl", "all")


@dataclass(frozen=True)
class AdvancedModel:
    esurface: bool = True
    high_field_mobility: bool = True
    high_field_mobility_selfconsistent: bool = True
    qf_carrier_truncation: float = 1e-2
    mobility_force: str = "esimple"
    ii_local: bool = True
    ii_force: str = "eside"
    hot_carrier: bool = False
    fn_tunneling: bool = False
    direct_tunneling: bool = False
    tunneling_selfconsistent: bool = False
    bbt_local: bool = True
    fermi: bool = False
    incomplete_ionization: bool = False
    trap: bool = False
    eb_level: str = "none"
    dg_elec: bool = False
    dg_hole: bool = False
    qn_factor: float = 1.0
    qp_factor: float = 1.0
    q_min_concentration: float = 1.0

    def enable_tn(self) -> bool:
        return self.eb_level in ("te", "teth", "tetl", "all")

    def enable_tp(self) -> bool:
        return self.eb_level in ("th", "teth", "thtl", "all")

    def enable_tl(self) -> bool:
        return self.eb_level in ("tl", "tetl", "thtl", "all")

    def with_lattice_temperature(self) -> "AdvancedModel":
        """Return a copy whose energy-balance level includes the lattice temperature."""
        promote = {"none": "tl", "te": "tetl", "th": "thtl", "teth": "all"}
        return replace(self, eb_level=promote.get(self.eb_level, self.eb_level))

    @classmethod
    def from_card(cls, card) -> "AdvancedModel":
        return cls(
            esurface=card.get_bool("esurface", True),
            high_field_mobility=card.get_bool("h.mob", True),
            high_field_mobility_selfconsistent=card.get_bool("h.mob.selfconsistent", True),
            qf_carrier_truncation=card.get_real("quasifermicarriertrucation", 1e-2),
            mobility_force=card.get_enum("mob.force", MOBILITY_FORCES, "esimple"),
            ii_local=card.get_bool("ii.local", True),
            ii_force=card.get_enum("ii.force", II_FORCES, "eside"),
            hot_carrier=card.get_bool("hotcarrier", False),
            fn_tunneling=card.get_bool("fn.tunneling", False),
            direct_tunneling=card.get_bool("dir.tunneling", False),
            tunneling_selfconsistent=card.get_bool("tunneling.selfconsistent", False),
            bbt_local=card.get_bool("bbt.local", True),
            fermi=card.get_bool("fermi", False),
            incomplete_ionization=card.get_bool("incompleteionization", False),
            trap=card.get_bool("trap", False),
            eb_level=card.get_enum("eb.level", EB_LEVELS, "none"),
            dg_elec=card.get_bool("dg.elec", False),
            dg_hole=card.get_bool("dg.hole", False),
            qn_factor=card.get_real("qnfactor", 1.0),
            qp_factor=card.get_real("qpfactor", 1.0),
            q_min_concentration=card.get_real("qminconcentration", 1.0),
        )
