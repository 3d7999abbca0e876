"""Small device decks shared by the tests."""

from __future__ import annotations

import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from commands.context import CommandContext
from commands.mesh_ops import MeshCommand
from core.deck import Deck

DONOR_DOPING = 1.0e16
LENGTH_UM = 1.0
WIDTH_UM = 0.5


def resistor_cards(*, nx: int = 4, ny: int = 2, extra=None) -> list:
    """n-type silicon bar with ohmic contacts on the left and right faces."""
    cards = [
        {"MESH": {"type": "s_tri3"}},
        {"X.MESH": {"width": LENGTH_UM, "n.spaces": nx}},
        {"Y.MESH": {"width": WIDTH_UM, "n.spaces": ny}},
        {"REGION": {"label": "bulk", "material": "Si"}},
        {"FACE": {"label": "anode", "location": "left"}},
        {"FACE": {"label": "cathode", "location": "right"}},
        {"BOUNDARY": {"id": "anode", "type": "ohmiccontact"}},
        {"BOUNDARY": {"id": "cathode", "type": "ohmiccontact"}},
        {"PROFILE": {"type": "uniform", "ion": "donor", "n.peak": DONOR_DOPING}},
    ]
    return cards + list(extra or [])


def moscap_cards() -> list:
    """Oxide over p-type silicon: a gate contact on the oxide, ohmic substrate."""
    return [
        {"MESH": {"type": "s_tri3"}},
        {"X.MESH": {"width": 1.0, "n.spaces": 2}},
        {"Y.MESH": {"width": 0.1, "n.spaces": 1}},
        {"Y.MESH": {"width": 0.9, "n.spaces": 3}},
        {"REGION": {"label": "oxide", "material": "SiO2", "y.max": 0.1}},
        {"REGION": {"label": "substrate", "material": "Si", "y.min": 0.1}},
        {"FACE": {"label": "gate", "location": "bottom"}},
        {"FACE": {"label": "sub", "location": "top"}},
        {"BOUNDARY": {"id": "gate", "type": "gatecontact", "workfunction": 4.17}},
        {"BOUNDARY": {"id": "sub", "type": "ohmiccontact"}},
        {"PROFILE": {"type": "uniform", "ion": "acceptor", "n.peak": 1e17, "region": "substrate"}},
    ]


def build_context(cards, **kwargs) -> CommandContext:
    """Context with the MESH pre-pass already executed."""
    deck = Deck.from_list(cards, source="test.yaml")
    context = CommandContext.from_deck(deck, **kwargs)
    MeshCommand().execute(context, deck.first("MESH"))
    return context
