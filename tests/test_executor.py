import logging
import os
import sys
from types import SimpleNamespace

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from commands.context import CommandContext
from commands.executor import execute_card, run_deck
from commands.registry import COMMAND_REGISTRY, get_command
from core.deck import Card, Deck
from sample_decks import resistor_cards


class _Recorder:
    def __init__(self, calls):
        self.calls = calls

    def execute(self, context, card):
        self.calls.append(card.key)


def _fake_lookup(calls, known=("MESH", "METHOD", "SOLVE")):
    recorder = _Recorder(calls)
    return lambda key: recorder if key in known else None


def test_registry_lookup_is_case_insensitive():
    assert get_command("solve") is COMMAND_REGISTRY["SOLVE"]
    assert get_command("Refine.Uniform") is COMMAND_REGISTRY["REFINE.UNIFORM"]
    assert get_command("REGION") is None


def test_declarative_cards_are_skipped():
    context = SimpleNamespace(history=[])
    calls = []
    assert execute_card(context, Card("PROFILE", {}), get_command_fn=_fake_lookup(calls)) is False
    assert calls == []
    assert context.history == []


def test_mesh_runs_before_every_other_card():
    deck = Deck.from_list([{"METHOD": {}}, {"MESH": {}}, {"REGION": {}}, {"SOLVE": {}}])
    context = SimpleNamespace(deck=deck, history=[])
    calls = []
    run_deck(context, get_command_fn=_fake_lookup(calls))
    assert calls == ["MESH", "METHOD", "SOLVE"]
    assert context.history == ["MESH", "METHOD", "SOLVE"]


def test_deck_without_mesh_card_is_allowed(caplog):
    deck = Deck.from_list([{"METHOD": {}}], source="import.yaml")
    context = SimpleNamespace(deck=deck, history=[])
    calls = []
    with caplog.at_level(logging.INFO, logger="device_solver"):
        run_deck(context, get_command_fn=_fake_lookup(calls))
    assert calls == ["METHOD"]
    assert "must come from IMPORT" in caplog.text


def test_full_deck_produces_a_result_group():
    cards = resistor_cards() + [
        {"METHOD": {"type": "poisson"}},
        {"SOLVE": {"type": "equilibrium", "label": "eq"}},
    ]
    context = CommandContext.from_deck(Deck.from_list(cards, source="run.yaml"))
    run_deck(context)
    assert [g.label for g in context.document.groups] == ["eq"]
    assert context.history == ["MESH", "METHOD", "SOLVE"]
