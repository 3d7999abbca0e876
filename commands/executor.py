"""Deck execution: the MESH pre-pass followed by the ordered command pass."""

from __future__ import annotations

import logging

from commands.registry import get_command

logger = logging.getLogger("device_solver")


def execute_card(context, card, *, get_command_fn=get_command) -> bool:
    """Run the command bound to ``card.key``; return whether one exists.

    Cards without a command (``REGION``, ``BOUNDARY``, ``PROFILE``, source
    definitions, ...) are declarations read by the objects that need them.
    """
    command = get_command_fn(card.key)
    if command is None:
        logger.debug("%s: declarative card %s", card.location, card.key)
        return False
    logger.debug("%s: executing %s", card.location, card.key)
    command.execute(context, card)
    history = getattr(context, "history", None)
    if history is not None:
        history.append(card.key)
    return True


def run_deck(context, *, get_command_fn=get_command) -> None:
    """Build the device from the MESH card, then execute every other card in order."""
    deck = context.deck
    mesh_card = deck.first("MESH")
    if mesh_card is not None:
        execute_card(context, mesh_card, get_command_fn=get_command_fn)
    else:
        logger.info("%s: no MESH card; the device must come from IMPORT.", deck.source)

    for card in deck:
        if card.key == "MESH":
            continue
        execute_card(context, card, get_command_fn=get_command_fn)
