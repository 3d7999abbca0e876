"""Command deck loading and typed parameter access.

A deck is an ordered YAML (or JSON) list of single-key mappings::

    - MESH: {type: s_tri3}
    - X.MESH: {width: 1.0, n.spaces: 10}
    - METHOD: {type: ddml1}
    - SOLVE: {type: dcsweep, vscan: anode, vstart: 0, vstep: 0.1, vstop: 1}

Card keys are upper-cased, parameter names lower-cased. Every card keeps the
``file:line`` it came from so configuration errors can point at it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator

import yaml

from core.exceptions import ConfigurationError, InputOutputError

logger = logging.getLogger("device_solver")

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


@dataclass
class Card:
    """One deck command: a key, its named parameters and a source location."""

    key: str
    params: dict[str, Any] = field(default_factory=dict)
    location: str = "<deck>"

    def __post_init__(self) -> None:
        self.key = str(self.key).upper()
        self.params = {str(k).lower(): v for k, v in (self.params or {}).items()}

    def error(self, message: str) -> ConfigurationError:
        return ConfigurationError(message, card=self.key, location=self.location)

    def is_parameter_exist(self, name: str) -> bool:
        return name.lower() in self.params

    def get_string(self, name: str, default: str | None = None) -> str | None:
        value = self.params.get(name.lower(), default)
        if value is None:
            return None
        return str(value)

    def get_real(self, name: str, default: float | None = None) -> float | None:
        value = self.params.get(name.lower(), default)
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise self.error(f"parameter '{name}' expects a real number, got {value!r}") from exc

    def get_int(self, name: str, default: int | None = None) -> int | None:
        value = self.params.get(name.lower(), default)
        if value is None:
            return None
        try:
            as_float = float(value)
        except (TypeError, ValueError) as exc:
            raise self.error(f"parameter '{name}' expects an integer, got {value!r}") from exc
        if not as_float.is_integer():
            raise self.error(f"parameter '{name}' expects an integer, got {value!r}")
        return int(as_float)

    def get_bool(self, name: str, default: bool = False) -> bool:
        value = self.params.get(name.lower(), default)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise self.error(f"parameter '{name}' expects a boolean, got {value!r}")

    def get_array(self, name: str) -> list[Any]:
        """Return a list parameter; scalars and comma/space separated text are split."""
        value = self.params.get(name.lower())
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            return [tok for tok in re.split(r"[,\s]+", value.strip()) if tok]
        return [value]

    def get_n_string(self, name: str) -> list[str]:
        return [str(v) for v in self.get_array(name)]

    def get_real_array(self, name: str) -> list[float]:
        out = []
        for v in self.get_array(name):
            try:
                out.append(float(v))
            except (TypeError, ValueError) as exc:
                raise self.error(f"parameter '{name}' expects real numbers, got {v!r}") from exc
        return out

    def is_enum_value(self, name: str, value: str) -> bool:
        current = self.params.get(name.lower())
        return current is not None and str(current).lower() == value.lower()

    def get_enum(self, name: str, choices, default: str) -> str:
        """Return a lower-cased enumerated value, rejecting anything not in ``choices``."""
        raw = self.get_string(name, default)
        value = raw.lower()
        allowed = [c.lower() for c in choices]
        if value not in allowed:
            raise self.error(
                f"unknown value '{raw}' for '{name}'; expected one of {', '.join(allowed)}"
            )
        return value

    def user_parameters(self, reserved) -> dict[str, Any]:
        """Parameters not named in ``reserved`` (free-form extension arguments)."""
        reserved = {r.lower() for r in reserved}
        return {k: v for k, v in self.params.items() if k not in reserved}


class Deck:
    """Ordered, read-only sequence of cards."""

    def __init__(self, cards: list[Card] | None = None, source: str = "<deck>") -> None:
        self.cards = list(cards or [])
        self.source = source

    def __iter__(self) -> Iterator[Card]:
        return iter(self.cards)

    def __len__(self) -> int:
        return len(self.cards)

    def has(self, key: str) -> bool:
        key = key.upper()
        return any(card.key == key for card in self.cards)

    def cards_for(self, key: str) -> list[Card]:
        key = key.upper()
        return [card for card in self.cards if card.key == key]

    def first(self, key: str) -> Card | None:
        found = self.cards_for(key)
        return found[0] if found else None

    @classmethod
    def from_list(cls, items: list, source: str = "<deck>", lines: list[int] | None = None):
        cards = []
        for idx, item in enumerate(items or []):
            line = lines[idx] if lines and idx < len(lines) else idx + 1
            location = f"{source}:{line}"
            if isinstance(item, str):
                cards.append(Card(item, {}, location))
                continue
            if not isinstance(item, dict) or len(item) != 1:
                raise ConfigurationError(
                    f"each deck entry must be a single-key mapping, got {item!r}",
                    location=location,
                )
            ((key, params),) = item.items()
            if params is None:
                params = {}
            if not isinstance(params, dict):
                raise ConfigurationError(
                    f"parameters of {key} must be a mapping, got {params!r}",
                    card=str(key).upper(),
                    location=location,
                )
            cards.append(Card(key, params, location))
        return cls(cards, source=source)


def load_deck(filename) -> Deck:
    """Load a deck from a YAML or JSON file."""
    filename_str = str(filename)
    try:
        with open(filename_str, "r") as f:
            text = f.read()
    except OSError as exc:
        raise InputOutputError(f"Cannot read deck '{filename_str}': {exc}", path=filename_str) from exc

    if filename_str.endswith((".yaml", ".yml")):
        try:
            data = yaml.safe_load(text)
            root = yaml.compose(text, Loader=yaml.SafeLoader)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            location = f"{filename_str}:{mark.line + 1}" if mark is not None else filename_str
            problem = getattr(exc, "problem", None) or str(exc)
            raise ConfigurationError(f"invalid YAML: {problem}", location=location) from exc
        lines = None
        if isinstance(root, yaml.SequenceNode):
            lines = [node.start_mark.line + 1 for node in root.value]
    elif filename_str.endswith(".json"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"invalid JSON: {exc.msg}", location=f"{filename_str}:{exc.lineno}"
            ) from exc
        lines = None
    else:
        logger.error("Unsupported deck format for: %s", filename_str)
        raise InputOutputError(f"Unsupported deck format for: {filename_str}", path=filename_str)

    if data is None:
        data = []
    if not isinstance(data, list):
        raise ConfigurationError(f"deck '{filename_str}' must be a list of cards")
    deck = Deck.from_list(data, source=filename_str, lines=lines)
    logger.debug("Loaded %d cards from %s", len(deck), filename_str)
    return deck
