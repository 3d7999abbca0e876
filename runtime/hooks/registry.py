# runtime/hooks/registry.py
"""Static hook implementations and the user hook registry (HOOK cards)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from runtime.hooks.recorders import CVHook, IVRecorderHook, MonitorHook

logger = logging.getLogger("device_solver")

HOOK_IMPLEMENTATIONS = {
    "iv": IVRecorderHook,
    "monitor": MonitorHook,
    "cv": CVHook,
}


@dataclass
class HookSpec:
    implementation: str
    params: dict = field(default_factory=dict)


class HookRegistry:
    """Mapping hook id -> (implementation id, user parameters)."""

    def __init__(self) -> None:
        self._hooks: dict[str, HookSpec] = {}

    def __contains__(self, hook_id: str) -> bool:
        return hook_id in self._hooks

    def __len__(self) -> int:
        return len(self._hooks)

    def get(self, hook_id: str) -> HookSpec | None:
        return self._hooks.get(hook_id)

    def register(self, hook_id: str, implementation: str, params: dict | None = None) -> None:
        if implementation not in HOOK_IMPLEMENTATIONS:
            raise KeyError(f"Hook implementation '{implementation}' not found.")
        if hook_id in self._hooks:
            logger.warning("Hook '%s' already loaded; replacing it.", hook_id)
        self._hooks[hook_id] = HookSpec(implementation, dict(params or {}))

    def unregister(self, hook_id: str) -> bool:
        if hook_id not in self._hooks:
            logger.warning("Hook '%s' is not loaded; nothing to unload.", hook_id)
            return False
        del self._hooks[hook_id]
        return True

    def instantiate(self) -> list:
        """Fresh hook objects in id order."""
        return [
            HOOK_IMPLEMENTATIONS[spec.implementation](hook_id, spec.params)
            for hook_id, spec in sorted(self._hooks.items())
        ]
