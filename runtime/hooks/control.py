# runtime/hooks/control.py
"""Result-document persistence hook; always attached last."""

from __future__ import annotations

import logging

from runtime.hooks.base import Hook

logger = logging.getLogger("device_solver")


class ControlHook(Hook):
    """Writes the whole result document after every converged step."""

    def __init__(self, document, path: str | None) -> None:
        super().__init__("control")
        self.document = document
        self.path = path

    def post_solve(self, solver, snapshot: dict) -> None:
        if self.path is None or not solver.is_primary:
            return
        self.document.save(self.path)
