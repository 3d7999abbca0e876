# runtime/hooks/base.py
"""Observer interface notified at solver lifecycle points."""

from __future__ import annotations


class Hook:
    """Base class for solver hooks; every callback defaults to a no-op.

    Parameters
    ----------
    name : str
        Identifier the hook was registered under.
    params : dict, optional
        Free-form user parameters from the HOOK card.
    """

    def __init__(self, name: str, params: dict | None = None) -> None:
        self.name = name
        self.params = dict(params or {})

    def on_init(self, solver) -> None:
        """Called once after the solver is created."""

    def pre_solve(self, solver) -> None:
        """Called before each nonlinear solve of a continuation step."""

    def post_iteration(self, solver, iteration: int, update_norm: float) -> None:
        """Called after every nonlinear iteration."""

    def post_solve(self, solver, snapshot: dict) -> None:
        """Called after each converged step has been recorded."""

    def on_close(self, solver) -> None:
        """Called once before the solver is destroyed."""

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return f"{self.__class__.__name__}(name={self.name!r})"
