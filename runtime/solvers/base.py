# runtime/solvers/base.py
"""Abstract base class for the physics formulations driven by SOLVE cards."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from core.exceptions import DeviceSolverError, HookError, UnsupportedOperationError

logger = logging.getLogger("device_solver")


class SolverBase(ABC):
    """One formulation bound to a system, method settings and a solve request.

    The continuation strategy owns the outer loop; a solver only knows how to
    converge a single operating point, save/restore its state and report
    electrode quantities. Converged points are published through
    :meth:`record`, which is also where hooks see them.
    """

    formulation: str = ""
    supported_types: frozenset = frozenset()

    def __init__(self, system, settings, config) -> None:
        self.system = system
        self.settings = settings
        self.config = config
        self.hooks: list = []
        self.result_group = None
        self.is_primary = True
        self.created = False

        self.time = 0.0
        self.dt: float | None = None
        self.order = 1
        self.history: list[dict] = []
        self.dt_history: list[float] = []
        self.pseudo_dt: float | None = None
        self.gmin = 0.0

        self.overrides: dict[str, tuple[str, float]] = {}
        self.voltages: dict[str, float] = {}
        self.currents: dict[str, float] = {}
        self.last_iterations = 0

    @property
    def label(self) -> str:
        return self.config.label

    @property
    def optical_scale(self) -> float:
        """Optical generation multiplier at the current time (0 when disabled)."""
        if not self.config.optical_gen:
            return 0.0
        return self.system.field_source.scale(self.time)

    @classmethod
    def supports(cls, solution_type) -> bool:
        return solution_type in cls.supported_types

    # -- lifecycle ---------------------------------------------------------

    def add_hook(self, hook) -> None:
        self.hooks.append(hook)

    def create_solver(self) -> None:
        """Load the initial state from the system and initialise hooks."""
        for label in self.electrode_labels():
            bc = self.system.boundaries.electrode_bc(label)
            self.voltages[label] = bc.potential
            self.currents[label] = bc.current
        self.setup()
        self.created = True
        self.notify("on_init")

    def solve(self) -> None:
        """Run the continuation strategy for ``config.solution_type``."""
        from runtime.continuation import run_continuation

        run_continuation(self)

    def destroy_solver(self) -> None:
        if not self.created:
            return
        self.created = False
        try:
            self.notify("on_close")
        finally:
            self.teardown()

    # -- formulation interface ---------------------------------------------

    @abstractmethod
    def setup(self) -> None:
        """Build the discretisation and read the initial guess from regions."""

    def teardown(self) -> None:
        """Release formulation resources."""

    @abstractmethod
    def solve_point(self) -> bool:
        """Converge the current operating point.

        Returns
        -------
        bool
            ``True`` when the nonlinear iteration converged. On ``False`` the
            caller restores a saved state before trying again.
        """

    @abstractmethod
    def save_state(self) -> dict:
        """Return a copy of the unknowns; array values may be extrapolated."""

    @abstractmethod
    def restore_state(self, state: dict) -> None:
        """Reset the unknowns to a state returned by :meth:`save_state`."""

    @abstractmethod
    def sync_to_system(self) -> None:
        """Write the current unknowns back to region variables and contacts."""

    def solve_ac(self, frequency: float, electrode: str, vac: float) -> dict:
        """Small-signal admittance of every electrode at ``frequency``."""
        raise UnsupportedOperationError(
            f"formulation '{self.formulation}' has no small-signal analysis"
        )

    def lte_norm(self, predicted: dict, rtol: float, atol: float) -> float:
        """Weighted local truncation error estimate against ``predicted``."""
        return 0.0

    # -- bias --------------------------------------------------------------

    def electrode_labels(self) -> list[str]:
        return self.system.boundaries.electrode_labels()

    def drive(self, label: str) -> tuple[str, float]:
        """``(mode, value)`` currently applied to electrode ``label``."""
        if label in self.overrides:
            return self.overrides[label]
        return self.system.sources.drive(label, self.time)

    def set_bias(self, label: str, mode: str, value: float) -> None:
        self.overrides[label] = (mode, float(value))

    def clear_bias(self) -> None:
        self.overrides.clear()

    def electrode_voltage(self, label: str) -> float:
        return self.voltages.get(label, 0.0)

    def electrode_current(self, label: str) -> float:
        return self.currents.get(label, 0.0)

    # -- time stepping -----------------------------------------------------

    def begin_transient(self) -> None:
        self.history = [self.save_state()]
        self.dt_history = []

    def set_time_step(self, time: float, dt: float, order: int) -> None:
        self.time = time
        self.dt = dt
        self.order = order if len(self.history) >= 2 else 1

    def accept_time_step(self) -> None:
        self.history.append(self.save_state())
        self.history = self.history[-3:]
        self.dt_history.append(self.dt)
        self.dt_history = self.dt_history[-2:]

    def end_transient(self) -> None:
        self.dt = None
        self.history = []
        self.dt_history = []

    # -- publication -------------------------------------------------------

    def record(self, **extra) -> dict:
        """Publish the converged state as one snapshot of the result group."""
        self.sync_to_system()
        snapshot = {
            "index": len(self.result_group) if self.result_group is not None else 0,
            "type": self.config.solution_type.value,
            "iterations": self.last_iterations,
            "electrodes": {
                label: {
                    "voltage": float(self.electrode_voltage(label)),
                    "current": float(self.electrode_current(label)),
                }
                for label in self.electrode_labels()
            },
        }
        snapshot.update(extra)
        if self.result_group is not None:
            self.result_group.add(snapshot)
        self.notify("post_solve", snapshot)
        return snapshot

    def notify(self, stage: str, *args) -> None:
        """Call ``stage`` on every hook in attachment order."""
        for hook in self.hooks:
            try:
                getattr(hook, stage)(self, *args)
            except DeviceSolverError:
                raise
            except Exception as exc:
                raise HookError(
                    f"hook '{hook.name}' failed in {stage}: {exc}",
                    hook=hook.name,
                    stage=stage,
                    original=exc,
                ) from exc

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return f"{self.__class__.__name__}(label={self.label!r}, formulation={self.formulation!r})"
