"""Custom exception types for the device solver."""

from __future__ import annotations

from typing import Any


class DeviceSolverError(Exception):
    """Base class for domain-specific errors."""


class ConfigurationError(DeviceSolverError):
    """Raised for missing, contradictory or unknown deck parameters.

    The message is prefixed with the offending card's source location so the
    diagnostic printed at exit points straight at the deck line.
    """

    def __init__(
        self,
        message: str,
        *,
        card: str | None = None,
        location: str | None = None,
    ) -> None:
        self.card = card
        self.location = location
        self.detail = message
        if location or card:
            prefix = "ERROR at"
            if location:
                prefix += f" {location}"
            if card:
                prefix += f" {card}"
            message = f"{prefix}: {message}"
        super().__init__(message)


class InputOutputError(DeviceSolverError):
    """Raised when an import source is missing or an export target is unsupported."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ConvergenceError(DeviceSolverError):
    """Raised once a continuation strategy has exhausted its local recovery."""

    def __init__(
        self,
        message: str,
        *,
        parameter: str | None = None,
        value: float | None = None,
    ) -> None:
        super().__init__(message)
        self.parameter = parameter
        self.value = value


class UnsupportedOperationError(DeviceSolverError):
    """Raised when an operation is not available for the current mesh/system."""


class MeshStateError(DeviceSolverError):
    """Raised when field operations are attempted on an unprepared mesh."""


class HookError(DeviceSolverError):
    """Raised when a solver hook fails; the run continues in degraded mode."""

    def __init__(
        self,
        message: str,
        *,
        hook: str | None = None,
        stage: str | None = None,
        original: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.hook = hook
        self.stage = stage
        self.original = original


__all__ = [
    "DeviceSolverError",
    "ConfigurationError",
    "InputOutputError",
    "ConvergenceError",
    "UnsupportedOperationError",
    "MeshStateError",
    "HookError",
]
