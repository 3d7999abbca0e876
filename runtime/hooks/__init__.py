"""Solver hooks: built-in recorders, the user registry and the control hook."""

from .base import Hook
from .control import ControlHook
from .recorders import CVHook, IVRecorderHook, MonitorHook
from .registry import HOOK_IMPLEMENTATIONS, HookRegistry

__all__ = [
    "Hook",
    "ControlHook",
    "CVHook",
    "IVRecorderHook",
    "MonitorHook",
    "HOOK_IMPLEMENTATIONS",
    "HookRegistry",
]
