"""
Device registry and status state machine.
"""

from .device_registry import DeviceRegistry
from .transitions import ALLOWED_TRANSITIONS, can_transition

__all__ = [
    "DeviceRegistry",
    "ALLOWED_TRANSITIONS",
    "can_transition",
]
