"""
Hub events and the in-process bus that carries them.
"""

from .bus import (
    DeviceFound,
    DeviceStatusChanged,
    EntityStateChanged,
    EventBus,
    HubEvent,
)

__all__ = [
    "EventBus",
    "HubEvent",
    "DeviceFound",
    "DeviceStatusChanged",
    "EntityStateChanged",
]
