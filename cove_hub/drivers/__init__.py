"""
Protocol drivers and the manager that supervises them.

This module provides:
- The ProtocolDriver base class every protocol adapter implements
- An explicit protocol tag to factory registry
- The DriverManager that pairs, connects and disconnects devices
"""

from .base import DriverContext, PairingResult, ProtocolDriver
from .manager import DriverManager, PairingSession, PairingTarget
from .registry import DriverFactory, DriverRegistry, default_driver_registry

__all__ = [
    # Base
    "ProtocolDriver",
    "DriverContext",
    "PairingResult",
    # Registry
    "DriverRegistry",
    "DriverFactory",
    "default_driver_registry",
    # Manager
    "DriverManager",
    "PairingSession",
    "PairingTarget",
]
