"""
Repositories for hub persistence.
"""

from .device import DeviceRepository

__all__ = ["DeviceRepository"]
