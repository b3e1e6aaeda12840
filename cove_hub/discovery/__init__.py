"""
Network device discovery for the hub.
"""

from .scanners import BaseScanner, MDNSScanner, ScanResult
from .service import DiscoveryService

__all__ = [
    "DiscoveryService",
    "BaseScanner",
    "ScanResult",
    "MDNSScanner",
]
