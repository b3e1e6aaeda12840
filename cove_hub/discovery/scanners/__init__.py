"""
Network scanners for device discovery.
"""

from .base import BaseScanner, ScanResult
from .mdns import MDNSScanner

__all__ = ["BaseScanner", "ScanResult", "MDNSScanner"]
