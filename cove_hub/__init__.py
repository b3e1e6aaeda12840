"""
Cove hub: local daemon for discovering, pairing and supervising devices.
"""

__version__ = "0.1.0"
