"""
Collaboration state: presence and advisory locks.

Both are TTL-based and purely advisory. Writes never consult them.
"""

from .locks import LockEntry, LockManager, cell_resource, column_resource
from .presence import PresenceEntry, PresenceTracker
from .reaper import Reaper

__all__ = [
    "LockEntry",
    "LockManager",
    "cell_resource",
    "column_resource",
    "PresenceEntry",
    "PresenceTracker",
    "Reaper",
]
