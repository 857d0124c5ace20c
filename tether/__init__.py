"""
tether - offline-first sync between a device-local store and one remote
authoritative store per signed-in owner.
"""

from .sync.engine import SyncEngine
from .types import Record, SyncResult, SyncStatus

try:
    from importlib.metadata import version

    __version__ = version("tether-sync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SyncEngine", "Record", "SyncResult", "SyncStatus"]
