"""Reconciliation, conflict resolution and mutation propagation."""

from .channel import ChangeChannel
from .engine import SyncEngine
from .hashing import ContentHasher
from .queue import Debouncer, MutationQueue
from .reconcile import check_invariants, reconcile

__all__ = [
    "ChangeChannel",
    "ContentHasher",
    "Debouncer",
    "MutationQueue",
    "SyncEngine",
    "check_invariants",
    "reconcile",
]
