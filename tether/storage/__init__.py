"""tether storage backends.

Local stores (SQLite, in-memory), the typed local repository, and the
remote stores (Supabase, in-memory).
"""

from .local import LocalRepository
from .memory import MemoryRemoteStore, MemoryStore
from .remote import SupabaseIdentity, SupabaseRemoteStore
from .sqlite import SQLiteStore

__all__ = [
    # Local
    "LocalRepository",
    "MemoryStore",
    "SQLiteStore",
    # Remote
    "MemoryRemoteStore",
    "SupabaseIdentity",
    "SupabaseRemoteStore",
]
