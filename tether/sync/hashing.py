"""Content hashing for duplicate detection.

The hash covers a record's stable content only. Volatile calendar/view
fields and the logical timestamp are excluded, and empty values (None, "",
[], {}) are treated as absent so that a field that was never set and a field
that was cleared hash the same.
"""

import hashlib
import json
from typing import Any, FrozenSet, Iterable, Optional

from tether.types import Record

# Top-level content fields that change while browsing rather than editing
DEFAULT_VOLATILE_FIELDS: FrozenSet[str] = frozenset(
    {
        "updatedAt",
        "lastViewedDate",
        "selectedDate",
        "viewMonth",
    }
)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


class ContentHasher:
    """Deterministic sha256 digest of record content."""

    def __init__(self, volatile_fields: Optional[Iterable[str]] = None):
        self.volatile_fields = (
            frozenset(volatile_fields) if volatile_fields is not None else DEFAULT_VOLATILE_FIELDS
        )

    def normalize(self, content: Any) -> Any:
        if isinstance(content, dict):
            return {
                k: v
                for k, v in content.items()
                if k not in self.volatile_fields and not _is_empty(v)
            }
        if _is_empty(content):
            return None
        return content

    def hash_content(self, content: Any) -> str:
        normalized = self.normalize(content)
        return hashlib.sha256(
            json.dumps(normalized, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()

    def hash_record(self, record: Record) -> str:
        return self.hash_content(record.content)


default_hasher = ContentHasher()
