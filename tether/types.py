"""
Shared sync types for tether.

All sync dataclasses live here. These are the shared vocabulary between the
local repository, the remote stores, the resolver and the engine. Payloads
(`content`, `entries`, settings) are opaque JSON: the core only hashes them
and reads their timestamps.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

# JSON-serializable value as stored by a LocalStore / RemoteStore
JSON = Any

# === Collections ===

RECORDS = "records"
LOGS = "logs"
SETTINGS = "settings"

COLLECTIONS = (RECORDS, LOGS, SETTINGS)

# Settings field naming the record the user explicitly opened last
LAST_OPENED_SETTING = "last_opened_record"


# === Shared Utility Functions ===


def now_ms() -> int:
    """Current wall-clock time as milliseconds since the epoch."""
    return int(time.time() * 1000)


def ms_to_iso(ms: int) -> str:
    """Convert epoch milliseconds to an ISO timestamp in UTC."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def iso_to_ms(value: Any) -> int:
    """Parse a server timestamp (ISO string, datetime or number) into epoch ms.

    Missing or unparseable values map to 0 so they never win a comparison.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# === Enums ===


class SyncStatus(str, Enum):
    """Textual sync status read by the UI layer."""

    SYNCED = "Synced"
    SAVING = "Saving…"
    OFFLINE = "Offline"  # Also covers "saved locally, pending upload"
    ERROR = "Sync Error"


class ChangeType(str, Enum):
    """Kind of change delivered by the change channel."""

    UPSERT = "upsert"
    DELETE = "delete"


# === Entities ===


@dataclass
class Record:
    """A named logical entity.

    `id` is the identity join key across renames and is never reassigned once
    set. Legacy local data may carry `id=None` until it links to a remote row.
    """

    name: str
    content: JSON = None
    updated_at: int = 0  # logical ms since epoch
    id: Optional[str] = None
    auxiliary: Dict[str, JSON] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Remote payload: auxiliary blobs ride along with the record."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "updatedAt": self.updated_at,
        }
        if self.auxiliary:
            payload["auxiliary"] = dict(self.auxiliary)
        return payload

    @classmethod
    def from_payload(cls, name: str, payload: Optional[Dict[str, Any]]) -> "Record":
        payload = payload or {}
        return cls(
            name=name,
            id=payload.get("id"),
            content=payload.get("content"),
            updated_at=int(payload.get("updatedAt") or 0),
            auxiliary=dict(payload.get("auxiliary") or {}),
        )

    def to_local(self) -> Dict[str, Any]:
        """Local storage shape (auxiliary blobs are stored separately by name)."""
        return {"id": self.id, "content": self.content, "updatedAt": self.updated_at}

    @classmethod
    def from_local(cls, name: str, data: Dict[str, Any], auxiliary=None) -> "Record":
        return cls(
            name=name,
            id=data.get("id"),
            content=data.get("content"),
            updated_at=int(data.get("updatedAt") or 0),
            auxiliary=dict(auxiliary or {}),
        )


@dataclass
class LogEntry:
    """A dated log entry. Sub-keys are namespaced as "<record name>_<suffix>"."""

    date: str
    entries: Dict[str, JSON] = field(default_factory=dict)


@dataclass
class Tombstone:
    """A durable delete intent. It exists only while the delete is pending:
    the remote confirming the delete clears it.
    """

    name: str
    created_at: int = 0
    attempts: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tombstone":
        return cls(
            name=data["name"],
            created_at=int(data.get("created_at") or 0),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
        )


@dataclass
class RemoteRow:
    """One row of the remote store.

    `key` is the record name, the log date, or the owner id for settings.
    `updated_at` is the server timestamp in epoch ms.
    """

    collection: str
    key: str
    payload: JSON
    updated_at: int = 0


@dataclass
class RemoteChange:
    """A change notification from the push subscription or a poll."""

    collection: str
    change_type: ChangeType
    row: Optional[RemoteRow] = None
    key: Optional[str] = None  # for deletes without a full row
    source: str = "push"


# === Snapshots ===


@dataclass
class LocalSnapshot:
    """Complete local state for one owner."""

    records: Dict[str, Record] = field(default_factory=dict)
    logs: Dict[str, Dict[str, JSON]] = field(default_factory=dict)
    log_ledger: Dict[str, int] = field(default_factory=dict)
    settings: Dict[str, JSON] = field(default_factory=dict)
    tombstones: Dict[str, Tombstone] = field(default_factory=dict)


@dataclass
class RemoteSnapshot:
    """Complete remote state for one owner."""

    records: List[RemoteRow] = field(default_factory=list)
    logs: List[RemoteRow] = field(default_factory=list)
    settings: Optional[RemoteRow] = None


# === Results ===


@dataclass
class SyncConflict:
    """Details of a conflict the resolver settled, kept for visibility."""

    record_id: Optional[str]
    name: str
    resolution: str  # "local_wins", "remote_wins", "identical", "merged_duplicate", ...
    local_updated_at: int = 0
    remote_updated_at: int = 0


@dataclass
class ReconcileResult:
    """Output of a full reconciliation pass.

    The merged collections replace local state wholesale; the remaining
    fields describe the local side effects and remote writes to perform.
    """

    records: Dict[str, Record] = field(default_factory=dict)
    logs: Dict[str, Dict[str, JSON]] = field(default_factory=dict)
    settings: Dict[str, JSON] = field(default_factory=dict)
    renames: Dict[str, str] = field(default_factory=dict)
    pending_uploads: Set[str] = field(default_factory=set)
    pending_log_uploads: Set[str] = field(default_factory=set)
    remote_deletes: Set[str] = field(default_factory=set)
    evicted: Set[str] = field(default_factory=set)
    pending_settings_upload: bool = False
    conflicts: List[SyncConflict] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True when the pass had anything to rename, upload or delete."""
        return bool(
            self.renames
            or self.pending_uploads
            or self.pending_log_uploads
            or self.pending_settings_upload
            or self.remote_deletes
            or self.evicted
        )


@dataclass
class SyncResult:
    """Result of a sync operation."""

    pushed: int = 0  # Rows written to the remote
    pulled: int = 0  # Remote rows applied locally
    renames: Dict[str, str] = field(default_factory=dict)
    evicted: List[str] = field(default_factory=list)
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        """Number of conflicts encountered."""
        return len(self.conflicts)
