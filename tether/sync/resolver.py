"""Conflict resolution for tether.

Pure functions shared by full reconciliation and by the change channel:

- ``accept_remote``: the single acceptance rule for incremental updates.
- ``resolve_record``: per-entity merge of a local and a remote record
  (content hash first, then last-write-wins on ``updated_at``, ties to remote).
- ``absorb_duplicate``: fold a duplicate copy into a finalized record.
- settings and log-day merges, plus log sub-key namespacing helpers.
"""

import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from tether.types import JSON, Record

from .hashing import ContentHasher, default_hasher

IDENTICAL = "identical"
LOCAL_WINS = "local_wins"
REMOTE_WINS = "remote_wins"

# Decorations appended to copies of a record ("Physics (Local)", "Demo (Example)").
# Names that legitimately end this way will be merged into their base name.
_DECORATION_RE = re.compile(r"\s*\((?:local|example)\)\s*$", re.IGNORECASE)


@dataclass
class Resolution:
    """Outcome of resolving one local/remote pair."""

    record: Record
    winner: str  # IDENTICAL, LOCAL_WINS or REMOTE_WINS

    @property
    def needs_upload(self) -> bool:
        return self.winner == LOCAL_WINS


def accept_remote(local_ts: Optional[int], remote_ts: Optional[int]) -> bool:
    """Shared acceptance rule: apply a remote row only if strictly newer.

    ``local_ts`` is None when there is no local value at all. Ties and
    remote-older rows are rejected, which keeps a stale poll response from
    clobbering a fresher local edit.
    """
    if remote_ts is None:
        return False
    if local_ts is None:
        return True
    return remote_ts > local_ts


def resolve_record(
    local: Record, remote: Record, hasher: ContentHasher = default_hasher
) -> Resolution:
    """Merge one record present on both sides.

    - Content hashes equal: local content, timestamp and auxiliary blobs stay
      untouched; only identity (id, name) aligns with the remote row.
    - Otherwise the greater ``updated_at`` wins, a tie goes to remote.
      A remote winner brings its auxiliary blobs along; kinds the remote does
      not carry are kept from local.
    """
    if hasher.hash_record(local) == hasher.hash_record(remote):
        merged = replace(local, id=remote.id, name=remote.name, auxiliary=dict(local.auxiliary))
        return Resolution(merged, IDENTICAL)

    if local.updated_at > remote.updated_at:
        merged = replace(local, id=remote.id or local.id, auxiliary=dict(local.auxiliary))
        return Resolution(merged, LOCAL_WINS)

    merged = Record(
        name=remote.name,
        id=remote.id or local.id,
        content=remote.content,
        updated_at=remote.updated_at,
        auxiliary={**local.auxiliary, **remote.auxiliary},
    )
    return Resolution(merged, REMOTE_WINS)


def absorb_duplicate(final: Record, duplicate: Record) -> Tuple[Record, bool]:
    """Fold ``duplicate`` into ``final``, keeping final's identity and name.

    The side with the later ``updated_at`` supplies content. Auxiliary kinds
    missing from ``final`` are taken from the duplicate.

    Returns:
        (merged record, True if the duplicate's content won and must be uploaded)
    """
    auxiliary = {**duplicate.auxiliary, **final.auxiliary}
    if duplicate.updated_at > final.updated_at:
        merged = replace(
            final,
            content=duplicate.content,
            updated_at=duplicate.updated_at,
            auxiliary=auxiliary,
        )
        return merged, True
    return replace(final, auxiliary=auxiliary), False


def strip_decorations(name: str) -> str:
    """Strip trailing "(Local)"/"(Example)" markers, repeatedly."""
    base = name
    while True:
        stripped = _DECORATION_RE.sub("", base)
        if stripped == base:
            return base
        base = stripped


def merge_settings(local: Mapping[str, Any], remote: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Field-by-field merge: remote wins wherever it has a value."""
    merged = dict(local or {})
    for key, value in (remote or {}).items():
        if value is not None:
            merged[key] = value
    return merged


def merge_log_day(local: Mapping[str, JSON], remote: Mapping[str, JSON]) -> Dict[str, JSON]:
    """Field-level union of one day's entries; remote overwrites on collision."""
    merged = dict(local or {})
    merged.update(remote or {})
    return merged


# === Log sub-key namespacing ===


def key_owner(key: str, names: Iterable[str]) -> Optional[str]:
    """Record name a log sub-key is namespaced by ("<name>_<suffix>").

    The longest matching name wins, so "Math_Adv_quiz" belongs to "Math_Adv"
    rather than "Math" when both records exist.
    """
    owner = None
    for name in names:
        if key.startswith(f"{name}_") and (owner is None or len(name) > len(owner)):
            owner = name
    return owner


def rename_log_keys(
    entries: Mapping[str, JSON], renames: Mapping[str, str], known_names: Iterable[str]
) -> Dict[str, JSON]:
    """Rewrite sub-keys namespaced by an old record name to the new name."""
    if not renames:
        return dict(entries)
    names = set(known_names) | set(renames)
    result: Dict[str, JSON] = {}
    renamed: Dict[str, JSON] = {}
    for key, value in entries.items():
        owner = key_owner(key, names)
        if owner is not None and owner in renames:
            renamed[f"{renames[owner]}_{key[len(owner) + 1:]}"] = value
        else:
            result[key] = value
    # Entries migrated from an old name overwrite same-named keys
    result.update(renamed)
    return result


def purge_log_keys(
    entries: Mapping[str, JSON], evicted: Iterable[str], known_names: Iterable[str]
) -> Dict[str, JSON]:
    """Drop every sub-key namespaced by an evicted record name."""
    evicted = set(evicted)
    if not evicted:
        return dict(entries)
    names = set(known_names) | evicted
    return {k: v for k, v in entries.items() if key_owner(k, names) not in evicted}


def follow_renames(name: Optional[str], renames: Mapping[str, str]) -> Optional[str]:
    """Resolve a name through a (possibly chained) rename map."""
    seen = set()
    while name is not None and name in renames and name not in seen:
        seen.add(name)
        name = renames[name]
    return name
