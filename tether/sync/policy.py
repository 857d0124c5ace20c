"""Single-active-record policy.

An owner may hold at most one active record. After a merge that could have
produced more (first sync from several devices, a restored backup), exactly
one survivor is chosen deterministically and the rest are evicted: their
remote rows are deleted, their auxiliary blobs purged, and every log
sub-entry namespaced to them removed from every date.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from tether.types import JSON, Record

from .resolver import purge_log_keys

logger = logging.getLogger(__name__)


@dataclass
class EvictionPlan:
    """Which record survives and what the evictions touch."""

    survivor: Optional[str] = None
    evicted: List[str] = field(default_factory=list)
    remote_deletes: Set[str] = field(default_factory=set)

    @property
    def is_noop(self) -> bool:
        return not self.evicted


def select_survivor(records: Mapping[str, Record], last_opened: Optional[str] = None) -> Optional[str]:
    """Pick the survivor: the last explicitly opened record, else the newest.

    Ties on ``updated_at`` go to the lexicographically smallest name so that
    every device picks the same survivor.
    """
    if not records:
        return None
    if last_opened is not None and last_opened in records:
        return last_opened
    return min(records.values(), key=lambda r: (-r.updated_at, r.name)).name


def plan_single_active(
    records: Mapping[str, Record],
    last_opened: Optional[str] = None,
    remote_names: Iterable[str] = (),
) -> EvictionPlan:
    """Compute the evictions needed to leave at most one record.

    Running it again on the surviving set is a no-op.
    """
    if len(records) <= 1:
        return EvictionPlan(survivor=next(iter(records), None))

    survivor = select_survivor(records, last_opened)
    evicted = sorted(name for name in records if name != survivor)
    remote_names = set(remote_names)
    plan = EvictionPlan(
        survivor=survivor,
        evicted=evicted,
        remote_deletes={name for name in evicted if name in remote_names},
    )
    logger.info(
        f"Single-active policy: keeping {survivor!r}, "
        f"evicting {len(evicted)} record(s): {', '.join(evicted)}"
    )
    return plan


def purge_evicted_logs(
    logs: Mapping[str, Mapping[str, JSON]], evicted: Iterable[str], known_names: Iterable[str]
) -> Dict[str, Dict[str, JSON]]:
    """Remove evicted records' sub-entries from every date."""
    evicted = list(evicted)
    known_names = list(known_names)
    return {date: purge_log_keys(entries, evicted, known_names) for date, entries in logs.items()}
