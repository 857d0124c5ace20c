"""Full reconciliation of a local snapshot against a remote snapshot.

Runs at session start. Pure: takes two snapshots and returns a
``ReconcileResult`` describing the merged state and the remote writes needed;
the engine commits it. Three ordered phases:

A. Identity matching: every remote record is matched to a local record by
   ``id``, or linked by exact name, and resolved by content hash and
   ``updated_at``.
B. Residual local records: duplicates by content or by decorated name are
   merged away (recording renames); genuinely new local data is kept unless
   the single-active slot is already taken.
C. Dependent collections: the rename map is applied to every log day before
   remote log rows are merged in under the per-date ledger.

The single-active-record policy runs last. Re-running reconciliation with no
intervening change is a no-op.
"""

import logging
import uuid
from dataclasses import replace
from typing import Dict, Optional, Set

from tether.protocols import InvariantViolation
from tether.types import (
    LAST_OPENED_SETTING,
    LocalSnapshot,
    Record,
    ReconcileResult,
    RemoteSnapshot,
    SyncConflict,
)

from .hashing import ContentHasher, default_hasher
from .policy import plan_single_active, purge_evicted_logs
from .resolver import (
    IDENTICAL,
    LOCAL_WINS,
    REMOTE_WINS,
    absorb_duplicate,
    follow_renames,
    key_owner,
    merge_log_day,
    merge_settings,
    rename_log_keys,
    resolve_record,
    strip_decorations,
)

logger = logging.getLogger(__name__)


def reconcile(
    local: LocalSnapshot,
    remote: RemoteSnapshot,
    hasher: Optional[ContentHasher] = None,
    enforce_single_active: bool = True,
) -> ReconcileResult:
    """Merge ``local`` and ``remote`` into one consistent state.

    Args:
        local: Complete local snapshot (records, logs, ledger, settings, tombstones).
        remote: Complete remote snapshot for the same owner.
        hasher: Content hasher; defaults to the module-wide one.
        enforce_single_active: Apply the single-active-record policy.

    Returns:
        ReconcileResult with merged records/logs/settings and the rename map,
        uploads, remote deletes and evictions to perform.
    """
    result = ReconcilePass(local, remote, hasher or default_hasher, enforce_single_active).run()
    check_invariants(result, local, enforce_single_active)
    return result


class ReconcilePass:
    """State for a single reconciliation run."""

    def __init__(
        self,
        local: LocalSnapshot,
        remote: RemoteSnapshot,
        hasher: ContentHasher,
        enforce_single_active: bool,
    ):
        self.local = local
        self.remote = remote
        self.hasher = hasher
        self.enforce_single_active = enforce_single_active

        self.result = ReconcileResult()
        self.finalized: Dict[str, Record] = {}
        self.final_name_by_id: Dict[str, str] = {}
        self.claimed_local: Set[str] = set()
        self.remote_names = {
            row.key for row in remote.records if row.key not in local.tombstones
        }

    def run(self) -> ReconcileResult:
        self.phase_a_match_remote()
        self.phase_b_residual_local()
        self.result.settings = self.merge_settings()
        self.apply_policy()
        self.phase_c_logs()
        self.result.records = dict(self.finalized)
        logger.debug(
            f"Reconcile pass: {len(self.result.records)} records, "
            f"{len(self.result.renames)} renames, {len(self.result.pending_uploads)} uploads, "
            f"{len(self.result.pending_log_uploads)} log uploads, {len(self.result.evicted)} evicted"
        )
        return self.result

    # === Helpers ===

    def _rename(self, old: str, new: str) -> None:
        if old != new:
            self.result.renames[old] = new

    def _finalize(self, record: Record, upload: bool = False) -> None:
        self.finalized[record.name] = record
        if record.id:
            self.final_name_by_id[record.id] = record.name
        if upload:
            self.result.pending_uploads.add(record.name)

    def _note(self, record_id, name, resolution, local_ts=0, remote_ts=0) -> None:
        self.result.conflicts.append(
            SyncConflict(
                record_id=record_id,
                name=name,
                resolution=resolution,
                local_updated_at=local_ts,
                remote_updated_at=remote_ts,
            )
        )

    def _find_local_match(self, remote_rec: Record, remote_ids: Set[str]) -> Optional[Record]:
        # By id
        for candidate in self.local.records.values():
            if candidate.id and candidate.id == remote_rec.id:
                if candidate.name in self.claimed_local:
                    return None
                return candidate

        # Link by exact name, unless that local record belongs to another remote id
        candidate = self.local.records.get(remote_rec.name)
        if candidate is None or candidate.name in self.claimed_local:
            return None
        if candidate.id and candidate.id in remote_ids:
            return None
        logger.info(
            f"Linking local {candidate.name!r} to remote id {remote_rec.id} by name"
        )
        return candidate

    # === Phase A ===

    def phase_a_match_remote(self) -> None:
        rows = [row for row in self.remote.records if row.key not in self.local.tombstones]
        skipped = len(self.remote.records) - len(rows)
        if skipped:
            logger.info(f"Ignoring {skipped} remote record(s) with pending tombstones")

        decoded = []
        for row in rows:
            remote_rec = Record.from_payload(row.key, row.payload)
            needs_upload = False
            if not remote_rec.id:
                # Legacy remote row without an id: assign one and write it back
                remote_rec.id = str(uuid.uuid4())
                needs_upload = True
            decoded.append((remote_rec, needs_upload))

        remote_ids = {rec.id for rec, _ in decoded}
        # Newest rows claim identities first so stale duplicate rows lose
        decoded.sort(key=lambda item: (-item[0].updated_at, item[0].name))

        for remote_rec, needs_upload in decoded:
            if remote_rec.id in self.final_name_by_id:
                final_name = self.final_name_by_id[remote_rec.id]
                logger.info(
                    f"Remote row {remote_rec.name!r} duplicates id {remote_rec.id} "
                    f"already kept as {final_name!r}; deleting stale row"
                )
                self._rename(remote_rec.name, final_name)
                self.result.remote_deletes.add(remote_rec.name)
                continue

            local_rec = self._find_local_match(remote_rec, remote_ids)
            if local_rec is None:
                self._finalize(remote_rec, upload=needs_upload)
                continue

            self.claimed_local.add(local_rec.name)
            resolution = resolve_record(local_rec, remote_rec, self.hasher)
            merged = resolution.record

            if resolution.winner == LOCAL_WINS and local_rec.name != remote_rec.name:
                if local_rec.name in self.remote_names or local_rec.name in self.finalized:
                    # Local label is taken by another record; keep the remote row's name
                    merged = replace(merged, name=remote_rec.name)
                else:
                    self.result.remote_deletes.add(remote_rec.name)
                    self._rename(remote_rec.name, local_rec.name)

            self._rename(local_rec.name, merged.name)
            self._finalize(merged, upload=resolution.needs_upload or needs_upload)
            if resolution.winner != IDENTICAL:
                self._note(
                    merged.id,
                    merged.name,
                    resolution.winner,
                    local_rec.updated_at,
                    remote_rec.updated_at,
                )

    # === Phase B ===

    def _residual_order(self, record: Record):
        last_opened = self.local.settings.get(LAST_OPENED_SETTING)
        return (record.name != last_opened, -record.updated_at, record.name)

    def phase_b_residual_local(self) -> None:
        residual = [
            rec for name, rec in self.local.records.items() if name not in self.claimed_local
        ]
        residual.sort(key=self._residual_order)

        for rec in residual:
            if rec.name in self.local.tombstones:
                logger.warning(f"Dropping local {rec.name!r}: name has a pending tombstone")
                continue

            # 1. Identical content already finalized under some name
            digest = self.hasher.hash_record(rec)
            duplicate_of = next(
                (
                    final
                    for final in self.finalized.values()
                    if self.hasher.hash_record(final) == digest
                ),
                None,
            )
            if duplicate_of is not None:
                logger.info(f"Content identical: merging {rec.name!r} into {duplicate_of.name!r}")
                merged, _ = absorb_duplicate(duplicate_of, replace(rec, updated_at=0))
                self._finalize(merged, upload=duplicate_of.name in self.result.pending_uploads)
                self._rename(rec.name, duplicate_of.name)
                self._note(merged.id, merged.name, "merged_duplicate", rec.updated_at)
                continue

            # 2. Decorated copy of a finalized record ("X (Local)" -> "X")
            base = strip_decorations(rec.name)
            if base != rec.name and base in self.finalized:
                logger.info(f"Fuzzy match: {rec.name!r} looks like a copy of {base!r}")
                self._absorb(base, rec)
                self._rename(rec.name, base)
                continue

            # 3. Same label as a finalized record with a different identity
            if rec.name in self.finalized:
                logger.info(f"Name collision for {rec.name!r}: merging by timestamp")
                self._absorb(rec.name, rec)
                continue

            # 4. Genuinely new local data
            if self.enforce_single_active and self.finalized:
                logger.info(
                    f"Policy eviction: dropping local-only {rec.name!r}, "
                    f"active slot held by {next(iter(self.finalized))!r}"
                )
                self.result.evicted.add(rec.name)
                continue

            if not rec.id:
                rec = replace(rec, id=str(uuid.uuid4()))
            self._finalize(rec, upload=True)

    def _absorb(self, final_name: str, duplicate: Record) -> None:
        final = self.finalized[final_name]
        merged, duplicate_won = absorb_duplicate(final, duplicate)
        upload = duplicate_won or final_name in self.result.pending_uploads
        self._finalize(merged, upload=upload)
        self._note(
            merged.id,
            merged.name,
            LOCAL_WINS if duplicate_won else REMOTE_WINS,
            duplicate.updated_at,
            final.updated_at,
        )

    # === Settings ===

    def merge_settings(self):
        remote_payload = self.remote.settings.payload if self.remote.settings else None
        merged = merge_settings(self.local.settings, remote_payload)
        last_opened = merged.get(LAST_OPENED_SETTING)
        renamed = follow_renames(last_opened, self.result.renames)
        if renamed != last_opened:
            merged[LAST_OPENED_SETTING] = renamed
        return merged

    # === Policy ===

    def apply_policy(self) -> None:
        if not self.enforce_single_active:
            return
        last_opened = self.result.settings.get(LAST_OPENED_SETTING)
        plan = plan_single_active(self.finalized, last_opened, self.remote_names)
        for name in plan.evicted:
            record = self.finalized.pop(name)
            if record.id and self.final_name_by_id.get(record.id) == name:
                del self.final_name_by_id[record.id]
            self.result.pending_uploads.discard(name)
            self.result.evicted.add(name)
        self.result.remote_deletes |= plan.remote_deletes
        # Renames pointing at an evicted record now point nowhere
        for old, new in list(self.result.renames.items()):
            if new in self.result.evicted:
                del self.result.renames[old]
                self.result.evicted.add(old)

    # === Phase C ===

    def phase_c_logs(self) -> None:
        renames = self.result.renames
        known_names = (
            set(self.local.records)
            | set(self.finalized)
            | self.remote_names
            | set(renames)
            | self.result.evicted
        )

        logs = {
            date: rename_log_keys(entries, renames, known_names)
            for date, entries in self.local.logs.items()
        }

        remote_days = {}
        for row in self.remote.logs:
            remote_days[row.key] = row.payload or {}
            ledger_ts = self.local.log_ledger.get(row.key)
            if ledger_ts is not None and ledger_ts > row.updated_at:
                logger.debug(
                    f"Keeping local log {row.key}: ledger {ledger_ts} "
                    f"newer than remote {row.updated_at}"
                )
                continue
            incoming = rename_log_keys(row.payload or {}, renames, known_names)
            logs[row.key] = merge_log_day(logs.get(row.key, {}), incoming)

        if self.result.evicted:
            logs = purge_evicted_logs(logs, self.result.evicted, known_names)

        self.result.logs = logs
        self.result.pending_log_uploads = {
            date
            for date, entries in logs.items()
            if date not in remote_days or remote_days[date] != entries
        }

        remote_settings = self.remote.settings.payload if self.remote.settings else None
        self.result.pending_settings_upload = bool(self.result.settings) and (
            remote_settings != self.result.settings
        )


def check_invariants(
    result: ReconcileResult, local: LocalSnapshot, enforce_single_active: bool = True
) -> None:
    """Assert the post-merge invariants. A failure is a resolver bug."""
    ids = [r.id for r in result.records.values() if r.id]
    if len(ids) != len(set(ids)):
        raise InvariantViolation(f"Duplicate record ids after merge: {sorted(ids)}")

    for name, record in result.records.items():
        if record.name != name:
            raise InvariantViolation(f"Record keyed {name!r} is named {record.name!r}")
        if name in local.tombstones:
            raise InvariantViolation(f"Tombstoned name {name!r} reappeared")

    doomed = result.remote_deletes & set(result.records)
    if doomed:
        raise InvariantViolation(f"Scheduled remote delete of kept record(s): {sorted(doomed)}")

    if enforce_single_active and len(result.records) > 1:
        raise InvariantViolation(f"{len(result.records)} active records after policy")

    for conflict in result.conflicts:
        if conflict.resolution in (LOCAL_WINS, REMOTE_WINS) and conflict.name in result.records:
            expected = max(conflict.local_updated_at, conflict.remote_updated_at)
            if result.records[conflict.name].updated_at < expected:
                raise InvariantViolation(
                    f"updated_at regressed for {conflict.name!r}: "
                    f"{result.records[conflict.name].updated_at} < {expected}"
                )

    if result.evicted:
        names = set(result.records) | result.evicted
        for date, entries in result.logs.items():
            for key in entries:
                if key_owner(key, names) in result.evicted:
                    raise InvariantViolation(f"Evicted log entry {key!r} survived on {date}")
