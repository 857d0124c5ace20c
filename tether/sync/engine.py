"""
tether Sync Engine

Orchestrates sync between the device-local store and the remote store for
the signed-in owner.

Session lifecycle:
- ``on_login(owner_id)`` starts the mailboxes, runs a full reconciliation
  and then starts the change channel (push + poll).
- ``on_logout()`` / ``stop()`` stop enqueuing, drop queued jobs and bump the
  session epoch so late results from the previous session are ignored.

Local writes (``save``, ``save_log``, ``save_settings``, ``delete``,
``open_record``) are applied locally first and then enqueued; callers never
wait on the network. Remote changes arrive via ``apply_remote_update``.
``upload_all()`` re-pushes all local state as a recovery tool.

Reconciliation is single-flight: concurrent callers share one task. It
fetches the remote snapshot first and then, with every mailbox paused, reads
the local snapshot, merges and commits without yielding.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from tether.config import TetherSettings, get_settings
from tether.logging_config import log_sync
from tether.protocols import (
    AuthExpiredError,
    ChangeCallback,
    IdentityProvider,
    LocalStore,
    PromptCallback,
    ReauthRequiredError,
    RemoteError,
    RemoteStore,
    StatusCallback,
    StorageError,
    StorageQuotaError,
)
from tether.storage.local import LocalRepository
from tether.storage.remote import with_timeout
from tether.types import (
    COLLECTIONS,
    LAST_OPENED_SETTING,
    LOGS,
    RECORDS,
    SETTINGS,
    ChangeType,
    Record,
    RemoteChange,
    RemoteRow,
    RemoteSnapshot,
    SyncResult,
    SyncStatus,
    Tombstone,
    now_ms,
)

from .channel import ChangeChannel
from .hashing import ContentHasher, default_hasher
from .queue import DELETE, Debouncer, Job, MutationQueue
from .reconcile import reconcile
from .resolver import REMOTE_WINS, accept_remote, merge_settings

logger = logging.getLogger(__name__)

PROMPT_REAUTH = "reauth_required"
PROMPT_STORAGE_QUOTA = "storage_quota"


class SyncEngine:
    """Keeps one owner's local store converged with the remote store."""

    def __init__(
        self,
        remote: RemoteStore,
        local_store: Optional[LocalStore] = None,
        identity: Optional[IdentityProvider] = None,
        settings: Optional[TetherSettings] = None,
        store_factory: Optional[Callable[[str], LocalStore]] = None,
        hasher: Optional[ContentHasher] = None,
        on_status: Optional[StatusCallback] = None,
        on_prompt: Optional[PromptCallback] = None,
        on_remote_change: Optional[ChangeCallback] = None,
    ):
        """Initialize the engine.

        Args:
            remote: Authoritative row store
            local_store: Device store used for every owner
            identity: Session provider used to refresh expired tokens
            settings: Configuration; defaults to ``get_settings()``
            store_factory: Opens a separate local store per owner; takes
                precedence over ``local_store`` on login
            hasher: Content hasher for duplicate detection
            on_status: Called with the new SyncStatus whenever it changes
            on_prompt: Called once per session with (prompt, message)
            on_remote_change: Called after a remote change is applied locally
        """
        if local_store is None and store_factory is None:
            raise ValueError("Either local_store or store_factory is required")
        self.remote = remote
        self.identity = identity
        self.settings = settings or get_settings()
        self.hasher = hasher or default_hasher
        self._store_factory = store_factory
        self.repo: Optional[LocalRepository] = (
            LocalRepository(local_store) if local_store is not None else None
        )

        self.queue = MutationQueue(on_event=self._on_job_event)
        self.debouncer = Debouncer(self.settings.upload_debounce_seconds)
        self.channel: Optional[ChangeChannel] = None

        self.owner_id: Optional[str] = None
        self._epoch = 0
        self._reconcile_task: Optional[asyncio.Task] = None
        self._reconcile_epoch = 0
        self._needs_reconcile = False
        self._halted = False
        self._offline = False
        self._error: Optional[str] = None
        self._prompted: Set[str] = set()
        self._status = SyncStatus.OFFLINE
        self._on_status = on_status
        self._on_prompt = on_prompt
        self._on_remote_change = on_remote_change

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def halted(self) -> bool:
        return self._halted

    def _compute_status(self) -> SyncStatus:
        if self._halted or self._error:
            return SyncStatus.ERROR
        if self.owner_id is None or self._offline or self.queue.stalled:
            return SyncStatus.OFFLINE
        reconciling = self._reconcile_task is not None and not self._reconcile_task.done()
        if reconciling or self.queue.pending_count or self.debouncer.pending:
            return SyncStatus.SAVING
        return SyncStatus.SYNCED

    def _refresh_status(self) -> None:
        status = self._compute_status()
        if status != self._status:
            logger.debug(f"Sync status {self._status.value} -> {status.value}")
            self._status = status
            if self._on_status is not None:
                self._on_status(status)

    def _prompt_once(self, prompt: str, message: str) -> None:
        if prompt in self._prompted:
            return
        self._prompted.add(prompt)
        logger.warning(f"Prompting user ({prompt}): {message}")
        if self._on_prompt is not None:
            self._on_prompt(prompt, message)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def on_login(self, owner_id: str) -> SyncResult:
        """Start a session for ``owner_id`` and reconcile."""
        if self.owner_id is not None and self.owner_id != owner_id:
            logger.info("Account switch: stopping previous session")
            await self.on_logout()

        if self._store_factory is not None:
            self.repo = LocalRepository(self._store_factory(owner_id))
        self.owner_id = owner_id
        self._epoch += 1
        self._halted = False
        self._offline = False
        self._error = None
        self._prompted.clear()
        logger.info(f"Session started for owner {owner_id}")

        self.queue.start()
        self.queue.retry()
        result = await self.reconcile()
        await self.start_channel()
        return result

    async def on_logout(self) -> None:
        await self.stop()
        logger.info(f"Session ended for owner {self.owner_id}")
        self.owner_id = None
        self._refresh_status()

    async def start_channel(self) -> None:
        if self.owner_id is None or self._halted:
            return
        if self.channel is not None and self.channel.running:
            return
        self.channel = ChangeChannel(
            self.remote,
            self.owner_id,
            self.apply_remote_update,
            poll_interval=self.settings.poll_interval_seconds,
            before_poll=self.retry_pending,
            fetch=self._probe,
            on_poll_result=self._on_poll_result,
        )
        await self.channel.start()

    async def stop(self) -> None:
        """Stop enqueuing; queued jobs are dropped and late results ignored."""
        self._epoch += 1
        self.debouncer.cancel_all()
        if self.channel is not None:
            await self.channel.stop()
            self.channel = None
        if self._reconcile_task is not None and not self._reconcile_task.done():
            # Finishes on its own; its commit is skipped by the epoch check
            logger.debug("Leaving in-flight reconciliation to finish in the background")
        await self.queue.close()
        dropped = self.queue.discard_pending(COLLECTIONS, keep=lambda job: False)
        if dropped:
            logger.info(f"Dropped {dropped} queued job(s); reconciliation will recompute them")
        self._refresh_status()

    def _session_current(self, epoch: int) -> bool:
        return epoch == self._epoch and self.owner_id is not None

    # =========================================================================
    # Remote calls
    # =========================================================================

    def _reauth_required(self, label: str) -> ReauthRequiredError:
        self._halted = True
        self._refresh_status()
        self._prompt_once(PROMPT_REAUTH, "Your session expired. Please sign in again to resume sync.")
        return ReauthRequiredError(f"{label}: session refresh did not restore access")

    async def _remote_call(
        self, label: str, factory: Callable[[], Awaitable[Any]], timeout: float
    ) -> Any:
        """Run a remote call with timeout, refreshing an expired session once."""
        if self._halted:
            raise ReauthRequiredError(f"{label}: sync halted until sign-in")
        try:
            return await with_timeout(factory(), timeout, label)
        except AuthExpiredError:
            logger.info(f"Session expired during {label}; refreshing")
            refreshed = self.identity is not None and await self.identity.refresh_session()
            if not refreshed:
                raise self._reauth_required(label)
        try:
            return await with_timeout(factory(), timeout, label)
        except AuthExpiredError as e:
            raise self._reauth_required(label) from e

    async def _probe(self, label: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        return await self._remote_call(label, factory, self.settings.probe_timeout_seconds)

    async def _upload(self, label: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        return await self._remote_call(label, factory, self.settings.upload_timeout_seconds)

    def _on_poll_result(self, error: Optional[BaseException]) -> None:
        self._offline = error is not None and getattr(error, "retryable", False)
        if error is not None and not self._offline and not self._halted:
            self._error = str(error)
        self._refresh_status()

    # =========================================================================
    # Full reconciliation
    # =========================================================================

    async def reconcile(self) -> SyncResult:
        """Run (or join) the single in-flight reconciliation."""
        stale = self._reconcile_epoch != self._epoch
        if self._reconcile_task is None or self._reconcile_task.done() or stale:
            self._reconcile_epoch = self._epoch
            self._reconcile_task = asyncio.create_task(
                self._do_reconcile(self._epoch), name="tether-reconcile"
            )
            self._reconcile_task.add_done_callback(lambda _task: self._refresh_status())
            self._refresh_status()
        return await asyncio.shield(self._reconcile_task)

    sync = reconcile

    async def _fetch_snapshot(self, owner: str) -> RemoteSnapshot:
        records = await self._probe("fetch_records", lambda: self.remote.fetch_records(owner))
        logs = await self._probe("fetch_logs", lambda: self.remote.fetch_logs(owner))
        settings = await self._probe("fetch_settings", lambda: self.remote.fetch_settings(owner))
        return RemoteSnapshot(records=records, logs=logs, settings=settings)

    async def _do_reconcile(self, epoch: int) -> SyncResult:
        result = SyncResult()
        owner = self.owner_id
        if owner is None or self.repo is None:
            result.errors.append("Not signed in")
            return result
        if self._halted:
            result.errors.append("Sync halted: re-authentication required")
            return result

        try:
            await self._flush_tombstones()

            try:
                remote_snapshot = await self._fetch_snapshot(owner)
            except ReauthRequiredError as e:
                result.errors.append(str(e))
                return result
            except RemoteError as e:
                logger.warning(f"Reconciliation aborted, remote snapshot unavailable: {e}")
                result.errors.append(f"Fetch failed: {e}")
                self._needs_reconcile = True
                self._error = str(e)
                return result

            if not self._session_current(epoch):
                result.errors.append("Session ended during reconciliation")
                return result

            async with self.queue.paused():
                if not self._session_current(epoch):
                    result.errors.append("Session ended during reconciliation")
                    return result
                # No awaits from here until the commit
                self.debouncer.cancel_all()
                local = self.repo.snapshot()
                merged = reconcile(
                    local,
                    remote_snapshot,
                    hasher=self.hasher,
                    enforce_single_active=self.settings.enforce_single_active_record,
                )
                try:
                    self.repo.commit(merged, remote_snapshot)
                except StorageError as e:
                    # Nothing was written; queued uploads stay as they were
                    logger.error(f"Reconciliation aborted, local commit failed: {e}")
                    if isinstance(e, StorageQuotaError):
                        self._prompt_once(PROMPT_STORAGE_QUOTA, str(e))
                    result.errors.append(f"Local commit failed: {e}")
                    self._needs_reconcile = True
                    self._error = str(e)
                    return result
                self.queue.discard_pending((RECORDS, LOGS), keep=lambda job: job.kind == DELETE)

                for name in sorted(merged.pending_uploads):
                    self._enqueue_record(merged.records[name], epoch)
                for date in sorted(merged.pending_log_uploads):
                    self._enqueue_log(date, merged.logs[date], epoch)
                if merged.pending_settings_upload:
                    self._enqueue_settings(merged.settings, epoch)
                for name in sorted(merged.remote_deletes):
                    self._schedule_remote_delete(name, epoch)

            self._needs_reconcile = False
            if not result.errors:
                self._error = None
            self._offline = False

            result.pushed = (
                len(merged.pending_uploads)
                + len(merged.pending_log_uploads)
                + len(merged.remote_deletes)
                + (1 if merged.pending_settings_upload else 0)
            )
            result.pulled = sum(
                1 for name, rec in merged.records.items() if local.records.get(name) != rec
            ) + sum(1 for date, entries in merged.logs.items() if local.logs.get(date) != entries)
            result.renames = dict(merged.renames)
            result.evicted = sorted(merged.evicted)
            result.conflicts = list(merged.conflicts)

            log_sync(
                "reconcile",
                pushed=result.pushed,
                pulled=result.pulled,
                errors=len(result.errors),
                renames=len(result.renames),
                evicted=len(result.evicted),
                remote_wins=sum(1 for c in result.conflicts if c.resolution == REMOTE_WINS),
            )
            return result
        finally:
            self._refresh_status()

    # =========================================================================
    # Local writes
    # =========================================================================

    def _write_local(self, label: str, fn: Callable, *args) -> bool:
        try:
            fn(*args)
        except StorageQuotaError as e:
            logger.error(f"Local write failed for {label}: {e}")
            self._prompt_once(PROMPT_STORAGE_QUOTA, str(e))
            return False
        return True

    def _require_repo(self) -> LocalRepository:
        if self.repo is None:
            raise RuntimeError("No local store: call on_login() first")
        return self.repo

    def save(self, record: Record) -> Record:
        """Write a record locally and enqueue its upload.

        Assigns an ``id`` to new records and stamps ``updated_at`` so that it
        never decreases. An empty ``auxiliary`` keeps the stored blobs.
        """
        repo = self._require_repo()
        existing = repo.get_record(record.name)
        updated_at = max(now_ms(), record.updated_at)
        if existing is not None:
            updated_at = max(updated_at, existing.updated_at + 1)
        record = replace(
            record,
            id=record.id or (existing.id if existing else None) or str(uuid.uuid4()),
            updated_at=updated_at,
            auxiliary=dict(record.auxiliary) or (dict(existing.auxiliary) if existing else {}),
        )

        if record.name in repo.load_tombstones():
            # The queued delete still runs first; this upsert supersedes it
            repo.clear_tombstone(record.name)
        self._write_local(f"record {record.name!r}", repo.put_record, record)

        epoch = self._epoch
        self.debouncer.call(f"{RECORDS}:{record.name}", lambda: self._enqueue_record(record, epoch))
        self._refresh_status()
        return record

    def save_log(self, date: str, entries: Dict[str, Any]) -> None:
        """Write one day's log entries locally and enqueue the upload."""
        repo = self._require_repo()
        entries = dict(entries)
        self._write_local(f"log {date}", repo.put_log, date, entries, now_ms())
        epoch = self._epoch
        self.debouncer.call(f"{LOGS}:{date}", lambda: self._enqueue_log(date, entries, epoch))
        self._refresh_status()

    def save_settings(self, settings: Dict[str, Any]) -> None:
        """Replace the settings blob locally and enqueue the upload."""
        repo = self._require_repo()
        settings = dict(settings)
        self._write_local("settings", repo.put_settings, settings, now_ms())
        epoch = self._epoch
        self.debouncer.call(SETTINGS, lambda: self._enqueue_settings(settings, epoch))
        self._refresh_status()

    def open_record(self, name: str) -> None:
        """Mark ``name`` as the explicitly opened record."""
        repo = self._require_repo()
        settings = repo.load_settings()
        if settings.get(LAST_OPENED_SETTING) == name:
            return
        settings[LAST_OPENED_SETTING] = name
        self.save_settings(settings)

    def delete(self, name: str) -> bool:
        """Delete a record: tombstone first, then enqueue the remote delete.

        Returns:
            True if a local record was removed.
        """
        repo = self._require_repo()
        existed = repo.get_record(name) is not None
        self._write_local(f"record {name!r}", repo.remove_record, name)
        self._schedule_remote_delete(name, self._epoch)
        self._refresh_status()
        return existed

    # =========================================================================
    # Jobs
    # =========================================================================

    def _enqueue_record(self, record: Record, epoch: int) -> None:
        if not self._session_current(epoch):
            return
        owner, name, payload = self.owner_id, record.name, record.to_payload()

        async def run():
            await self._upload(
                f"upsert_record {name!r}", lambda: self.remote.upsert_record(owner, name, payload)
            )

        self.queue.enqueue(Job(RECORDS, name, run))
        self._refresh_status()

    def _enqueue_log(self, date: str, entries: Dict[str, Any], epoch: int) -> None:
        if not self._session_current(epoch):
            return
        owner, entries = self.owner_id, dict(entries)

        async def run():
            row: RemoteRow = await self._upload(
                f"upsert_log {date}", lambda: self.remote.upsert_log(owner, date, entries)
            )
            if self._session_current(epoch) and row is not None:
                # Our own echo must not count as newer
                self.repo.bump_ledger(date, row.updated_at)

        self.queue.enqueue(Job(LOGS, date, run))
        self._refresh_status()

    def _enqueue_settings(self, settings: Dict[str, Any], epoch: int) -> None:
        if not self._session_current(epoch):
            return
        owner, payload = self.owner_id, dict(settings)

        async def run():
            row: RemoteRow = await self._upload(
                "upsert_settings", lambda: self.remote.upsert_settings(owner, payload)
            )
            if self._session_current(epoch) and row is not None:
                self.repo.bump_settings_ts(row.updated_at)

        self.queue.enqueue(Job(SETTINGS, owner, run))
        self._refresh_status()

    def _schedule_remote_delete(self, name: str, epoch: int) -> None:
        """Write the tombstone durably, then enqueue the remote delete."""
        if self.repo is None:
            return
        tombstones = self.repo.load_tombstones()
        tombstone = tombstones.get(name) or Tombstone(name=name, created_at=now_ms())
        self._write_local(f"tombstone {name!r}", self.repo.put_tombstone, tombstone)
        self._enqueue_delete(tombstone, epoch)

    def _enqueue_delete(self, tombstone: Tombstone, epoch: int) -> None:
        if not self._session_current(epoch):
            return
        owner, name, created_at = self.owner_id, tombstone.name, tombstone.created_at

        async def run():
            try:
                await self._upload(
                    f"delete_record {name!r}", lambda: self.remote.delete_record(owner, name)
                )
            except Exception as e:
                if self._session_current(epoch):
                    current = self.repo.load_tombstones().get(name)
                    if current is not None:
                        current.attempts += 1
                        current.last_error = str(e)
                        self.repo.put_tombstone(current)
                raise
            if not self._session_current(epoch):
                return
            current = self.repo.load_tombstones().get(name)
            if current is not None and current.created_at == created_at:
                self.repo.clear_tombstone(name)
            # Rows stamped at or before the delete can no longer resurrect it
            self.repo.set_watermark(name, created_at)
            logger.info(f"Remote delete confirmed for {name!r}")

        self.queue.enqueue(Job(RECORDS, name, run, kind=DELETE))
        self._refresh_status()

    async def _flush_tombstones(self) -> int:
        """Enqueue outstanding tombstones that have no queued delete and retry.

        Returns:
            Number of tombstones newly enqueued.
        """
        if self.repo is None or self.owner_id is None:
            return 0
        mailbox = self.queue.mailboxes[RECORDS]
        queued = {job.key for job in mailbox.jobs if job.kind == DELETE}
        enqueued = 0
        for name, tombstone in self.repo.load_tombstones().items():
            if name not in queued:
                self._enqueue_delete(tombstone, self._epoch)
                enqueued += 1
        mailbox.retry()
        if mailbox.running and len(mailbox):
            try:
                await asyncio.wait_for(mailbox.join(), self.settings.upload_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("Outstanding deletes still running; continuing")
        return enqueued

    def _on_job_event(self, event: str, job: Job, error: Optional[BaseException]) -> None:
        if event == "done":
            self._offline = False
        elif event == "stalled":
            self._offline = not isinstance(error, ReauthRequiredError)
        elif event == "failed":
            self._error = f"{job.collection} {job.key!r}: {error}"
        self._refresh_status()

    async def retry_pending(self) -> None:
        """Connectivity event: resume stalled mailboxes, tombstones first."""
        if self.owner_id is None or self._halted:
            return
        await self._flush_tombstones()
        resumed = self.queue.retry()
        if resumed:
            logger.info(f"Resumed {resumed} stalled mailbox(es)")
        if self._needs_reconcile:
            await self.reconcile()
        self._refresh_status()

    retry = retry_pending

    async def upload_all(self) -> int:
        """Re-upload every local record, log day and the settings blob.

        A recovery tool for a remote that lost or mangled rows: local state is
        pushed as-is through the regular mailboxes, whatever the remote holds.
        Pending deletes are untouched.

        Returns:
            Number of uploads enqueued.
        """
        repo = self._require_repo()
        task = self._reconcile_task
        if task is not None and not task.done():
            # Reconciliation discards queued upserts when it commits
            await asyncio.wait({task})
        if self.owner_id is None or self._halted:
            return 0

        epoch = self._epoch
        self.debouncer.cancel_all()
        records = repo.load_records()
        for name in sorted(records):
            self._enqueue_record(records[name], epoch)
        log_entries = repo.log_entries()
        for entry in log_entries:
            self._enqueue_log(entry.date, entry.entries, epoch)
        enqueued = len(records) + len(log_entries)
        settings = repo.load_settings()
        if settings:
            self._enqueue_settings(settings, epoch)
            enqueued += 1

        logger.info(f"Force upload: {enqueued} item(s) enqueued for owner {self.owner_id}")
        return enqueued

    # =========================================================================
    # Remote changes
    # =========================================================================

    async def apply_remote_update(self, change: RemoteChange) -> bool:
        """Fold one pushed or polled change into local state.

        Waits for any in-flight reconciliation, then takes the collection's
        mailbox lock so the change never interleaves with an upload.

        Returns:
            True if local state changed.
        """
        epoch = self._epoch
        task = self._reconcile_task
        if task is not None and not task.done():
            await asyncio.wait({task})
        if not self._session_current(epoch):
            return False
        async with self.queue.lock(change.collection):
            if not self._session_current(epoch):
                return False
            try:
                applied = self._apply_change(change)
            except StorageQuotaError as e:
                self._prompt_once(PROMPT_STORAGE_QUOTA, str(e))
                return False
        if applied:
            logger.debug(
                f"Applied {change.source} {change.change_type.value} on {change.collection}"
            )
            if self._on_remote_change is not None:
                self._on_remote_change(change)
        return applied

    def _apply_change(self, change: RemoteChange) -> bool:
        repo = self.repo
        if change.collection == RECORDS:
            if change.change_type == ChangeType.DELETE:
                return self._apply_record_delete(change.key or (change.row.key if change.row else None))
            return self._apply_record_upsert(change.row)
        if change.change_type == ChangeType.DELETE:
            # Log days and settings are never deleted remotely
            return False
        row = change.row
        if change.collection == LOGS:
            if not accept_remote(repo.get_ledger(row.key), row.updated_at):
                return False
            repo.put_log(row.key, dict(row.payload or {}), ledger_ts=row.updated_at)
            return True
        if change.collection == SETTINGS:
            if not accept_remote(repo.settings_updated_at(), row.updated_at):
                return False
            repo.put_settings(merge_settings(repo.load_settings(), row.payload), ts=row.updated_at)
            return True
        logger.warning(f"Ignoring change for unknown collection {change.collection!r}")
        return False

    def _apply_record_upsert(self, row: Optional[RemoteRow]) -> bool:
        if row is None:
            return False
        repo = self.repo
        if row.key in repo.load_tombstones():
            return False
        incoming = Record.from_payload(row.key, row.payload)
        local = repo.get_record(row.key)
        local_ts = local.updated_at if local is not None else repo.get_watermark(row.key)
        if not accept_remote(local_ts, incoming.updated_at):
            return False

        if local is not None:
            incoming.id = incoming.id or local.id
            incoming.auxiliary = {**local.auxiliary, **incoming.auxiliary}
        if incoming.id:
            # Renamed on another device: drop the copy under the old name
            for name, other in repo.load_records().items():
                if name != incoming.name and other.id == incoming.id:
                    if self.queue.has_pending(RECORDS, name):
                        continue
                    logger.info(f"Remote rename {name!r} -> {incoming.name!r}")
                    incoming.auxiliary = {**other.auxiliary, **incoming.auxiliary}
                    repo.remove_record(name)
        repo.put_record(incoming)
        return True

    def _apply_record_delete(self, name: Optional[str]) -> bool:
        if name is None:
            return False
        if self.queue.has_pending(RECORDS, name) or self.debouncer.is_pending(f"{RECORDS}:{name}"):
            logger.debug(f"Ignoring remote delete of {name!r}: local upload queued")
            return False
        if self.repo.get_record(name) is None:
            return False
        self.repo.remove_record(name)
        return True

    # =========================================================================
    # Inspection
    # =========================================================================

    def describe(self) -> Dict[str, Any]:
        repo = self.repo
        return {
            "owner_id": self.owner_id,
            "status": self.status.value,
            "halted": self._halted,
            "error": self._error,
            "local": repo.counts() if repo is not None else {},
            "queue": self.queue.describe(),
            "tombstones": sorted(repo.load_tombstones()) if repo is not None else [],
        }

    def pending_tombstones(self) -> List[Tombstone]:
        if self.repo is None:
            return []
        return sorted(self.repo.load_tombstones().values(), key=lambda t: t.created_at)
