"""Mutation queue: per-collection FIFO mailboxes feeding the remote store.

Every local write is applied locally first and then enqueued as a ``Job``
carrying the payload captured at enqueue time. Each collection has one
``Mailbox`` with a single worker, so two writes to the same collection reach
the remote in issue order and never interleave.

Failure handling:
- Retryable failures (network, timeout, re-auth needed) stall the mailbox:
  the failed job stays at the head, nothing behind it runs, and ``retry()``
  resumes from the same job.
- Any other failure drops the job and is reported; local data is never
  rolled back.

A gate pauses every mailbox while a full reconciliation runs; ``paused()``
additionally waits for in-flight jobs by taking every collection lock.
"""

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

from tether.protocols import ReauthRequiredError
from tether.types import COLLECTIONS, now_ms

logger = logging.getLogger(__name__)

UPSERT = "upsert"
DELETE = "delete"


@dataclass
class Job:
    """One remote write. ``run`` performs it with the captured payload."""

    collection: str
    key: str
    run: Callable[[], Awaitable[Any]]
    kind: str = UPSERT
    enqueued_at: int = field(default_factory=now_ms)
    attempts: int = 0


def is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False)) or isinstance(error, ReauthRequiredError)


class Mailbox:
    """FIFO of jobs for one collection, drained by one worker task."""

    def __init__(
        self,
        collection: str,
        gate: asyncio.Event,
        on_event: Optional[Callable[[str, Job, Optional[BaseException]], None]] = None,
    ):
        self.collection = collection
        self.lock = asyncio.Lock()
        self.jobs: Deque[Job] = deque()
        self.stalled = False
        self.last_error: Optional[BaseException] = None
        self._gate = gate
        self._on_event = on_event
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def __len__(self) -> int:
        return len(self.jobs)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._worker = asyncio.create_task(
            self._run(), name=f"tether-mailbox-{self.collection}"
        )

        def _on_worker_done(task: asyncio.Task) -> None:
            if task.cancelled():
                logger.debug(f"{self.collection} mailbox worker cancelled")
            elif task.exception():
                logger.error(f"{self.collection} mailbox worker crashed: {task.exception()}")

        self._worker.add_done_callback(_on_worker_done)
        self._refresh_events()

    async def close(self) -> None:
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def put(self, job: Job) -> None:
        self.jobs.append(job)
        self._refresh_events()

    def retry(self) -> bool:
        """Resume a stalled mailbox. Returns True if it was stalled."""
        if not self.stalled:
            return False
        logger.info(f"Retrying {self.collection} mailbox ({len(self.jobs)} job(s) queued)")
        self.stalled = False
        self._refresh_events()
        return True

    def discard(self, predicate: Callable[[Job], bool]) -> List[Job]:
        """Drop queued jobs matching ``predicate``. Only safe while the lock is held."""
        dropped = [job for job in self.jobs if predicate(job)]
        if dropped:
            self.jobs = deque(job for job in self.jobs if not predicate(job))
            if not self.jobs:
                self.stalled = False
            self._refresh_events()
        return dropped

    def has_key(self, key: str) -> bool:
        return any(job.key == key for job in self.jobs)

    async def join(self) -> None:
        """Wait until the mailbox is empty or stalled."""
        await self._idle.wait()

    def _refresh_events(self) -> None:
        if self.jobs and not self.stalled:
            self._idle.clear()
            self._wakeup.set()
        else:
            self._idle.set()
            self._wakeup.clear()

    def _emit(self, event: str, job: Job, error: Optional[BaseException] = None) -> None:
        if self._on_event is not None:
            self._on_event(event, job, error)

    async def _run(self) -> None:
        while not self._closed:
            await self._wakeup.wait()
            await self._gate.wait()
            async with self.lock:
                # Reconciliation may have paused us or emptied the queue meanwhile
                if not self._gate.is_set() or not self.jobs or self.stalled:
                    continue
                job = self.jobs[0]
                job.attempts += 1
                try:
                    await job.run()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.last_error = e
                    if is_retryable(e):
                        logger.warning(
                            f"{self.collection} job {job.kind} {job.key!r} failed, "
                            f"stalling mailbox: {e}"
                        )
                        self.stalled = True
                        self._refresh_events()
                        self._emit("stalled", job, e)
                        continue
                    logger.error(f"{self.collection} job {job.kind} {job.key!r} dropped: {e}")
                    self._pop(job)
                    self._emit("failed", job, e)
                    continue
                self.last_error = None
                self._pop(job)
                self._emit("done", job)

    def _pop(self, job: Job) -> None:
        if self.jobs and self.jobs[0] is job:
            self.jobs.popleft()
        self._refresh_events()


class MutationQueue:
    """One mailbox per collection plus the reconciliation gate."""

    def __init__(
        self,
        collections: Iterable[str] = COLLECTIONS,
        on_event: Optional[Callable[[str, Job, Optional[BaseException]], None]] = None,
    ):
        self._gate = asyncio.Event()
        self._gate.set()
        self.mailboxes: Dict[str, Mailbox] = {
            c: Mailbox(c, self._gate, on_event) for c in collections
        }

    def start(self) -> None:
        for mailbox in self.mailboxes.values():
            mailbox.start()

    async def close(self) -> None:
        for mailbox in self.mailboxes.values():
            await mailbox.close()

    def enqueue(self, job: Job) -> None:
        self.mailboxes[job.collection].put(job)

    def lock(self, collection: str) -> asyncio.Lock:
        return self.mailboxes[collection].lock

    def retry(self) -> int:
        """Resume every stalled mailbox. Returns how many were stalled."""
        return sum(1 for mailbox in self.mailboxes.values() if mailbox.retry())

    @property
    def paused_for_reconcile(self) -> bool:
        return not self._gate.is_set()

    @contextlib.asynccontextmanager
    async def paused(self):
        """Hold every mailbox still: close the gate and wait for in-flight jobs."""
        self._gate.clear()
        locks = [mailbox.lock for mailbox in self.mailboxes.values()]
        acquired = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield self
        finally:
            for lock in reversed(acquired):
                lock.release()
            self._gate.set()

    def discard_pending(self, collections: Iterable[str], keep: Callable[[Job], bool]) -> int:
        """Drop queued jobs in ``collections`` unless ``keep(job)``."""
        dropped = 0
        for collection in collections:
            dropped += len(self.mailboxes[collection].discard(lambda job: not keep(job)))
        if dropped:
            logger.debug(f"Discarded {dropped} queued job(s) superseded by reconciliation")
        return dropped

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every mailbox is empty or stalled. False on timeout."""
        waiters = [mailbox.join() for mailbox in self.mailboxes.values()]
        try:
            await asyncio.wait_for(asyncio.gather(*waiters), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def has_pending(self, collection: str, key: str) -> bool:
        return self.mailboxes[collection].has_key(key)

    @property
    def pending_count(self) -> int:
        return sum(len(mailbox) for mailbox in self.mailboxes.values())

    @property
    def stalled(self) -> bool:
        return any(mailbox.stalled for mailbox in self.mailboxes.values())

    def describe(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "queued": len(mailbox),
                "stalled": mailbox.stalled,
                "last_error": str(mailbox.last_error) if mailbox.last_error else None,
            }
            for name, mailbox in self.mailboxes.items()
        }


class Debouncer:
    """Coalesce rapid writes per key with a single cancellable timer each."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._callbacks: Dict[str, Callable[[], None]] = {}

    def call(self, key: str, callback: Callable[[], None]) -> None:
        if self.delay <= 0:
            callback()
            return
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._callbacks[key] = callback
        self._timers[key] = loop.call_later(self.delay, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        callback = self._callbacks.pop(key, None)
        if callback is not None:
            callback()

    def flush(self) -> None:
        """Fire every pending callback now."""
        for key in list(self._timers):
            self._timers[key].cancel()
            self._fire(key)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._callbacks.clear()

    def is_pending(self, key: str) -> bool:
        return key in self._timers

    @property
    def pending(self) -> int:
        return len(self._timers)
