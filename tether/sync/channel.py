"""Change channel: realtime push plus a fixed-interval poll.

Both paths deliver ``RemoteChange`` objects to the same apply callback, which
decides through the shared acceptance rule whether a row is newer than what
the device holds. The push path only ever spawns a task for the callback: a
push can arrive while a mailbox worker holds a collection lock (the echo of
our own upload), and awaiting the apply path inline there would deadlock.

Polls never infer deletions; a row missing from a poll response is not a
delete. Each tick first runs the ``before_poll`` hook (retry stalled
mailboxes and outstanding tombstones).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from tether.protocols import RemoteError, RemoteStore, Subscription
from tether.types import LOGS, RECORDS, SETTINGS, ChangeType, RemoteChange

logger = logging.getLogger(__name__)

ApplyFn = Callable[[RemoteChange], Awaitable[Any]]
FetchFn = Callable[[str, Callable[[], Awaitable[Any]]], Awaitable[Any]]


class ChangeChannel:
    """Owner-scoped push subscription and poll loop."""

    def __init__(
        self,
        remote: RemoteStore,
        owner_id: str,
        apply: ApplyFn,
        poll_interval: float = 30.0,
        before_poll: Optional[Callable[[], Awaitable[Any]]] = None,
        fetch: Optional[FetchFn] = None,
        on_poll_result: Optional[Callable[[Optional[BaseException]], None]] = None,
    ):
        self.remote = remote
        self.owner_id = owner_id
        self.poll_interval = poll_interval
        self._apply = apply
        self._before_poll = before_poll
        self._fetch = fetch or self._direct_fetch
        self._on_poll_result = on_poll_result
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._apply_tasks: Set[asyncio.Task] = set()
        self._log_cursor: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def start(self) -> None:
        if self.running:
            logger.warning("change channel already running")
            return
        self._stop_event.clear()
        try:
            self._subscription = await self.remote.subscribe(self.owner_id, self._on_push)
        except RemoteError as e:
            # Poll still runs; push is an optimization
            logger.warning(f"Realtime subscription failed, relying on polling: {e}")
            self._subscription = None

        if self.poll_interval and self.poll_interval > 0:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="tether-poll")

            def _on_poll_task_done(task: asyncio.Task) -> None:
                if task.cancelled():
                    logger.debug("poll task was cancelled")
                elif task.exception():
                    logger.error(f"poll task crashed: {task.exception()}")

            self._poll_task.add_done_callback(_on_poll_task_done)
        logger.info(
            f"Change channel started (push={'on' if self._subscription else 'off'}, "
            f"poll={self.poll_interval}s)"
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.unsubscribe()
        for task in list(self._apply_tasks):
            task.cancel()
        if self._apply_tasks:
            await asyncio.gather(*self._apply_tasks, return_exceptions=True)
        self._apply_tasks.clear()

    # === Push ===

    def _on_push(self, change: RemoteChange) -> None:
        if self._stop_event.is_set():
            return
        self._spawn(change)

    def _spawn(self, change: RemoteChange) -> asyncio.Task:
        task = asyncio.ensure_future(self._apply(change))
        self._apply_tasks.add(task)

        def _on_apply_done(t: asyncio.Task) -> None:
            self._apply_tasks.discard(t)
            if t.cancelled():
                return
            if t.exception() is not None:
                logger.error(
                    f"Applying {change.source} {change.collection} change failed: {t.exception()}"
                )

        task.add_done_callback(_on_apply_done)
        return task

    async def drain(self) -> None:
        """Wait for every spawned apply task."""
        while self._apply_tasks:
            await asyncio.gather(*list(self._apply_tasks), return_exceptions=True)

    # === Poll ===

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.poll_once()

    async def _direct_fetch(self, label: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        return await factory()

    async def poll_once(self) -> int:
        """Fetch every collection once and apply accepted rows.

        Returns:
            Number of rows handed to the apply callback.
        """
        if self._before_poll is not None:
            await self._before_poll()

        owner = self.owner_id
        try:
            records = await self._fetch("fetch_records", lambda: self.remote.fetch_records(owner))
            logs = await self._fetch(
                "fetch_logs", lambda: self.remote.fetch_logs(owner, since=self._log_cursor)
            )
            settings = await self._fetch("fetch_settings", lambda: self.remote.fetch_settings(owner))
        except RemoteError as e:
            logger.warning(f"Poll failed: {e}")
            if self._on_poll_result is not None:
                self._on_poll_result(e)
            return 0

        changes = [RemoteChange(RECORDS, ChangeType.UPSERT, row=row, source="poll") for row in records]
        changes += [RemoteChange(LOGS, ChangeType.UPSERT, row=row, source="poll") for row in logs]
        if settings is not None:
            changes.append(RemoteChange(SETTINGS, ChangeType.UPSERT, row=settings, source="poll"))

        for change in changes:
            if self._stop_event.is_set():
                break
            await self._apply(change)

        if logs:
            newest = max(row.updated_at for row in logs)
            self._log_cursor = max(self._log_cursor or 0, newest)
        if self._on_poll_result is not None:
            self._on_poll_result(None)
        logger.debug(f"Poll delivered {len(changes)} row(s)")
        return len(changes)
