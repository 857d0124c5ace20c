"""In-memory stores.

MemoryStore is a LocalStore for guest sessions and tests. MemoryRemoteStore
implements the RemoteStore protocol against plain dicts, with a monotonic
server clock, realtime fan-out to subscribers and failure injection, so the
engine can be exercised without a Supabase project.
"""

import asyncio
import copy
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional

from tether.protocols import DataCorruptionError, RemoteUnavailableError, StorageQuotaError
from tether.types import (
    LOGS,
    RECORDS,
    SETTINGS,
    ChangeType,
    RemoteChange,
    RemoteRow,
    now_ms,
)

logger = logging.getLogger(__name__)


class MemoryStore:
    """LocalStore backed by a dict of JSON text."""

    def __init__(self, max_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self.max_bytes = max_bytes

    def get(self, key: str) -> Any:
        text = self._data.get(key)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise DataCorruptionError(key, str(e)) from e

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Dict[str, Any], delete_keys: Iterable[str] = ()) -> None:
        texts = {key: json.dumps(value) for key, value in values.items()}
        delete_keys = [key for key in delete_keys if key not in texts]
        if self.max_bytes is not None:
            touched = set(texts) | set(delete_keys)
            used = sum(len(k) + len(v) for k, v in self._data.items() if k not in touched)
            needed = sum(len(k) + len(v) for k, v in texts.items())
            if used + needed > self.max_bytes:
                raise StorageQuotaError(
                    f"Local store quota exceeded writing {', '.join(sorted(texts))}"
                )
        for key in delete_keys:
            self._data.pop(key, None)
        self._data.update(texts)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def list_keys_with_prefix(self, prefix: str) -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def set_raw(self, key: str, text: str) -> None:
        """Write an undecoded value. Used by tests to simulate corruption."""
        self._data[key] = text


class _MemorySubscription:
    def __init__(self, remote: "MemoryRemoteStore", owner_id: str, callback):
        self._remote = remote
        self._owner_id = owner_id
        self._callback = callback

    async def unsubscribe(self) -> None:
        subs = self._remote._subscribers.get(self._owner_id, [])
        if self._callback in subs:
            subs.remove(self._callback)


class MemoryRemoteStore:
    """RemoteStore over dicts.

    Failure injection: ``fail_next("upsert_record", times=2)`` makes the next
    two calls of that operation raise RemoteUnavailableError (or ``error``).
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or now_ms
        self._last_ts = 0
        self._tables: Dict[str, Dict[str, Dict[str, RemoteRow]]] = {
            RECORDS: defaultdict(dict),
            LOGS: defaultdict(dict),
            SETTINGS: defaultdict(dict),
        }
        self._subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: List[tuple] = []

    # === Test helpers ===

    def fail_next(self, operation: str, times: int = 1, error: Optional[Exception] = None) -> None:
        for _ in range(times):
            self._failures[operation].append(
                error or RemoteUnavailableError(f"{operation}: network unreachable")
            )

    def rows(self, collection: str, owner_id: str) -> Dict[str, RemoteRow]:
        return self._tables[collection][owner_id]

    def put_row(self, owner_id: str, row: RemoteRow) -> None:
        """Seed a row directly, keeping its timestamp and without notifying."""
        self._tables[row.collection][owner_id][row.key] = copy.deepcopy(row)

    # === Internals ===

    def _server_now(self) -> int:
        ts = max(self._clock(), self._last_ts + 1)
        self._last_ts = ts
        return ts

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append((operation,))
        pending = self._failures.get(operation)
        if pending:
            error = pending.pop(0)
            logger.debug(f"Injected failure for {operation}: {error}")
            raise error

    async def _notify(self, owner_id: str, change: RemoteChange) -> None:
        for callback in list(self._subscribers.get(owner_id, [])):
            result = callback(change)
            if inspect.isawaitable(result):
                await result

    async def _upsert(
        self, operation: str, collection: str, owner_id: str, key: str, payload
    ) -> RemoteRow:
        await asyncio.sleep(0)
        self._maybe_fail(operation)
        row = RemoteRow(collection, key, copy.deepcopy(payload), self._server_now())
        self._tables[collection][owner_id][key] = row
        await self._notify(
            owner_id, RemoteChange(collection, ChangeType.UPSERT, row=copy.deepcopy(row))
        )
        return copy.deepcopy(row)

    # === RemoteStore protocol ===

    async def fetch_records(self, owner_id: str) -> List[RemoteRow]:
        await asyncio.sleep(0)
        self._maybe_fail("fetch_records")
        return [copy.deepcopy(r) for r in self._tables[RECORDS][owner_id].values()]

    async def fetch_logs(self, owner_id: str, since: Optional[int] = None) -> List[RemoteRow]:
        await asyncio.sleep(0)
        self._maybe_fail("fetch_logs")
        rows = self._tables[LOGS][owner_id].values()
        return [copy.deepcopy(r) for r in rows if since is None or r.updated_at > since]

    async def fetch_settings(self, owner_id: str) -> Optional[RemoteRow]:
        await asyncio.sleep(0)
        self._maybe_fail("fetch_settings")
        row = self._tables[SETTINGS][owner_id].get(owner_id)
        return copy.deepcopy(row) if row else None

    async def upsert_record(self, owner_id: str, name: str, payload: Dict[str, Any]) -> RemoteRow:
        return await self._upsert("upsert_record", RECORDS, owner_id, name, payload)

    async def upsert_log(self, owner_id: str, date: str, entries: Dict[str, Any]) -> RemoteRow:
        return await self._upsert("upsert_log", LOGS, owner_id, date, entries)

    async def upsert_settings(self, owner_id: str, payload: Dict[str, Any]) -> RemoteRow:
        return await self._upsert("upsert_settings", SETTINGS, owner_id, owner_id, payload)

    async def delete_record(self, owner_id: str, name: str) -> None:
        await asyncio.sleep(0)
        self._maybe_fail("delete_record")
        if self._tables[RECORDS][owner_id].pop(name, None) is not None:
            await self._notify(owner_id, RemoteChange(RECORDS, ChangeType.DELETE, key=name))

    async def subscribe(self, owner_id: str, callback) -> _MemorySubscription:
        self._subscribers[owner_id].append(callback)
        return _MemorySubscription(self, owner_id, callback)
