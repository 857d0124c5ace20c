"""Typed view over a LocalStore.

Key layout:

    records              {name: {"id", "content", "updatedAt"}}
    logs                 {date: {sub_key: value}}
    log_ledger           {date: ms}
    settings             {...}
    settings_updated_at  ms
    tombstones           {name: Tombstone dict}
    delete_watermarks    {name: ms}
    aux:<kind>:<name>    one auxiliary blob of a record

A collection whose stored JSON cannot be parsed (or has the wrong shape) is
reset to its empty default and the corruption is logged; bad data never
reaches the resolver.
"""

import logging
from typing import Any, Dict, List, Optional

from tether.protocols import DataCorruptionError, LocalStore
from tether.types import (
    JSON,
    LocalSnapshot,
    LogEntry,
    Record,
    ReconcileResult,
    RemoteSnapshot,
    Tombstone,
)

logger = logging.getLogger(__name__)

RECORDS_KEY = "records"
LOGS_KEY = "logs"
LOG_LEDGER_KEY = "log_ledger"
SETTINGS_KEY = "settings"
SETTINGS_TS_KEY = "settings_updated_at"
TOMBSTONES_KEY = "tombstones"
WATERMARKS_KEY = "delete_watermarks"
AUX_PREFIX = "aux:"


def aux_key(kind: str, name: str) -> str:
    return f"{AUX_PREFIX}{kind}:{name}"


class LocalRepository:
    """Records, logs, settings and sync bookkeeping on top of a LocalStore."""

    def __init__(self, store: LocalStore):
        self.store = store

    # === Raw access with corruption reset ===

    def _read(self, key: str, default: Any, expected_type: type = dict) -> Any:
        try:
            value = self.store.get(key)
        except DataCorruptionError as e:
            logger.error(f"Resetting {key!r} to default: {e}")
            self._reset(key, default)
            return default
        if value is None:
            return default
        if not isinstance(value, expected_type) or isinstance(value, bool):
            logger.error(
                f"Resetting {key!r} to default: "
                f"unexpected {type(value).__name__} value"
            )
            self._reset(key, default)
            return default
        return value

    def _reset(self, key: str, default: Any) -> None:
        if default is None:
            self.store.delete(key)
        else:
            self.store.set(key, default)

    # === Records ===

    def _raw_records(self) -> Dict[str, Dict[str, Any]]:
        raw = self._read(RECORDS_KEY, {})
        valid = {}
        for name, data in raw.items():
            if isinstance(data, dict):
                valid[name] = data
            else:
                logger.error(f"Dropping corrupt local record {name!r}")
        return valid

    def load_records(self) -> Dict[str, Record]:
        return {
            name: Record.from_local(name, data, self.load_aux(name))
            for name, data in self._raw_records().items()
        }

    def get_record(self, name: str) -> Optional[Record]:
        data = self._raw_records().get(name)
        if data is None:
            return None
        return Record.from_local(name, data, self.load_aux(name))

    def put_record(self, record: Record) -> None:
        """Write one record and its auxiliary blobs."""
        records = self._raw_records()
        records[record.name] = record.to_local()
        self.store.set(RECORDS_KEY, records)
        self.write_aux(record.name, record.auxiliary)

    def remove_record(self, name: str) -> None:
        records = self._raw_records()
        if records.pop(name, None) is not None:
            self.store.set(RECORDS_KEY, records)
        self.delete_aux(name)

    # === Auxiliary blobs ===

    def _aux_index(self) -> Dict[str, Dict[str, str]]:
        """Map record name -> {kind: storage key} for every stored blob."""
        index: Dict[str, Dict[str, str]] = {}
        for key in self.store.list_keys_with_prefix(AUX_PREFIX):
            parts = key[len(AUX_PREFIX):].split(":", 1)
            if len(parts) != 2:
                continue
            kind, name = parts
            index.setdefault(name, {})[kind] = key
        return index

    def load_aux(self, name: str) -> Dict[str, JSON]:
        aux = {}
        for kind, key in self._aux_index().get(name, {}).items():
            try:
                value = self.store.get(key)
            except DataCorruptionError as e:
                logger.error(f"Dropping corrupt auxiliary blob: {e}")
                self.store.delete(key)
                continue
            if value is not None:
                aux[kind] = value
        return aux

    def _aux_changes(self, name: str, auxiliary: Dict[str, JSON]) -> Dict[str, JSON]:
        """Storage writes needed to bring ``name``'s blobs up to ``auxiliary``."""
        changes = {}
        for kind, value in auxiliary.items():
            key = aux_key(kind, name)
            try:
                current = self.store.get(key)
            except DataCorruptionError:
                current = None
            if current != value:
                changes[key] = value
        return changes

    def write_aux(self, name: str, auxiliary: Dict[str, JSON]) -> None:
        """Write blobs that differ from what is stored. Kinds not given are kept."""
        changes = self._aux_changes(name, auxiliary)
        if changes:
            self.store.set_many(changes)

    def delete_aux(self, name: str) -> None:
        for key in self._aux_index().get(name, {}).values():
            self.store.delete(key)

    # === Logs ===

    def load_logs(self) -> Dict[str, Dict[str, JSON]]:
        logs = self._read(LOGS_KEY, {})
        return {date: entries for date, entries in logs.items() if isinstance(entries, dict)}

    def get_log(self, date: str) -> Dict[str, JSON]:
        return dict(self.load_logs().get(date, {}))

    def log_entries(self) -> List[LogEntry]:
        """Every stored log day, oldest first."""
        return [LogEntry(date, dict(entries)) for date, entries in sorted(self.load_logs().items())]

    def put_log(self, date: str, entries: Dict[str, JSON], ledger_ts: Optional[int] = None) -> None:
        logs = self.load_logs()
        logs[date] = entries
        self.store.set(LOGS_KEY, logs)
        if ledger_ts is not None:
            self.set_ledger(date, ledger_ts)

    def load_ledger(self) -> Dict[str, int]:
        ledger = self._read(LOG_LEDGER_KEY, {})
        return {date: int(ts) for date, ts in ledger.items() if isinstance(ts, (int, float))}

    def get_ledger(self, date: str) -> Optional[int]:
        return self.load_ledger().get(date)

    def set_ledger(self, date: str, ts: int) -> None:
        ledger = self.load_ledger()
        ledger[date] = ts
        self.store.set(LOG_LEDGER_KEY, ledger)

    def bump_ledger(self, date: str, ts: int) -> None:
        """Raise the ledger timestamp for ``date`` to at least ``ts``."""
        current = self.get_ledger(date)
        if current is None or ts > current:
            self.set_ledger(date, ts)

    # === Settings ===

    def load_settings(self) -> Dict[str, JSON]:
        return dict(self._read(SETTINGS_KEY, {}))

    def put_settings(self, settings: Dict[str, JSON], ts: Optional[int] = None) -> None:
        self.store.set(SETTINGS_KEY, settings)
        if ts is not None:
            self.store.set(SETTINGS_TS_KEY, ts)

    def settings_updated_at(self) -> Optional[int]:
        value = self._read(SETTINGS_TS_KEY, None, expected_type=(int, float))
        return int(value) if value is not None else None

    def bump_settings_ts(self, ts: int) -> None:
        current = self.settings_updated_at()
        if current is None or ts > current:
            self.store.set(SETTINGS_TS_KEY, ts)

    # === Tombstones ===

    def load_tombstones(self) -> Dict[str, Tombstone]:
        raw = self._read(TOMBSTONES_KEY, {})
        tombstones = {}
        for name, data in raw.items():
            try:
                tombstones[name] = Tombstone.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.error(f"Dropping corrupt tombstone for {name!r}")
        return tombstones

    def put_tombstone(self, tombstone: Tombstone) -> None:
        tombstones = self.load_tombstones()
        tombstones[tombstone.name] = tombstone
        self.store.set(TOMBSTONES_KEY, {n: t.to_dict() for n, t in tombstones.items()})

    def clear_tombstone(self, name: str) -> None:
        tombstones = self.load_tombstones()
        if tombstones.pop(name, None) is not None:
            self.store.set(TOMBSTONES_KEY, {n: t.to_dict() for n, t in tombstones.items()})

    # === Delete watermarks ===

    def load_watermarks(self) -> Dict[str, int]:
        raw = self._read(WATERMARKS_KEY, {})
        return {name: int(ts) for name, ts in raw.items() if isinstance(ts, (int, float))}

    def get_watermark(self, name: str) -> Optional[int]:
        return self.load_watermarks().get(name)

    def set_watermark(self, name: str, ts: int) -> None:
        watermarks = self.load_watermarks()
        watermarks[name] = max(ts, watermarks.get(name, 0))
        self.store.set(WATERMARKS_KEY, watermarks)

    def clear_watermark(self, name: str) -> None:
        watermarks = self.load_watermarks()
        if watermarks.pop(name, None) is not None:
            self.store.set(WATERMARKS_KEY, watermarks)

    # === Snapshot / commit ===

    def snapshot(self) -> LocalSnapshot:
        return LocalSnapshot(
            records=self.load_records(),
            logs=self.load_logs(),
            log_ledger=self.load_ledger(),
            settings=self.load_settings(),
            tombstones=self.load_tombstones(),
        )

    def commit(self, result: ReconcileResult, remote: Optional[RemoteSnapshot] = None) -> None:
        """Replace local state with a reconciliation result.

        Every key is written in one ``set_many`` batch, so a failed write
        (quota included) leaves local state exactly as it was.

        Synchronous: the caller must not yield between taking the snapshot the
        result was computed from and this call.
        """
        writes: Dict[str, Any] = {
            RECORDS_KEY: {name: record.to_local() for name, record in result.records.items()},
            LOGS_KEY: result.logs,
            SETTINGS_KEY: result.settings,
        }
        for name, record in result.records.items():
            writes.update(self._aux_changes(name, record.auxiliary))
        orphans = [
            key
            for name, keys in self._aux_index().items()
            if name not in result.records
            for key in keys.values()
        ]

        if remote is not None:
            ledger = self.load_ledger()
            for row in remote.logs:
                ledger[row.key] = max(ledger.get(row.key, 0), row.updated_at)
            writes[LOG_LEDGER_KEY] = ledger
            if remote.settings is not None:
                current = self.settings_updated_at()
                if current is None or remote.settings.updated_at > current:
                    writes[SETTINGS_TS_KEY] = remote.settings.updated_at

            # A watermark is only needed while the remote may still echo the name
            remote_names = {row.key for row in remote.records}
            watermarks = self.load_watermarks()
            kept = {n: ts for n, ts in watermarks.items() if n in remote_names}
            if kept != watermarks:
                writes[WATERMARKS_KEY] = kept

        self.store.set_many(writes, orphans)
        logger.debug(
            f"Committed reconciliation: {len(result.records)} records, "
            f"{len(result.logs)} log days, {len(orphans)} orphaned blob(s) removed"
        )

    def counts(self) -> Dict[str, int]:
        """Summary counts for status output."""
        return {
            "records": len(self._raw_records()),
            "log_days": len(self.load_logs()),
            "tombstones": len(self.load_tombstones()),
            "watermarks": len(self.load_watermarks()),
        }
