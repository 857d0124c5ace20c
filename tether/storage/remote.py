"""Supabase remote store for tether.

One table per collection, rows scoped by ``owner_id``. Writes are upserts on
the unique key; the server stamps ``updated_at`` (see ``REMOTE_SCHEMA_SQL``).
Realtime changes arrive through a Postgres-changes channel filtered to the
owner.

All network failures are mapped onto the tether error family:

- transport errors and 5xx responses -> RemoteUnavailableError
- httpx timeouts -> RemoteTimeoutError
- rejected/expired JWT -> AuthExpiredError
"""

import asyncio
import functools
import inspect
import logging
from typing import Any, Awaitable, Dict, List, Optional

import httpx
from postgrest import APIError
from supabase import AsyncClient, acreate_client

from tether.config import TetherSettings, get_settings
from tether.protocols import (
    AuthExpiredError,
    ChangeCallback,
    RemoteError,
    RemoteTimeoutError,
    RemoteUnavailableError,
)
from tether.types import (
    LOGS,
    RECORDS,
    SETTINGS,
    ChangeType,
    RemoteChange,
    RemoteRow,
    iso_to_ms,
    ms_to_iso,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Schema
# =============================================================================

REMOTE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
    owner_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (owner_id, name)
);

CREATE TABLE IF NOT EXISTS logs (
    owner_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    entries JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (owner_id, date)
);

CREATE TABLE IF NOT EXISTS settings (
    owner_id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

-- Server clock is the only source of updated_at
CREATE OR REPLACE FUNCTION tether_touch_updated_at() RETURNS trigger AS $$
BEGIN
    NEW.updated_at = clock_timestamp();
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE TRIGGER records_touch BEFORE INSERT OR UPDATE ON records
    FOR EACH ROW EXECUTE FUNCTION tether_touch_updated_at();
CREATE TRIGGER logs_touch BEFORE INSERT OR UPDATE ON logs
    FOR EACH ROW EXECUTE FUNCTION tether_touch_updated_at();
CREATE TRIGGER settings_touch BEFORE INSERT OR UPDATE ON settings
    FOR EACH ROW EXECUTE FUNCTION tether_touch_updated_at();

ALTER TABLE records ENABLE ROW LEVEL SECURITY;
ALTER TABLE logs ENABLE ROW LEVEL SECURITY;
ALTER TABLE settings ENABLE ROW LEVEL SECURITY;

CREATE POLICY records_owner ON records USING (owner_id = auth.uid()) WITH CHECK (owner_id = auth.uid());
CREATE POLICY logs_owner ON logs USING (owner_id = auth.uid()) WITH CHECK (owner_id = auth.uid());
CREATE POLICY settings_owner ON settings USING (owner_id = auth.uid()) WITH CHECK (owner_id = auth.uid());

-- Deletes must carry the full old row for realtime filters to match
ALTER TABLE records REPLICA IDENTITY FULL;

ALTER PUBLICATION supabase_realtime ADD TABLE records, logs, settings;
"""

# PostgREST error codes for a rejected or expired JWT
_AUTH_ERROR_CODES = {"PGRST301", "PGRST302", "PGRST303", "401", "42501"}


# =============================================================================
# Timeouts
# =============================================================================


def _discard_late_result(label: str, task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Late {label} failed after timeout: {exc}")
    else:
        logger.debug(f"Discarding late {label} result")


async def with_timeout(aw: Awaitable, timeout: Optional[float], label: str = "remote call") -> Any:
    """Await ``aw`` for at most ``timeout`` seconds.

    On timeout the wire call is left running and its eventual result is
    discarded; RemoteTimeoutError is raised immediately.
    """
    task = asyncio.ensure_future(aw)
    if not timeout or timeout <= 0:
        return await task
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()
    task.add_done_callback(functools.partial(_discard_late_result, label))
    raise RemoteTimeoutError(f"{label} timed out after {timeout}s")


# =============================================================================
# Error mapping
# =============================================================================


def classify_error(error: Exception, label: str) -> RemoteError:
    """Map a client exception onto the tether error family."""
    if isinstance(error, RemoteError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return RemoteTimeoutError(f"{label}: {error}")
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (401, 403):
            return AuthExpiredError(f"{label}: HTTP {status}")
        if status >= 500 or status == 429:
            return RemoteUnavailableError(f"{label}: HTTP {status}")
        return RemoteError(f"{label}: HTTP {status}")
    if isinstance(error, httpx.HTTPError):
        return RemoteUnavailableError(f"{label}: {error}")
    if isinstance(error, APIError):
        code = str(error.code or "")
        message = str(error.message or "")
        if code in _AUTH_ERROR_CODES or "jwt" in message.lower():
            return AuthExpiredError(f"{label}: {message or code}")
        if code.startswith("5") or code.startswith("08"):
            return RemoteUnavailableError(f"{label}: {message or code}")
        return RemoteError(f"{label}: {message or code}")
    if isinstance(error, (ConnectionError, OSError)):
        return RemoteUnavailableError(f"{label}: {error}")
    return RemoteError(f"{label}: {error}")


# =============================================================================
# Row conversion
# =============================================================================


def record_row(data: Dict[str, Any]) -> RemoteRow:
    return RemoteRow(RECORDS, data["name"], data.get("payload") or {}, iso_to_ms(data.get("updated_at")))


def log_row(data: Dict[str, Any]) -> RemoteRow:
    return RemoteRow(LOGS, data["date"], data.get("entries") or {}, iso_to_ms(data.get("updated_at")))


def settings_row(data: Dict[str, Any]) -> RemoteRow:
    return RemoteRow(
        SETTINGS, data["owner_id"], data.get("payload") or {}, iso_to_ms(data.get("updated_at"))
    )


_ROW_PARSERS = {RECORDS: record_row, LOGS: log_row, SETTINGS: settings_row}
_KEY_COLUMNS = {RECORDS: "name", LOGS: "date", SETTINGS: "owner_id"}


def parse_realtime_payload(collection: str, payload: Dict[str, Any]) -> Optional[RemoteChange]:
    """Turn a Postgres-changes payload into a RemoteChange.

    Accepts both the realtime-py shape (``{"data": {"type", "record",
    "old_record"}}``) and the flat ``{"eventType", "new", "old"}`` shape.
    """
    data = payload.get("data", payload)
    event = (data.get("type") or data.get("eventType") or "").upper()
    new = data.get("record") or data.get("new") or {}
    old = data.get("old_record") or data.get("old") or {}

    if event in ("INSERT", "UPDATE"):
        if _KEY_COLUMNS[collection] not in new:
            logger.warning(f"Ignoring {collection} {event} without a key column")
            return None
        return RemoteChange(collection, ChangeType.UPSERT, row=_ROW_PARSERS[collection](new))
    if event == "DELETE":
        key = old.get(_KEY_COLUMNS[collection])
        if key is None:
            logger.warning(f"Ignoring {collection} DELETE without old row key")
            return None
        return RemoteChange(collection, ChangeType.DELETE, key=key)
    logger.debug(f"Ignoring realtime event {event!r} on {collection}")
    return None


# =============================================================================
# Store
# =============================================================================


class SupabaseSubscription:
    """Realtime channels opened for one owner."""

    def __init__(self, client: AsyncClient, channels: List[Any]):
        self._client = client
        self._channels = channels

    async def unsubscribe(self) -> None:
        channels, self._channels = self._channels, []
        for channel in channels:
            try:
                await self._client.remove_channel(channel)
            except Exception as e:
                logger.warning(f"Failed to remove realtime channel: {e}")


class SupabaseRemoteStore:
    """RemoteStore backed by Supabase tables and realtime."""

    def __init__(self, client: AsyncClient, settings: Optional[TetherSettings] = None):
        self.client = client
        self.settings = settings or get_settings()
        self.tables = {
            RECORDS: self.settings.records_table,
            LOGS: self.settings.logs_table,
            SETTINGS: self.settings.settings_table,
        }

    @classmethod
    async def connect(cls, settings: Optional[TetherSettings] = None) -> "SupabaseRemoteStore":
        """Create an async Supabase client from settings."""
        settings = settings or get_settings()
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("TETHER_SUPABASE_URL and TETHER_SUPABASE_KEY must be set")
        client = await acreate_client(settings.supabase_url, settings.supabase_key)
        return cls(client, settings)

    async def _execute(self, label: str, query) -> List[Dict[str, Any]]:
        try:
            result = await query.execute()
        except Exception as e:
            raise classify_error(e, label) from e
        return result.data or []

    def _table(self, collection: str):
        return self.client.table(self.tables[collection])

    # === Reads ===

    async def fetch_records(self, owner_id: str) -> List[RemoteRow]:
        rows = await self._execute(
            "fetch_records",
            self._table(RECORDS).select("name, payload, updated_at").eq("owner_id", owner_id),
        )
        return [record_row(r) for r in rows]

    async def fetch_logs(self, owner_id: str, since: Optional[int] = None) -> List[RemoteRow]:
        query = self._table(LOGS).select("date, entries, updated_at").eq("owner_id", owner_id)
        if since is not None:
            query = query.gt("updated_at", ms_to_iso(since))
        rows = await self._execute("fetch_logs", query)
        return [log_row(r) for r in rows]

    async def fetch_settings(self, owner_id: str) -> Optional[RemoteRow]:
        rows = await self._execute(
            "fetch_settings",
            self._table(SETTINGS)
            .select("owner_id, payload, updated_at")
            .eq("owner_id", owner_id)
            .limit(1),
        )
        return settings_row(rows[0]) if rows else None

    # === Writes ===

    async def upsert_record(self, owner_id: str, name: str, payload: Dict[str, Any]) -> RemoteRow:
        rows = await self._execute(
            "upsert_record",
            self._table(RECORDS).upsert(
                {"owner_id": owner_id, "name": name, "payload": payload},
                on_conflict="owner_id,name",
            ),
        )
        return record_row(rows[0]) if rows else RemoteRow(RECORDS, name, payload)

    async def upsert_log(self, owner_id: str, date: str, entries: Dict[str, Any]) -> RemoteRow:
        rows = await self._execute(
            "upsert_log",
            self._table(LOGS).upsert(
                {"owner_id": owner_id, "date": date, "entries": entries},
                on_conflict="owner_id,date",
            ),
        )
        return log_row(rows[0]) if rows else RemoteRow(LOGS, date, entries)

    async def upsert_settings(self, owner_id: str, payload: Dict[str, Any]) -> RemoteRow:
        rows = await self._execute(
            "upsert_settings",
            self._table(SETTINGS).upsert(
                {"owner_id": owner_id, "payload": payload}, on_conflict="owner_id"
            ),
        )
        return settings_row(rows[0]) if rows else RemoteRow(SETTINGS, owner_id, payload)

    async def delete_record(self, owner_id: str, name: str) -> None:
        await self._execute(
            "delete_record",
            self._table(RECORDS).delete().eq("owner_id", owner_id).eq("name", name),
        )

    # === Realtime ===

    async def subscribe(self, owner_id: str, callback: ChangeCallback) -> SupabaseSubscription:
        channels = []
        for collection, table in self.tables.items():
            channel = self.client.channel(f"tether-{table}-{owner_id}")
            channel.on_postgres_changes(
                "*",
                schema="public",
                table=table,
                filter=f"owner_id=eq.{owner_id}",
                callback=functools.partial(self._dispatch, collection, callback),
            )
            try:
                await channel.subscribe()
            except Exception as e:
                await SupabaseSubscription(self.client, channels).unsubscribe()
                raise classify_error(e, f"subscribe {table}") from e
            channels.append(channel)
        logger.info(f"Subscribed to realtime changes for {len(channels)} tables")
        return SupabaseSubscription(self.client, channels)

    @staticmethod
    def _dispatch(collection: str, callback: ChangeCallback, payload: Dict[str, Any]) -> None:
        change = parse_realtime_payload(collection, payload)
        if change is None:
            return
        result = callback(change)
        if inspect.isawaitable(result):
            asyncio.ensure_future(result)


# =============================================================================
# Identity
# =============================================================================


class SupabaseIdentity:
    """IdentityProvider over the Supabase auth session of ``client``."""

    def __init__(self, client: AsyncClient):
        self.client = client
        self._owner_id: Optional[str] = None

    async def sign_in(self, email: str, password: str) -> str:
        try:
            response = await self.client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as e:
            raise classify_error(e, "sign_in") from e
        self._owner_id = response.user.id
        return self._owner_id

    def current_owner_id(self) -> Optional[str]:
        return self._owner_id

    async def refresh_session(self) -> bool:
        try:
            response = await self.client.auth.refresh_session()
        except Exception as e:
            logger.warning(f"Session refresh failed: {e}")
            return False
        return response is not None and response.session is not None
