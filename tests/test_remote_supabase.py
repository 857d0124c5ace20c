"""Tests for the Supabase remote store, error mapping and timeouts.

The Supabase client is mocked: table queries are chainable MagicMocks whose
``execute`` is an AsyncMock (see ``mock_supabase_client`` in conftest).
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from postgrest import APIError

from tether.config import TetherSettings
from tether.protocols import (
    AuthExpiredError,
    RemoteError,
    RemoteTimeoutError,
    RemoteUnavailableError,
)
from tether.storage.remote import (
    SupabaseIdentity,
    SupabaseRemoteStore,
    classify_error,
    parse_realtime_payload,
    with_timeout,
)
from tether.types import LOGS, RECORDS, SETTINGS, ChangeType, iso_to_ms, ms_to_iso

OWNER = "owner-1"
TS = "2024-05-01T12:00:00+00:00"


@pytest.fixture
def store(mock_supabase_client, settings):
    return SupabaseRemoteStore(mock_supabase_client, settings)


def _returns(client, table, rows):
    query = client.table(table)
    query.execute.return_value = MagicMock(data=rows)
    return query


class TestReads:
    @pytest.mark.asyncio
    async def test_fetch_records(self, store, mock_supabase_client):
        query = _returns(
            mock_supabase_client,
            "records",
            [{"name": "Math", "payload": {"id": "1", "updatedAt": 5}, "updated_at": TS}],
        )

        rows = await store.fetch_records(OWNER)

        query.select.assert_called_with("name, payload, updated_at")
        query.eq.assert_called_with("owner_id", OWNER)
        assert len(rows) == 1
        assert rows[0].collection == RECORDS
        assert rows[0].key == "Math"
        assert rows[0].payload == {"id": "1", "updatedAt": 5}
        assert rows[0].updated_at == iso_to_ms(TS)

    @pytest.mark.asyncio
    async def test_fetch_logs_since_cursor(self, store, mock_supabase_client):
        query = _returns(mock_supabase_client, "logs", [{"date": "2024-05-01", "entries": None}])

        rows = await store.fetch_logs(OWNER, since=1_700_000_000_000)

        query.gt.assert_called_with("updated_at", ms_to_iso(1_700_000_000_000))
        assert rows[0].key == "2024-05-01"
        assert rows[0].payload == {}
        assert rows[0].updated_at == 0

    @pytest.mark.asyncio
    async def test_fetch_logs_without_cursor(self, store, mock_supabase_client):
        query = _returns(mock_supabase_client, "logs", [])

        assert await store.fetch_logs(OWNER) == []
        query.gt.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_settings_absent(self, store, mock_supabase_client):
        query = _returns(mock_supabase_client, "settings", [])

        assert await store.fetch_settings(OWNER) is None
        query.limit.assert_called_with(1)

    @pytest.mark.asyncio
    async def test_custom_table_names(self, mock_supabase_client, tmp_path):
        settings = TetherSettings(_env_file=None, data_dir=tmp_path, records_table="timetables")
        store = SupabaseRemoteStore(mock_supabase_client, settings)

        await store.fetch_records(OWNER)

        mock_supabase_client.table.assert_called_with("timetables")


class TestWrites:
    @pytest.mark.asyncio
    async def test_upsert_record(self, store, mock_supabase_client):
        payload = {"id": "1", "content": "c", "updatedAt": 5}
        query = _returns(
            mock_supabase_client, "records", [{"name": "Math", "payload": payload, "updated_at": TS}]
        )

        row = await store.upsert_record(OWNER, "Math", payload)

        query.upsert.assert_called_with(
            {"owner_id": OWNER, "name": "Math", "payload": payload}, on_conflict="owner_id,name"
        )
        assert row.updated_at == iso_to_ms(TS)

    @pytest.mark.asyncio
    async def test_upsert_log(self, store, mock_supabase_client):
        query = _returns(
            mock_supabase_client, "logs", [{"date": "2024-05-01", "entries": {"a_1": 1}, "updated_at": TS}]
        )

        row = await store.upsert_log(OWNER, "2024-05-01", {"a_1": 1})

        query.upsert.assert_called_with(
            {"owner_id": OWNER, "date": "2024-05-01", "entries": {"a_1": 1}},
            on_conflict="owner_id,date",
        )
        assert row.collection == LOGS

    @pytest.mark.asyncio
    async def test_upsert_settings(self, store, mock_supabase_client):
        query = _returns(
            mock_supabase_client, "settings", [{"owner_id": OWNER, "payload": {"t": 1}, "updated_at": TS}]
        )

        row = await store.upsert_settings(OWNER, {"t": 1})

        query.upsert.assert_called_with({"owner_id": OWNER, "payload": {"t": 1}}, on_conflict="owner_id")
        assert row.collection == SETTINGS
        assert row.key == OWNER

    @pytest.mark.asyncio
    async def test_delete_record(self, store, mock_supabase_client):
        query = _returns(mock_supabase_client, "records", [])

        await store.delete_record(OWNER, "Math")

        query.delete.assert_called_once()
        assert [c.args for c in query.eq.call_args_list] == [("owner_id", OWNER), ("name", "Math")]


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self, store, mock_supabase_client):
        mock_supabase_client.table("records").execute.side_effect = httpx.ConnectError("boom")

        with pytest.raises(RemoteUnavailableError):
            await store.fetch_records(OWNER)

    @pytest.mark.asyncio
    async def test_expired_jwt_is_auth_error(self, store, mock_supabase_client):
        mock_supabase_client.table("logs").execute.side_effect = APIError(
            {"code": "PGRST301", "message": "JWT expired", "hint": None, "details": None}
        )

        with pytest.raises(AuthExpiredError):
            await store.upsert_log(OWNER, "2024-05-01", {})

    def test_timeout(self):
        assert isinstance(classify_error(httpx.ReadTimeout("slow"), "x"), RemoteTimeoutError)

    def test_http_status(self):
        request = httpx.Request("GET", "https://example.supabase.co/rest/v1/records")

        def status(code):
            error = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(code, request=request))
            return classify_error(error, "x")

        assert isinstance(status(401), AuthExpiredError)
        assert isinstance(status(503), RemoteUnavailableError)
        assert isinstance(status(429), RemoteUnavailableError)
        assert type(status(400)) is RemoteError

    def test_api_error_codes(self):
        def api(code, message="failed"):
            return classify_error(APIError({"code": code, "message": message, "hint": None, "details": None}), "x")

        assert isinstance(api("42501"), AuthExpiredError)
        assert isinstance(api("PGRST000", "invalid JWT"), AuthExpiredError)
        assert isinstance(api("08006"), RemoteUnavailableError)
        assert type(api("23505")) is RemoteError

    def test_os_error_and_passthrough(self):
        assert isinstance(classify_error(ConnectionResetError(), "x"), RemoteUnavailableError)
        original = AuthExpiredError("already mapped")
        assert classify_error(original, "x") is original
        assert type(classify_error(KeyError("payload"), "x")) is RemoteError


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def fast():
            return 42

        assert await with_timeout(fast(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_timeout_leaves_call_running(self):
        release = asyncio.Event()
        finished = []

        async def slow():
            await release.wait()
            finished.append(True)
            return "late"

        with pytest.raises(RemoteTimeoutError):
            await with_timeout(slow(), 0.01, "upsert_record")

        release.set()
        await asyncio.sleep(0.01)
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_no_timeout(self):
        async def value():
            await asyncio.sleep(0)
            return "ok"

        assert await with_timeout(value(), None) == "ok"

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        async def failing():
            raise RemoteUnavailableError("down")

        with pytest.raises(RemoteUnavailableError):
            await with_timeout(failing(), 1.0)


class TestRealtimePayload:
    def test_realtime_py_shape(self):
        change = parse_realtime_payload(
            RECORDS,
            {"data": {"type": "UPDATE", "record": {"name": "Math", "payload": {"id": "1"}, "updated_at": TS}}},
        )

        assert change.change_type == ChangeType.UPSERT
        assert change.row.key == "Math"
        assert change.row.updated_at == iso_to_ms(TS)
        assert change.source == "push"

    def test_flat_shape(self):
        change = parse_realtime_payload(
            LOGS, {"eventType": "INSERT", "new": {"date": "2024-05-01", "entries": {"a_1": 1}}}
        )

        assert change.row.key == "2024-05-01"
        assert change.row.payload == {"a_1": 1}

    def test_delete_uses_old_row(self):
        change = parse_realtime_payload(
            RECORDS, {"data": {"type": "DELETE", "record": None, "old_record": {"name": "Math"}}}
        )

        assert change.change_type == ChangeType.DELETE
        assert change.key == "Math"

    def test_unusable_payloads(self):
        assert parse_realtime_payload(RECORDS, {"data": {"type": "DELETE", "old_record": {}}}) is None
        assert parse_realtime_payload(RECORDS, {"data": {"type": "UPDATE", "record": {}}}) is None
        assert parse_realtime_payload(SETTINGS, {"data": {"type": "TRUNCATE"}}) is None


class TestRealtimeSubscription:
    @pytest.mark.asyncio
    async def test_subscribes_per_table_and_dispatches(self, store, mock_supabase_client):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        mock_supabase_client.channel.return_value = channel
        received = []

        subscription = await store.subscribe(OWNER, received.append)

        calls = channel.on_postgres_changes.call_args_list
        assert [c.kwargs["table"] for c in calls] == ["records", "logs", "settings"]
        assert all(c.kwargs["filter"] == f"owner_id=eq.{OWNER}" for c in calls)

        calls[1].kwargs["callback"]({"data": {"type": "INSERT", "record": {"date": "2024-05-01"}}})
        assert received[0].collection == LOGS

        await subscription.unsubscribe()
        assert mock_supabase_client.remove_channel.await_count == 3

    @pytest.mark.asyncio
    async def test_async_callback_is_scheduled(self, store, mock_supabase_client):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        mock_supabase_client.channel.return_value = channel
        received = []

        async def callback(change):
            received.append(change)

        await store.subscribe(OWNER, callback)
        channel.on_postgres_changes.call_args_list[0].kwargs["callback"](
            {"data": {"type": "UPDATE", "record": {"name": "Math"}}}
        )
        await asyncio.sleep(0)

        assert received[0].row.key == "Math"

    @pytest.mark.asyncio
    async def test_subscribe_failure_cleans_up(self, store, mock_supabase_client):
        channel = MagicMock()
        channel.subscribe = AsyncMock(side_effect=[None, ConnectionError("socket closed")])
        mock_supabase_client.channel.return_value = channel

        with pytest.raises(RemoteUnavailableError):
            await store.subscribe(OWNER, lambda change: None)

        assert mock_supabase_client.remove_channel.await_count == 1


class TestConnect:
    @pytest.mark.asyncio
    async def test_requires_url_and_key(self, tmp_path):
        settings = TetherSettings(_env_file=None, data_dir=tmp_path, supabase_url=None, supabase_key=None)

        with pytest.raises(ValueError):
            await SupabaseRemoteStore.connect(settings)


class TestSupabaseIdentity:
    @pytest.mark.asyncio
    async def test_sign_in(self, mock_supabase_client):
        mock_supabase_client.auth.sign_in_with_password.return_value = MagicMock(user=MagicMock(id="u1"))
        identity = SupabaseIdentity(mock_supabase_client)

        assert await identity.sign_in("a@example.com", "pw") == "u1"
        assert identity.current_owner_id() == "u1"
        mock_supabase_client.auth.sign_in_with_password.assert_awaited_with(
            {"email": "a@example.com", "password": "pw"}
        )

    @pytest.mark.asyncio
    async def test_sign_in_failure_is_mapped(self, mock_supabase_client):
        mock_supabase_client.auth.sign_in_with_password.side_effect = httpx.ConnectError("offline")
        identity = SupabaseIdentity(mock_supabase_client)

        with pytest.raises(RemoteUnavailableError):
            await identity.sign_in("a@example.com", "pw")
        assert identity.current_owner_id() is None

    @pytest.mark.asyncio
    async def test_refresh_session(self, mock_supabase_client):
        identity = SupabaseIdentity(mock_supabase_client)

        mock_supabase_client.auth.refresh_session.return_value = MagicMock(session=MagicMock())
        assert await identity.refresh_session() is True

        mock_supabase_client.auth.refresh_session.return_value = MagicMock(session=None)
        assert await identity.refresh_session() is False

        mock_supabase_client.auth.refresh_session.side_effect = RuntimeError("refresh token revoked")
        assert await identity.refresh_session() is False
