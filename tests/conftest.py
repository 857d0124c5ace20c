"""
Pytest fixtures and test configuration for tether tests.
"""

import uuid
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from tether.config import TetherSettings
from tether.storage.local import LocalRepository
from tether.storage.memory import MemoryRemoteStore, MemoryStore
from tether.sync.engine import SyncEngine
from tether.types import LOGS, RECORDS, SETTINGS, Record, RemoteRow

OWNER = "owner-1"


class FakeIdentity:
    """IdentityProvider stand-in that counts refresh attempts."""

    def __init__(self, owner_id: str = OWNER, refresh_ok: bool = True):
        self.owner_id = owner_id
        self.refresh_ok = refresh_ok
        self.refresh_calls = 0

    def current_owner_id(self) -> Optional[str]:
        return self.owner_id

    async def refresh_session(self) -> bool:
        self.refresh_calls += 1
        return self.refresh_ok


@pytest.fixture
def owner_id():
    return OWNER


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment: no polling, short timeouts."""
    return TetherSettings(
        _env_file=None,
        data_dir=tmp_path,
        poll_interval_seconds=0,
        probe_timeout_seconds=2.0,
        upload_timeout_seconds=2.0,
        upload_debounce_seconds=0.0,
    )


@pytest.fixture
def local_store():
    return MemoryStore()


@pytest.fixture
def repo(local_store):
    return LocalRepository(local_store)


@pytest.fixture
def remote():
    return MemoryRemoteStore()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def prompts():
    """Collects (prompt, message) pairs raised by the engine."""
    return []


@pytest.fixture
def engine(remote, local_store, identity, settings, prompts):
    return SyncEngine(
        remote,
        local_store,
        identity=identity,
        settings=settings,
        on_prompt=lambda prompt, message: prompts.append((prompt, message)),
    )


@pytest.fixture
def make_record():
    """Factory for Record objects with a fresh id unless given."""

    def _make(name, content=None, updated_at=100, id="auto", auxiliary=None):
        return Record(
            name=name,
            content=content if content is not None else {"title": name},
            updated_at=updated_at,
            id=str(uuid.uuid4()) if id == "auto" else id,
            auxiliary=dict(auxiliary or {}),
        )

    return _make


@pytest.fixture
def record_row():
    """Factory for remote record rows."""

    def _row(name, content=None, updated_at=100, id="auto", auxiliary=None, server_ts=None):
        record = Record(
            name=name,
            content=content if content is not None else {"title": name},
            updated_at=updated_at,
            id=str(uuid.uuid4()) if id == "auto" else id,
            auxiliary=dict(auxiliary or {}),
        )
        return RemoteRow(RECORDS, name, record.to_payload(), server_ts or updated_at)

    return _row


@pytest.fixture
def log_row():
    def _row(date: str, entries: Dict[str, Any], updated_at: int):
        return RemoteRow(LOGS, date, dict(entries), updated_at)

    return _row


@pytest.fixture
def settings_row():
    def _row(payload: Dict[str, Any], updated_at: int, owner: str = OWNER):
        return RemoteRow(SETTINGS, owner, dict(payload), updated_at)

    return _row


@pytest.fixture
def mock_supabase_client():
    """Mock async Supabase client.

    ``client.table(name)`` returns a chainable query whose ``execute`` is an
    AsyncMock; tests set ``query.execute.return_value`` / ``side_effect``.
    Every chain method returns the same query object so calls can be asserted.
    """
    client = MagicMock()
    queries: Dict[str, MagicMock] = {}

    def table(name):
        if name not in queries:
            query = MagicMock(name=f"query[{name}]")
            for method in ("select", "eq", "gt", "limit", "upsert", "delete", "order"):
                getattr(query, method).return_value = query
            query.execute = AsyncMock(return_value=MagicMock(data=[]))
            queries[name] = query
        return queries[name]

    client.table.side_effect = table
    client.queries = queries
    client.remove_channel = AsyncMock()
    client.auth.sign_in_with_password = AsyncMock()
    client.auth.refresh_session = AsyncMock()
    return client
