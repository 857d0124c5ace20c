"""Tests for the tether CLI."""

import json

import pytest

from tether.cli import __main__ as cli
from tether.config import TetherSettings, get_settings
from tether.storage.local import LocalRepository
from tether.storage.memory import MemoryRemoteStore, MemoryStore
from tether.storage.sqlite import SQLiteStore
from tether.sync.engine import SyncEngine
from tether.types import LOGS, RECORDS, SETTINGS, Record, Tombstone


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("TETHER_OWNER_ID", "TETHER_EMAIL", "TETHER_PASSWORD", "TETHER_DATA_DIR"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _repo(tmp_path, owner="o1"):
    settings = TetherSettings(_env_file=None, data_dir=tmp_path)
    return LocalRepository(SQLiteStore(cli.store_path(settings, owner)))


class TestStatus:
    def test_json_counts(self, tmp_path, capsys):
        repo = _repo(tmp_path)
        repo.put_record(Record("Math", {"rows": [1]}, 100, "1"))
        repo.put_log("2024-05-01", {"Math_1": "P"})
        repo.put_settings({"last_opened_record": "Math"})

        cli.main(["--data-dir", str(tmp_path), "--owner", "o1", "status", "--json"])

        output = json.loads(capsys.readouterr().out)
        assert output["owner_id"] == "o1"
        assert output["records"] == 1
        assert output["log_days"] == 1
        assert output["settings"] == {"last_opened_record": "Math"}

    def test_text_output(self, tmp_path, capsys):
        _repo(tmp_path).put_record(Record("Math", {"rows": [1]}, 100, "1"))

        cli.main(["--data-dir", str(tmp_path), "-o", "o1", "status"])

        out = capsys.readouterr().out
        assert "Local Sync Status for o1" in out
        assert "Math (id=1, updated_at=100)" in out

    def test_missing_owner_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--data-dir", str(tmp_path), "status"])

        assert exc_info.value.code == 1


class TestTombstones:
    def test_list_empty(self, tmp_path, capsys):
        cli.main(["--data-dir", str(tmp_path), "-o", "o1", "tombstones", "list"])

        assert "No pending deletes." in capsys.readouterr().out

    def test_list_pending(self, tmp_path, capsys):
        _repo(tmp_path).put_tombstone(Tombstone("Old", created_at=5, attempts=3, last_error="offline"))

        cli.main(["--data-dir", str(tmp_path), "-o", "o1", "tombstones", "list"])

        assert "Old (attempts=3) last_error=offline" in capsys.readouterr().out


class TestSync:
    def test_sync_requires_credentials(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--data-dir", str(tmp_path), "sync"])

        assert exc_info.value.code == 1

    def test_sync_json(self, tmp_path, capsys, monkeypatch):
        remote = MemoryRemoteStore()

        async def fake_start_engine(settings, **callbacks):
            engine = SyncEngine(remote, MemoryStore(), settings=settings)
            engine.repo.put_record(Record("Math", {"rows": [1]}, 100, "1"))
            result = await engine.on_login("o1")
            return engine, result

        monkeypatch.setattr(cli, "start_engine", fake_start_engine)

        cli.main(["--data-dir", str(tmp_path), "sync", "--json"])

        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["pushed"] == 1
        assert "Math" in remote.rows("records", "o1")

    def test_sync_force_reuploads_local_state(self, tmp_path, capsys, monkeypatch):
        remote = MemoryRemoteStore()

        async def fake_start_engine(settings, **callbacks):
            engine = SyncEngine(remote, MemoryStore(), settings=settings)
            engine.repo.put_record(Record("Math", {"rows": [1]}, 100, "1"))
            engine.repo.put_log("2024-05-01", {"Math_1": "P"})
            engine.repo.put_settings({"theme": "dark"})
            result = await engine.on_login("o1")
            await engine.queue.join(timeout=2)
            for collection in (RECORDS, LOGS, SETTINGS):
                remote.rows(collection, "o1").clear()
            return engine, result

        monkeypatch.setattr(cli, "start_engine", fake_start_engine)

        cli.main(["--data-dir", str(tmp_path), "sync", "--force", "--json"])

        output = json.loads(capsys.readouterr().out)
        assert output["forced"] == 3
        assert set(remote.rows(RECORDS, "o1")) == {"Math"}
        assert set(remote.rows(LOGS, "o1")) == {"2024-05-01"}
        assert remote.rows(SETTINGS, "o1")["o1"].payload == {"theme": "dark"}

    def test_sync_failure_exits(self, tmp_path, capsys, monkeypatch):
        remote = MemoryRemoteStore()
        remote.fail_next("fetch_records")

        async def fake_start_engine(settings, **callbacks):
            engine = SyncEngine(remote, MemoryStore(), settings=settings)
            result = await engine.on_login("o1")
            return engine, result

        monkeypatch.setattr(cli, "start_engine", fake_start_engine)

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--data-dir", str(tmp_path), "sync"])

        assert exc_info.value.code == 1
        assert "Sync failed:" in capsys.readouterr().out


def test_store_path_is_per_owner(tmp_path):
    settings = TetherSettings(_env_file=None, data_dir=tmp_path)

    assert cli.store_path(settings, "a") != cli.store_path(settings, "b")
    assert cli.store_path(settings, "a") == tmp_path / "owners" / "a" / "local.db"
