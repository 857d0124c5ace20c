"""Tests for full reconciliation.

Tests:
- Identity matching by id and by name
- Log ledger precedence
- Tombstone suppression of remote rows
- Duplicate merging by content hash and by decorated name
- Stale duplicate remote ids and legacy rows without ids
- Renames flowing into logs and settings
- Single-active-record evictions
- Idempotence of a second pass
- Invariant self-checks
"""

import pytest

from tether.protocols import InvariantViolation
from tether.sync.reconcile import check_invariants, reconcile
from tether.types import (
    LOGS,
    RECORDS,
    SETTINGS,
    LocalSnapshot,
    Record,
    ReconcileResult,
    RemoteRow,
    RemoteSnapshot,
    Tombstone,
)


def _committed(result: ReconcileResult, server_ts: int = 10_000):
    """Local and remote snapshots as they look once a result is committed and uploaded."""
    local = LocalSnapshot(
        records=dict(result.records),
        logs={d: dict(e) for d, e in result.logs.items()},
        log_ledger={d: server_ts for d in result.logs},
        settings=dict(result.settings),
    )
    remote = RemoteSnapshot(
        records=[RemoteRow(RECORDS, n, r.to_payload(), server_ts) for n, r in result.records.items()],
        logs=[RemoteRow(LOGS, d, dict(e), server_ts) for d, e in result.logs.items()],
        settings=RemoteRow(SETTINGS, "owner-1", dict(result.settings), server_ts)
        if result.settings
        else None,
    )
    return local, remote


class TestIdentityMatching:
    def test_remote_newer_content_wins(self, record_row):
        """Same id, newer remote content replaces local."""
        local = LocalSnapshot(records={"X": Record("X", "v1", 100, "1")})
        remote = RemoteSnapshot(records=[record_row("X", "v2", 200, id="1")])

        result = reconcile(local, remote)

        assert result.records["X"].content == "v2"
        assert result.records["X"].updated_at == 200
        assert result.pending_uploads == set()

    def test_local_newer_content_wins_and_uploads(self, record_row):
        """Same id, newer local content is kept and re-uploaded."""
        local = LocalSnapshot(records={"X": Record("X", "v-local", 300, "1")})
        remote = RemoteSnapshot(records=[record_row("X", "v-remote", 200, id="1")])

        result = reconcile(local, remote)

        assert result.records["X"].content == "v-local"
        assert result.records["X"].updated_at == 300
        assert result.pending_uploads == {"X"}

    def test_legacy_local_record_adopts_remote_id(self, record_row):
        """A record saved before ids existed links to the remote row by name."""
        local = LocalSnapshot(records={"X": Record("X", "legacy", 50, None)})
        remote = RemoteSnapshot(records=[record_row("X", "cloud", 80, id="7")])

        result = reconcile(local, remote)

        assert list(result.records) == ["X"]
        assert result.records["X"].id == "7"

    def test_identical_content_is_a_noop(self, record_row):
        local = LocalSnapshot(records={"X": Record("X", {"rows": [1]}, 100, "1")})
        remote = RemoteSnapshot(records=[record_row("X", {"rows": [1], "viewMonth": 3}, 150, id="1")])

        result = reconcile(local, remote)

        assert result.records["X"].updated_at == 100
        assert result.changed is False
        assert result.conflicts == []

    def test_remote_winner_restores_auxiliary_blobs(self, record_row):
        local = LocalSnapshot(
            records={"X": Record("X", "old", 100, "1", {"notifications": {"on": True}})}
        )
        remote = RemoteSnapshot(
            records=[record_row("X", "new", 200, id="1", auxiliary={"timetable": [1, 2]})]
        )

        result = reconcile(local, remote)

        assert result.records["X"].auxiliary == {
            "notifications": {"on": True},
            "timetable": [1, 2],
        }

    def test_legacy_remote_row_gets_id_and_is_rewritten(self):
        row = RemoteRow(RECORDS, "X", {"content": "c", "updatedAt": 100}, 100)

        result = reconcile(LocalSnapshot(), RemoteSnapshot(records=[row]))

        assert result.records["X"].id
        assert result.pending_uploads == {"X"}

    def test_stale_duplicate_remote_id_is_deleted(self, record_row):
        remote = RemoteSnapshot(
            records=[
                record_row("A", "current", 200, id="S"),
                record_row("A copy", "older", 100, id="S"),
            ]
        )

        result = reconcile(LocalSnapshot(), remote)

        assert list(result.records) == ["A"]
        assert result.remote_deletes == {"A copy"}
        assert result.renames == {"A copy": "A"}

    def test_local_rename_wins_and_migrates_dependents(self, record_row, log_row, settings_row):
        local = LocalSnapshot(records={"New Name": Record("New Name", "edited", 300, "R")})
        remote = RemoteSnapshot(
            records=[record_row("Old Name", "original", 100, id="R")],
            logs=[log_row("2024-05-01", {"Old Name_p1": "present"}, 50)],
            settings=settings_row({"last_opened_record": "Old Name"}, 60),
        )

        result = reconcile(local, remote)

        assert list(result.records) == ["New Name"]
        assert result.pending_uploads == {"New Name"}
        assert result.remote_deletes == {"Old Name"}
        assert result.renames == {"Old Name": "New Name"}
        assert result.logs["2024-05-01"] == {"New Name_p1": "present"}
        assert result.pending_log_uploads == {"2024-05-01"}
        assert result.settings["last_opened_record"] == "New Name"
        assert result.pending_settings_upload is True


class TestLogs:
    def test_local_ledger_newer_keeps_local_day(self, log_row):
        """A day edited locally after the remote write keeps its local entries."""
        local = LocalSnapshot(
            logs={"2024-05-01": {"X_p1": "present", "X_p2": "absent"}},
            log_ledger={"2024-05-01": 2000},
        )
        remote = RemoteSnapshot(logs=[log_row("2024-05-01", {"X_p1": "absent"}, 1000)])

        result = reconcile(local, remote)

        assert result.logs["2024-05-01"] == {"X_p1": "present", "X_p2": "absent"}
        assert result.pending_log_uploads == {"2024-05-01"}

    def test_remote_day_merges_when_ledger_older(self, log_row):
        local = LocalSnapshot(
            logs={"2024-05-01": {"X_p1": "present", "X_p2": "absent"}},
            log_ledger={"2024-05-01": 500},
        )
        remote = RemoteSnapshot(logs=[log_row("2024-05-01", {"X_p2": "late", "X_p3": "present"}, 1000)])

        result = reconcile(local, remote)

        assert result.logs["2024-05-01"] == {"X_p1": "present", "X_p2": "late", "X_p3": "present"}
        assert result.pending_log_uploads == {"2024-05-01"}

    def test_remote_only_day_is_adopted_without_upload(self, log_row):
        remote = RemoteSnapshot(logs=[log_row("2024-05-02", {"X_p1": "present"}, 1000)])

        result = reconcile(LocalSnapshot(), remote)

        assert result.logs == {"2024-05-02": {"X_p1": "present"}}
        assert result.pending_log_uploads == set()


class TestTombstones:
    def test_tombstoned_remote_row_is_ignored(self, record_row):
        local = LocalSnapshot(tombstones={"X": Tombstone("X", created_at=500)})
        remote = RemoteSnapshot(records=[record_row("X", "zombie", 900)])

        result = reconcile(local, remote)

        assert "X" not in result.records
        assert result.pending_uploads == set()
        assert result.remote_deletes == set()


class TestDuplicates:
    def test_content_duplicate_is_merged_away(self, record_row):
        local = LocalSnapshot(records={"Copy": Record("Copy", {"rows": [1]}, 400, "L")})
        remote = RemoteSnapshot(records=[record_row("Orig", {"rows": [1]}, 100, id="R")])

        result = reconcile(local, remote)

        assert list(result.records) == ["Orig"]
        assert result.records["Orig"].id == "R"
        assert result.renames == {"Copy": "Orig"}
        assert result.pending_uploads == set()
        assert result.evicted == set()

    def test_decorated_name_is_absorbed(self, record_row):
        local = LocalSnapshot(
            records={"Physics (Local)": Record("Physics (Local)", {"rows": [2]}, 300, "L1")},
            logs={"2024-05-01": {"Physics (Local)_p1": "present"}},
        )
        remote = RemoteSnapshot(records=[record_row("Physics", {"rows": [1]}, 100, id="R1")])

        result = reconcile(local, remote)

        assert list(result.records) == ["Physics"]
        merged = result.records["Physics"]
        assert merged.id == "R1"
        assert merged.content == {"rows": [2]}
        assert merged.updated_at == 300
        assert result.pending_uploads == {"Physics"}
        assert result.renames == {"Physics (Local)": "Physics"}
        assert result.logs["2024-05-01"] == {"Physics_p1": "present"}

    def test_second_pass_is_idempotent(self, record_row):
        local = LocalSnapshot(
            records={"Physics (Local)": Record("Physics (Local)", {"rows": [2]}, 300, "L1")},
            logs={"2024-05-01": {"Physics (Local)_p1": "present"}},
            settings={"theme": "dark", "last_opened_record": "Physics (Local)"},
        )
        remote = RemoteSnapshot(records=[record_row("Physics", {"rows": [1]}, 100, id="R1")])

        first = reconcile(local, remote)
        second = reconcile(*_committed(first))

        assert first.changed is True
        assert second.changed is False
        assert second.records == first.records
        assert second.logs == first.logs
        assert second.settings == first.settings


class TestSingleActivePolicy:
    def test_new_local_record_evicted_when_slot_taken(self, record_row):
        local = LocalSnapshot(
            records={"B": Record("B", "b", 500, "LB")},
            logs={"2024-05-01": {"A_1": "present", "B_1": "absent"}},
        )
        remote = RemoteSnapshot(records=[record_row("A", "a", 100, id="RA")])

        result = reconcile(local, remote)

        assert list(result.records) == ["A"]
        assert result.evicted == {"B"}
        assert result.logs["2024-05-01"] == {"A_1": "present"}
        assert "B" not in result.pending_uploads

    def test_newest_remote_record_survives(self, record_row):
        remote = RemoteSnapshot(
            records=[record_row("A", "a", 100, id="1"), record_row("B", "b", 200, id="2")]
        )

        result = reconcile(LocalSnapshot(), remote)

        assert list(result.records) == ["B"]
        assert result.evicted == {"A"}
        assert result.remote_deletes == {"A"}

    def test_last_opened_record_survives(self, record_row):
        local = LocalSnapshot(settings={"last_opened_record": "A"})
        remote = RemoteSnapshot(
            records=[record_row("A", "a", 100, id="1"), record_row("B", "b", 200, id="2")]
        )

        result = reconcile(local, remote)

        assert list(result.records) == ["A"]
        assert result.evicted == {"B"}

    def test_ties_break_on_name(self, record_row):
        remote = RemoteSnapshot(
            records=[record_row("Zeta", "z", 100, id="1"), record_row("Alpha", "a", 100, id="2")]
        )

        result = reconcile(LocalSnapshot(), remote)

        assert list(result.records) == ["Alpha"]

    def test_policy_can_be_disabled(self):
        local = LocalSnapshot(
            records={"A": Record("A", "a", 100, "1"), "B": Record("B", "b", 200, "2")}
        )

        result = reconcile(local, RemoteSnapshot(), enforce_single_active=False)

        assert set(result.records) == {"A", "B"}
        assert result.pending_uploads == {"A", "B"}
        assert result.evicted == set()

    def test_policy_result_is_stable(self, record_row):
        remote = RemoteSnapshot(
            records=[record_row("A", "a", 100, id="1"), record_row("B", "b", 200, id="2")]
        )

        first = reconcile(LocalSnapshot(), remote)
        second = reconcile(*_committed(first))

        assert second.records == first.records
        assert second.evicted == set()


class TestInvariants:
    def test_duplicate_ids_are_rejected(self):
        result = ReconcileResult(
            records={"A": Record("A", "a", 1, "same"), "B": Record("B", "b", 1, "same")}
        )

        with pytest.raises(InvariantViolation):
            check_invariants(result, LocalSnapshot(), enforce_single_active=False)

    def test_multiple_survivors_are_rejected(self):
        result = ReconcileResult(
            records={"A": Record("A", "a", 1, "1"), "B": Record("B", "b", 1, "2")}
        )

        with pytest.raises(InvariantViolation):
            check_invariants(result, LocalSnapshot(), enforce_single_active=True)

    def test_tombstoned_name_must_not_reappear(self):
        result = ReconcileResult(records={"A": Record("A", "a", 1, "1")})
        local = LocalSnapshot(tombstones={"A": Tombstone("A")})

        with pytest.raises(InvariantViolation):
            check_invariants(result, local)
