"""SQLite-backed local store for tether."""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tether.protocols import DataCorruptionError, StorageError, StorageQuotaError
from tether.types import ms_to_iso, now_ms

from .schema import init_db

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Flat string-keyed JSON store persisted in SQLite.

    Features:
    - Zero-config local storage
    - Values stored as JSON text, decoded on read
    - Optional byte quota (``max_bytes``) mirroring browser storage limits;
      SQLite's own "disk full" failures map to the same StorageQuotaError
    """

    def __init__(self, db_path: Path, max_bytes: Optional[int] = None):
        self.db_path = Path(db_path)
        self.max_bytes = max_bytes
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def close(self):
        """Close any resources.

        Connections are opened per operation; this exists for API symmetry.
        """
        pass

    # === LocalStore protocol ===

    def get(self, key: str) -> Any:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise DataCorruptionError(key, str(e)) from e

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Dict[str, Any], delete_keys: Iterable[str] = ()) -> None:
        """Write ``values`` and delete ``delete_keys`` in one transaction.

        Nothing is applied if any write fails (quota included).
        """
        texts = {key: self._encode(key, value) for key, value in values.items()}
        delete_keys = [key for key in delete_keys if key not in texts]
        stamp = ms_to_iso(now_ms())

        try:
            with self._connect() as conn:
                if self.max_bytes is not None:
                    self._check_quota(conn, texts, delete_keys)
                conn.executemany("DELETE FROM kv WHERE key = ?", [(key,) for key in delete_keys])
                conn.executemany(
                    """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                           value = excluded.value,
                           updated_at = excluded.updated_at""",
                    [(key, text, stamp) for key, text in texts.items()],
                )
        except sqlite3.OperationalError as e:
            keys = ", ".join(sorted(texts))
            if "full" in str(e).lower():
                raise StorageQuotaError(f"Local store full while writing {keys}") from e
            raise StorageError(f"Local write failed for {keys}: {e}") from e

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def list_keys_with_prefix(self, prefix: str) -> List[str]:
        # LIKE treats % and _ as wildcards; filter with startswith instead
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row["key"] for row in rows]

    # === Helpers ===

    @staticmethod
    def _encode(key: str, value: Any) -> str:
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {e}") from e

    def _check_quota(self, conn: sqlite3.Connection, texts: Dict[str, str], delete_keys: List[str]) -> None:
        touched = set(texts) | set(delete_keys)
        used = sum(
            size
            for key, size in conn.execute("SELECT key, LENGTH(key) + LENGTH(value) FROM kv")
            if key not in touched
        )
        needed = sum(len(key) + len(text) for key, text in texts.items())
        if used + needed > self.max_bytes:
            raise StorageQuotaError(
                f"Local store quota exceeded writing {', '.join(sorted(texts))} "
                f"({used} of {self.max_bytes} bytes used)"
            )

    def set_raw(self, key: str, text: str) -> None:
        """Write an undecoded value. Used by repair tooling and tests."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                (key, text, ms_to_iso(now_ms())),
            )
