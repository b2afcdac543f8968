"""SQLite persistence for encrypted credential rows.

The database never sees plaintext: each row holds the nonce and the
AES-GCM ciphertext of one serialized record. Group rows additionally keep
the group path in clear so that namespace resolution can select a
candidate without decrypting every row.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS credentials (
    scope TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    lookup_path TEXT,
    nonce BLOB NOT NULL,
    ciphertext BLOB NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (scope, owner_id)
);

CREATE INDEX IF NOT EXISTS idx_credentials_scope ON credentials(scope);
"""


class CredentialDB:
    """SQLite database wrapper for encrypted credential rows.

    Provides:
    - WAL mode so readers never block the single writer
    - Parameterized queries only
    - Whole-row replacement (``INSERT ... ON CONFLICT DO UPDATE``)
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._initialize()

    def _initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._conn

    def upsert(
        self,
        scope: str,
        owner_id: str,
        nonce: bytes,
        ciphertext: bytes,
        updated_at: str,
        lookup_path: str | None = None,
    ) -> None:
        conn = self._connection()
        conn.execute(
            """INSERT INTO credentials
               (scope, owner_id, lookup_path, nonce, ciphertext, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(scope, owner_id) DO UPDATE SET
                 lookup_path=excluded.lookup_path, nonce=excluded.nonce,
                 ciphertext=excluded.ciphertext, updated_at=excluded.updated_at""",
            (scope, owner_id, lookup_path, nonce, ciphertext, updated_at),
        )
        conn.commit()

    def fetch(self, scope: str, owner_id: str) -> dict[str, Any] | None:
        row = self._connection().execute(
            "SELECT * FROM credentials WHERE scope = ? AND owner_id = ?",
            (scope, owner_id),
        ).fetchone()
        return dict(row) if row else None

    def fetch_scope(self, scope: str) -> list[dict[str, Any]]:
        rows = self._connection().execute(
            "SELECT * FROM credentials WHERE scope = ? ORDER BY owner_id",
            (scope,),
        ).fetchall()
        return [dict(r) for r in rows]

    def delete(self, scope: str, owner_id: str) -> bool:
        conn = self._connection()
        cursor = conn.execute(
            "DELETE FROM credentials WHERE scope = ? AND owner_id = ?",
            (scope, owner_id),
        )
        conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> CredentialDB:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()
