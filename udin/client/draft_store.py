"""Local draft store: selected files persisted on disk until ingestion is confirmed.

Backed by a single sqlite file keyed by draft id, with a timestamp index for
most-recent-first listing. The same file hosts the outbox of ledger updates
that could not be delivered and are retried on the next checkout run.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from udin.client.errors import DraftStoreError
from udin.core.logging import get_logger

log = get_logger(__name__)

DraftStatus = Literal["pending", "uploading", "completed", "error"]

ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
)
MIN_FILE_SIZE = 1024
MAX_FILE_SIZE = 50 * 1024 * 1024
MAX_FILES = 30

_SCHEMA = """
CREATE TABLE IF NOT EXISTS drafts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    size INTEGER NOT NULL,
    type TEXT NOT NULL,
    document_type_id TEXT,
    tier TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    payload BLOB NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_drafts_timestamp ON drafts (timestamp);
CREATE TABLE IF NOT EXISTS outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_id TEXT NOT NULL,
    patch TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL
);
"""


class DraftFile(BaseModel):
    id: str
    name: str
    size: int
    type: str
    document_type_id: str | None = None
    tier: str = "Standard"
    status: DraftStatus = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    payload: bytes = b""


class OutboxEntry(BaseModel):
    id: int
    transaction_id: str
    patch: dict[str, Any]
    attempts: int = 0
    last_error: str | None = None


def validate_selection(existing: list[DraftFile], new: list[DraftFile]) -> tuple[list[DraftFile], list[str]]:
    """Split ``new`` into accepted files and human-readable rejections."""
    accepted: list[DraftFile] = []
    errors: list[str] = []
    slots = MAX_FILES - len(existing)
    for f in new:
        if f.type not in ALLOWED_MIME_TYPES:
            errors.append(f"{f.name}: file type not supported")
        elif f.size < MIN_FILE_SIZE:
            errors.append(f"{f.name}: file must be at least 1KB")
        elif f.size > MAX_FILE_SIZE:
            errors.append(f"{f.name}: file must be 50MB or smaller")
        elif len(accepted) >= slots:
            errors.append(f"{f.name}: at most {MAX_FILES} files per session")
        else:
            accepted.append(f)
    return accepted, errors


def _row_to_draft(row: sqlite3.Row) -> DraftFile:
    return DraftFile(
        id=row["id"],
        name=row["name"],
        size=row["size"],
        type=row["type"],
        document_type_id=row["document_type_id"],
        tier=row["tier"],
        status=row["status"],
        progress=row["progress"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        payload=bytes(row["payload"]),
    )


class DraftStore:
    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except (sqlite3.Error, OSError) as e:
            raise DraftStoreError(f"Could not open draft store: {e}") from e

    def __enter__(self) -> "DraftStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    def _write(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise DraftStoreError(f"Draft store write failed: {e}") from e

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DraftStoreError(f"Draft store read failed: {e}") from e

    def put(self, files: list[DraftFile]) -> list[str]:
        """Insert or replace by id. Files failing the selection rules are skipped; their reasons are returned."""
        incoming = {f.id for f in files}
        kept = [f for f in self.list() if f.id not in incoming]
        files, errors = validate_selection(kept, files)
        if errors:
            log.info("draft_files_rejected", rejected=len(errors))
        try:
            with self._conn:
                self._conn.executemany(
                    "INSERT OR REPLACE INTO drafts "
                    "(id, name, size, type, document_type_id, tier, status, progress, timestamp, payload) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            f.id, f.name, f.size, f.type, f.document_type_id, f.tier,
                            f.status, f.progress, f.timestamp.isoformat(), f.payload,
                        )
                        for f in files
                    ],
                )
        except sqlite3.Error as e:
            raise DraftStoreError(f"Draft store write failed: {e}") from e
        return errors

    def remove(self, file_id: str) -> None:
        self._write("DELETE FROM drafts WHERE id = ?", (file_id,))

    def list(self) -> list[DraftFile]:
        """Most recent first."""
        return [_row_to_draft(r) for r in self._read("SELECT * FROM drafts ORDER BY timestamp DESC")]

    def get(self, file_id: str) -> DraftFile | None:
        rows = self._read("SELECT * FROM drafts WHERE id = ?", (file_id,))
        return _row_to_draft(rows[0]) if rows else None

    def clear(self) -> None:
        self._write("DELETE FROM drafts")

    def info(self) -> dict[str, int]:
        row = self._read("SELECT COUNT(*) AS count, COALESCE(SUM(size), 0) AS total FROM drafts")[0]
        return {"count": row["count"], "totalSize": row["total"]}

    # Outbox

    def push_outbox(self, transaction_id: str, patch: dict[str, Any], error: str | None = None) -> int:
        cur = self._write(
            "INSERT INTO outbox (transaction_id, patch, last_error, created_at) VALUES (?, ?, ?, ?)",
            (transaction_id, json.dumps(patch, default=str), error, datetime.utcnow().isoformat()),
        )
        return cur.lastrowid

    def pending_outbox(self) -> list[OutboxEntry]:
        return [
            OutboxEntry(
                id=r["id"],
                transaction_id=r["transaction_id"],
                patch=json.loads(r["patch"]),
                attempts=r["attempts"],
                last_error=r["last_error"],
            )
            for r in self._read("SELECT * FROM outbox ORDER BY id")
        ]

    def drop_outbox(self, entry_id: int) -> None:
        self._write("DELETE FROM outbox WHERE id = ?", (entry_id,))

    def bump_outbox(self, entry_id: int, error: str) -> None:
        self._write("UPDATE outbox SET attempts = attempts + 1, last_error = ? WHERE id = ?", (error, entry_id))


class EmptyDraftStore:
    """Stand-in when the on-disk store is unavailable: nothing persisted, writes ask for a retry."""

    def __init__(self, error: DraftStoreError):
        self.error = error

    def put(self, files: list[DraftFile]) -> list[str]:
        raise DraftStoreError(f"Draft store unavailable, please retry: {self.error.message}")

    def remove(self, file_id: str) -> None:
        pass

    def list(self) -> list[DraftFile]:
        return []

    def get(self, file_id: str) -> DraftFile | None:
        return None

    def clear(self) -> None:
        pass

    def info(self) -> dict[str, int]:
        return {"count": 0, "totalSize": 0}

    def push_outbox(self, transaction_id: str, patch: dict[str, Any], error: str | None = None) -> int:
        log.warning("outbox_unavailable", transaction_id=transaction_id, patch=patch)
        return 0

    def pending_outbox(self) -> list[OutboxEntry]:
        return []

    def drop_outbox(self, entry_id: int) -> None:
        pass

    def bump_outbox(self, entry_id: int, error: str) -> None:
        pass

    def close(self) -> None:
        pass


def open_draft_store_or_empty(path: str | Path) -> DraftStore | EmptyDraftStore:
    try:
        return DraftStore(path)
    except DraftStoreError as e:
        log.warning("draft_store_unavailable", path=str(path), error=e.message)
        return EmptyDraftStore(e)
