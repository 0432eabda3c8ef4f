"""SQLite database helpers for the deployment orchestrator."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from .migrations import upgrade_database
from .models import DeploymentRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    utc_dt = dt.astimezone(timezone.utc)
    return utc_dt.isoformat().replace("+00:00", "Z")


def _from_iso(value: str | None) -> Optional[datetime]:
    if value is None:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _row_to_record(row: sqlite3.Row) -> DeploymentRecord:
    return DeploymentRecord(
        id=row["id"],
        request_id=row["request_id"],
        target_id=row["target_id"],
        previous_version=row["previous_version"],
        attempted_version=row["attempted_version"],
        outcome=row["outcome"],
        detail=row["detail"],
        started_at=_from_iso(row["started_at"]) or _utcnow(),
        completed_at=_from_iso(row["completed_at"]) or _utcnow(),
    )


class Database:
    """Lightweight wrapper around sqlite3 providing convenience helpers."""

    def __init__(self, path: Path):
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def initialize_schema(self) -> None:
        """Ensure database schema is created using Alembic migrations."""
        with self._lock:
            # Commit any pending work before running Alembic migrations.
            self._conn.commit()
        upgrade_database(self.path)

    def _query(self, query: str, params: Sequence | None = None) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(query, params or [])
            rows = cursor.fetchall()
        return rows

    def append_record(self, record: DeploymentRecord) -> int:
        """Append a deployment record and move the latest-success pointer.

        Both writes happen in one transaction so the pointer never refers to
        a record that was not stored.
        """
        params = (
            record.request_id,
            record.target_id,
            record.previous_version,
            record.attempted_version,
            record.outcome,
            record.detail,
            _to_iso(record.started_at),
            _to_iso(record.completed_at),
        )
        # One lock serialises appends for every target, which also keeps each
        # target's log in call order.
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    """
                    INSERT INTO deployment_records (
                        request_id, target_id, previous_version, attempted_version,
                        outcome, detail, started_at, completed_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
                record_id = int(cursor.lastrowid) if cursor.lastrowid is not None else -1
                if record.outcome == "success":
                    self._conn.execute(
                        """
                        INSERT INTO last_success (target_id, record_id)
                        VALUES (?, ?)
                        ON CONFLICT(target_id)
                        DO UPDATE SET record_id=excluded.record_id
                        """,
                        (record.target_id, record_id),
                    )
        return record_id

    def last_success(self, target_id: str) -> Optional[DeploymentRecord]:
        """Newest success for a target, via the compacted pointer table."""
        rows = self._query(
            """
            SELECT r.* FROM last_success p
            JOIN deployment_records r ON r.id = p.record_id
            WHERE p.target_id = ?
            """,
            (target_id,),
        )
        if not rows:
            return None
        return _row_to_record(rows[0])

    def last_success_excluding(self, target_id: str, version: str) -> Optional[DeploymentRecord]:
        """Newest success for a target whose version differs from ``version``."""
        rows = self._query(
            """
            SELECT * FROM deployment_records
            WHERE target_id = ? AND outcome = 'success' AND attempted_version != ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (target_id, version),
        )
        if not rows:
            return None
        return _row_to_record(rows[0])

    def list_records(
        self, target_id: str, *, limit: Optional[int] = None
    ) -> list[DeploymentRecord]:
        """Records for a target in append order."""
        query = "SELECT * FROM deployment_records WHERE target_id = ? ORDER BY id"
        params: list[str | int] = [target_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [_row_to_record(row) for row in self._query(query, params)]

    def list_records_for_request(self, request_id: str) -> list[DeploymentRecord]:
        rows = self._query(
            "SELECT * FROM deployment_records WHERE request_id = ? ORDER BY id",
            (request_id,),
        )
        return [_row_to_record(row) for row in rows]

    def count_records(self, target_id: Optional[str] = None) -> int:
        if target_id is None:
            rows = self._query("SELECT COUNT(*) FROM deployment_records")
        else:
            rows = self._query(
                "SELECT COUNT(*) FROM deployment_records WHERE target_id = ?", (target_id,)
            )
        return rows[0][0] if rows else 0
