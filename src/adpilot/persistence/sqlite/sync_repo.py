from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from adpilot.domain.sync import (
    JobFilter,
    SyncErrorKind,
    SyncJob,
    SyncJobStatus,
    SyncLogEntry,
    SyncType,
)
from adpilot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def _row_to_job(row: sqlite3.Row) -> SyncJob:
    return SyncJob(
        job_id=str(row["job_id"]),
        account_id=str(row["account_id"]),
        sync_type=SyncType(str(row["sync_type"])),
        status=SyncJobStatus(str(row["status"])),
        created_at=from_db_ts(row["created_at"]),
        records_synced=int(row["records_synced"]),
        started_at=from_db_ts(row["started_at"]),
        completed_at=from_db_ts(row["completed_at"]),
        error_message=row["error_message"],
        error_kind=SyncErrorKind(row["error_kind"]) if row["error_kind"] else None,
        retry_count=int(row["retry_count"]),
        schedule_id=row["schedule_id"],
    )


class SqliteSyncRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "sync"}})
            raise PermissionError("UnitOfWork is read-only; sync writes are blocked")

    def insert_job(self, job: SyncJob) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO sync_jobs(
                job_id, account_id, sync_type, status, records_synced, created_at,
                started_at, completed_at, error_message, error_kind, retry_count, schedule_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.job_id,
                job.account_id,
                job.sync_type.value,
                job.status.value,
                job.records_synced,
                to_db_ts(job.created_at),
                to_db_ts(job.started_at),
                to_db_ts(job.completed_at),
                job.error_message,
                job.error_kind.value if job.error_kind else None,
                job.retry_count,
                job.schedule_id,
            ),
        )

    def get_job(self, job_id: str) -> SyncJob | None:
        row = self._conn.execute("SELECT * FROM sync_jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def list_jobs(self, job_filter: JobFilter) -> list[SyncJob]:
        clauses: list[str] = []
        params: list[Any] = []
        if job_filter.account_id is not None:
            clauses.append("account_id = ?")
            params.append(job_filter.account_id)
        if job_filter.status is not None:
            clauses.append("status = ?")
            params.append(job_filter.status.value)
        if job_filter.sync_type is not None:
            clauses.append("sync_type = ?")
            params.append(job_filter.sync_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, job_filter.limit))
        rows = self._conn.execute(
            f"SELECT * FROM sync_jobs {where} ORDER BY created_at DESC, job_id DESC LIMIT ?",
            params,
        ).fetchall()
        return [_row_to_job(row) for row in rows]

    def mark_running(self, job_id: str, *, started_at: datetime) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            "UPDATE sync_jobs SET status = ?, started_at = ? WHERE job_id = ? AND status = ?",
            (
                SyncJobStatus.RUNNING.value,
                to_db_ts(started_at),
                job_id,
                SyncJobStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    def cancel_pending(self, job_id: str, *, completed_at: datetime) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            "UPDATE sync_jobs SET status = ?, completed_at = ? WHERE job_id = ? AND status = ?",
            (
                SyncJobStatus.CANCELLED.value,
                to_db_ts(completed_at),
                job_id,
                SyncJobStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    def finish_running(
        self,
        job_id: str,
        *,
        status: SyncJobStatus,
        records_synced: int,
        completed_at: datetime,
        error_message: str | None = None,
        error_kind: SyncErrorKind | None = None,
    ) -> bool:
        """Terminal write for a running job; False when it already left ``running``."""
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE sync_jobs
            SET status = ?, records_synced = ?, completed_at = ?, error_message = ?, error_kind = ?
            WHERE job_id = ? AND status = ?
            """,
            (
                status.value,
                records_synced,
                to_db_ts(completed_at),
                error_message,
                error_kind.value if error_kind else None,
                job_id,
                SyncJobStatus.RUNNING.value,
            ),
        )
        return cursor.rowcount == 1

    def set_retry_count(self, job_id: str, retry_count: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            "UPDATE sync_jobs SET retry_count = ? WHERE job_id = ?", (retry_count, job_id)
        )

    def fail_stalled(self, *, started_before: datetime, now: datetime) -> list[str]:
        self._ensure_writable()
        rows = self._conn.execute(
            "SELECT job_id FROM sync_jobs WHERE status = ? AND started_at < ?",
            (SyncJobStatus.RUNNING.value, to_db_ts(started_before)),
        ).fetchall()
        job_ids = [str(row["job_id"]) for row in rows]
        for job_id in job_ids:
            self._conn.execute(
                """
                UPDATE sync_jobs
                SET status = ?, completed_at = ?, error_message = ?, error_kind = ?
                WHERE job_id = ? AND status = ?
                """,
                (
                    SyncJobStatus.FAILED.value,
                    to_db_ts(now),
                    "job exceeded maximum run duration",
                    SyncErrorKind.STALLED.value,
                    job_id,
                    SyncJobStatus.RUNNING.value,
                ),
            )
        return job_ids

    def append_log(self, entry: SyncLogEntry) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO sync_logs(job_id, step, status, records, message, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.job_id,
                entry.step,
                entry.status,
                entry.records,
                entry.message,
                to_db_ts(entry.created_at),
            ),
        )

    def list_logs(self, job_id: str) -> list[SyncLogEntry]:
        rows = self._conn.execute(
            "SELECT * FROM sync_logs WHERE job_id = ? ORDER BY id", (job_id,)
        ).fetchall()
        return [
            SyncLogEntry(
                job_id=str(row["job_id"]),
                step=str(row["step"]),
                status=str(row["status"]),
                records=int(row["records"]),
                message=row["message"],
                created_at=from_db_ts(row["created_at"]),
            )
            for row in rows
        ]

    def upsert_entities(
        self,
        *,
        account_id: str,
        entity_type: str,
        records: Iterable[Mapping[str, Any]],
        id_field: str,
        synced_at: datetime,
    ) -> int:
        self._ensure_writable()
        count = 0
        for record in records:
            self._conn.execute(
                """
                INSERT INTO synced_entities(account_id, entity_type, entity_id, payload_json, synced_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, entity_type, entity_id) DO UPDATE SET
                    payload_json=excluded.payload_json,
                    synced_at=excluded.synced_at
                """,
                (
                    account_id,
                    entity_type,
                    str(record[id_field]),
                    json.dumps(dict(record), sort_keys=True, default=str),
                    to_db_ts(synced_at),
                ),
            )
            count += 1
        return count

    def count_entities(self, account_id: str, entity_type: str | None = None) -> int:
        if entity_type is None:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM synced_entities WHERE account_id = ?", (account_id,)
            ).fetchone()
        else:
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS n FROM synced_entities
                WHERE account_id = ? AND entity_type = ?
                """,
                (account_id, entity_type),
            ).fetchone()
        return int(row["n"])
