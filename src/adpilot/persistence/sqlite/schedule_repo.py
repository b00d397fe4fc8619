from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, time

from adpilot.domain.schedule import (
    ExecutionOutcome,
    ScheduleExecution,
    ScheduleExecutionStats,
    ScheduleFrequency,
    SyncSchedule,
)
from adpilot.domain.sync import SyncType
from adpilot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def _row_to_schedule(row: sqlite3.Row) -> SyncSchedule:
    return SyncSchedule(
        schedule_id=str(row["schedule_id"]),
        account_id=str(row["account_id"]),
        sync_type=SyncType(str(row["sync_type"])),
        frequency=ScheduleFrequency(str(row["frequency"])),
        time_of_day=time.fromisoformat(str(row["time_of_day"])),
        day_of_week=row["day_of_week"],
        day_of_month=row["day_of_month"],
        enabled=bool(row["enabled"]),
        last_run_at=from_db_ts(row["last_run_at"]),
        next_run_at=from_db_ts(row["next_run_at"]),
        created_at=from_db_ts(row["created_at"]),
    )


def _row_to_execution(row: sqlite3.Row) -> ScheduleExecution:
    return ScheduleExecution(
        execution_id=str(row["execution_id"]),
        schedule_id=str(row["schedule_id"]),
        job_id=row["job_id"],
        status=ExecutionOutcome(str(row["status"])),
        retry_count=int(row["retry_count"]),
        error_message=row["error_message"],
        started_at=from_db_ts(row["started_at"]),
        completed_at=from_db_ts(row["completed_at"]),
        records_synced=int(row["records_synced"]),
    )


class SqliteScheduleRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "schedules"}})
            raise PermissionError("UnitOfWork is read-only; schedule writes are blocked")

    def save_schedule(self, schedule: SyncSchedule) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO sync_schedules(
                schedule_id, account_id, sync_type, frequency, time_of_day, day_of_week,
                day_of_month, enabled, last_run_at, next_run_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(schedule_id) DO UPDATE SET
                sync_type=excluded.sync_type,
                frequency=excluded.frequency,
                time_of_day=excluded.time_of_day,
                day_of_week=excluded.day_of_week,
                day_of_month=excluded.day_of_month,
                enabled=excluded.enabled,
                last_run_at=excluded.last_run_at,
                next_run_at=excluded.next_run_at
            """,
            (
                schedule.schedule_id,
                schedule.account_id,
                schedule.sync_type.value,
                schedule.frequency.value,
                schedule.time_of_day.strftime("%H:%M"),
                schedule.day_of_week,
                schedule.day_of_month,
                1 if schedule.enabled else 0,
                to_db_ts(schedule.last_run_at),
                to_db_ts(schedule.next_run_at),
                to_db_ts(schedule.created_at),
            ),
        )

    def get_schedule(self, schedule_id: str) -> SyncSchedule | None:
        row = self._conn.execute(
            "SELECT * FROM sync_schedules WHERE schedule_id = ?", (schedule_id,)
        ).fetchone()
        return _row_to_schedule(row) if row is not None else None

    def list_schedules(self, account_id: str | None = None) -> list[SyncSchedule]:
        if account_id is None:
            rows = self._conn.execute(
                "SELECT * FROM sync_schedules ORDER BY created_at, schedule_id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM sync_schedules WHERE account_id = ? ORDER BY created_at, schedule_id",
                (account_id,),
            ).fetchall()
        return [_row_to_schedule(row) for row in rows]

    def list_due(self, now: datetime) -> list[SyncSchedule]:
        rows = self._conn.execute(
            """
            SELECT * FROM sync_schedules
            WHERE enabled = 1 AND next_run_at IS NOT NULL AND next_run_at <= ?
            ORDER BY next_run_at, schedule_id
            """,
            (to_db_ts(now),),
        ).fetchall()
        return [_row_to_schedule(row) for row in rows]

    def delete_schedule(self, schedule_id: str) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            "DELETE FROM sync_schedules WHERE schedule_id = ?", (schedule_id,)
        )
        return cursor.rowcount == 1

    def mark_run(self, schedule_id: str, *, last_run_at: datetime, next_run_at: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            "UPDATE sync_schedules SET last_run_at = ?, next_run_at = ? WHERE schedule_id = ?",
            (to_db_ts(last_run_at), to_db_ts(next_run_at), schedule_id),
        )

    def insert_execution(self, execution: ScheduleExecution) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO schedule_executions(
                execution_id, schedule_id, job_id, status, retry_count, error_message,
                records_synced, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.execution_id,
                execution.schedule_id,
                execution.job_id,
                execution.status.value,
                execution.retry_count,
                execution.error_message,
                execution.records_synced,
                to_db_ts(execution.started_at),
                to_db_ts(execution.completed_at),
            ),
        )

    def list_executions(self, schedule_id: str, *, limit: int = 20) -> list[ScheduleExecution]:
        rows = self._conn.execute(
            """
            SELECT * FROM schedule_executions
            WHERE schedule_id = ?
            ORDER BY started_at DESC, execution_id DESC
            LIMIT ?
            """,
            (schedule_id, max(1, limit)),
        ).fetchall()
        return [_row_to_execution(row) for row in rows]

    def execution_stats(self, schedule_id: str) -> ScheduleExecutionStats:
        executions = [
            _row_to_execution(row)
            for row in self._conn.execute(
                "SELECT * FROM schedule_executions WHERE schedule_id = ?", (schedule_id,)
            ).fetchall()
        ]
        successes = [e for e in executions if e.status is ExecutionOutcome.SUCCESS]
        failures = [e for e in executions if e.status is ExecutionOutcome.FAILED]
        avg = (
            sum(e.duration_seconds for e in executions) / len(executions) if executions else 0.0
        )
        return ScheduleExecutionStats(
            total=len(executions),
            success=len(successes),
            failure=len(failures),
            avg_duration_seconds=avg,
            last_success_at=max((e.completed_at for e in successes), default=None),
            last_failure_at=max((e.completed_at for e in failures), default=None),
        )
