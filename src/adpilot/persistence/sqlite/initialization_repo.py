from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Sequence
from datetime import datetime

from adpilot.domain.initialization import InitializationTask, InitPhase, TaskPlan, TaskStatus
from adpilot.persistence.sqlite.sqlite_connection import from_db_date, to_db_ts

logger = logging.getLogger(__name__)


def _row_to_task(row: sqlite3.Row) -> InitializationTask:
    return InitializationTask(
        task_id=str(row["task_id"]),
        account_id=str(row["account_id"]),
        phase=InitPhase(str(row["phase"])),
        sub_channel=str(row["sub_channel"]),
        report_type=str(row["report_type"]),
        start_date=from_db_date(row["start_date"]),
        end_date=from_db_date(row["end_date"]),
        status=TaskStatus(str(row["status"])),
        attempts=int(row["attempts"]),
        error_message=row["error_message"],
    )


class SqliteInitializationRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "initialization"}})
            raise PermissionError("UnitOfWork is read-only; initialization writes are blocked")

    def replace_tasks(self, account_id: str, plans: Sequence[TaskPlan], *, now: datetime) -> int:
        self._ensure_writable()
        self._conn.execute("DELETE FROM initialization_tasks WHERE account_id = ?", (account_id,))
        for seq, plan in enumerate(plans):
            self._conn.execute(
                """
                INSERT INTO initialization_tasks(
                    task_id, account_id, seq, phase, sub_channel, report_type,
                    start_date, end_date, status, attempts, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    uuid.uuid4().hex,
                    account_id,
                    seq,
                    plan.phase.value,
                    plan.sub_channel,
                    plan.report_type,
                    plan.start_date.isoformat() if plan.start_date else None,
                    plan.end_date.isoformat() if plan.end_date else None,
                    TaskStatus.PENDING.value,
                    to_db_ts(now),
                ),
            )
        return len(plans)

    def list_tasks(
        self, account_id: str, *, status: TaskStatus | None = None
    ) -> list[InitializationTask]:
        if status is None:
            rows = self._conn.execute(
                "SELECT * FROM initialization_tasks WHERE account_id = ? ORDER BY seq",
                (account_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM initialization_tasks
                WHERE account_id = ? AND status = ?
                ORDER BY seq
                """,
                (account_id, status.value),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    def next_pending(self, account_id: str) -> InitializationTask | None:
        # seq follows phase order: hot, cold, structure
        row = self._conn.execute(
            """
            SELECT * FROM initialization_tasks
            WHERE account_id = ? AND status = ?
            ORDER BY seq
            LIMIT 1
            """,
            (account_id, TaskStatus.PENDING.value),
        ).fetchone()
        return _row_to_task(row) if row is not None else None

    def mark_completed(self, task_id: str, *, now: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE initialization_tasks
            SET status = ?, attempts = attempts + 1, error_message = NULL, updated_at = ?
            WHERE task_id = ? AND status = ?
            """,
            (TaskStatus.COMPLETED.value, to_db_ts(now), task_id, TaskStatus.PENDING.value),
        )

    def mark_failed(self, task_id: str, *, error: str, now: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE initialization_tasks
            SET status = ?, attempts = attempts + 1, error_message = ?, updated_at = ?
            WHERE task_id = ? AND status = ?
            """,
            (TaskStatus.FAILED.value, error, to_db_ts(now), task_id, TaskStatus.PENDING.value),
        )

    def requeue_failed(
        self, account_id: str, *, now: datetime, max_attempts: int | None = None
    ) -> int:
        """Move failed tasks back to pending, only those under ``max_attempts`` when given."""
        self._ensure_writable()
        sql = """
            UPDATE initialization_tasks
            SET status = ?, updated_at = ?
            WHERE account_id = ? AND status = ?
        """
        params: list[object] = [
            TaskStatus.PENDING.value,
            to_db_ts(now),
            account_id,
            TaskStatus.FAILED.value,
        ]
        if max_attempts is not None:
            sql += " AND attempts < ?"
            params.append(max_attempts)
        return self._conn.execute(sql, params).rowcount
