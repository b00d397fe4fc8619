from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from adpilot.domain.automation import ActionType, ExecutionBatch, ExecutionDetail, ExecutionStatus
from adpilot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def _row_to_detail(row: sqlite3.Row) -> ExecutionDetail:
    return ExecutionDetail(
        detail_id=str(row["detail_id"]),
        batch_id=str(row["batch_id"]),
        account_id=str(row["account_id"]),
        action_type=ActionType(str(row["action_type"])),
        entity=str(row["entity"]),
        before=row["before_value"],
        after=row["after_value"],
        status=ExecutionStatus(str(row["status"])),
        reason=str(row["reason"]),
        confidence=float(row["confidence"]),
        notify=bool(row["notify"]),
        created_at=from_db_ts(row["created_at"]),
        action_json=str(row["action_json"]),
    )


def _row_to_batch(row: sqlite3.Row) -> ExecutionBatch:
    return ExecutionBatch(
        batch_id=str(row["batch_id"]),
        account_id=str(row["account_id"]),
        started_at=from_db_ts(row["started_at"]),
        completed_at=from_db_ts(row["completed_at"]),
        total_items=int(row["total_items"]),
        success_items=int(row["success_items"]),
        failed_items=int(row["failed_items"]),
        skipped_items=int(row["skipped_items"]),
        blocked_items=int(row["blocked_items"]),
        pending_items=int(row["pending_items"]),
    )


class SqliteLedgerRepo:
    """Insert-only access to execution batches and details."""

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "ledger"}})
            raise PermissionError("UnitOfWork is read-only; ledger writes are blocked")

    def insert_detail(self, detail: ExecutionDetail) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO execution_details(
                detail_id, batch_id, account_id, action_type, entity, before_value,
                after_value, status, reason, confidence, notify, action_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                detail.detail_id,
                detail.batch_id,
                detail.account_id,
                detail.action_type.value,
                detail.entity,
                detail.before,
                detail.after,
                detail.status.value,
                detail.reason,
                detail.confidence,
                1 if detail.notify else 0,
                detail.action_json,
                to_db_ts(detail.created_at),
            ),
        )

    def insert_batch(self, batch: ExecutionBatch) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO execution_batches(
                batch_id, account_id, started_at, completed_at, total_items, success_items,
                failed_items, skipped_items, blocked_items, pending_items
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                batch.batch_id,
                batch.account_id,
                to_db_ts(batch.started_at),
                to_db_ts(batch.completed_at),
                batch.total_items,
                batch.success_items,
                batch.failed_items,
                batch.skipped_items,
                batch.blocked_items,
                batch.pending_items,
            ),
        )

    def get_batch(self, batch_id: str) -> ExecutionBatch | None:
        row = self._conn.execute(
            "SELECT * FROM execution_batches WHERE batch_id = ?", (batch_id,)
        ).fetchone()
        return _row_to_batch(row) if row is not None else None

    def list_batches(
        self,
        account_id: str,
        *,
        limit: int = 20,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ExecutionBatch]:
        clauses = ["account_id = ?"]
        params: list[Any] = [account_id]
        if start is not None:
            clauses.append("started_at >= ?")
            params.append(to_db_ts(start))
        if end is not None:
            clauses.append("started_at < ?")
            params.append(to_db_ts(end))
        params.append(max(1, limit))
        rows = self._conn.execute(
            f"""
            SELECT * FROM execution_batches
            WHERE {' AND '.join(clauses)}
            ORDER BY started_at DESC, batch_id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [_row_to_batch(row) for row in rows]

    def list_details(self, batch_id: str) -> list[ExecutionDetail]:
        rows = self._conn.execute(
            "SELECT * FROM execution_details WHERE batch_id = ? ORDER BY created_at, rowid",
            (batch_id,),
        ).fetchall()
        return [_row_to_detail(row) for row in rows]

    def get_detail(self, detail_id: str) -> ExecutionDetail | None:
        row = self._conn.execute(
            "SELECT * FROM execution_details WHERE detail_id = ?", (detail_id,)
        ).fetchone()
        return _row_to_detail(row) if row is not None else None
