from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, datetime

from adpilot.domain.automation import (
    REASON_DAILY_TOTAL_CAP,
    REASON_DAILY_TYPE_CAP,
    ActionType,
    ApprovalState,
    AutomationConfig,
    AutomationMode,
    PendingApproval,
    SafetyBoundary,
)
from adpilot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def _row_to_config(row: sqlite3.Row) -> AutomationConfig:
    return AutomationConfig(
        account_id=str(row["account_id"]),
        enabled=bool(row["enabled"]),
        mode=AutomationMode(str(row["mode"])),
        enabled_types=frozenset(ActionType(t) for t in json.loads(row["enabled_types_json"])),
        safety_boundary=SafetyBoundary.model_validate_json(row["safety_boundary_json"]),
        blocked_reason=row["blocked_reason"],
        updated_at=from_db_ts(row["updated_at"]),
    )


def _row_to_approval(row: sqlite3.Row) -> PendingApproval:
    return PendingApproval(
        approval_id=str(row["approval_id"]),
        account_id=str(row["account_id"]),
        batch_id=str(row["batch_id"]),
        action_type=ActionType(str(row["action_type"])),
        entity=str(row["entity"]),
        confidence=float(row["confidence"]),
        action_json=str(row["action_json"]),
        state=ApprovalState(str(row["state"])),
        created_at=from_db_ts(row["created_at"]),
        decided_at=from_db_ts(row["decided_at"]),
    )


class SqliteAutomationRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "automation"}})
            raise PermissionError("UnitOfWork is read-only; automation writes are blocked")

    def get_config(self, account_id: str) -> AutomationConfig | None:
        row = self._conn.execute(
            "SELECT * FROM automation_configs WHERE account_id = ?", (account_id,)
        ).fetchone()
        return _row_to_config(row) if row is not None else None

    def save_config(self, config: AutomationConfig) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO automation_configs(
                account_id, enabled, mode, enabled_types_json, safety_boundary_json,
                blocked_reason, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id) DO UPDATE SET
                enabled=excluded.enabled,
                mode=excluded.mode,
                enabled_types_json=excluded.enabled_types_json,
                safety_boundary_json=excluded.safety_boundary_json,
                blocked_reason=excluded.blocked_reason,
                updated_at=excluded.updated_at
            """,
            (
                config.account_id,
                1 if config.enabled else 0,
                config.mode.value,
                json.dumps(sorted(t.value for t in config.enabled_types)),
                config.safety_boundary.model_dump_json(),
                config.blocked_reason,
                to_db_ts(config.updated_at),
            ),
        )

    def get_daily_counts(self, account_id: str, day: date) -> dict[ActionType, int]:
        rows = self._conn.execute(
            """
            SELECT action_type, count FROM daily_execution_counters
            WHERE account_id = ? AND day = ?
            """,
            (account_id, day.isoformat()),
        ).fetchall()
        return {ActionType(str(row["action_type"])): int(row["count"]) for row in rows}

    def try_reserve_daily_slot(
        self,
        *,
        account_id: str,
        day: date,
        action_type: ActionType,
        type_cap: int | None,
        total_cap: int,
    ) -> str | None:
        """Compare-and-increment; returns the cap reason when no slot is left."""
        self._ensure_writable()
        counts = self.get_daily_counts(account_id, day)
        if type_cap is not None and counts.get(action_type, 0) >= type_cap:
            return REASON_DAILY_TYPE_CAP
        if sum(counts.values()) >= total_cap:
            return REASON_DAILY_TOTAL_CAP
        self._conn.execute(
            """
            INSERT INTO daily_execution_counters(account_id, day, action_type, count)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(account_id, day, action_type) DO UPDATE SET count = count + 1
            """,
            (account_id, day.isoformat(), action_type.value),
        )
        return None

    def release_daily_slot(self, *, account_id: str, day: date, action_type: ActionType) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE daily_execution_counters
            SET count = MAX(count - 1, 0)
            WHERE account_id = ? AND day = ? AND action_type = ?
            """,
            (account_id, day.isoformat(), action_type.value),
        )

    def insert_pending(self, approval: PendingApproval) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO pending_approvals(
                approval_id, account_id, batch_id, action_type, entity, confidence,
                action_json, state, created_at, decided_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                approval.approval_id,
                approval.account_id,
                approval.batch_id,
                approval.action_type.value,
                approval.entity,
                approval.confidence,
                approval.action_json,
                approval.state.value,
                to_db_ts(approval.created_at),
                to_db_ts(approval.decided_at),
            ),
        )

    def get_pending(self, approval_id: str) -> PendingApproval | None:
        row = self._conn.execute(
            "SELECT * FROM pending_approvals WHERE approval_id = ?", (approval_id,)
        ).fetchone()
        return _row_to_approval(row) if row is not None else None

    def list_pending(
        self, account_id: str, *, state: ApprovalState | None = ApprovalState.PENDING
    ) -> list[PendingApproval]:
        if state is None:
            rows = self._conn.execute(
                "SELECT * FROM pending_approvals WHERE account_id = ? ORDER BY created_at",
                (account_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM pending_approvals
                WHERE account_id = ? AND state = ?
                ORDER BY created_at
                """,
                (account_id, state.value),
            ).fetchall()
        return [_row_to_approval(row) for row in rows]

    def decide_pending(self, approval_id: str, *, state: ApprovalState, decided_at: datetime) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE pending_approvals SET state = ?, decided_at = ?
            WHERE approval_id = ? AND state = ?
            """,
            (state.value, to_db_ts(decided_at), approval_id, ApprovalState.PENDING.value),
        )
        return cursor.rowcount == 1
