from __future__ import annotations

import sqlite3
from datetime import UTC, date, datetime


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.isolation_level = None
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def to_db_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def from_db_ts(value: object) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def from_db_date(value: object) -> date | None:
    if value is None:
        return None
    return date.fromisoformat(str(value))


def ensure_sync_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            account_id TEXT PRIMARY KEY,
            marketplace TEXT NOT NULL,
            sync_mode TEXT NOT NULL DEFAULT 'backfill',
            initialization_status TEXT NOT NULL DEFAULT 'pending',
            initialization_started_at TEXT,
            initialization_completed_at TEXT,
            initialization_error TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_jobs (
            job_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            sync_type TEXT NOT NULL,
            status TEXT NOT NULL,
            records_synced INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            error_message TEXT,
            error_kind TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            schedule_id TEXT
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_jobs_account_status ON sync_jobs(account_id, status)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            step TEXT NOT NULL,
            status TEXT NOT NULL,
            records INTEGER NOT NULL DEFAULT 0,
            message TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS synced_entities (
            account_id TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            synced_at TEXT NOT NULL,
            PRIMARY KEY (account_id, entity_type, entity_id)
        )
        """
    )


def ensure_schedule_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_schedules (
            schedule_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            sync_type TEXT NOT NULL,
            frequency TEXT NOT NULL,
            time_of_day TEXT NOT NULL,
            day_of_week INTEGER,
            day_of_month INTEGER,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_run_at TEXT,
            next_run_at TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_schedules_due ON sync_schedules(enabled, next_run_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schedule_executions (
            execution_id TEXT PRIMARY KEY,
            schedule_id TEXT NOT NULL,
            job_id TEXT,
            status TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            records_synced INTEGER NOT NULL DEFAULT 0,
            started_at TEXT NOT NULL,
            completed_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_schedule_executions_schedule
        ON schedule_executions(schedule_id, started_at)
        """
    )


def ensure_initialization_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS initialization_tasks (
            task_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            phase TEXT NOT NULL,
            sub_channel TEXT NOT NULL,
            report_type TEXT NOT NULL,
            start_date TEXT,
            end_date TEXT,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_initialization_tasks_account
        ON initialization_tasks(account_id, status, seq)
        """
    )


def ensure_automation_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS automation_configs (
            account_id TEXT PRIMARY KEY,
            enabled INTEGER NOT NULL,
            mode TEXT NOT NULL,
            enabled_types_json TEXT NOT NULL,
            safety_boundary_json TEXT NOT NULL,
            blocked_reason TEXT,
            updated_at TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS daily_execution_counters (
            account_id TEXT NOT NULL,
            day TEXT NOT NULL,
            action_type TEXT NOT NULL,
            count INTEGER NOT NULL DEFAULT 0 CHECK(count >= 0),
            PRIMARY KEY (account_id, day, action_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_approvals (
            approval_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            batch_id TEXT NOT NULL,
            action_type TEXT NOT NULL,
            entity TEXT NOT NULL,
            confidence REAL NOT NULL,
            action_json TEXT NOT NULL,
            state TEXT NOT NULL,
            created_at TEXT NOT NULL,
            decided_at TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_pending_approvals_account_state
        ON pending_approvals(account_id, state)
        """
    )


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS execution_batches (
            batch_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT NOT NULL,
            total_items INTEGER NOT NULL,
            success_items INTEGER NOT NULL,
            failed_items INTEGER NOT NULL,
            skipped_items INTEGER NOT NULL,
            blocked_items INTEGER NOT NULL,
            pending_items INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS execution_details (
            detail_id TEXT PRIMARY KEY,
            batch_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            action_type TEXT NOT NULL,
            entity TEXT NOT NULL,
            before_value TEXT,
            after_value TEXT,
            status TEXT NOT NULL,
            reason TEXT NOT NULL,
            confidence REAL NOT NULL,
            notify INTEGER NOT NULL DEFAULT 0,
            action_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_execution_details_batch
        ON execution_details(batch_id, created_at)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_execution_batches_account
        ON execution_batches(account_id, started_at)
        """
    )
    for table in ("execution_batches", "execution_details"):
        for operation in ("UPDATE", "DELETE"):
            conn.execute(
                f"""
                CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{operation.lower()}
                BEFORE {operation} ON {table}
                BEGIN
                    SELECT RAISE(ABORT, 'execution ledger is append-only');
                END
                """
            )


def ensure_schema(conn: sqlite3.Connection) -> None:
    ensure_sync_schema(conn)
    ensure_schedule_schema(conn)
    ensure_initialization_schema(conn)
    ensure_automation_schema(conn)
    ensure_ledger_schema(conn)
