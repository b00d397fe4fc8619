from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from adpilot.domain.account import Account, InitializationStatus, SyncMode
from adpilot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        account_id=str(row["account_id"]),
        marketplace=str(row["marketplace"]),
        sync_mode=SyncMode(str(row["sync_mode"])),
        initialization_status=InitializationStatus(str(row["initialization_status"])),
        initialization_started_at=from_db_ts(row["initialization_started_at"]),
        initialization_completed_at=from_db_ts(row["initialization_completed_at"]),
        initialization_error=row["initialization_error"],
        created_at=from_db_ts(row["created_at"]),
    )


class SqliteAccountsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "accounts"}})
            raise PermissionError("UnitOfWork is read-only; account writes are blocked")

    def upsert_account(self, account_id: str, marketplace: str, *, now: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO accounts(account_id, marketplace, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(account_id) DO UPDATE SET marketplace=excluded.marketplace
            """,
            (account_id, marketplace, to_db_ts(now)),
        )

    def get_account(self, account_id: str) -> Account | None:
        row = self._conn.execute(
            "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
        ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        rows = self._conn.execute("SELECT * FROM accounts ORDER BY account_id").fetchall()
        return [_row_to_account(row) for row in rows]

    def set_initialization_state(
        self,
        account_id: str,
        *,
        status: InitializationStatus,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE accounts
            SET initialization_status = ?,
                initialization_started_at = COALESCE(?, initialization_started_at),
                initialization_completed_at = ?,
                initialization_error = ?
            WHERE account_id = ?
            """,
            (status.value, to_db_ts(started_at), to_db_ts(completed_at), error, account_id),
        )

    def promote_to_incremental(self, account_id: str) -> bool:
        """One-way backfill -> incremental switch."""
        self._ensure_writable()
        cursor = self._conn.execute(
            "UPDATE accounts SET sync_mode = ? WHERE account_id = ? AND sync_mode = ?",
            (SyncMode.INCREMENTAL.value, account_id, SyncMode.BACKFILL.value),
        )
        return cursor.rowcount == 1
