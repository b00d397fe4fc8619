from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from adpilot.persistence.interfaces import (
    AccountsRepoProtocol,
    AutomationRepoProtocol,
    InitializationRepoProtocol,
    LedgerRepoProtocol,
    ScheduleRepoProtocol,
    SyncRepoProtocol,
)
from adpilot.persistence.sqlite import (
    SqliteAccountsRepo,
    SqliteAutomationRepo,
    SqliteInitializationRepo,
    SqliteLedgerRepo,
    SqliteScheduleRepo,
    SqliteSyncRepo,
)
from adpilot.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_schema

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.accounts: AccountsRepoProtocol
        self.sync: SyncRepoProtocol
        self.schedules: ScheduleRepoProtocol
        self.initialization: InitializationRepoProtocol
        self.automation: AutomationRepoProtocol
        self.ledger: LedgerRepoProtocol

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        ensure_schema(conn)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.accounts = SqliteAccountsRepo(conn, read_only=self.read_only)
        self.sync = SqliteSyncRepo(conn, read_only=self.read_only)
        self.schedules = SqliteScheduleRepo(conn, read_only=self.read_only)
        self.initialization = SqliteInitializationRepo(conn, read_only=self.read_only)
        self.automation = SqliteAutomationRepo(conn, read_only=self.read_only)
        self.ledger = SqliteLedgerRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                logger.debug(
                    "uow_rollback",
                    extra={"extra": {"error_type": exc_type.__name__, "db_path": self._db_path}},
                )
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)

    def reader(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=True)
