from adpilot.persistence.sqlite.accounts_repo import SqliteAccountsRepo
from adpilot.persistence.sqlite.automation_repo import SqliteAutomationRepo
from adpilot.persistence.sqlite.initialization_repo import SqliteInitializationRepo
from adpilot.persistence.sqlite.ledger_repo import SqliteLedgerRepo
from adpilot.persistence.sqlite.schedule_repo import SqliteScheduleRepo
from adpilot.persistence.sqlite.sync_repo import SqliteSyncRepo

__all__ = [
    "SqliteAccountsRepo",
    "SqliteAutomationRepo",
    "SqliteInitializationRepo",
    "SqliteLedgerRepo",
    "SqliteScheduleRepo",
    "SqliteSyncRepo",
]
