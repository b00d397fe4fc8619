from adpilot.persistence.interfaces.automation_repo import (
    AutomationRepoProtocol,
    LedgerRepoProtocol,
)
from adpilot.persistence.interfaces.initialization_repo import InitializationRepoProtocol
from adpilot.persistence.interfaces.schedule_repo import ScheduleRepoProtocol
from adpilot.persistence.interfaces.sync_repo import AccountsRepoProtocol, SyncRepoProtocol

__all__ = [
    "AccountsRepoProtocol",
    "AutomationRepoProtocol",
    "InitializationRepoProtocol",
    "LedgerRepoProtocol",
    "ScheduleRepoProtocol",
    "SyncRepoProtocol",
]
