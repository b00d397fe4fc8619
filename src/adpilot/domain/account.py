from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class SyncMode(StrEnum):
    BACKFILL = "backfill"
    INCREMENTAL = "incremental"


class InitializationStatus(StrEnum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    COMPLETED = "completed"
    FAILED = "failed"


class AccountNotFound(LookupError):
    pass


@dataclass(frozen=True)
class Account:
    account_id: str
    marketplace: str
    sync_mode: SyncMode = SyncMode.BACKFILL
    initialization_status: InitializationStatus = InitializationStatus.PENDING
    initialization_started_at: datetime | None = None
    initialization_completed_at: datetime | None = None
    initialization_error: str | None = None
    created_at: datetime | None = None
