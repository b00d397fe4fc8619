from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from adpilot.domain.account import Account, InitializationStatus
from adpilot.domain.sync import JobFilter, SyncErrorKind, SyncJob, SyncJobStatus, SyncLogEntry


class AccountsRepoProtocol(Protocol):
    def upsert_account(self, account_id: str, marketplace: str, *, now: datetime) -> None: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def list_accounts(self) -> list[Account]: ...

    def set_initialization_state(
        self,
        account_id: str,
        *,
        status: InitializationStatus,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        error: str | None = None,
    ) -> None: ...

    def promote_to_incremental(self, account_id: str) -> bool: ...


class SyncRepoProtocol(Protocol):
    def insert_job(self, job: SyncJob) -> None: ...

    def get_job(self, job_id: str) -> SyncJob | None: ...

    def list_jobs(self, job_filter: JobFilter) -> list[SyncJob]: ...

    def mark_running(self, job_id: str, *, started_at: datetime) -> bool: ...

    def cancel_pending(self, job_id: str, *, completed_at: datetime) -> bool: ...

    def finish_running(
        self,
        job_id: str,
        *,
        status: SyncJobStatus,
        records_synced: int,
        completed_at: datetime,
        error_message: str | None = None,
        error_kind: SyncErrorKind | None = None,
    ) -> bool: ...

    def set_retry_count(self, job_id: str, retry_count: int) -> None: ...

    def fail_stalled(self, *, started_before: datetime, now: datetime) -> list[str]: ...

    def append_log(self, entry: SyncLogEntry) -> None: ...

    def list_logs(self, job_id: str) -> list[SyncLogEntry]: ...

    def upsert_entities(
        self,
        *,
        account_id: str,
        entity_type: str,
        records: Iterable[Mapping[str, Any]],
        id_field: str,
        synced_at: datetime,
    ) -> int: ...

    def count_entities(self, account_id: str, entity_type: str | None = None) -> int: ...
