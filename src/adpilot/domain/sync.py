from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum


class SyncType(StrEnum):
    CAMPAIGNS = "campaigns"
    KEYWORDS = "keywords"
    PERFORMANCE = "performance"
    ALL = "all"

    def steps(self) -> tuple[SyncType, ...]:
        if self is SyncType.ALL:
            return (SyncType.CAMPAIGNS, SyncType.KEYWORDS, SyncType.PERFORMANCE)
        return (self,)


class SyncJobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {SyncJobStatus.COMPLETED, SyncJobStatus.FAILED, SyncJobStatus.CANCELLED}
)


class SyncErrorKind(StrEnum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    BACKPRESSURE = "backpressure"
    STALLED = "stalled"


_ALLOWED_TRANSITIONS: dict[SyncJobStatus, frozenset[SyncJobStatus]] = {
    SyncJobStatus.PENDING: frozenset({SyncJobStatus.RUNNING, SyncJobStatus.CANCELLED}),
    SyncJobStatus.RUNNING: frozenset({SyncJobStatus.COMPLETED, SyncJobStatus.FAILED}),
    SyncJobStatus.COMPLETED: frozenset(),
    SyncJobStatus.FAILED: frozenset(),
    SyncJobStatus.CANCELLED: frozenset(),
}


class InvalidJobTransition(RuntimeError):
    def __init__(self, job_id: str, current: SyncJobStatus, target: SyncJobStatus) -> None:
        super().__init__(f"job {job_id}: {current} -> {target} is not allowed")
        self.job_id = job_id
        self.current = current
        self.target = target


class SyncJobNotFound(LookupError):
    pass


def ensure_transition(job_id: str, current: SyncJobStatus, target: SyncJobStatus) -> None:
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidJobTransition(job_id, current, target)


@dataclass(frozen=True)
class SyncJob:
    job_id: str
    account_id: str
    sync_type: SyncType
    status: SyncJobStatus
    created_at: datetime
    records_synced: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    error_kind: SyncErrorKind | None = None
    retry_count: int = 0
    schedule_id: str | None = None

    def duration_seconds(self, now: datetime | None = None) -> float | None:
        if self.started_at is None:
            return None
        end = self.completed_at or now or datetime.now(UTC)
        return max(0.0, (end - self.started_at).total_seconds())


@dataclass(frozen=True)
class JobFilter:
    account_id: str | None = None
    status: SyncJobStatus | None = None
    sync_type: SyncType | None = None
    limit: int = 50


@dataclass(frozen=True)
class SyncLogEntry:
    job_id: str
    step: str
    status: str
    records: int
    message: str | None
    created_at: datetime
