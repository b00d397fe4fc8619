from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from enum import StrEnum
from typing import Protocol
from zoneinfo import ZoneInfo

from adpilot.domain.sync import SyncType


class ScheduleFrequency(StrEnum):
    HOURLY = "hourly"
    EVERY_2_HOURS = "every_2_hours"
    EVERY_4_HOURS = "every_4_hours"
    EVERY_6_HOURS = "every_6_hours"
    EVERY_12_HOURS = "every_12_hours"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def hour_interval(self) -> int | None:
        return _HOUR_INTERVALS.get(self)


_HOUR_INTERVALS: dict[ScheduleFrequency, int] = {
    ScheduleFrequency.HOURLY: 1,
    ScheduleFrequency.EVERY_2_HOURS: 2,
    ScheduleFrequency.EVERY_4_HOURS: 4,
    ScheduleFrequency.EVERY_6_HOURS: 6,
    ScheduleFrequency.EVERY_12_HOURS: 12,
}


class ExecutionOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class ScheduleNotFound(LookupError):
    pass


class ScheduleValidationError(ValueError):
    pass


class ScheduleTiming(Protocol):
    frequency: ScheduleFrequency
    time_of_day: time
    day_of_week: int | None
    day_of_month: int | None


@dataclass(frozen=True)
class SyncSchedule:
    schedule_id: str
    account_id: str
    sync_type: SyncType
    frequency: ScheduleFrequency
    time_of_day: time = time(0, 0)
    day_of_week: int | None = None
    day_of_month: int | None = None
    enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_run_at is not None and self.next_run_at <= now


@dataclass(frozen=True)
class ScheduleExecution:
    execution_id: str
    schedule_id: str
    job_id: str | None
    status: ExecutionOutcome
    retry_count: int
    error_message: str | None
    started_at: datetime
    completed_at: datetime
    records_synced: int = 0

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())


@dataclass(frozen=True)
class ScheduleExecutionStats:
    total: int
    success: int
    failure: int
    avg_duration_seconds: float
    last_success_at: datetime | None
    last_failure_at: datetime | None

    @property
    def success_rate(self) -> float:
        return self.success / self.total if self.total else 0.0


@dataclass(frozen=True)
class TickSummary:
    executed: int = 0
    failed: int = 0
    retried: int = 0
    stalled_jobs_failed: int = 0


def validate_timing(
    frequency: ScheduleFrequency, day_of_week: int | None, day_of_month: int | None
) -> None:
    if frequency is ScheduleFrequency.WEEKLY:
        if day_of_week is None or not 0 <= day_of_week <= 6:
            raise ScheduleValidationError("weekly schedules need day_of_week in 0..6 (0=Monday)")
    elif day_of_week is not None:
        raise ScheduleValidationError("day_of_week is only valid for weekly schedules")

    if frequency is ScheduleFrequency.MONTHLY:
        if day_of_month is None or not 1 <= day_of_month <= 31:
            raise ScheduleValidationError("monthly schedules need day_of_month in 1..31")
    elif day_of_month is not None:
        raise ScheduleValidationError("day_of_month is only valid for monthly schedules")


def parse_time_of_day(raw: str) -> time:
    try:
        hours, minutes = raw.strip().split(":", 1)
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise ScheduleValidationError(f"time_of_day must be HH:MM, got {raw!r}") from exc


def _at_local(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at.replace(tzinfo=None), tzinfo=tz)


def _clamped_month_day(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def compute_next_run(schedule: ScheduleTiming, now: datetime, tz: ZoneInfo) -> datetime:
    """Next fire time strictly after ``now``, evaluated in ``tz`` and returned in UTC.

    Monthly schedules whose day does not exist in a month fire on that month's
    last day.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    local_now = now.astimezone(tz)
    frequency = schedule.frequency

    interval = frequency.hour_interval
    if interval is not None:
        hour_start = local_now.replace(minute=0, second=0, microsecond=0)
        candidate = hour_start.astimezone(UTC) + timedelta(hours=interval)
        while candidate <= now:
            candidate += timedelta(hours=interval)
        return candidate

    at = schedule.time_of_day
    today = local_now.date()

    if frequency is ScheduleFrequency.DAILY:
        candidate = _at_local(today, at, tz)
        while candidate <= now:
            today += timedelta(days=1)
            candidate = _at_local(today, at, tz)
        return candidate.astimezone(UTC)

    if frequency is ScheduleFrequency.WEEKLY:
        if schedule.day_of_week is None:
            raise ScheduleValidationError("weekly schedule without day_of_week")
        day = today + timedelta(days=(schedule.day_of_week - today.weekday()) % 7)
        candidate = _at_local(day, at, tz)
        while candidate <= now:
            day += timedelta(days=7)
            candidate = _at_local(day, at, tz)
        return candidate.astimezone(UTC)

    if frequency is ScheduleFrequency.MONTHLY:
        if schedule.day_of_month is None:
            raise ScheduleValidationError("monthly schedule without day_of_month")
        year, month = today.year, today.month
        candidate = _at_local(_clamped_month_day(year, month, schedule.day_of_month), at, tz)
        while candidate <= now:
            year, month = _next_month(year, month)
            candidate = _at_local(_clamped_month_day(year, month, schedule.day_of_month), at, tz)
        return candidate.astimezone(UTC)

    raise ScheduleValidationError(f"unsupported frequency: {frequency}")
