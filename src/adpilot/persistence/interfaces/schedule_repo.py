from __future__ import annotations

from datetime import datetime
from typing import Protocol

from adpilot.domain.schedule import ScheduleExecution, ScheduleExecutionStats, SyncSchedule


class ScheduleRepoProtocol(Protocol):
    def save_schedule(self, schedule: SyncSchedule) -> None: ...

    def get_schedule(self, schedule_id: str) -> SyncSchedule | None: ...

    def list_schedules(self, account_id: str | None = None) -> list[SyncSchedule]: ...

    def list_due(self, now: datetime) -> list[SyncSchedule]: ...

    def delete_schedule(self, schedule_id: str) -> bool: ...

    def mark_run(self, schedule_id: str, *, last_run_at: datetime, next_run_at: datetime) -> None: ...

    def insert_execution(self, execution: ScheduleExecution) -> None: ...

    def list_executions(self, schedule_id: str, *, limit: int = 20) -> list[ScheduleExecution]: ...

    def execution_stats(self, schedule_id: str) -> ScheduleExecutionStats: ...
