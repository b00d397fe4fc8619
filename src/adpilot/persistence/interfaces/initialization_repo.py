from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from adpilot.domain.initialization import InitializationTask, TaskPlan, TaskStatus


class InitializationRepoProtocol(Protocol):
    def replace_tasks(self, account_id: str, plans: Sequence[TaskPlan], *, now: datetime) -> int: ...

    def list_tasks(
        self, account_id: str, *, status: TaskStatus | None = None
    ) -> list[InitializationTask]: ...

    def next_pending(self, account_id: str) -> InitializationTask | None: ...

    def mark_completed(self, task_id: str, *, now: datetime) -> None: ...

    def mark_failed(self, task_id: str, *, error: str, now: datetime) -> None: ...

    def requeue_failed(
        self, account_id: str, *, now: datetime, max_attempts: int | None = None
    ) -> int: ...
