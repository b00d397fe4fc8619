from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from enum import StrEnum

from adpilot.domain.account import InitializationStatus


class InitPhase(StrEnum):
    HOT_DATA = "hot_data"
    COLD_DATA = "cold_data"
    STRUCTURE_DATA = "structure_data"


PHASE_ORDER: tuple[InitPhase, ...] = (
    InitPhase.HOT_DATA,
    InitPhase.COLD_DATA,
    InitPhase.STRUCTURE_DATA,
)


class TaskStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


AD_PRODUCTS = ("SPONSORED_PRODUCTS", "SPONSORED_BRANDS", "SPONSORED_DISPLAY")

HOT_REPORT_TYPES: dict[str, tuple[str, ...]] = {
    "SPONSORED_PRODUCTS": ("spCampaigns", "spAdGroups", "spKeywords", "spTargets"),
    "SPONSORED_BRANDS": ("sbCampaigns", "sbAdGroups", "sbKeywords", "sbTargets"),
    "SPONSORED_DISPLAY": ("sdCampaigns", "sdAdGroups", "sdTargets"),
}
COLD_REPORT_TYPES: dict[str, str] = {
    "SPONSORED_PRODUCTS": "spCampaigns",
    "SPONSORED_BRANDS": "sbCampaigns",
    "SPONSORED_DISPLAY": "sdCampaigns",
}
STRUCTURE_ENTITIES = ("campaigns", "ad_groups", "targeting")

HOT_DAYS = 90
HOT_SLICE_DAYS = 7
COLD_START_DAY = 91
COLD_END_DAY = 365
COLD_SLICE_DAYS = 30


class InitializationStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class TaskPlan:
    phase: InitPhase
    sub_channel: str
    report_type: str
    start_date: date | None
    end_date: date | None


@dataclass(frozen=True)
class InitializationTask:
    task_id: str
    account_id: str
    phase: InitPhase
    sub_channel: str
    report_type: str
    start_date: date | None
    end_date: date | None
    status: TaskStatus
    attempts: int = 0
    error_message: str | None = None


@dataclass(frozen=True)
class PhaseProgress:
    phase: InitPhase
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    progress_percent: float

    @property
    def is_complete(self) -> bool:
        return self.total_tasks > 0 and self.completed_tasks == self.total_tasks


@dataclass(frozen=True)
class InitializationProgress:
    account_id: str
    status: InitializationStatus
    phases: tuple[PhaseProgress, ...]
    overall_progress: float
    estimated_time_remaining_seconds: int
    error: str | None = None


def hot_slices(today: date) -> list[tuple[date, date]]:
    slices: list[tuple[date, date]] = []
    for offset in range(0, HOT_DAYS, HOT_SLICE_DAYS):
        last_offset = min(offset + HOT_SLICE_DAYS - 1, HOT_DAYS - 1)
        slices.append(
            (today - timedelta(days=last_offset + 1), today - timedelta(days=offset + 1))
        )
    return slices


def cold_slices(today: date) -> list[tuple[date, date]]:
    slices: list[tuple[date, date]] = []
    for offset in range(COLD_START_DAY, COLD_END_DAY + 1, COLD_SLICE_DAYS):
        last_offset = min(offset + COLD_SLICE_DAYS - 1, COLD_END_DAY)
        slices.append((today - timedelta(days=last_offset + 1), today - timedelta(days=offset)))
    return slices


def plan_initialization_tasks(today: date) -> list[TaskPlan]:
    """All tasks for a fresh backfill, in execution order, relative to the local ``today``."""
    plans: list[TaskPlan] = []
    hot = hot_slices(today)
    for ad_product in AD_PRODUCTS:
        for report_type in HOT_REPORT_TYPES[ad_product]:
            for start, end in hot:
                plans.append(TaskPlan(InitPhase.HOT_DATA, ad_product, report_type, start, end))

    cold = cold_slices(today)
    for ad_product in AD_PRODUCTS:
        for start, end in cold:
            plans.append(
                TaskPlan(InitPhase.COLD_DATA, ad_product, COLD_REPORT_TYPES[ad_product], start, end)
            )

    for ad_product in AD_PRODUCTS:
        for entity in STRUCTURE_ENTITIES:
            plans.append(TaskPlan(InitPhase.STRUCTURE_DATA, ad_product, entity, None, None))
    return plans


def floor_percent(done: int, total: int) -> float:
    """Percentage floored to two decimals; 100.0 only when done == total."""
    if total <= 0:
        return 0.0
    return math.floor(done * 10000 / total) / 100


def compute_progress(
    *,
    account_id: str,
    status: InitializationStatus,
    tasks: Iterable[InitializationTask],
    seconds_per_task: int,
    error: str | None = None,
) -> InitializationProgress:
    totals = {phase: [0, 0, 0] for phase in PHASE_ORDER}
    for task in tasks:
        bucket = totals[task.phase]
        bucket[0] += 1
        if task.status is TaskStatus.COMPLETED:
            bucket[1] += 1
        elif task.status is TaskStatus.FAILED:
            bucket[2] += 1

    phases = tuple(
        PhaseProgress(
            phase=phase,
            total_tasks=total,
            completed_tasks=completed,
            failed_tasks=failed,
            progress_percent=floor_percent(completed, total),
        )
        for phase, (total, completed, failed) in totals.items()
    )
    all_tasks = sum(p.total_tasks for p in phases)
    all_completed = sum(p.completed_tasks for p in phases)
    return InitializationProgress(
        account_id=account_id,
        status=status,
        phases=phases,
        overall_progress=floor_percent(all_completed, all_tasks),
        estimated_time_remaining_seconds=(all_tasks - all_completed) * seconds_per_task,
        error=error,
    )
