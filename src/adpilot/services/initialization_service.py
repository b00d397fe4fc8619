from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from adpilot.adapters.ads_api import AdsApiClient, Record
from adpilot.domain.account import AccountNotFound, InitializationStatus
from adpilot.domain.initialization import (
    InitializationProgress,
    InitializationStateError,
    InitializationTask,
    InitPhase,
    TaskStatus,
    compute_progress,
    plan_initialization_tasks,
)
from adpilot.domain.marketplace import local_day, timezone_for
from adpilot.logging_context import with_logging_context
from adpilot.observability import get_instrumentation
from adpilot.persistence.uow import UnitOfWorkFactory
from adpilot.services.api_errors import classify_api_error
from adpilot.services.rate_limiter import BackpressureError, SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

_ROW_KEY_FIELDS = ("campaignId", "adGroupId", "keywordId", "targetId", "adId")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def backfill_rows(task: InitializationTask, records: list[Record]) -> list[dict[str, Any]]:
    """Attach a stable ``rowId`` so re-running a slice overwrites instead of duplicating.

    Report rows are keyed by their entity ids plus the row date (the slice end when the
    row carries none); structure rows by their entity ids alone.
    """
    rows: list[dict[str, Any]] = []
    for record in records:
        parts = [str(record[field]) for field in _ROW_KEY_FIELDS if record.get(field) is not None]
        if not parts:
            logger.debug(
                "initialization_record_without_id",
                extra={"extra": {"task_id": task.task_id, "report_type": task.report_type}},
            )
            continue
        if task.phase is not InitPhase.STRUCTURE_DATA:
            assert task.end_date is not None
            parts.append(str(record.get("date") or task.end_date.isoformat()))
        rows.append({**record, "rowId": ":".join(parts)})
    return rows


@dataclass(frozen=True)
class InitializationRunResult:
    executed: int
    completed: int
    failed: int
    stopped_on_backpressure: bool
    status: InitializationStatus


class InitializationService:
    """Phased historical backfill: hot (90 days), cold (91-365 days), then structure."""

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        api: AdsApiClient,
        limiter: SlidingWindowRateLimiter,
        max_task_attempts: int = 3,
        seconds_per_task: int = 30,
        limiter_max_wait_seconds: float | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._api = api
        self._limiter = limiter
        self._max_task_attempts = max_task_attempts
        self._seconds_per_task = seconds_per_task
        self._limiter_max_wait = limiter_max_wait_seconds
        self._now = now_fn

    def start_initialization(self, account_id: str, *, force: bool = False) -> InitializationProgress:
        now = self._now()
        with self._uow_factory() as uow:
            account = uow.accounts.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            if account.initialization_status is InitializationStatus.COMPLETED and not force:
                raise InitializationStateError(
                    f"account {account_id} is already initialized; pass force=True to re-run"
                )
            if account.initialization_status is InitializationStatus.INITIALIZING and not force:
                raise InitializationStateError(f"account {account_id} is already initializing")
            today = local_day(now, timezone_for(account.marketplace))
            plans = plan_initialization_tasks(today)
            uow.initialization.replace_tasks(account_id, plans, now=now)
            uow.accounts.set_initialization_state(
                account_id, status=InitializationStatus.INITIALIZING, started_at=now
            )
        logger.info(
            "initialization_started",
            extra={"extra": {"account_id": account_id, "tasks": len(plans), "force": force}},
        )
        return self.get_initialization_progress(account_id)

    def run_pending(self, account_id: str, *, max_tasks: int | None = None) -> InitializationRunResult:
        """Run pending tasks in phase order until done, ``max_tasks`` or backpressure."""
        executed = completed = failed = 0
        stopped = False
        with with_logging_context(account_id=account_id):
            while max_tasks is None or executed < max_tasks:
                with self._uow_factory.reader() as uow:
                    task = uow.initialization.next_pending(account_id)
                if task is None and self._requeue_retryable(account_id):
                    continue
                if task is None:
                    break
                try:
                    self._limiter.acquire(max_wait_seconds=self._limiter_max_wait)
                except BackpressureError:
                    stopped = True
                    logger.warning(
                        "initialization_paused_backpressure",
                        extra={"extra": {"task_id": task.task_id}},
                    )
                    break
                executed += 1
                if self._run_task(task):
                    completed += 1
                else:
                    failed += 1
            status = self._settle(account_id)
        return InitializationRunResult(
            executed=executed,
            completed=completed,
            failed=failed,
            stopped_on_backpressure=stopped,
            status=status,
        )

    def _requeue_retryable(self, account_id: str) -> int:
        with self._uow_factory() as uow:
            return uow.initialization.requeue_failed(
                account_id, now=self._now(), max_attempts=self._max_task_attempts
            )

    def _run_task(self, task: InitializationTask) -> bool:
        try:
            with get_instrumentation().timed(
                "initialization_task", attrs={"phase": task.phase.value}
            ):
                if task.phase is InitPhase.STRUCTURE_DATA:
                    records = self._api.list_entities(
                        task.account_id, ad_product=task.sub_channel, entity=task.report_type
                    )
                else:
                    assert task.start_date is not None and task.end_date is not None
                    records = self._api.fetch_report(
                        task.account_id,
                        ad_product=task.sub_channel,
                        report_type=task.report_type,
                        start_date=task.start_date,
                        end_date=task.end_date,
                    )
        except Exception as exc:  # noqa: BLE001
            category = classify_api_error(exc)
            with self._uow_factory() as uow:
                uow.initialization.mark_failed(
                    task.task_id, error=f"{category.value}: {exc}", now=self._now()
                )
            logger.warning(
                "initialization_task_failed",
                extra={
                    "extra": {
                        "task_id": task.task_id,
                        "phase": task.phase.value,
                        "report_type": task.report_type,
                        "category": category.value,
                    }
                },
            )
            return False

        now = self._now()
        with self._uow_factory() as uow:
            stored = uow.sync.upsert_entities(
                account_id=task.account_id,
                entity_type=f"{task.sub_channel}:{task.report_type}",
                records=backfill_rows(task, records),
                id_field="rowId",
                synced_at=now,
            )
            uow.initialization.mark_completed(task.task_id, now=now)
        logger.debug(
            "initialization_task_completed",
            extra={"extra": {"task_id": task.task_id, "records": stored}},
        )
        return True

    def _settle(self, account_id: str) -> InitializationStatus:
        """Move the account to its terminal status once no task is pending."""
        now = self._now()
        with self._uow_factory() as uow:
            account = uow.accounts.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            tasks = uow.initialization.list_tasks(account_id)
            if not tasks or account.initialization_status is not InitializationStatus.INITIALIZING:
                return account.initialization_status
            if any(t.status is TaskStatus.PENDING for t in tasks):
                return account.initialization_status
            failed = [t for t in tasks if t.status is TaskStatus.FAILED]
            if not failed:
                uow.accounts.set_initialization_state(
                    account_id, status=InitializationStatus.COMPLETED, completed_at=now
                )
                uow.accounts.promote_to_incremental(account_id)
                logger.info("initialization_completed", extra={"extra": {"account_id": account_id}})
                return InitializationStatus.COMPLETED
            retryable = [t for t in failed if t.attempts < self._max_task_attempts]
            if retryable:
                return account.initialization_status
            uow.accounts.set_initialization_state(
                account_id,
                status=InitializationStatus.FAILED,
                error=f"{len(failed)} tasks failed after {self._max_task_attempts} attempts",
            )
        logger.warning(
            "initialization_failed",
            extra={"extra": {"account_id": account_id, "failed_tasks": len(failed)}},
        )
        return InitializationStatus.FAILED

    def retry_failed(self, account_id: str) -> int:
        """Re-queue every failed task, completed ones untouched; returns how many.

        Each re-queued task gets one more attempt before the account can fail
        again. A completed account is left alone.
        """
        now = self._now()
        with self._uow_factory() as uow:
            account = uow.accounts.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            if account.initialization_status is InitializationStatus.COMPLETED:
                return 0
            requeued = uow.initialization.requeue_failed(account_id, now=now)
            if requeued and account.initialization_status is InitializationStatus.FAILED:
                uow.accounts.set_initialization_state(
                    account_id, status=InitializationStatus.INITIALIZING
                )
        logger.info(
            "initialization_retry_requeued",
            extra={"extra": {"account_id": account_id, "requeued": requeued}},
        )
        return requeued

    def get_initialization_progress(self, account_id: str) -> InitializationProgress:
        with self._uow_factory.reader() as uow:
            account = uow.accounts.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            tasks = uow.initialization.list_tasks(account_id)
        return compute_progress(
            account_id=account_id,
            status=account.initialization_status,
            tasks=tasks,
            seconds_per_task=self._seconds_per_task,
            error=account.initialization_error,
        )
