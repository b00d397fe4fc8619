from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime, time
from time import sleep

from adpilot.domain.account import AccountNotFound
from adpilot.domain.marketplace import timezone_for
from adpilot.domain.schedule import (
    ExecutionOutcome,
    ScheduleExecution,
    ScheduleExecutionStats,
    ScheduleFrequency,
    ScheduleNotFound,
    SyncSchedule,
    TickSummary,
    compute_next_run,
    validate_timing,
)
from adpilot.domain.sync import SyncErrorKind, SyncJob, SyncJobStatus, SyncType
from adpilot.logging_context import with_logging_context
from adpilot.observability import get_instrumentation
from adpilot.persistence.uow import UnitOfWorkFactory
from adpilot.services.api_errors import FatalSyncError, TransientSyncError
from adpilot.services.rate_limiter import BackpressureError
from adpilot.services.retry import RetryAttempt, retry_with_backoff
from adpilot.services.sync_service import SyncService

logger = logging.getLogger(__name__)

_RETRYABLE_KINDS = frozenset(
    {SyncErrorKind.TRANSIENT, SyncErrorKind.BACKPRESSURE, SyncErrorKind.STALLED}
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_ms: int = 30_000
    max_delay_ms: int = 240_000


@dataclass(frozen=True)
class _UNSET:
    pass


UNSET = _UNSET()


class ScheduleService:
    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        sync_service: SyncService,
        retry_policy: RetryPolicy | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self._uow_factory = uow_factory
        self._sync = sync_service
        self._retry_policy = retry_policy or RetryPolicy()
        self._now = now_fn
        self._sleep = sleep_fn

    def _timezone(self, account_id: str):
        with self._uow_factory.reader() as uow:
            account = uow.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return timezone_for(account.marketplace)

    def create_schedule(
        self,
        *,
        account_id: str,
        sync_type: SyncType,
        frequency: ScheduleFrequency,
        time_of_day: time = time(0, 0),
        day_of_week: int | None = None,
        day_of_month: int | None = None,
        enabled: bool = True,
    ) -> SyncSchedule:
        validate_timing(frequency, day_of_week, day_of_month)
        tz = self._timezone(account_id)
        now = self._now()
        schedule = SyncSchedule(
            schedule_id=uuid.uuid4().hex,
            account_id=account_id,
            sync_type=sync_type,
            frequency=frequency,
            time_of_day=time_of_day,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            enabled=enabled,
            created_at=now,
        )
        schedule = replace(schedule, next_run_at=compute_next_run(schedule, now, tz))
        with self._uow_factory() as uow:
            uow.schedules.save_schedule(schedule)
        logger.info(
            "schedule_created",
            extra={
                "extra": {
                    "schedule_id": schedule.schedule_id,
                    "account_id": account_id,
                    "frequency": frequency.value,
                    "next_run_at": schedule.next_run_at,
                }
            },
        )
        return schedule

    def get_schedule(self, schedule_id: str) -> SyncSchedule:
        with self._uow_factory.reader() as uow:
            schedule = uow.schedules.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        return schedule

    def list_schedules(self, account_id: str | None = None) -> list[SyncSchedule]:
        with self._uow_factory.reader() as uow:
            return uow.schedules.list_schedules(account_id)

    def update_schedule(
        self,
        schedule_id: str,
        *,
        sync_type: SyncType | None = None,
        frequency: ScheduleFrequency | None = None,
        time_of_day: time | None = None,
        day_of_week: int | None | _UNSET = UNSET,
        day_of_month: int | None | _UNSET = UNSET,
        enabled: bool | None = None,
    ) -> SyncSchedule:
        current = self.get_schedule(schedule_id)
        updated = replace(
            current,
            sync_type=sync_type or current.sync_type,
            frequency=frequency or current.frequency,
            time_of_day=time_of_day or current.time_of_day,
            day_of_week=current.day_of_week if isinstance(day_of_week, _UNSET) else day_of_week,
            day_of_month=(
                current.day_of_month if isinstance(day_of_month, _UNSET) else day_of_month
            ),
            enabled=current.enabled if enabled is None else enabled,
        )
        validate_timing(updated.frequency, updated.day_of_week, updated.day_of_month)
        tz = self._timezone(updated.account_id)
        updated = replace(updated, next_run_at=compute_next_run(updated, self._now(), tz))
        with self._uow_factory() as uow:
            uow.schedules.save_schedule(updated)
        logger.info(
            "schedule_updated",
            extra={"extra": {"schedule_id": schedule_id, "next_run_at": updated.next_run_at}},
        )
        return updated

    def delete_schedule(self, schedule_id: str) -> None:
        with self._uow_factory() as uow:
            if not uow.schedules.delete_schedule(schedule_id):
                raise ScheduleNotFound(schedule_id)
        logger.info("schedule_deleted", extra={"extra": {"schedule_id": schedule_id}})

    def trigger(self, schedule: SyncSchedule) -> SyncJob:
        """Create and run one job for ``schedule``; advances last/next run times."""
        now = self._now()
        tz = self._timezone(schedule.account_id)
        job = self._sync.create_job(
            schedule.account_id, schedule.sync_type, schedule_id=schedule.schedule_id
        )
        with self._uow_factory() as uow:
            uow.schedules.mark_run(
                schedule.schedule_id,
                last_run_at=now,
                next_run_at=compute_next_run(schedule, now, tz),
            )
        return self._sync.run_job(job.job_id)

    def trigger_with_retry(
        self,
        schedule: SyncSchedule,
        *,
        max_attempts: int | None = None,
        policy: RetryPolicy | None = None,
    ) -> ScheduleExecution:
        """Trigger with bounded exponential backoff on transient failures.

        Fatal failures are not retried. The returned execution record carries
        the retry count and is persisted either way.
        """
        policy = policy or self._retry_policy
        attempts = max_attempts if max_attempts is not None else policy.max_attempts
        started_at = self._now()
        retries: list[RetryAttempt] = []
        last_job: list[SyncJob] = []

        def _attempt() -> SyncJob:
            try:
                job = self.trigger(schedule)
            except BackpressureError as exc:
                raise TransientSyncError(str(exc)) from exc
            last_job.append(job)
            if retries:
                self._sync.set_retry_count(job.job_id, len(retries))
            if job.status is SyncJobStatus.COMPLETED:
                return job
            if job.error_kind in _RETRYABLE_KINDS:
                raise TransientSyncError(job.error_message or "sync failed", job_id=job.job_id)
            raise FatalSyncError(job.error_message or "sync failed", job_id=job.job_id)

        def _on_retry(attempt: RetryAttempt) -> None:
            retries.append(attempt)
            logger.info(
                "schedule_retry_scheduled",
                extra={
                    "extra": {
                        "schedule_id": schedule.schedule_id,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                    }
                },
            )

        error_message: str | None = None
        status = ExecutionOutcome.SUCCESS
        with with_logging_context(schedule_id=schedule.schedule_id, account_id=schedule.account_id):
            try:
                retry_with_backoff(
                    _attempt,
                    max_attempts=attempts,
                    base_delay_ms=policy.base_delay_ms,
                    max_delay_ms=policy.max_delay_ms,
                    retry_on_exceptions=(TransientSyncError,),
                    sleep_fn=self._sleep,
                    on_retry=_on_retry,
                )
            except (TransientSyncError, FatalSyncError) as exc:
                status = ExecutionOutcome.FAILED
                error_message = str(exc)

            job = last_job[-1] if last_job else None
            execution = ScheduleExecution(
                execution_id=uuid.uuid4().hex,
                schedule_id=schedule.schedule_id,
                job_id=job.job_id if job else None,
                status=status,
                retry_count=len(retries),
                error_message=error_message,
                started_at=started_at,
                completed_at=self._now(),
                records_synced=job.records_synced if job else 0,
            )
            with self._uow_factory() as uow:
                uow.schedules.insert_execution(execution)

            get_instrumentation().counter(
                "schedule_executions_total", attrs={"status": status.value}
            )
            if status is ExecutionOutcome.FAILED:
                logger.warning(
                    "schedule_execution_failed",
                    extra={
                        "extra": {
                            "schedule_id": schedule.schedule_id,
                            "retry_count": len(retries),
                            "error": error_message,
                        }
                    },
                )
            else:
                logger.info(
                    "schedule_execution_succeeded",
                    extra={
                        "extra": {
                            "schedule_id": schedule.schedule_id,
                            "retry_count": len(retries),
                            "records_synced": execution.records_synced,
                        }
                    },
                )
        return execution

    def run_due(self, now: datetime | None = None) -> TickSummary:
        """One scheduler tick: fail stalled jobs, then trigger every due schedule."""
        current = now or self._now()
        stalled = self._sync.fail_stalled_jobs(current)
        with self._uow_factory.reader() as uow:
            due = uow.schedules.list_due(current)

        executed = failed = retried = 0
        for schedule in due:
            try:
                execution = self.trigger_with_retry(schedule)
            except Exception:  # noqa: BLE001
                failed += 1
                logger.exception(
                    "schedule_tick_item_failed",
                    extra={"extra": {"schedule_id": schedule.schedule_id}},
                )
                continue
            retried += execution.retry_count
            if execution.status is ExecutionOutcome.SUCCESS:
                executed += 1
            else:
                failed += 1
        summary = TickSummary(
            executed=executed,
            failed=failed,
            retried=retried,
            stalled_jobs_failed=len(stalled),
        )
        logger.info("schedule_tick_completed", extra={"extra": asdict(summary)})
        return summary

    def get_schedule_execution_history(
        self, schedule_id: str, *, limit: int = 20
    ) -> list[ScheduleExecution]:
        with self._uow_factory.reader() as uow:
            return uow.schedules.list_executions(schedule_id, limit=limit)

    def get_schedule_execution_stats(self, schedule_id: str) -> ScheduleExecutionStats:
        with self._uow_factory.reader() as uow:
            return uow.schedules.execution_stats(schedule_id)
