from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from adpilot.adapters.ads_api import AdsApiClient, Record
from adpilot.domain.account import Account, AccountNotFound
from adpilot.domain.marketplace import local_day, timezone_for
from adpilot.domain.sync import (
    JobFilter,
    SyncErrorKind,
    SyncJob,
    SyncJobNotFound,
    SyncJobStatus,
    SyncLogEntry,
    SyncType,
    ensure_transition,
)
from adpilot.logging_context import with_logging_context
from adpilot.observability import get_instrumentation
from adpilot.persistence.uow import UnitOfWorkFactory
from adpilot.services.api_errors import classify_api_error, sync_error_kind
from adpilot.services.rate_limiter import BackpressureError, RateLimitStatus, SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

_ENTITY_ID_FIELDS = {
    SyncType.CAMPAIGNS: "campaignId",
    SyncType.KEYWORDS: "keywordId",
    SyncType.PERFORMANCE: "rowId",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _StepFailed(Exception):
    def __init__(self, step: SyncType, cause: Exception, kind: SyncErrorKind) -> None:
        super().__init__(str(cause))
        self.step = step
        self.cause = cause
        self.kind = kind


class SyncService:
    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        api: AdsApiClient,
        limiter: SlidingWindowRateLimiter,
        performance_lookback_days: int = 3,
        max_job_duration_seconds: int = 3600,
        limiter_max_wait_seconds: float | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._api = api
        self._limiter = limiter
        self._lookback_days = max(1, performance_lookback_days)
        self._max_job_duration = timedelta(seconds=max_job_duration_seconds)
        self._limiter_max_wait = limiter_max_wait_seconds
        self._now = now_fn

    def add_account(self, account_id: str, marketplace: str) -> Account:
        with self._uow_factory() as uow:
            uow.accounts.upsert_account(account_id, marketplace.strip().upper(), now=self._now())
            account = uow.accounts.get_account(account_id)
        assert account is not None
        return account

    def get_account(self, account_id: str) -> Account:
        with self._uow_factory.reader() as uow:
            account = uow.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def create_job(
        self, account_id: str, sync_type: SyncType, *, schedule_id: str | None = None
    ) -> SyncJob:
        now = self._now()
        job = SyncJob(
            job_id=uuid.uuid4().hex,
            account_id=account_id,
            sync_type=sync_type,
            status=SyncJobStatus.PENDING,
            created_at=now,
            schedule_id=schedule_id,
        )
        with self._uow_factory() as uow:
            if uow.accounts.get_account(account_id) is None:
                raise AccountNotFound(account_id)
            uow.sync.insert_job(job)
        logger.info(
            "sync_job_created",
            extra={
                "extra": {
                    "job_id": job.job_id,
                    "account_id": account_id,
                    "sync_type": sync_type.value,
                    "schedule_id": schedule_id,
                }
            },
        )
        return job

    def get_job(self, job_id: str) -> SyncJob:
        with self._uow_factory.reader() as uow:
            job = uow.sync.get_job(job_id)
        if job is None:
            raise SyncJobNotFound(job_id)
        return job

    def get_jobs(self, job_filter: JobFilter | None = None) -> list[SyncJob]:
        with self._uow_factory.reader() as uow:
            return uow.sync.list_jobs(job_filter or JobFilter())

    def get_job_logs(self, job_id: str) -> list[SyncLogEntry]:
        with self._uow_factory.reader() as uow:
            return uow.sync.list_logs(job_id)

    def cancel_job(self, job_id: str) -> SyncJob:
        with self._uow_factory() as uow:
            job = uow.sync.get_job(job_id)
            if job is None:
                raise SyncJobNotFound(job_id)
            ensure_transition(job_id, job.status, SyncJobStatus.CANCELLED)
            if not uow.sync.cancel_pending(job_id, completed_at=self._now()):
                current = uow.sync.get_job(job_id)
                ensure_transition(
                    job_id, current.status if current else job.status, SyncJobStatus.CANCELLED
                )
            cancelled = uow.sync.get_job(job_id)
        logger.info("sync_job_cancelled", extra={"extra": {"job_id": job_id}})
        assert cancelled is not None
        return cancelled

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self._limiter.status()

    def set_retry_count(self, job_id: str, retry_count: int) -> None:
        with self._uow_factory() as uow:
            uow.sync.set_retry_count(job_id, retry_count)

    def fail_stalled_jobs(self, now: datetime | None = None) -> list[str]:
        current = now or self._now()
        with self._uow_factory() as uow:
            failed = uow.sync.fail_stalled(started_before=current - self._max_job_duration, now=current)
        for job_id in failed:
            logger.warning("sync_job_stalled", extra={"extra": {"job_id": job_id}})
            get_instrumentation().counter("sync_jobs_stalled_total")
        return failed

    def run_job(self, job_id: str) -> SyncJob:
        """Execute a pending job to a terminal state.

        Backpressure on the first admission leaves the job pending and
        propagates BackpressureError. Call failures end the job as failed
        and are reported through the returned job, not raised.
        """
        job = self.get_job(job_id)
        ensure_transition(job_id, job.status, SyncJobStatus.RUNNING)
        with with_logging_context(account_id=job.account_id, job_id=job_id):
            try:
                self._limiter.acquire(max_wait_seconds=self._limiter_max_wait)
            except BackpressureError:
                logger.warning("sync_job_deferred_backpressure", extra={"extra": {"job_id": job_id}})
                raise

            with self._uow_factory() as uow:
                account = uow.accounts.get_account(job.account_id)
                if not uow.sync.mark_running(job_id, started_at=self._now()):
                    current = uow.sync.get_job(job_id)
                    ensure_transition(
                        job_id,
                        current.status if current else job.status,
                        SyncJobStatus.RUNNING,
                    )
            if account is None:
                raise AccountNotFound(job.account_id)

            records_synced = 0
            try:
                for index, step in enumerate(job.sync_type.steps()):
                    if index > 0:
                        self._acquire_for_step(step)
                    records_synced += self._run_step(job, account, step)
            except _StepFailed as failure:
                return self._finish_failed(job, records_synced, failure)

            with self._uow_factory() as uow:
                applied = uow.sync.finish_running(
                    job_id,
                    status=SyncJobStatus.COMPLETED,
                    records_synced=records_synced,
                    completed_at=self._now(),
                )
                final = uow.sync.get_job(job_id)
            if not applied:
                logger.warning("sync_job_late_completion_ignored", extra={"extra": {"job_id": job_id}})
            else:
                logger.info(
                    "sync_job_completed",
                    extra={"extra": {"job_id": job_id, "records_synced": records_synced}},
                )
                get_instrumentation().counter(
                    "sync_jobs_total", attrs={"status": "completed", "sync_type": job.sync_type.value}
                )
            assert final is not None
            return final

    def _acquire_for_step(self, step: SyncType) -> None:
        try:
            self._limiter.acquire(max_wait_seconds=self._limiter_max_wait)
        except BackpressureError as exc:
            raise _StepFailed(step, exc, SyncErrorKind.BACKPRESSURE) from exc

    def _fetch(self, account: Account, step: SyncType) -> list[Record]:
        if step is SyncType.CAMPAIGNS:
            return self._api.list_campaigns(account.account_id)
        if step is SyncType.KEYWORDS:
            return self._api.list_keywords(account.account_id)
        if step is SyncType.PERFORMANCE:
            end = local_day(self._now(), timezone_for(account.marketplace)) - timedelta(days=1)
            start = end - timedelta(days=self._lookback_days - 1)
            rows = self._api.fetch_report(
                account.account_id,
                ad_product="SPONSORED_PRODUCTS",
                report_type="spCampaigns",
                start_date=start,
                end_date=end,
            )
            return [
                {**row, "rowId": f"{row.get('campaignId')}:{row.get('date', end.isoformat())}"}
                for row in rows
            ]
        raise ValueError(f"not a concrete sync step: {step}")

    def _run_step(self, job: SyncJob, account: Account, step: SyncType) -> int:
        try:
            with get_instrumentation().timed("sync_step", attrs={"step": step.value}):
                records = self._fetch(account, step)
        except Exception as exc:  # noqa: BLE001
            category = classify_api_error(exc)
            raise _StepFailed(step, exc, sync_error_kind(category)) from exc

        now = self._now()
        with self._uow_factory() as uow:
            stored = uow.sync.upsert_entities(
                account_id=job.account_id,
                entity_type=step.value,
                records=_with_ids(records, _ENTITY_ID_FIELDS[step]),
                id_field=_ENTITY_ID_FIELDS[step],
                synced_at=now,
            )
            uow.sync.append_log(
                SyncLogEntry(
                    job_id=job.job_id,
                    step=step.value,
                    status="success",
                    records=stored,
                    message=None,
                    created_at=now,
                )
            )
        logger.info("sync_step_completed", extra={"extra": {"step": step.value, "records": stored}})
        return stored

    def _finish_failed(self, job: SyncJob, records_synced: int, failure: _StepFailed) -> SyncJob:
        message = f"{failure.step.value}: {failure.cause}"
        now = self._now()
        with self._uow_factory() as uow:
            uow.sync.append_log(
                SyncLogEntry(
                    job_id=job.job_id,
                    step=failure.step.value,
                    status="failed",
                    records=0,
                    message=message,
                    created_at=now,
                )
            )
            applied = uow.sync.finish_running(
                job.job_id,
                status=SyncJobStatus.FAILED,
                records_synced=records_synced,
                completed_at=now,
                error_message=message,
                error_kind=failure.kind,
            )
            final = uow.sync.get_job(job.job_id)
        log = logger.exception if failure.kind is SyncErrorKind.FATAL else logger.warning
        log(
            "sync_job_failed",
            exc_info=failure.cause,
            extra={
                "extra": {
                    "job_id": job.job_id,
                    "step": failure.step.value,
                    "error_kind": failure.kind.value,
                    "late": not applied,
                }
            },
        )
        get_instrumentation().counter(
            "sync_jobs_total", attrs={"status": "failed", "sync_type": job.sync_type.value}
        )
        assert final is not None
        return final


def _with_ids(records: list[Record], id_field: str) -> list[dict[str, Any]]:
    usable: list[dict[str, Any]] = []
    for record in records:
        if record.get(id_field) is None:
            logger.debug("sync_record_without_id", extra={"extra": {"id_field": id_field}})
            continue
        usable.append(record)
    return usable
