from __future__ import annotations

import logging
from datetime import date, timedelta

import httpx
import pytest

from adpilot.domain.account import AccountNotFound
from adpilot.domain.sync import (
    InvalidJobTransition,
    JobFilter,
    SyncErrorKind,
    SyncJobNotFound,
    SyncJobStatus,
    SyncType,
)
from adpilot.services.api_errors import AdsApiError
from adpilot.services.rate_limiter import BackpressureError, RateLimitBudget, SlidingWindowRateLimiter
from adpilot.services.sync_service import SyncService


def _service(uow_factory, fake_api, clock, *, budget: RateLimitBudget | None = None, **kwargs):
    limiter = SlidingWindowRateLimiter(
        budget or RateLimitBudget(), clock=clock.monotonic, sleep_fn=clock.sleep
    )
    return SyncService(
        uow_factory=uow_factory,
        api=fake_api,
        limiter=limiter,
        now_fn=clock.utcnow,
        **kwargs,
    )


def test_create_job_requires_known_account(uow_factory, fake_api, clock) -> None:
    service = _service(uow_factory, fake_api, clock)

    with pytest.raises(AccountNotFound):
        service.create_job("missing", SyncType.CAMPAIGNS)


def test_run_all_syncs_every_step_and_logs(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    fake_api.campaigns = [{"campaignId": "c1"}, {"campaignId": "c2"}]
    fake_api.keywords = [{"keywordId": "k1"}, {"name": "no id"}]
    fake_api.report_rows = [{"campaignId": "c1", "date": "2024-03-14", "clicks": 3}]
    service = _service(uow_factory, fake_api, clock)
    job = service.create_job("acct-1", SyncType.ALL)

    finished = service.run_job(job.job_id)

    assert finished.status is SyncJobStatus.COMPLETED
    assert finished.records_synced == 4
    assert finished.started_at is not None and finished.completed_at is not None
    logs = service.get_job_logs(job.job_id)
    assert [(entry.step, entry.status, entry.records) for entry in logs] == [
        ("campaigns", "success", 2),
        ("keywords", "success", 1),
        ("performance", "success", 1),
    ]
    with uow_factory.reader() as uow:
        assert uow.sync.count_entities("acct-1", "campaigns") == 2
        assert uow.sync.count_entities("acct-1", "performance") == 1
    assert service.get_rate_limit_status().granted_total == 3


def test_performance_window_ends_yesterday_in_marketplace_time(
    uow_factory, fake_api, clock, add_account
) -> None:
    add_account(marketplace="JP")
    # 17:00 UTC is 02:00 the next day in Tokyo.
    service = _service(uow_factory, fake_api, clock, performance_lookback_days=3)
    job = service.create_job("acct-1", SyncType.PERFORMANCE)

    service.run_job(job.job_id)

    report_calls = [args for name, args in fake_api.calls if name == "fetch_report"]
    assert len(report_calls) == 1
    assert report_calls[0][3:] == (date(2024, 3, 13), date(2024, 3, 15))


def test_fatal_error_fails_job_with_reason(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    fake_api.failures["list_keywords"] = [AdsApiError("bad profile", status_code=400)]
    fake_api.campaigns = [{"campaignId": "c1"}]
    service = _service(uow_factory, fake_api, clock)
    job = service.create_job("acct-1", SyncType.ALL)

    finished = service.run_job(job.job_id)

    assert finished.status is SyncJobStatus.FAILED
    assert finished.error_kind is SyncErrorKind.FATAL
    assert finished.error_message == "keywords: bad profile"
    assert finished.records_synced == 1
    assert [entry.status for entry in service.get_job_logs(job.job_id)] == ["success", "failed"]
    assert not any(call[0] == "fetch_report" for call in fake_api.calls)


def test_transport_error_is_transient(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    fake_api.failures["list_campaigns"] = [httpx.ConnectError("boom")]
    service = _service(uow_factory, fake_api, clock)
    job = service.create_job("acct-1", SyncType.CAMPAIGNS)

    finished = service.run_job(job.job_id)

    assert finished.status is SyncJobStatus.FAILED
    assert finished.error_kind is SyncErrorKind.TRANSIENT


def test_backpressure_on_admission_leaves_job_pending(
    uow_factory, fake_api, clock, add_account
) -> None:
    add_account()
    service = _service(
        uow_factory,
        fake_api,
        clock,
        budget=RateLimitBudget(per_second=1, per_minute=1, per_hour=10, max_queue_depth=0),
    )
    first = service.create_job("acct-1", SyncType.CAMPAIGNS)
    second = service.create_job("acct-1", SyncType.CAMPAIGNS)
    service.run_job(first.job_id)

    with pytest.raises(BackpressureError):
        service.run_job(second.job_id)

    assert service.get_job(second.job_id).status is SyncJobStatus.PENDING


def test_backpressure_between_steps_fails_job_as_backpressure(
    uow_factory, fake_api, clock, add_account
) -> None:
    add_account()
    service = _service(
        uow_factory,
        fake_api,
        clock,
        budget=RateLimitBudget(per_second=1, per_minute=1, per_hour=10, max_queue_depth=0),
    )
    job = service.create_job("acct-1", SyncType.ALL)

    finished = service.run_job(job.job_id)

    assert finished.status is SyncJobStatus.FAILED
    assert finished.error_kind is SyncErrorKind.BACKPRESSURE


def test_cancel_only_while_pending(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    job = service.create_job("acct-1", SyncType.CAMPAIGNS)

    cancelled = service.cancel_job(job.job_id)

    assert cancelled.status is SyncJobStatus.CANCELLED
    with pytest.raises(InvalidJobTransition):
        service.cancel_job(job.job_id)
    with pytest.raises(InvalidJobTransition):
        service.run_job(job.job_id)


def test_completed_job_cannot_run_again(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    job = service.create_job("acct-1", SyncType.CAMPAIGNS)
    service.run_job(job.job_id)

    with pytest.raises(InvalidJobTransition) as exc_info:
        service.run_job(job.job_id)

    assert exc_info.value.current is SyncJobStatus.COMPLETED


def test_unknown_job_raises_not_found(uow_factory, fake_api, clock) -> None:
    service = _service(uow_factory, fake_api, clock)

    with pytest.raises(SyncJobNotFound):
        service.get_job("nope")


def test_watchdog_fails_stalled_job_and_late_completion_is_ignored(
    uow_factory, fake_api, clock, add_account, caplog: pytest.LogCaptureFixture
) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock, max_job_duration_seconds=60)
    job = service.create_job("acct-1", SyncType.CAMPAIGNS)

    def _slow_campaigns(profile_id: str):
        clock.advance(120)
        assert service.fail_stalled_jobs() == [job.job_id]
        return [{"campaignId": "c1"}]

    fake_api.list_campaigns = _slow_campaigns  # type: ignore[method-assign]

    with caplog.at_level(logging.WARNING):
        finished = service.run_job(job.job_id)

    assert finished.status is SyncJobStatus.FAILED
    assert finished.error_kind is SyncErrorKind.STALLED
    assert "sync_job_late_completion_ignored" in caplog.text


def test_get_jobs_filters_by_status_and_type(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    done = service.create_job("acct-1", SyncType.CAMPAIGNS)
    service.run_job(done.job_id)
    clock.advance(1)
    pending = service.create_job("acct-1", SyncType.KEYWORDS)

    completed_jobs = service.get_jobs(JobFilter(status=SyncJobStatus.COMPLETED))
    keyword_jobs = service.get_jobs(JobFilter(account_id="acct-1", sync_type=SyncType.KEYWORDS))

    assert [item.job_id for item in completed_jobs] == [done.job_id]
    assert [item.job_id for item in keyword_jobs] == [pending.job_id]


def test_duration_uses_completion_time(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    job = service.create_job("acct-1", SyncType.CAMPAIGNS)

    def _campaigns(profile_id: str):
        clock.advance(5)
        return []

    fake_api.list_campaigns = _campaigns  # type: ignore[method-assign]
    finished = service.run_job(job.job_id)

    assert finished.duration_seconds(clock.utcnow() + timedelta(hours=1)) == 5.0
