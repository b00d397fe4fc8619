from __future__ import annotations

from datetime import date

import pytest

from adpilot.domain.account import AccountNotFound, InitializationStatus, SyncMode
from adpilot.domain.initialization import (
    InitializationStateError,
    InitPhase,
    TaskStatus,
    cold_slices,
    floor_percent,
    hot_slices,
    plan_initialization_tasks,
)
from adpilot.services.api_errors import AdsApiError
from adpilot.services.initialization_service import InitializationService
from adpilot.services.rate_limiter import RateLimitBudget, SlidingWindowRateLimiter

ROOMY = RateLimitBudget(per_second=1000, per_minute=1000, per_hour=1000)


def _service(uow_factory, api, clock, *, budget: RateLimitBudget = ROOMY, **kwargs):
    limiter = SlidingWindowRateLimiter(budget, clock=clock.monotonic, sleep_fn=clock.sleep)
    return InitializationService(
        uow_factory=uow_factory,
        api=api,
        limiter=limiter,
        now_fn=clock.utcnow,
        **kwargs,
    )


def _account(uow_factory, account_id: str = "acct-1"):
    with uow_factory.reader() as uow:
        return uow.accounts.get_account(account_id)


def test_plan_has_expected_phase_counts() -> None:
    plans = plan_initialization_tasks(date(2024, 3, 15))

    counts = {phase: 0 for phase in InitPhase}
    for plan in plans:
        counts[plan.phase] += 1
    assert len(plans) == 182
    assert counts == {
        InitPhase.HOT_DATA: 143,
        InitPhase.COLD_DATA: 30,
        InitPhase.STRUCTURE_DATA: 9,
    }
    phases_in_order = [plan.phase for plan in plans]
    assert phases_in_order == sorted(phases_in_order, key=list(InitPhase).index)


def test_slices_cover_history_without_today() -> None:
    today = date(2024, 3, 15)

    hot = hot_slices(today)
    cold = cold_slices(today)

    assert len(hot) == 13
    assert hot[0] == (date(2024, 3, 8), date(2024, 3, 14))
    assert hot[-1][0] == date(2023, 12, 16)
    assert len(cold) == 10
    assert cold[0][1] == date(2023, 12, 15)
    assert all(start <= end < today for start, end in hot + cold)


@pytest.mark.parametrize(
    ("done", "total", "expected"),
    [
        (0, 182, 0.0),
        (2, 3, 66.66),
        (5, 143, 3.49),
        (181, 182, 99.45),
        (182, 182, 100.0),
        (0, 0, 0.0),
    ],
)
def test_floor_percent(done: int, total: int, expected: float) -> None:
    assert floor_percent(done, total) == expected


def test_start_creates_tasks_and_reports_progress(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock, seconds_per_task=30)

    progress = service.start_initialization("acct-1")

    assert progress.status is InitializationStatus.INITIALIZING
    assert [p.total_tasks for p in progress.phases] == [143, 30, 9]
    assert progress.overall_progress == 0.0
    assert progress.estimated_time_remaining_seconds == 182 * 30
    assert _account(uow_factory).initialization_started_at == clock.utcnow()


def test_start_requires_known_account(uow_factory, fake_api, clock) -> None:
    service = _service(uow_factory, fake_api, clock)

    with pytest.raises(AccountNotFound):
        service.start_initialization("missing")


def test_start_twice_needs_force(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    service.start_initialization("acct-1")
    service.run_pending("acct-1", max_tasks=3)

    with pytest.raises(InitializationStateError):
        service.start_initialization("acct-1")

    restarted = service.start_initialization("acct-1", force=True)
    assert restarted.overall_progress == 0.0
    with uow_factory.reader() as uow:
        assert len(uow.initialization.list_tasks("acct-1")) == 182


def test_run_pending_completes_and_promotes_account(
    uow_factory, fake_api, clock, add_account
) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    service.start_initialization("acct-1")

    result = service.run_pending("acct-1")

    assert result.executed == 182
    assert result.completed == 182
    assert result.status is InitializationStatus.COMPLETED
    account = _account(uow_factory)
    assert account.sync_mode is SyncMode.INCREMENTAL
    assert account.initialization_completed_at is not None
    progress = service.get_initialization_progress("acct-1")
    assert progress.overall_progress == 100.0
    assert progress.estimated_time_remaining_seconds == 0
    first_call = fake_api.calls[0]
    assert first_call == (
        "fetch_report",
        ("acct-1", "SPONSORED_PRODUCTS", "spCampaigns", date(2024, 3, 8), date(2024, 3, 14)),
    )
    assert fake_api.calls[-1][0] == "list_entities"


def test_backfill_stores_fetched_rows(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    fake_api.report_rows = [{"campaignId": "c1", "date": "2024-03-01", "impressions": 120}]
    fake_api.entities = [{"campaignId": "c1", "name": "Brand"}, {"state": "enabled"}]
    service = _service(uow_factory, fake_api, clock)
    service.start_initialization("acct-1")

    result = service.run_pending("acct-1")

    assert result.status is InitializationStatus.COMPLETED
    with uow_factory.reader() as uow:
        # one report row per report type (11) and one entity per product and entity kind (9)
        assert uow.sync.count_entities("acct-1") == 20
        assert uow.sync.count_entities("acct-1", "SPONSORED_PRODUCTS:spCampaigns") == 1
        assert uow.sync.count_entities("acct-1", "SPONSORED_DISPLAY:targeting") == 1


def test_backfill_rows_without_date_are_keyed_by_slice(
    uow_factory, fake_api, clock, add_account
) -> None:
    add_account()
    fake_api.report_rows = [{"campaignId": "c1", "clicks": 3}]
    service = _service(uow_factory, fake_api, clock)
    service.start_initialization("acct-1")

    service.run_pending("acct-1")

    with uow_factory.reader() as uow:
        assert uow.sync.count_entities("acct-1", "SPONSORED_PRODUCTS:spCampaigns") == 23
        assert uow.sync.count_entities("acct-1", "SPONSORED_PRODUCTS:spKeywords") == 13


def test_run_pending_stops_at_max_tasks(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    service.start_initialization("acct-1")

    result = service.run_pending("acct-1", max_tasks=5)

    assert result.executed == 5
    assert result.status is InitializationStatus.INITIALIZING
    hot = service.get_initialization_progress("acct-1").phases[0]
    assert hot.completed_tasks == 5
    assert hot.progress_percent == 3.49


class _FlakyReports:
    """Wraps the fake API so one report type keeps failing until ``broken`` is cleared."""

    def __init__(self, api, report_type: str) -> None:
        self._api = api
        self._report_type = report_type
        self.broken = True

    def __getattr__(self, name):
        return getattr(self._api, name)

    def fetch_report(self, profile_id, *, ad_product, report_type, start_date, end_date):
        if self.broken and report_type == self._report_type:
            raise AdsApiError("report generation failed", status_code=500)
        return self._api.fetch_report(
            profile_id,
            ad_product=ad_product,
            report_type=report_type,
            start_date=start_date,
            end_date=end_date,
        )


def test_failed_tasks_are_retried_until_exhausted(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    api = _FlakyReports(fake_api, "sdTargets")
    service = _service(uow_factory, api, clock, max_task_attempts=2)
    service.start_initialization("acct-1")

    result = service.run_pending("acct-1")

    assert result.executed == 182 + 13
    assert result.failed == 26
    assert result.completed == 169
    assert result.status is InitializationStatus.FAILED
    account = _account(uow_factory)
    assert account.initialization_status is InitializationStatus.FAILED
    assert account.sync_mode is SyncMode.BACKFILL
    assert "13 tasks failed" in account.initialization_error
    with uow_factory.reader() as uow:
        failed = uow.initialization.list_tasks("acct-1", status=TaskStatus.FAILED)
    assert len(failed) == 13
    assert all(task.attempts == 2 for task in failed)
    assert all(task.error_message.startswith("transient") for task in failed)


def test_retry_failed_requeues_only_failed_tasks(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    api = _FlakyReports(fake_api, "sdTargets")
    service = _service(uow_factory, api, clock, max_task_attempts=1)
    service.start_initialization("acct-1")
    service.run_pending("acct-1")
    assert _account(uow_factory).initialization_status is InitializationStatus.FAILED

    requeued = service.retry_failed("acct-1")

    assert requeued == 13
    assert _account(uow_factory).initialization_status is InitializationStatus.INITIALIZING
    api.broken = False
    calls_before = len(fake_api.calls)
    result = service.run_pending("acct-1")
    assert result.executed == 13
    assert result.status is InitializationStatus.COMPLETED
    retried = [call for call in fake_api.calls[calls_before:] if call[0] == "fetch_report"]
    assert {call[1][2] for call in retried} == {"sdTargets"}
    assert _account(uow_factory).sync_mode is SyncMode.INCREMENTAL


def test_retry_failed_on_completed_account_is_noop(
    uow_factory, fake_api, clock, add_account
) -> None:
    add_account()
    service = _service(uow_factory, fake_api, clock)
    service.start_initialization("acct-1")
    service.run_pending("acct-1")

    assert service.retry_failed("acct-1") == 0
    assert _account(uow_factory).initialization_status is InitializationStatus.COMPLETED


def test_backpressure_pauses_the_run(uow_factory, fake_api, clock, add_account) -> None:
    add_account()
    budget = RateLimitBudget(per_second=1, per_minute=1, per_hour=1, max_queue_depth=0)
    service = _service(uow_factory, fake_api, clock, budget=budget)
    service.start_initialization("acct-1")

    result = service.run_pending("acct-1")

    assert result.stopped_on_backpressure is True
    assert result.executed == 1
    assert result.status is InitializationStatus.INITIALIZING
    with uow_factory.reader() as uow:
        pending = uow.initialization.list_tasks("acct-1", status=TaskStatus.PENDING)
    assert len(pending) == 181
