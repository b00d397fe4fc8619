from __future__ import annotations

import logging
from dataclasses import dataclass

from adpilot.adapters.ads_api import AdsApiClient, DryRunAdsApiClient
from adpilot.adapters.ads_http import HttpAdsApiClient
from adpilot.config import Settings
from adpilot.persistence.uow import UnitOfWorkFactory
from adpilot.services.automation_governor import AutomationGovernor
from adpilot.services.execution_ledger import ExecutionLedger
from adpilot.services.initialization_service import InitializationService
from adpilot.services.rate_limiter import SlidingWindowRateLimiter, budget_from_settings
from adpilot.services.schedule_service import RetryPolicy, ScheduleService
from adpilot.services.sync_service import SyncService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    uow_factory: UnitOfWorkFactory
    limiter: SlidingWindowRateLimiter
    api: AdsApiClient
    sync: SyncService
    schedules: ScheduleService
    initialization: InitializationService
    ledger: ExecutionLedger
    governor: AutomationGovernor

    def close(self) -> None:
        try:
            self.api.close()
        except Exception:  # noqa: BLE001
            logger.warning("Failed to close ads api client", exc_info=True)


def build_api_client(settings: Settings, limiter: SlidingWindowRateLimiter) -> AdsApiClient:
    if not settings.has_api_credentials():
        return DryRunAdsApiClient()
    assert settings.ads_api_client_id is not None
    assert settings.ads_api_access_token is not None
    http_client = HttpAdsApiClient(
        base_url=settings.ads_api_base_url,
        client_id=settings.ads_api_client_id,
        access_token=settings.ads_api_access_token.get_secret_value(),
        timeout_seconds=settings.ads_api_timeout_seconds,
        report_limiter=limiter,
    )
    if settings.is_live_api_enabled():
        return http_client
    return DryRunAdsApiClient(reader=http_client)


def build_runtime(settings: Settings, *, api: AdsApiClient | None = None) -> Runtime:
    """Wire every service onto one state DB and one shared rate limiter."""
    uow_factory = UnitOfWorkFactory(settings.state_db_path)
    limiter = SlidingWindowRateLimiter(budget_from_settings(settings))
    api = api or build_api_client(settings, limiter)
    sync = SyncService(
        uow_factory=uow_factory,
        api=api,
        limiter=limiter,
        performance_lookback_days=settings.performance_lookback_days,
        max_job_duration_seconds=settings.sync_job_max_duration_seconds,
    )
    schedules = ScheduleService(
        uow_factory=uow_factory,
        sync_service=sync,
        retry_policy=RetryPolicy(
            max_attempts=settings.schedule_max_attempts,
            base_delay_ms=settings.schedule_retry_base_delay_ms,
            max_delay_ms=settings.schedule_retry_max_delay_ms,
        ),
    )
    initialization = InitializationService(
        uow_factory=uow_factory,
        api=api,
        limiter=limiter,
        max_task_attempts=settings.init_max_task_attempts,
        seconds_per_task=settings.init_seconds_per_task,
    )
    ledger = ExecutionLedger(uow_factory=uow_factory)
    governor = AutomationGovernor(
        uow_factory=uow_factory,
        api=api,
        limiter=limiter,
        ledger=ledger,
        default_boundary=settings.default_safety_boundary(),
    )
    logger.info(
        "runtime_built",
        extra={
            "extra": {
                "db_path": settings.state_db_path,
                "api_client": type(api).__name__,
                "dry_run": not settings.is_live_api_enabled(),
            }
        },
    )
    return Runtime(
        settings=settings,
        uow_factory=uow_factory,
        limiter=limiter,
        api=api,
        sync=sync,
        schedules=schedules,
        initialization=initialization,
        ledger=ledger,
        governor=governor,
    )
