from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from datetime import UTC, date, datetime
from datetime import time as dt_time
from decimal import Decimal
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ValidationError

from adpilot.config import Settings
from adpilot.domain.account import AccountNotFound
from adpilot.domain.automation import (
    ActionType,
    ApprovalNotFound,
    ApprovalStateError,
    AutomationConfigUpdate,
    AutomationMode,
    ConfigValidationError,
    CycleInProgressError,
    SafetyBoundaryUpdate,
    parse_proposed_actions,
)
from adpilot.domain.initialization import InitializationStateError
from adpilot.domain.schedule import (
    ExecutionOutcome,
    ScheduleFrequency,
    ScheduleNotFound,
    ScheduleValidationError,
    parse_time_of_day,
)
from adpilot.domain.sync import InvalidJobTransition, JobFilter, SyncJobNotFound, SyncJobStatus, SyncType
from adpilot.logging_utils import setup_logging
from adpilot.observability import configure_instrumentation, get_instrumentation
from adpilot.services.process_lock import LockHeldError, single_instance_lock
from adpilot.services.rate_limiter import BackpressureError
from adpilot.services.runtime import Runtime, build_runtime
from adpilot.services.schedule_service import UNSET

logger = logging.getLogger(__name__)

DOMAIN_ERRORS = (
    AccountNotFound,
    SyncJobNotFound,
    InvalidJobTransition,
    ScheduleNotFound,
    InitializationStateError,
    CycleInProgressError,
    ApprovalNotFound,
    ApprovalStateError,
    BackpressureError,
    LockHeldError,
)
USAGE_ERRORS = (ConfigValidationError, ScheduleValidationError, ValidationError)


def _json_default(value: object) -> object:
    if isinstance(value, datetime | date | dt_time):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, frozenset | set):
        return sorted(value, key=str)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _to_payload(value: object) -> object:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, list):
        return [_to_payload(item) for item in value]
    return value


def _emit(value: object) -> None:
    print(json.dumps(_to_payload(value), sort_keys=True, default=_json_default))


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_time(value: str) -> dt_time:
    try:
        return parse_time_of_day(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean {value!r}")


def _parse_action_types(value: str) -> frozenset[ActionType]:
    try:
        return frozenset(ActionType(item.strip()) for item in value.split(",") if item.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adpilot",
        epilog="Settings come from the environment or a .env file (STATE_DB_PATH, ADS_API_*, ...).",
    )
    parser.add_argument("--db", default=None, help="Override STATE_DB_PATH")
    subparsers = parser.add_subparsers(dest="command", required=True)

    account_add = subparsers.add_parser("account-add", help="Register an advertising account")
    account_add.add_argument("--account", required=True)
    account_add.add_argument("--marketplace", default="US")

    sync_create = subparsers.add_parser("sync-create", help="Create a pending sync job")
    sync_create.add_argument("--account", required=True)
    sync_create.add_argument("--type", dest="sync_type", type=SyncType, choices=list(SyncType))
    sync_create.add_argument("--run", action="store_true", help="Run the job right away")

    sync_run = subparsers.add_parser("sync-run", help="Run a pending sync job")
    sync_run.add_argument("--job", required=True)

    sync_cancel = subparsers.add_parser("sync-cancel", help="Cancel a pending sync job")
    sync_cancel.add_argument("--job", required=True)

    sync_jobs = subparsers.add_parser("sync-jobs", help="List sync jobs")
    sync_jobs.add_argument("--account", default=None)
    sync_jobs.add_argument("--status", type=SyncJobStatus, choices=list(SyncJobStatus), default=None)
    sync_jobs.add_argument("--type", dest="sync_type", type=SyncType, choices=list(SyncType), default=None)
    sync_jobs.add_argument("--limit", type=int, default=50)
    sync_jobs.add_argument("--logs", action="store_true", help="Include step logs for each job")

    subparsers.add_parser("rate-limit-status", help="Show rate limit windows and queue")

    schedule_create = subparsers.add_parser("schedule-create", help="Create a sync schedule")
    schedule_create.add_argument("--account", required=True)
    schedule_create.add_argument("--type", dest="sync_type", type=SyncType, choices=list(SyncType), default=SyncType.ALL)
    schedule_create.add_argument(
        "--frequency", type=ScheduleFrequency, choices=list(ScheduleFrequency), required=True
    )
    schedule_create.add_argument("--time", dest="time_of_day", type=_parse_time, default=dt_time(0, 0))
    schedule_create.add_argument("--day-of-week", type=int, default=None, help="0=Monday")
    schedule_create.add_argument("--day-of-month", type=int, default=None)
    schedule_create.add_argument("--disabled", action="store_true")

    schedule_update = subparsers.add_parser("schedule-update", help="Update a sync schedule")
    schedule_update.add_argument("--schedule", required=True)
    schedule_update.add_argument("--type", dest="sync_type", type=SyncType, choices=list(SyncType), default=None)
    schedule_update.add_argument(
        "--frequency", type=ScheduleFrequency, choices=list(ScheduleFrequency), default=None
    )
    schedule_update.add_argument("--time", dest="time_of_day", type=_parse_time, default=None)
    schedule_update.add_argument("--day-of-week", type=int, default=None)
    schedule_update.add_argument("--day-of-month", type=int, default=None)
    schedule_update.add_argument("--enabled", type=_parse_bool, default=None)

    schedule_delete = subparsers.add_parser("schedule-delete", help="Delete a sync schedule")
    schedule_delete.add_argument("--schedule", required=True)

    schedule_list = subparsers.add_parser("schedule-list", help="List sync schedules")
    schedule_list.add_argument("--account", default=None)

    schedule_trigger = subparsers.add_parser("schedule-trigger", help="Run a schedule now")
    schedule_trigger.add_argument("--schedule", required=True)
    schedule_trigger.add_argument("--no-retry", action="store_true")

    schedule_history = subparsers.add_parser("schedule-history", help="Show schedule executions")
    schedule_history.add_argument("--schedule", required=True)
    schedule_history.add_argument("--limit", type=int, default=20)

    schedule_stats = subparsers.add_parser("schedule-stats", help="Show schedule execution stats")
    schedule_stats.add_argument("--schedule", required=True)

    subparsers.add_parser("tick", help="Run every due schedule once")

    daemon = subparsers.add_parser("daemon", help="Run the schedule tick loop")
    daemon.add_argument("--tick-seconds", type=int, default=None)
    daemon.add_argument("--max-ticks", type=int, default=None)

    init_start = subparsers.add_parser("init-start", help="Plan historical backfill tasks")
    init_start.add_argument("--account", required=True)
    init_start.add_argument("--force", action="store_true")

    init_run = subparsers.add_parser("init-run", help="Execute pending backfill tasks")
    init_run.add_argument("--account", required=True)
    init_run.add_argument("--max-tasks", type=int, default=None)

    init_retry = subparsers.add_parser("init-retry", help="Requeue failed backfill tasks")
    init_retry.add_argument("--account", required=True)

    init_progress = subparsers.add_parser("init-progress", help="Show backfill progress")
    init_progress.add_argument("--account", required=True)

    automation_config = subparsers.add_parser("automation-config", help="Show automation config")
    automation_config.add_argument("--account", required=True)

    automation_update = subparsers.add_parser("automation-update", help="Update automation config")
    automation_update.add_argument("--account", required=True)
    automation_update.add_argument("--enabled", type=_parse_bool, default=None)
    automation_update.add_argument(
        "--mode", type=AutomationMode, choices=list(AutomationMode), default=None
    )
    automation_update.add_argument("--types", type=_parse_action_types, default=None)
    for field_name in SafetyBoundaryUpdate.model_fields:
        automation_update.add_argument(
            f"--{field_name.replace('_', '-')}",
            dest=field_name,
            type=float if field_name.endswith(("percent", "confidence")) else int,
            default=None,
        )

    automation_run = subparsers.add_parser("automation-run", help="Evaluate proposed actions")
    automation_run.add_argument("--account", required=True)
    automation_run.add_argument("--actions", required=True, help="JSON file with a list of actions")

    automation_stop = subparsers.add_parser("automation-stop", help="Emergency stop")
    automation_stop.add_argument("--account", required=True)
    automation_stop.add_argument("--reason", required=True)

    automation_resume = subparsers.add_parser("automation-resume", help="Clear an emergency stop")
    automation_resume.add_argument("--account", required=True)

    automation_pending = subparsers.add_parser("automation-pending", help="List held actions")
    automation_pending.add_argument("--account", required=True)

    automation_approve = subparsers.add_parser("automation-approve", help="Approve a held action")
    automation_approve.add_argument("--approval", required=True)

    automation_reject = subparsers.add_parser("automation-reject", help="Reject a held action")
    automation_reject.add_argument("--approval", required=True)

    daily_stats = subparsers.add_parser("automation-daily-stats", help="Show daily counters")
    daily_stats.add_argument("--account", required=True)
    daily_stats.add_argument("--day", type=_parse_day, default=None)

    history = subparsers.add_parser("automation-history", help="Show execution batches")
    history.add_argument("--account", required=True)
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--start", type=_parse_timestamp, default=None)
    history.add_argument("--end", type=_parse_timestamp, default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings()
    if args.db:
        settings = settings.model_copy(update={"state_db_path": args.db})
    setup_logging(settings.log_level)
    configure_instrumentation(settings)
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "db_path": settings.state_db_path,
                "pid": os.getpid(),
            }
        },
    )

    runtime = build_runtime(settings)
    try:
        return _dispatch(args, runtime)
    except USAGE_ERRORS as exc:
        logger.warning(
            "cli_invalid_input",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        _emit({"error": type(exc).__name__, "message": str(exc)})
        return 2
    except DOMAIN_ERRORS as exc:
        logger.warning(
            "cli_command_failed",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        _emit({"error": type(exc).__name__, "message": str(exc)})
        return 1
    finally:
        runtime.close()
        get_instrumentation().flush()


# Commands that spend the API call budget; they share the daemon lock so that only one
# process draws on the budget of a credential set at a time.
API_BUDGET_COMMANDS = frozenset(
    {
        "sync-run",
        "schedule-trigger",
        "tick",
        "init-run",
        "automation-run",
        "automation-approve",
    }
)


def _uses_api_budget(args: argparse.Namespace) -> bool:
    if args.command == "sync-create":
        return bool(args.run)
    return args.command in API_BUDGET_COMMANDS


def _dispatch(args: argparse.Namespace, runtime: Runtime) -> int:
    handler = COMMANDS.get(args.command)
    if handler is None:
        return 2
    if not _uses_api_budget(args):
        return handler(args, runtime)
    with single_instance_lock(db_path=runtime.settings.state_db_path, scope="daemon"):
        return handler(args, runtime)


def run_account_add(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.sync.add_account(args.account, args.marketplace))
    return 0


def run_sync_create(args: argparse.Namespace, runtime: Runtime) -> int:
    job = runtime.sync.create_job(args.account, args.sync_type or SyncType.ALL)
    if args.run:
        job = runtime.sync.run_job(job.job_id)
    _emit(job)
    return 0 if job.status is not SyncJobStatus.FAILED else 1


def run_sync_run(args: argparse.Namespace, runtime: Runtime) -> int:
    job = runtime.sync.run_job(args.job)
    _emit(job)
    return 0 if job.status is SyncJobStatus.COMPLETED else 1


def run_sync_cancel(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.sync.cancel_job(args.job))
    return 0


def run_sync_jobs(args: argparse.Namespace, runtime: Runtime) -> int:
    jobs = runtime.sync.get_jobs(
        JobFilter(
            account_id=args.account, status=args.status, sync_type=args.sync_type, limit=args.limit
        )
    )
    payload = []
    for job in jobs:
        item = asdict(job)
        if args.logs:
            item["logs"] = [asdict(entry) for entry in runtime.sync.get_job_logs(job.job_id)]
        payload.append(item)
    _emit(payload)
    return 0


def run_rate_limit_status(args: argparse.Namespace, runtime: Runtime) -> int:
    status = runtime.sync.get_rate_limit_status()
    now = time.monotonic()
    _emit(
        {
            "queue_length": status.queue_length,
            "granted_total": status.granted_total,
            "rejected_total": status.rejected_total,
            "windows": [
                {
                    "window_kind": window.window_kind.value,
                    "limit": window.limit,
                    "used": window.used,
                    "reset_in_seconds": round(max(0.0, window.reset_at - now), 3),
                }
                for window in status.windows
            ],
        }
    )
    return 0


def run_schedule_create(args: argparse.Namespace, runtime: Runtime) -> int:
    schedule = runtime.schedules.create_schedule(
        account_id=args.account,
        sync_type=args.sync_type,
        frequency=args.frequency,
        time_of_day=args.time_of_day,
        day_of_week=args.day_of_week,
        day_of_month=args.day_of_month,
        enabled=not args.disabled,
    )
    _emit(schedule)
    return 0


def run_schedule_update(args: argparse.Namespace, runtime: Runtime) -> int:
    schedule = runtime.schedules.update_schedule(
        args.schedule,
        sync_type=args.sync_type,
        frequency=args.frequency,
        time_of_day=args.time_of_day,
        day_of_week=UNSET if args.day_of_week is None else args.day_of_week,
        day_of_month=UNSET if args.day_of_month is None else args.day_of_month,
        enabled=args.enabled,
    )
    _emit(schedule)
    return 0


def run_schedule_delete(args: argparse.Namespace, runtime: Runtime) -> int:
    runtime.schedules.delete_schedule(args.schedule)
    _emit({"schedule_id": args.schedule, "deleted": True})
    return 0


def run_schedule_list(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.schedules.list_schedules(args.account))
    return 0


def run_schedule_trigger(args: argparse.Namespace, runtime: Runtime) -> int:
    schedule = runtime.schedules.get_schedule(args.schedule)
    execution = runtime.schedules.trigger_with_retry(
        schedule, max_attempts=1 if args.no_retry else None
    )
    _emit(execution)
    return 0 if execution.status is ExecutionOutcome.SUCCESS else 1


def run_schedule_history(args: argparse.Namespace, runtime: Runtime) -> int:
    executions = runtime.schedules.get_schedule_execution_history(args.schedule, limit=args.limit)
    _emit([{**asdict(item), "duration_seconds": item.duration_seconds} for item in executions])
    return 0


def run_schedule_stats(args: argparse.Namespace, runtime: Runtime) -> int:
    stats = runtime.schedules.get_schedule_execution_stats(args.schedule)
    _emit({**asdict(stats), "success_rate": stats.success_rate})
    return 0


def run_tick(args: argparse.Namespace, runtime: Runtime) -> int:
    summary = runtime.schedules.run_due()
    _emit(summary)
    return 0 if summary.failed == 0 else 1


def run_daemon(
    args: argparse.Namespace,
    runtime: Runtime,
    *,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> int:
    tick_seconds = args.tick_seconds or runtime.settings.tick_interval_seconds
    if tick_seconds <= 0 or (args.max_ticks is not None and args.max_ticks <= 0):
        print("tick-seconds and max-ticks must be > 0", file=sys.stderr)
        return 2
    ticks = 0
    with single_instance_lock(db_path=runtime.settings.state_db_path, scope="daemon"):
        logger.info(
            "daemon_started",
            extra={"extra": {"tick_seconds": tick_seconds, "max_ticks": args.max_ticks}},
        )
        try:
            while True:
                ticks += 1
                try:
                    runtime.schedules.run_due()
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        "daemon_tick_failed",
                        extra={"extra": {"tick": ticks, "error_type": type(exc).__name__}},
                    )
                if args.max_ticks is not None and ticks >= args.max_ticks:
                    break
                sleep_fn(tick_seconds)
        except KeyboardInterrupt:
            logger.info("daemon_stopped", extra={"extra": {"ticks": ticks, "reason": "keyboard_interrupt"}})
    _emit({"ticks": ticks})
    return 0


def run_init_start(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.initialization.start_initialization(args.account, force=args.force))
    return 0


def run_init_run(args: argparse.Namespace, runtime: Runtime) -> int:
    result = runtime.initialization.run_pending(args.account, max_tasks=args.max_tasks)
    _emit(result)
    return 0 if result.failed == 0 else 1


def run_init_retry(args: argparse.Namespace, runtime: Runtime) -> int:
    requeued = runtime.initialization.retry_failed(args.account)
    _emit({"account_id": args.account, "requeued": requeued})
    return 0


def run_init_progress(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.initialization.get_initialization_progress(args.account))
    return 0


def run_automation_config(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.governor.get_config(args.account))
    return 0


def run_automation_update(args: argparse.Namespace, runtime: Runtime) -> int:
    boundary_values = {
        name: getattr(args, name)
        for name in SafetyBoundaryUpdate.model_fields
        if getattr(args, name) is not None
    }
    update = AutomationConfigUpdate(
        enabled=args.enabled,
        mode=args.mode,
        enabled_types=args.types,
        safety_boundary=SafetyBoundaryUpdate(**boundary_values) if boundary_values else None,
    )
    _emit(runtime.governor.update_config(args.account, update))
    return 0


def run_automation_run(args: argparse.Namespace, runtime: Runtime) -> int:
    actions = parse_proposed_actions(Path(args.actions).read_bytes())
    batch = runtime.governor.run_full_cycle(args.account, actions)
    _emit(batch)
    return 0


def run_automation_stop(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.governor.emergency_stop(args.account, args.reason))
    return 0


def run_automation_resume(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.governor.resume(args.account))
    return 0


def run_automation_pending(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.governor.list_pending(args.account))
    return 0


def run_automation_approve(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.governor.approve_pending(args.approval))
    return 0


def run_automation_reject(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.governor.reject_pending(args.approval))
    return 0


def run_automation_daily_stats(args: argparse.Namespace, runtime: Runtime) -> int:
    stats = runtime.governor.get_daily_stats(args.account, args.day)
    _emit(
        {
            "account_id": stats.account_id,
            "day": stats.day,
            "counts": {key.value: value for key, value in stats.counts.items()},
            "total_adjustments": stats.total_adjustments,
            "remaining": stats.remaining,
        }
    )
    return 0


def run_automation_history(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(
        runtime.governor.get_execution_history(
            args.account, limit=args.limit, start=args.start, end=args.end
        )
    )
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace, Runtime], int]] = {
    "account-add": run_account_add,
    "sync-create": run_sync_create,
    "sync-run": run_sync_run,
    "sync-cancel": run_sync_cancel,
    "sync-jobs": run_sync_jobs,
    "rate-limit-status": run_rate_limit_status,
    "schedule-create": run_schedule_create,
    "schedule-update": run_schedule_update,
    "schedule-delete": run_schedule_delete,
    "schedule-list": run_schedule_list,
    "schedule-trigger": run_schedule_trigger,
    "schedule-history": run_schedule_history,
    "schedule-stats": run_schedule_stats,
    "tick": run_tick,
    "daemon": run_daemon,
    "init-start": run_init_start,
    "init-run": run_init_run,
    "init-retry": run_init_retry,
    "init-progress": run_init_progress,
    "automation-config": run_automation_config,
    "automation-update": run_automation_update,
    "automation-run": run_automation_run,
    "automation-stop": run_automation_stop,
    "automation-resume": run_automation_resume,
    "automation-pending": run_automation_pending,
    "automation-approve": run_automation_approve,
    "automation-reject": run_automation_reject,
    "automation-daily-stats": run_automation_daily_stats,
    "automation-history": run_automation_history,
}


if __name__ == "__main__":
    raise SystemExit(main())
