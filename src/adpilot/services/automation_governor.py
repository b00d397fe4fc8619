from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from adpilot.adapters.ads_api import AdsApiClient, MutationRequest
from adpilot.domain.account import AccountNotFound
from adpilot.domain.automation import (
    REASON_API_ERROR,
    REASON_AUTO_CONFIDENCE,
    REASON_AUTOMATION_DISABLED,
    REASON_AUTOMATION_STOPPED,
    REASON_AWAITING_APPROVAL,
    REASON_CHANGE_EXCEEDS_BOUNDARY,
    REASON_DAILY_TOTAL_CAP,
    REASON_DAILY_TYPE_CAP,
    REASON_MANUAL_APPROVAL,
    REASON_MODE_DISABLED,
    REASON_RATE_LIMIT_BACKPRESSURE,
    REASON_ROLLBACK_SOURCE_INVALID,
    REASON_SUPERVISED_CONFIDENCE,
    REASON_TYPE_NOT_ENABLED,
    ActionType,
    ApprovalNotFound,
    ApprovalState,
    ApprovalStateError,
    AutomationConfig,
    AutomationConfigUpdate,
    AutomationMode,
    BidAdjustment,
    BudgetAdjustment,
    ConfigValidationError,
    CycleInProgressError,
    DailyExecutionStats,
    Dayparting,
    ExecutionBatch,
    ExecutionDetail,
    ExecutionStatus,
    NegativeKeyword,
    PendingApproval,
    PlacementTilt,
    ProposedAction,
    Rollback,
    SafetyBoundary,
    action_type_of,
    action_values,
    change_magnitude,
)
from adpilot.domain.marketplace import local_day, timezone_for
from adpilot.logging_context import with_logging_context
from adpilot.observability import get_instrumentation
from adpilot.persistence.uow import UnitOfWorkFactory
from adpilot.services.api_errors import classify_api_error
from adpilot.services.execution_ledger import ExecutionLedger, OpenBatch
from adpilot.services.process_lock import LockHeldError, single_instance_lock
from adpilot.services.rate_limiter import BackpressureError, SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of the policy gates; ``status`` is None when the action may execute."""

    status: ExecutionStatus | None
    reason: str
    notify: bool = False

    @property
    def executes(self) -> bool:
        return self.status is None


def evaluate_action(
    config: AutomationConfig,
    action: ProposedAction,
    daily_counts: dict[ActionType, int],
    *,
    manual_approval: bool = False,
) -> GateDecision:
    """Apply the gates in order: state, type, magnitude, daily caps, confidence.

    A manually approved action skips the type and confidence gates.
    """
    if config.blocked_reason is not None:
        return GateDecision(ExecutionStatus.BLOCKED, REASON_AUTOMATION_STOPPED)
    if not config.enabled:
        return GateDecision(ExecutionStatus.BLOCKED, REASON_AUTOMATION_DISABLED)
    if config.mode is AutomationMode.DISABLED:
        return GateDecision(ExecutionStatus.BLOCKED, REASON_MODE_DISABLED)

    action_type = action_type_of(action)
    if not manual_approval and action_type not in config.enabled_types:
        return GateDecision(ExecutionStatus.SKIPPED, REASON_TYPE_NOT_ENABLED)

    boundary = config.safety_boundary
    magnitude = change_magnitude(action, boundary)
    if magnitude is not None:
        change_percent, cap_percent = magnitude
        if change_percent > cap_percent:
            return GateDecision(ExecutionStatus.BLOCKED, REASON_CHANGE_EXCEEDS_BOUNDARY)

    cap_reason = daily_cap_reason(boundary, action_type, daily_counts)
    if cap_reason is not None:
        return GateDecision(ExecutionStatus.SKIPPED, cap_reason)

    if manual_approval:
        return GateDecision(None, REASON_MANUAL_APPROVAL)

    confidence = Decimal(str(action.confidence)) * _HUNDRED
    if confidence >= Decimal(str(boundary.auto_execute_confidence)):
        return GateDecision(
            None, REASON_AUTO_CONFIDENCE, notify=config.mode is AutomationMode.SUPERVISED
        )
    if (
        confidence >= Decimal(str(boundary.supervised_confidence))
        and config.mode is not AutomationMode.APPROVAL
    ):
        return GateDecision(None, REASON_SUPERVISED_CONFIDENCE, notify=True)
    return GateDecision(ExecutionStatus.PENDING_APPROVAL, REASON_AWAITING_APPROVAL)


def daily_cap_reason(
    boundary: SafetyBoundary, action_type: ActionType, daily_counts: dict[ActionType, int]
) -> str | None:
    type_cap = boundary.daily_cap_for(action_type)
    if type_cap is not None and daily_counts.get(action_type, 0) >= type_cap:
        return REASON_DAILY_TYPE_CAP
    if sum(daily_counts.values()) >= boundary.max_daily_total_adjustments:
        return REASON_DAILY_TOTAL_CAP
    return None


def mutation_for(action: ProposedAction) -> MutationRequest:
    _, after = action_values(action)
    if isinstance(action, BidAdjustment | BudgetAdjustment):
        return MutationRequest(action_type_of(action), action.target_id, after)
    if isinstance(action, PlacementTilt):
        return MutationRequest(
            ActionType.PLACEMENT_TILT, action.target_id, after, {"placement": action.placement}
        )
    if isinstance(action, Dayparting):
        return MutationRequest(
            ActionType.DAYPARTING, action.target_id, after, {"hour": str(action.hour)}
        )
    if isinstance(action, NegativeKeyword):
        return MutationRequest(
            ActionType.NEGATIVE_KEYWORD,
            action.target_id,
            after,
            {"keyword_text": action.keyword_text, "match_type": action.match_type},
        )
    raise ValueError("rollback mutations are derived from the ledger")


@dataclass(frozen=True)
class _Resolved:
    request: MutationRequest
    before: str | None
    after: str | None


class AutomationGovernor:
    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        api: AdsApiClient,
        limiter: SlidingWindowRateLimiter,
        ledger: ExecutionLedger,
        default_boundary: SafetyBoundary | None = None,
        limiter_max_wait_seconds: float | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._api = api
        self._limiter = limiter
        self._ledger = ledger
        self._default_boundary = default_boundary or SafetyBoundary()
        self._limiter_max_wait = limiter_max_wait_seconds
        self._now = now_fn

    # configuration

    def _load_config(self, uow, account_id: str) -> AutomationConfig:
        stored = uow.automation.get_config(account_id)
        if stored is not None:
            return stored
        return AutomationConfig(account_id=account_id, safety_boundary=self._default_boundary)

    def get_config(self, account_id: str) -> AutomationConfig:
        with self._uow_factory.reader() as uow:
            return self._load_config(uow, account_id)

    def update_config(self, account_id: str, update: AutomationConfigUpdate) -> AutomationConfig:
        """Apply a partial update; ``blocked_reason`` is only changed by stop and resume."""
        now = self._now()
        with self._uow_factory() as uow:
            current = self._load_config(uow, account_id)
            try:
                updated = update.apply_to(current, updated_at=now)
            except ValidationError as exc:
                raise ConfigValidationError(str(exc)) from exc
            uow.automation.save_config(updated)
        logger.info(
            "automation_config_updated",
            extra={
                "extra": {
                    "account_id": account_id,
                    "mode": updated.mode.value,
                    "enabled": updated.enabled,
                }
            },
        )
        return updated

    def emergency_stop(self, account_id: str, reason: str) -> AutomationConfig:
        """Block every subsequent action, including later ones in a running cycle."""
        if not reason.strip():
            raise ConfigValidationError("emergency stop requires a reason")
        now = self._now()
        with self._uow_factory() as uow:
            config = self._load_config(uow, account_id).model_copy(
                update={"blocked_reason": reason.strip(), "enabled": False, "updated_at": now}
            )
            uow.automation.save_config(config)
        logger.warning(
            "automation_emergency_stop",
            extra={"extra": {"account_id": account_id, "reason": reason}},
        )
        get_instrumentation().counter("automation_emergency_stops_total")
        return config

    def resume(self, account_id: str) -> AutomationConfig:
        """Clear the stop; already applied changes stay as they are."""
        now = self._now()
        with self._uow_factory() as uow:
            config = self._load_config(uow, account_id).model_copy(
                update={"blocked_reason": None, "enabled": True, "updated_at": now}
            )
            uow.automation.save_config(config)
        logger.info("automation_resumed", extra={"extra": {"account_id": account_id}})
        return config

    # queries

    def _account_timezone(self, account_id: str) -> ZoneInfo:
        with self._uow_factory.reader() as uow:
            account = uow.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return timezone_for(account.marketplace)

    def get_daily_stats(self, account_id: str, day: date | None = None) -> DailyExecutionStats:
        day = day or local_day(self._now(), self._account_timezone(account_id))
        boundary = self.get_config(account_id).safety_boundary
        with self._uow_factory.reader() as uow:
            counts = uow.automation.get_daily_counts(account_id, day)
        total = sum(counts.values())
        remaining = {
            ActionType.BID_ADJUSTMENT.value: max(
                0, boundary.max_daily_bid_adjustments - counts.get(ActionType.BID_ADJUSTMENT, 0)
            ),
            ActionType.BUDGET_ADJUSTMENT.value: max(
                0,
                boundary.max_daily_budget_adjustments
                - counts.get(ActionType.BUDGET_ADJUSTMENT, 0),
            ),
            "total": max(0, boundary.max_daily_total_adjustments - total),
        }
        return DailyExecutionStats(
            account_id=account_id, day=day, counts=counts, remaining=remaining
        )

    def get_execution_history(
        self,
        account_id: str,
        *,
        limit: int = 20,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ExecutionBatch]:
        return self._ledger.get_batches(
            account_id, limit=limit, start=start, end=end, with_details=True
        )

    def list_pending(self, account_id: str) -> list[PendingApproval]:
        with self._uow_factory.reader() as uow:
            return uow.automation.list_pending(account_id)

    # execution

    def run_full_cycle(
        self, account_id: str, actions: Sequence[ProposedAction]
    ) -> ExecutionBatch:
        """Evaluate every proposed action once and record the batch.

        At most one cycle runs per account at a time; a concurrent call raises
        CycleInProgressError. Item failures are recorded and the walk goes on.
        """
        with self._cycle_lock(account_id):
            tz = self._account_timezone(account_id)
            cycle_id = uuid.uuid4().hex
            with with_logging_context(cycle_id=cycle_id, account_id=account_id):
                batch = self._ledger.open_batch(account_id)
                logger.info(
                    "automation_cycle_started",
                    extra={"extra": {"batch_id": batch.batch_id, "actions": len(actions)}},
                )
                for action in actions:
                    self._process_safely(batch, account_id, tz, action)
                return self._ledger.close_batch(batch)

    def approve_pending(self, approval_id: str) -> ExecutionDetail:
        """Execute a held action after re-checking state, magnitude and daily caps."""
        pending = self._get_pending(approval_id)
        with self._cycle_lock(pending.account_id):
            tz = self._account_timezone(pending.account_id)
            with self._uow_factory() as uow:
                if not uow.automation.decide_pending(
                    approval_id, state=ApprovalState.APPROVED, decided_at=self._now()
                ):
                    raise ApprovalStateError(f"approval {approval_id} is no longer pending")
            batch = self._ledger.open_batch(pending.account_id)
            detail = self._process_safely(
                batch, pending.account_id, tz, pending.action(), manual_approval=True
            )
            self._ledger.close_batch(batch)
        logger.info(
            "automation_approval_executed",
            extra={"extra": {"approval_id": approval_id, "status": detail.status.value}},
        )
        return detail

    def reject_pending(self, approval_id: str) -> PendingApproval:
        pending = self._get_pending(approval_id)
        with self._uow_factory() as uow:
            if not uow.automation.decide_pending(
                approval_id, state=ApprovalState.REJECTED, decided_at=self._now()
            ):
                raise ApprovalStateError(f"approval {approval_id} is no longer pending")
            decided = uow.automation.get_pending(approval_id)
        logger.info("automation_approval_rejected", extra={"extra": {"approval_id": approval_id}})
        return decided or pending

    def _get_pending(self, approval_id: str) -> PendingApproval:
        with self._uow_factory.reader() as uow:
            pending = uow.automation.get_pending(approval_id)
        if pending is None:
            raise ApprovalNotFound(approval_id)
        return pending

    def _cycle_lock(self, account_id: str) -> AbstractContextManager[None]:
        return _cycle_lock(self._uow_factory.db_path, account_id)

    def _process_safely(
        self,
        batch: OpenBatch,
        account_id: str,
        tz: ZoneInfo,
        action: ProposedAction,
        *,
        manual_approval: bool = False,
    ) -> ExecutionDetail:
        try:
            detail = self._process(batch, account_id, tz, action, manual_approval=manual_approval)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "automation_action_crashed",
                extra={"extra": {"target_id": action.target_id, "type": action.type}},
            )
            detail = self._ledger.append_detail(
                batch,
                action_type=action_type_of(action),
                entity=action.target_id,
                status=ExecutionStatus.ERROR,
                reason=f"internal_error:{type(exc).__name__}",
                confidence=action.confidence,
                action_json=action.model_dump_json(),
            )
        get_instrumentation().counter(
            "automation_outcomes_total",
            attrs={"status": detail.status.value, "type": detail.action_type.value},
        )
        return detail

    def _process(
        self,
        batch: OpenBatch,
        account_id: str,
        tz: ZoneInfo,
        action: ProposedAction,
        *,
        manual_approval: bool,
    ) -> ExecutionDetail:
        action_type = action_type_of(action)
        action_json = action.model_dump_json()
        day = local_day(self._now(), tz)
        # Re-read per action so a stop issued mid-cycle applies to the rest of it.
        config = self.get_config(account_id)
        with self._uow_factory.reader() as uow:
            counts = uow.automation.get_daily_counts(account_id, day)
        decision = evaluate_action(config, action, counts, manual_approval=manual_approval)
        before, after = action_values(action)

        def record(status: ExecutionStatus, reason: str, notify: bool = False) -> ExecutionDetail:
            return self._ledger.append_detail(
                batch,
                action_type=action_type,
                entity=action.target_id,
                status=status,
                reason=reason,
                confidence=action.confidence,
                action_json=action_json,
                before=before,
                after=after,
                notify=notify,
            )

        if decision.status is ExecutionStatus.PENDING_APPROVAL:
            detail = record(ExecutionStatus.PENDING_APPROVAL, decision.reason)
            with self._uow_factory() as uow:
                uow.automation.insert_pending(
                    PendingApproval(
                        approval_id=detail.detail_id,
                        account_id=account_id,
                        batch_id=batch.batch_id,
                        action_type=action_type,
                        entity=action.target_id,
                        confidence=action.confidence,
                        action_json=action_json,
                        state=ApprovalState.PENDING,
                        created_at=detail.created_at,
                    )
                )
            return detail
        if decision.status is not None:
            return record(decision.status, decision.reason)

        resolved = self._resolve(account_id, action)
        if resolved is None:
            return record(ExecutionStatus.BLOCKED, REASON_ROLLBACK_SOURCE_INVALID)
        before, after = resolved.before, resolved.after

        boundary = config.safety_boundary
        with self._uow_factory() as uow:
            cap_reason = uow.automation.try_reserve_daily_slot(
                account_id=account_id,
                day=day,
                action_type=action_type,
                type_cap=boundary.daily_cap_for(action_type),
                total_cap=boundary.max_daily_total_adjustments,
            )
        if cap_reason is not None:
            return record(ExecutionStatus.SKIPPED, cap_reason)

        try:
            self._limiter.acquire(max_wait_seconds=self._limiter_max_wait)
        except BackpressureError:
            with self._uow_factory() as uow:
                uow.automation.release_daily_slot(
                    account_id=account_id, day=day, action_type=action_type
                )
            return record(ExecutionStatus.SKIPPED, REASON_RATE_LIMIT_BACKPRESSURE)

        try:
            with get_instrumentation().trace(
                "ads_api_mutation", attrs={"type": action_type.value}
            ):
                result = self._api.apply_mutation(account_id, resolved.request)
        except Exception as exc:  # noqa: BLE001
            category = classify_api_error(exc)
            logger.warning(
                "automation_mutation_failed",
                extra={
                    "extra": {
                        "target_id": action.target_id,
                        "type": action_type.value,
                        "category": category.value,
                        "error": str(exc),
                    }
                },
            )
            return record(ExecutionStatus.ERROR, f"{REASON_API_ERROR}:{category.value}")
        if not result.accepted:
            return record(ExecutionStatus.ERROR, f"{REASON_API_ERROR}:rejected")

        logger.info(
            "automation_action_applied",
            extra={
                "extra": {
                    "target_id": action.target_id,
                    "type": action_type.value,
                    "before": before,
                    "after": after,
                    "notify": decision.notify,
                }
            },
        )
        return record(ExecutionStatus.APPLIED, decision.reason, notify=decision.notify)

    def _resolve(self, account_id: str, action: ProposedAction) -> _Resolved | None:
        if not isinstance(action, Rollback):
            before, after = action_values(action)
            return _Resolved(mutation_for(action), before, after)

        source = self._ledger.get_detail(action.detail_id)
        if (
            source is None
            or source.account_id != account_id
            or source.status is not ExecutionStatus.APPLIED
            or source.entity != action.target_id
            or source.action_type in (ActionType.ROLLBACK, ActionType.NEGATIVE_KEYWORD)
            or source.before is None
        ):
            return None
        attributes = {
            key: str(value)
            for key, value in json.loads(source.action_json).items()
            if key in ("placement", "hour")
        }
        request = MutationRequest(source.action_type, source.entity, source.before, attributes)
        return _Resolved(request, source.after, source.before)


@contextmanager
def _cycle_lock(db_path: str, account_id: str) -> Iterator[None]:
    """Per-account exclusivity across threads and processes sharing one state DB."""
    try:
        with single_instance_lock(db_path=db_path, scope=f"automation-cycle:{account_id}"):
            yield
    except LockHeldError as exc:
        raise CycleInProgressError(account_id) from exc
