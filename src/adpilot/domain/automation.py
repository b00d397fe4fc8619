from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Literal, assert_never

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class AutomationMode(StrEnum):
    FULL_AUTO = "full_auto"
    SUPERVISED = "supervised"
    APPROVAL = "approval"
    DISABLED = "disabled"


class ActionType(StrEnum):
    BID_ADJUSTMENT = "bid_adjustment"
    BUDGET_ADJUSTMENT = "budget_adjustment"
    PLACEMENT_TILT = "placement_tilt"
    NEGATIVE_KEYWORD = "negative_keyword"
    DAYPARTING = "dayparting"
    ROLLBACK = "rollback"


class ExecutionStatus(StrEnum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    ERROR = "error"
    BLOCKED = "blocked"
    PENDING_APPROVAL = "pending_approval"


class ApprovalState(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


REASON_AUTOMATION_DISABLED = "automation_disabled"
REASON_AUTOMATION_STOPPED = "automation_stopped"
REASON_MODE_DISABLED = "mode_disabled"
REASON_TYPE_NOT_ENABLED = "type_not_enabled"
REASON_CHANGE_EXCEEDS_BOUNDARY = "change_exceeds_boundary"
REASON_DAILY_TYPE_CAP = "daily_type_cap_reached"
REASON_DAILY_TOTAL_CAP = "daily_total_cap_reached"
REASON_AUTO_CONFIDENCE = "auto_confidence"
REASON_SUPERVISED_CONFIDENCE = "supervised_confidence"
REASON_AWAITING_APPROVAL = "awaiting_approval"
REASON_MANUAL_APPROVAL = "manual_approval"
REASON_API_ERROR = "api_error"
REASON_RATE_LIMIT_BACKPRESSURE = "rate_limit_backpressure"
REASON_ROLLBACK_SOURCE_INVALID = "rollback_source_invalid"

DAILY_CAPPED_TYPES = (ActionType.BID_ADJUSTMENT, ActionType.BUDGET_ADJUSTMENT)


class ConfigValidationError(ValueError):
    pass


class CycleInProgressError(RuntimeError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"an automation cycle is already running for account {account_id}")
        self.account_id = account_id


class ApprovalNotFound(LookupError):
    pass


class ApprovalStateError(RuntimeError):
    pass


class SafetyBoundary(BaseModel):
    """Caps applied to every automated change.

    Confidence thresholds are percentages (0-100); proposed actions carry a
    confidence in [0, 1] which is scaled before comparison.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_bid_change_percent: float = Field(default=30.0, ge=0)
    max_budget_change_percent: float = Field(default=50.0, ge=0)
    max_placement_change_percent: float = Field(default=20.0, ge=0)
    auto_execute_confidence: float = Field(default=80.0, ge=0, le=100)
    supervised_confidence: float = Field(default=60.0, ge=0, le=100)
    max_daily_bid_adjustments: int = Field(default=100, ge=0)
    max_daily_budget_adjustments: int = Field(default=10, ge=0)
    max_daily_total_adjustments: int = Field(default=150, ge=0)

    @model_validator(mode="after")
    def validate_thresholds(self) -> SafetyBoundary:
        if self.supervised_confidence > self.auto_execute_confidence:
            raise ValueError("supervised_confidence must be <= auto_execute_confidence")
        return self

    def daily_cap_for(self, action_type: ActionType) -> int | None:
        if action_type is ActionType.BID_ADJUSTMENT:
            return self.max_daily_bid_adjustments
        if action_type is ActionType.BUDGET_ADJUSTMENT:
            return self.max_daily_budget_adjustments
        return None


class AutomationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    enabled: bool = True
    mode: AutomationMode = AutomationMode.FULL_AUTO
    enabled_types: frozenset[ActionType] = Field(default_factory=lambda: frozenset(ActionType))
    safety_boundary: SafetyBoundary = Field(default_factory=SafetyBoundary)
    blocked_reason: str | None = None
    updated_at: datetime | None = None

    @property
    def is_stopped(self) -> bool:
        return self.blocked_reason is not None


class SafetyBoundaryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_bid_change_percent: float | None = None
    max_budget_change_percent: float | None = None
    max_placement_change_percent: float | None = None
    auto_execute_confidence: float | None = None
    supervised_confidence: float | None = None
    max_daily_bid_adjustments: int | None = None
    max_daily_budget_adjustments: int | None = None
    max_daily_total_adjustments: int | None = None


class AutomationConfigUpdate(BaseModel):
    """Partial update; emergency-stop state is not settable here."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool | None = None
    mode: AutomationMode | None = None
    enabled_types: frozenset[ActionType] | None = None
    safety_boundary: SafetyBoundaryUpdate | None = None

    def apply_to(self, config: AutomationConfig, *, updated_at: datetime) -> AutomationConfig:
        boundary = config.safety_boundary
        if self.safety_boundary is not None:
            merged = boundary.model_dump()
            merged.update(self.safety_boundary.model_dump(exclude_none=True))
            boundary = SafetyBoundary.model_validate(merged)
        changes: dict[str, object] = {"safety_boundary": boundary, "updated_at": updated_at}
        if self.enabled is not None:
            changes["enabled"] = self.enabled
        if self.mode is not None:
            changes["mode"] = self.mode
        if self.enabled_types is not None:
            changes["enabled_types"] = self.enabled_types
        return config.model_copy(update=changes)


class _ProposedActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    target_id: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = Field(default="", max_length=512)


class BidAdjustment(_ProposedActionBase):
    type: Literal["bid_adjustment"] = "bid_adjustment"
    current_bid: Decimal = Field(ge=Decimal("0"))
    proposed_bid: Decimal = Field(gt=Decimal("0"))


class BudgetAdjustment(_ProposedActionBase):
    type: Literal["budget_adjustment"] = "budget_adjustment"
    current_budget: Decimal = Field(ge=Decimal("0"))
    proposed_budget: Decimal = Field(gt=Decimal("0"))


class PlacementTilt(_ProposedActionBase):
    type: Literal["placement_tilt"] = "placement_tilt"
    placement: Literal["top_of_search", "product_pages", "rest_of_search"]
    current_percent: Decimal = Field(ge=Decimal("0"), le=Decimal("900"))
    proposed_percent: Decimal = Field(ge=Decimal("0"), le=Decimal("900"))


class NegativeKeyword(_ProposedActionBase):
    type: Literal["negative_keyword"] = "negative_keyword"
    keyword_text: str = Field(min_length=1, max_length=256)
    match_type: Literal["negative_exact", "negative_phrase"] = "negative_exact"


class Dayparting(_ProposedActionBase):
    type: Literal["dayparting"] = "dayparting"
    hour: int = Field(ge=0, le=23)
    current_multiplier: Decimal = Field(ge=Decimal("0"))
    proposed_multiplier: Decimal = Field(ge=Decimal("0"))


class Rollback(_ProposedActionBase):
    """Restores the `before` value recorded on an applied ledger detail."""

    type: Literal["rollback"] = "rollback"
    detail_id: str = Field(min_length=1)


ProposedAction = Annotated[
    BidAdjustment | BudgetAdjustment | PlacementTilt | NegativeKeyword | Dayparting | Rollback,
    Field(discriminator="type"),
]

PROPOSED_ACTIONS_ADAPTER: TypeAdapter[list[ProposedAction]] = TypeAdapter(list[ProposedAction])


def parse_proposed_actions(payload: str | bytes) -> list[ProposedAction]:
    return PROPOSED_ACTIONS_ADAPTER.validate_json(payload)


def action_type_of(action: ProposedAction) -> ActionType:
    return ActionType(action.type)


def relative_change_percent(current: Decimal, proposed: Decimal) -> Decimal:
    if current == 0:
        return Decimal("0") if proposed == 0 else Decimal("Infinity")
    return abs(proposed - current) / current * Decimal("100")


def change_magnitude(action: ProposedAction, boundary: SafetyBoundary) -> tuple[Decimal, Decimal] | None:
    """Return (change_percent, cap_percent) or None when the action has no magnitude."""
    if isinstance(action, BidAdjustment):
        return (
            relative_change_percent(action.current_bid, action.proposed_bid),
            Decimal(str(boundary.max_bid_change_percent)),
        )
    if isinstance(action, BudgetAdjustment):
        return (
            relative_change_percent(action.current_budget, action.proposed_budget),
            Decimal(str(boundary.max_budget_change_percent)),
        )
    if isinstance(action, PlacementTilt):
        return (
            relative_change_percent(action.current_percent, action.proposed_percent),
            Decimal(str(boundary.max_placement_change_percent)),
        )
    if isinstance(action, Dayparting):
        return (
            relative_change_percent(action.current_multiplier, action.proposed_multiplier),
            Decimal(str(boundary.max_bid_change_percent)),
        )
    if isinstance(action, NegativeKeyword | Rollback):
        return None
    assert_never(action)


def action_values(action: ProposedAction) -> tuple[str | None, str | None]:
    """Before/after values as recorded on the ledger."""
    if isinstance(action, BidAdjustment):
        return str(action.current_bid), str(action.proposed_bid)
    if isinstance(action, BudgetAdjustment):
        return str(action.current_budget), str(action.proposed_budget)
    if isinstance(action, PlacementTilt):
        return str(action.current_percent), str(action.proposed_percent)
    if isinstance(action, Dayparting):
        return str(action.current_multiplier), str(action.proposed_multiplier)
    if isinstance(action, NegativeKeyword):
        return None, f"{action.match_type}:{action.keyword_text}"
    if isinstance(action, Rollback):
        return None, None
    assert_never(action)


@dataclass(frozen=True)
class ExecutionDetail:
    detail_id: str
    batch_id: str
    account_id: str
    action_type: ActionType
    entity: str
    before: str | None
    after: str | None
    status: ExecutionStatus
    reason: str
    confidence: float
    notify: bool
    created_at: datetime
    action_json: str


@dataclass(frozen=True)
class ExecutionBatch:
    batch_id: str
    account_id: str
    started_at: datetime
    completed_at: datetime | None
    total_items: int
    success_items: int
    failed_items: int
    skipped_items: int
    blocked_items: int
    pending_items: int
    details: tuple[ExecutionDetail, ...] = ()


@dataclass
class BatchTally:
    total_items: int = 0
    success_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    blocked_items: int = 0
    pending_items: int = 0

    def record(self, status: ExecutionStatus) -> None:
        self.total_items += 1
        if status is ExecutionStatus.APPLIED:
            self.success_items += 1
        elif status is ExecutionStatus.ERROR:
            self.failed_items += 1
        elif status is ExecutionStatus.SKIPPED:
            self.skipped_items += 1
        elif status is ExecutionStatus.BLOCKED:
            self.blocked_items += 1
        elif status is ExecutionStatus.PENDING_APPROVAL:
            self.pending_items += 1
        else:
            assert_never(status)


@dataclass(frozen=True)
class DailyExecutionStats:
    account_id: str
    day: date
    counts: dict[ActionType, int] = field(default_factory=dict)
    remaining: dict[str, int] = field(default_factory=dict)

    @property
    def total_adjustments(self) -> int:
        return sum(self.counts.values())

    @property
    def bid_adjustments(self) -> int:
        return self.counts.get(ActionType.BID_ADJUSTMENT, 0)

    @property
    def budget_adjustments(self) -> int:
        return self.counts.get(ActionType.BUDGET_ADJUSTMENT, 0)


@dataclass(frozen=True)
class PendingApproval:
    approval_id: str
    account_id: str
    batch_id: str
    action_type: ActionType
    entity: str
    confidence: float
    action_json: str
    state: ApprovalState
    created_at: datetime
    decided_at: datetime | None = None

    def action(self) -> ProposedAction:
        return PROPOSED_ACTIONS_ADAPTER.validate_json(f"[{self.action_json}]")[0]
