from __future__ import annotations

from datetime import date, datetime
from typing import Protocol

from adpilot.domain.automation import (
    ActionType,
    ApprovalState,
    AutomationConfig,
    ExecutionBatch,
    ExecutionDetail,
    PendingApproval,
)


class AutomationRepoProtocol(Protocol):
    def get_config(self, account_id: str) -> AutomationConfig | None: ...

    def save_config(self, config: AutomationConfig) -> None: ...

    def get_daily_counts(self, account_id: str, day: date) -> dict[ActionType, int]: ...

    def try_reserve_daily_slot(
        self,
        *,
        account_id: str,
        day: date,
        action_type: ActionType,
        type_cap: int | None,
        total_cap: int,
    ) -> str | None: ...

    def release_daily_slot(self, *, account_id: str, day: date, action_type: ActionType) -> None: ...

    def insert_pending(self, approval: PendingApproval) -> None: ...

    def get_pending(self, approval_id: str) -> PendingApproval | None: ...

    def list_pending(
        self, account_id: str, *, state: ApprovalState | None = ApprovalState.PENDING
    ) -> list[PendingApproval]: ...

    def decide_pending(
        self, approval_id: str, *, state: ApprovalState, decided_at: datetime
    ) -> bool: ...


class LedgerRepoProtocol(Protocol):
    def insert_detail(self, detail: ExecutionDetail) -> None: ...

    def insert_batch(self, batch: ExecutionBatch) -> None: ...

    def get_batch(self, batch_id: str) -> ExecutionBatch | None: ...

    def list_batches(
        self,
        account_id: str,
        *,
        limit: int = 20,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ExecutionBatch]: ...

    def list_details(self, batch_id: str) -> list[ExecutionDetail]: ...

    def get_detail(self, detail_id: str) -> ExecutionDetail | None: ...
