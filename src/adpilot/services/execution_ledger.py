from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from adpilot.domain.automation import (
    ActionType,
    BatchTally,
    ExecutionBatch,
    ExecutionDetail,
    ExecutionStatus,
)
from adpilot.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BatchClosedError(RuntimeError):
    pass


@dataclass
class OpenBatch:
    batch_id: str
    account_id: str
    started_at: datetime
    tally: BatchTally = field(default_factory=BatchTally)
    details: list[ExecutionDetail] = field(default_factory=list)
    closed: bool = False


class ExecutionLedger:
    """Append-only audit of automation batches.

    Details are written as they happen; the batch summary row is written once,
    when the batch closes. Nothing here updates or deletes a ledger row.
    """

    def __init__(
        self, *, uow_factory: UnitOfWorkFactory, now_fn: Callable[[], datetime] = _utcnow
    ) -> None:
        self._uow_factory = uow_factory
        self._now = now_fn

    def open_batch(self, account_id: str) -> OpenBatch:
        return OpenBatch(batch_id=uuid.uuid4().hex, account_id=account_id, started_at=self._now())

    def append_detail(
        self,
        batch: OpenBatch,
        *,
        action_type: ActionType,
        entity: str,
        status: ExecutionStatus,
        reason: str,
        confidence: float,
        action_json: str,
        before: str | None = None,
        after: str | None = None,
        notify: bool = False,
    ) -> ExecutionDetail:
        if batch.closed:
            raise BatchClosedError(f"batch {batch.batch_id} is closed")
        detail = ExecutionDetail(
            detail_id=uuid.uuid4().hex,
            batch_id=batch.batch_id,
            account_id=batch.account_id,
            action_type=action_type,
            entity=entity,
            before=before,
            after=after,
            status=status,
            reason=reason,
            confidence=confidence,
            notify=notify,
            created_at=self._now(),
            action_json=action_json,
        )
        with self._uow_factory() as uow:
            uow.ledger.insert_detail(detail)
        batch.tally.record(status)
        batch.details.append(detail)
        return detail

    def close_batch(self, batch: OpenBatch) -> ExecutionBatch:
        if batch.closed:
            raise BatchClosedError(f"batch {batch.batch_id} is already closed")
        tally = batch.tally
        summary = ExecutionBatch(
            batch_id=batch.batch_id,
            account_id=batch.account_id,
            started_at=batch.started_at,
            completed_at=self._now(),
            total_items=tally.total_items,
            success_items=tally.success_items,
            failed_items=tally.failed_items,
            skipped_items=tally.skipped_items,
            blocked_items=tally.blocked_items,
            pending_items=tally.pending_items,
            details=tuple(batch.details),
        )
        with self._uow_factory() as uow:
            uow.ledger.insert_batch(summary)
        batch.closed = True
        logger.info(
            "execution_batch_closed",
            extra={
                "extra": {
                    "batch_id": summary.batch_id,
                    "account_id": summary.account_id,
                    "total": summary.total_items,
                    "applied": summary.success_items,
                    "failed": summary.failed_items,
                    "skipped": summary.skipped_items,
                    "blocked": summary.blocked_items,
                    "pending": summary.pending_items,
                }
            },
        )
        return summary

    def get_batches(
        self,
        account_id: str,
        *,
        limit: int = 20,
        start: datetime | None = None,
        end: datetime | None = None,
        with_details: bool = False,
    ) -> list[ExecutionBatch]:
        with self._uow_factory.reader() as uow:
            batches = uow.ledger.list_batches(account_id, limit=limit, start=start, end=end)
            if not with_details:
                return batches
            return [
                replace(batch, details=tuple(uow.ledger.list_details(batch.batch_id)))
                for batch in batches
            ]

    def get_details(self, batch_id: str) -> list[ExecutionDetail]:
        with self._uow_factory.reader() as uow:
            return uow.ledger.list_details(batch_id)

    def get_detail(self, detail_id: str) -> ExecutionDetail | None:
        with self._uow_factory.reader() as uow:
            return uow.ledger.get_detail(detail_id)
