from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from adpilot.domain.automation import ActionType

logger = logging.getLogger(__name__)

Record = dict[str, Any]


@dataclass(frozen=True)
class MutationRequest:
    action_type: ActionType
    target_id: str
    value: str | None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MutationResult:
    target_id: str
    accepted: bool
    message: str | None = None


class AdsApiClient(ABC):
    """One method call is one rate-limited unit of work against the Ads API."""

    @abstractmethod
    def list_campaigns(self, profile_id: str) -> list[Record]:
        raise NotImplementedError

    @abstractmethod
    def list_keywords(self, profile_id: str) -> list[Record]:
        raise NotImplementedError

    @abstractmethod
    def list_entities(self, profile_id: str, *, ad_product: str, entity: str) -> list[Record]:
        raise NotImplementedError

    @abstractmethod
    def fetch_report(
        self,
        profile_id: str,
        *,
        ad_product: str,
        report_type: str,
        start_date: date,
        end_date: date,
    ) -> list[Record]:
        raise NotImplementedError

    @abstractmethod
    def apply_mutation(self, profile_id: str, request: MutationRequest) -> MutationResult:
        raise NotImplementedError

    def close(self) -> None:
        return None


class DryRunAdsApiClient(AdsApiClient):
    """Mutations are recorded and logged but never sent.

    Reads go to ``reader`` when one is given and return nothing otherwise.
    """

    def __init__(self, reader: AdsApiClient | None = None) -> None:
        self.mutations: list[tuple[str, MutationRequest]] = []
        self._reader = reader

    def list_campaigns(self, profile_id: str) -> list[Record]:
        if self._reader is not None:
            return self._reader.list_campaigns(profile_id)
        return []

    def list_keywords(self, profile_id: str) -> list[Record]:
        if self._reader is not None:
            return self._reader.list_keywords(profile_id)
        return []

    def list_entities(self, profile_id: str, *, ad_product: str, entity: str) -> list[Record]:
        if self._reader is not None:
            return self._reader.list_entities(profile_id, ad_product=ad_product, entity=entity)
        return []

    def fetch_report(
        self,
        profile_id: str,
        *,
        ad_product: str,
        report_type: str,
        start_date: date,
        end_date: date,
    ) -> list[Record]:
        if self._reader is not None:
            return self._reader.fetch_report(
                profile_id,
                ad_product=ad_product,
                report_type=report_type,
                start_date=start_date,
                end_date=end_date,
            )
        return []

    def apply_mutation(self, profile_id: str, request: MutationRequest) -> MutationResult:
        self.mutations.append((profile_id, request))
        logger.info(
            "dry_run_mutation",
            extra={
                "extra": {
                    "profile_id": profile_id,
                    "action_type": request.action_type.value,
                    "target_id": request.target_id,
                    "value": request.value,
                }
            },
        )
        return MutationResult(target_id=request.target_id, accepted=True, message="dry_run")

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
