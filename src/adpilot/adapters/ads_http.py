from __future__ import annotations

import gzip
import json
import logging
from collections.abc import Callable
from datetime import date
from time import sleep
from typing import Any

import httpx

from adpilot.adapters.ads_api import AdsApiClient, MutationRequest, MutationResult, Record
from adpilot.domain.automation import ActionType
from adpilot.observability import get_instrumentation
from adpilot.security.redaction import sanitize_text
from adpilot.services.api_errors import AdsApiError
from adpilot.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240
_REPORT_POLL_ATTEMPTS = 20
_REPORT_POLL_SECONDS = 5.0

_LIST_ENDPOINTS: dict[tuple[str, str], tuple[str, str, str]] = {
    ("SPONSORED_PRODUCTS", "campaigns"): ("/sp/campaigns/list", "application/vnd.spCampaign.v3+json", "campaigns"),
    ("SPONSORED_PRODUCTS", "ad_groups"): ("/sp/adGroups/list", "application/vnd.spAdGroup.v3+json", "adGroups"),
    ("SPONSORED_PRODUCTS", "targeting"): ("/sp/targets/list", "application/vnd.spTargetingClause.v3+json", "targetingClauses"),
    ("SPONSORED_BRANDS", "campaigns"): ("/sb/v4/campaigns/list", "application/vnd.sbcampaignresource.v4+json", "campaigns"),
    ("SPONSORED_BRANDS", "ad_groups"): ("/sb/v4/adGroups/list", "application/vnd.sbadgroupresource.v4+json", "adGroups"),
    ("SPONSORED_BRANDS", "targeting"): ("/sb/targets/list", "application/json", "targets"),
    ("SPONSORED_DISPLAY", "campaigns"): ("/sd/campaigns", "application/json", ""),
    ("SPONSORED_DISPLAY", "ad_groups"): ("/sd/adGroups", "application/json", ""),
    ("SPONSORED_DISPLAY", "targeting"): ("/sd/targets", "application/json", ""),
}


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


def _mutation_call(request: MutationRequest) -> tuple[str, str, dict[str, Any]]:
    """Map a mutation onto (path, content type, body)."""
    action = request.action_type
    if action is ActionType.BID_ADJUSTMENT:
        return (
            "/sp/keywords",
            "application/vnd.spKeyword.v3+json",
            {"keywords": [{"keywordId": request.target_id, "bid": float(request.value or 0)}]},
        )
    if action is ActionType.BUDGET_ADJUSTMENT:
        return (
            "/sp/campaigns",
            "application/vnd.spCampaign.v3+json",
            {
                "campaigns": [
                    {
                        "campaignId": request.target_id,
                        "budget": {"budget": float(request.value or 0), "budgetType": "DAILY"},
                    }
                ]
            },
        )
    if action is ActionType.PLACEMENT_TILT:
        placement = request.attributes.get("placement", "top_of_search").upper()
        return (
            "/sp/campaigns",
            "application/vnd.spCampaign.v3+json",
            {
                "campaigns": [
                    {
                        "campaignId": request.target_id,
                        "dynamicBidding": {
                            "placementBidding": [
                                {
                                    "placement": f"PLACEMENT_{placement}",
                                    "percentage": int(float(request.value or 0)),
                                }
                            ]
                        },
                    }
                ]
            },
        )
    if action is ActionType.NEGATIVE_KEYWORD:
        return (
            "/sp/negativeKeywords",
            "application/vnd.spNegativeKeyword.v3+json",
            {
                "negativeKeywords": [
                    {
                        "adGroupId": request.target_id,
                        "keywordText": request.attributes.get("keyword_text", ""),
                        "matchType": request.attributes.get("match_type", "negative_exact").upper(),
                        "state": "ENABLED",
                    }
                ]
            },
        )
    if action is ActionType.DAYPARTING:
        return (
            "/sp/campaigns",
            "application/vnd.spCampaign.v3+json",
            {
                "campaigns": [
                    {
                        "campaignId": request.target_id,
                        "tags": {
                            f"adpilot_daypart_{request.attributes.get('hour', '0')}": request.value or "1"
                        },
                    }
                ]
            },
        )
    raise ValueError(f"no Ads API mapping for {action}")


class HttpAdsApiClient(AdsApiClient):
    def __init__(
        self,
        *,
        base_url: str,
        client_id: str,
        access_token: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        report_limiter: SlidingWindowRateLimiter | None = None,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Amazon-Advertising-API-ClientId": client_id,
            },
        )
        # Pre-signed report URLs must not receive the API credentials.
        self._download_client = httpx.Client(timeout=timeout_seconds, transport=transport)
        self._access_token = access_token
        self._report_limiter = report_limiter
        self._sleep = sleep_fn

    def _request(
        self,
        method: str,
        path: str,
        *,
        profile_id: str,
        json_body: dict[str, Any] | None = None,
        content_type: str = "application/json",
    ) -> Any:
        headers = {"Amazon-Advertising-API-Scope": profile_id, "Content-Type": content_type}
        with get_instrumentation().timed("ads_api_request", attrs={"method": method, "path": path}):
            try:
                response = self._client.request(method, path, json=json_body, headers=headers)
            except httpx.HTTPError as exc:
                logger.warning(
                    "ads_api_transport_error",
                    extra={
                        "extra": {
                            "path": path,
                            "error": sanitize_text(str(exc), known_secrets=[self._access_token]),
                        }
                    },
                )
                raise
        if response.status_code >= 400:
            snippet = _response_snippet(response)
            logger.warning(
                "ads_api_http_error",
                extra={
                    "extra": {"path": path, "status_code": response.status_code, "body": snippet}
                },
            )
            raise AdsApiError(
                f"{method} {path} failed with {response.status_code}: {snippet}",
                status_code=response.status_code,
                retry_after=response.headers.get("Retry-After"),
            )
        if not response.content:
            return None
        return response.json()

    def _extra_request_slot(self) -> None:
        if self._report_limiter is not None:
            self._report_limiter.acquire()

    def list_campaigns(self, profile_id: str) -> list[Record]:
        payload = self._request(
            "POST",
            "/sp/campaigns/list",
            profile_id=profile_id,
            json_body={},
            content_type="application/vnd.spCampaign.v3+json",
        )
        return list((payload or {}).get("campaigns", []))

    def list_keywords(self, profile_id: str) -> list[Record]:
        payload = self._request(
            "POST",
            "/sp/keywords/list",
            profile_id=profile_id,
            json_body={},
            content_type="application/vnd.spKeyword.v3+json",
        )
        return list((payload or {}).get("keywords", []))

    def list_entities(self, profile_id: str, *, ad_product: str, entity: str) -> list[Record]:
        try:
            path, content_type, key = _LIST_ENDPOINTS[(ad_product, entity)]
        except KeyError as exc:
            raise AdsApiError(f"unsupported entity listing {ad_product}/{entity}") from exc
        if path.endswith("/list"):
            payload = self._request(
                "POST", path, profile_id=profile_id, json_body={}, content_type=content_type
            )
        else:
            payload = self._request("GET", path, profile_id=profile_id, content_type=content_type)
        if key:
            return list((payload or {}).get(key, []))
        return list(payload or [])

    def fetch_report(
        self,
        profile_id: str,
        *,
        ad_product: str,
        report_type: str,
        start_date: date,
        end_date: date,
    ) -> list[Record]:
        created = self._request(
            "POST",
            "/reporting/reports",
            profile_id=profile_id,
            json_body={
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat(),
                "configuration": {
                    "adProduct": ad_product,
                    "reportTypeId": report_type,
                    "timeUnit": "DAILY",
                    "format": "GZIP_JSON",
                },
            },
            content_type="application/vnd.createasyncreportrequest.v3+json",
        )
        report_id = str((created or {}).get("reportId", ""))
        if not report_id:
            raise AdsApiError("report creation returned no reportId")

        for _ in range(_REPORT_POLL_ATTEMPTS):
            self._extra_request_slot()
            status = self._request("GET", f"/reporting/reports/{report_id}", profile_id=profile_id)
            state = str((status or {}).get("status", "")).upper()
            if state == "COMPLETED":
                return self._download_report(str(status["url"]))
            if state == "FAILURE":
                raise AdsApiError(
                    f"report {report_id} failed: {(status or {}).get('failureReason')}"
                )
            self._sleep(_REPORT_POLL_SECONDS)
        raise AdsApiError(f"report {report_id} not ready after polling", status_code=503)

    def _download_report(self, url: str) -> list[Record]:
        self._extra_request_slot()
        response = self._download_client.get(url)
        if response.status_code >= 400:
            raise AdsApiError(
                f"report download failed with {response.status_code}",
                status_code=response.status_code,
            )
        raw = response.content
        if raw[:2] == b"\x1f\x8b":
            raw = gzip.decompress(raw)
        return list(json.loads(raw or b"[]"))

    def apply_mutation(self, profile_id: str, request: MutationRequest) -> MutationResult:
        path, content_type, body = _mutation_call(request)
        method = "POST" if request.action_type is ActionType.NEGATIVE_KEYWORD else "PUT"
        payload = self._request(
            method, path, profile_id=profile_id, json_body=body, content_type=content_type
        )
        message = None
        if isinstance(payload, dict):
            errors = payload.get("error") or []
            if errors:
                message = sanitize_text(json.dumps(errors)[:_ERROR_SNIPPET_LIMIT])
                return MutationResult(target_id=request.target_id, accepted=False, message=message)
        return MutationResult(target_id=request.target_id, accepted=True, message=message)

    def close(self) -> None:
        self._client.close()
        self._download_client.close()
