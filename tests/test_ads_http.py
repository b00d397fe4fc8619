from __future__ import annotations

import gzip
import json
from datetime import date

import httpx
import pytest

from adpilot.adapters.ads_api import DryRunAdsApiClient, MutationRequest
from adpilot.adapters.ads_http import HttpAdsApiClient
from adpilot.domain.automation import ActionType
from adpilot.services.api_errors import AdsApiError, ApiErrorCategory, classify_api_error

BASE_URL = "https://ads.example"


def _client(handler, **kwargs) -> HttpAdsApiClient:
    return HttpAdsApiClient(
        base_url=BASE_URL,
        client_id="client-1",
        access_token="secret-token-value",
        transport=httpx.MockTransport(handler),
        sleep_fn=lambda _s: None,
        **kwargs,
    )


def test_list_campaigns_sends_scope_and_auth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"campaigns": [{"campaignId": "c1"}]})

    client = _client(handler)
    try:
        campaigns = client.list_campaigns("profile-9")
    finally:
        client.close()

    assert campaigns == [{"campaignId": "c1"}]
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/sp/campaigns/list"
    assert request.headers["Amazon-Advertising-API-Scope"] == "profile-9"
    assert request.headers["Amazon-Advertising-API-ClientId"] == "client-1"
    assert request.headers["Authorization"] == "Bearer secret-token-value"


def test_http_errors_carry_status_and_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "3"}, text="slow down")

    client = _client(handler)
    with pytest.raises(AdsApiError) as excinfo:
        client.list_keywords("profile-9")

    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == "3"
    assert classify_api_error(excinfo.value) is ApiErrorCategory.RATE_LIMIT


def test_list_entities_uses_get_for_display_endpoints() -> None:
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json=[{"adGroupId": "g1"}])

    client = _client(handler)
    rows = client.list_entities("p", ad_product="SPONSORED_DISPLAY", entity="ad_groups")

    assert rows == [{"adGroupId": "g1"}]
    assert seen == [("GET", "/sd/adGroups")]
    with pytest.raises(AdsApiError):
        client.list_entities("p", ad_product="SPONSORED_DISPLAY", entity="budgets")


def test_fetch_report_polls_then_downloads_without_credentials() -> None:
    rows = [{"campaignId": "c1", "clicks": 4}]
    polls = {"count": 0}
    download_headers: list[httpx.Headers] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "reports.example":
            download_headers.append(request.headers)
            return httpx.Response(200, content=gzip.compress(json.dumps(rows).encode()))
        if request.method == "POST" and request.url.path == "/reporting/reports":
            body = json.loads(request.content)
            assert body["startDate"] == "2024-03-13"
            assert body["configuration"]["reportTypeId"] == "spCampaigns"
            return httpx.Response(200, json={"reportId": "r1"})
        assert request.url.path == "/reporting/reports/r1"
        polls["count"] += 1
        if polls["count"] < 2:
            return httpx.Response(200, json={"status": "PENDING"})
        return httpx.Response(
            200, json={"status": "COMPLETED", "url": "https://reports.example/r1.json.gz"}
        )

    client = _client(handler)
    result = client.fetch_report(
        "p",
        ad_product="SPONSORED_PRODUCTS",
        report_type="spCampaigns",
        start_date=date(2024, 3, 13),
        end_date=date(2024, 3, 15),
    )

    assert result == rows
    assert polls["count"] == 2
    assert "Authorization" not in download_headers[0]


def test_failed_report_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"reportId": "r2"})
        return httpx.Response(200, json={"status": "FAILURE", "failureReason": "bad dates"})

    client = _client(handler)
    with pytest.raises(AdsApiError, match="bad dates"):
        client.fetch_report(
            "p",
            ad_product="SPONSORED_PRODUCTS",
            report_type="spCampaigns",
            start_date=date(2024, 3, 1),
            end_date=date(2024, 3, 2),
        )


def test_bid_mutation_is_a_keyword_put() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(207, json={"keywords": {"success": [{"keywordId": "k1"}]}})

    client = _client(handler)
    result = client.apply_mutation(
        "p", MutationRequest(ActionType.BID_ADJUSTMENT, "k1", "1.25")
    )

    assert result.accepted is True
    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/sp/keywords"
    assert json.loads(seen[0].content) == {"keywords": [{"keywordId": "k1", "bid": 1.25}]}


def test_mutation_errors_in_body_are_rejections() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(207, json={"error": [{"index": 0, "code": "INVALID_ARGUMENT"}]})

    client = _client(handler)
    result = client.apply_mutation(
        "p",
        MutationRequest(
            ActionType.NEGATIVE_KEYWORD,
            "g1",
            "negative_exact:free",
            {"keyword_text": "free", "match_type": "negative_exact"},
        ),
    )

    assert result.accepted is False
    assert "INVALID_ARGUMENT" in (result.message or "")


def test_transport_errors_propagate_for_classification() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(httpx.ConnectError) as excinfo:
        client.list_campaigns("p")

    assert classify_api_error(excinfo.value) is ApiErrorCategory.TRANSIENT


@pytest.mark.parametrize(
    ("status", "category"),
    [
        (401, ApiErrorCategory.AUTH),
        (403, ApiErrorCategory.AUTH),
        (400, ApiErrorCategory.REJECT),
        (500, ApiErrorCategory.TRANSIENT),
        (None, ApiErrorCategory.FATAL),
    ],
)
def test_classify_api_error_by_status(status, category) -> None:
    assert classify_api_error(AdsApiError("x", status_code=status)) is category


def test_report_polling_takes_extra_limiter_slots() -> None:
    class CountingLimiter:
        def __init__(self) -> None:
            self.acquired = 0

        def acquire(self, cost: int = 1, *, max_wait_seconds=None) -> float:
            self.acquired += cost
            return 0.0

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "reports.example":
            return httpx.Response(200, content=b"[]")
        if request.method == "POST":
            return httpx.Response(200, json={"reportId": "r3"})
        return httpx.Response(
            200, json={"status": "COMPLETED", "url": "https://reports.example/r3.json"}
        )

    limiter = CountingLimiter()
    client = _client(handler, report_limiter=limiter)
    client.fetch_report(
        "p",
        ad_product="SPONSORED_BRANDS",
        report_type="sbCampaigns",
        start_date=date(2024, 3, 1),
        end_date=date(2024, 3, 2),
    )

    # one poll plus one download; report creation is paid for by the caller
    assert limiter.acquired == 2


def test_dry_run_client_records_mutations_and_delegates_reads(fake_api) -> None:
    fake_api.campaigns = [{"campaignId": "c1"}]
    client = DryRunAdsApiClient(reader=fake_api)

    result = client.apply_mutation("p", MutationRequest(ActionType.BUDGET_ADJUSTMENT, "c1", "60"))

    assert result.accepted is True
    assert result.message == "dry_run"
    assert client.mutations == [("p", MutationRequest(ActionType.BUDGET_ADJUSTMENT, "c1", "60"))]
    assert fake_api.mutations == []
    assert client.list_campaigns("p") == [{"campaignId": "c1"}]
    assert DryRunAdsApiClient().list_keywords("p") == []
