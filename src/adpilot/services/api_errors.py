from __future__ import annotations

from enum import StrEnum

import httpx

from adpilot.domain.sync import SyncErrorKind


class ApiErrorCategory(StrEnum):
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    AUTH = "auth"
    REJECT = "reject"
    FATAL = "fatal"

    @property
    def is_retryable(self) -> bool:
        return self in (ApiErrorCategory.RATE_LIMIT, ApiErrorCategory.TRANSIENT)


class AdsApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TransientSyncError(RuntimeError):
    """A sync attempt failed in a way that a later attempt may fix."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class FatalSyncError(RuntimeError):
    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


def classify_api_error(exc: Exception) -> ApiErrorCategory:
    if isinstance(exc, httpx.TimeoutException | httpx.NetworkError):
        return ApiErrorCategory.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        status: int | None = int(exc.response.status_code)
    elif isinstance(exc, AdsApiError):
        status = exc.status_code
    else:
        status = None

    if status == 429:
        return ApiErrorCategory.RATE_LIMIT
    if status in {401, 403}:
        return ApiErrorCategory.AUTH
    if status is not None and status >= 500:
        return ApiErrorCategory.TRANSIENT
    if status is not None and 400 <= status < 500:
        return ApiErrorCategory.REJECT
    if isinstance(exc, httpx.TransportError | TimeoutError | ConnectionError):
        return ApiErrorCategory.TRANSIENT
    return ApiErrorCategory.FATAL


def sync_error_kind(category: ApiErrorCategory) -> SyncErrorKind:
    return SyncErrorKind.TRANSIENT if category.is_retryable else SyncErrorKind.FATAL
