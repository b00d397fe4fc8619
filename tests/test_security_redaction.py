from __future__ import annotations

import json
import logging

from adpilot.logging_context import with_logging_context
from adpilot.logging_utils import JsonFormatter
from adpilot.security.redaction import sanitize_mapping, sanitize_text

FAKE_TOKEN = "Atza|test_ABCDEFGHIJKLMNOP"
FAKE_SECRET = "SK_test_ABCDEFGHIJ"


def _record(msg: str, *args: object, extra: dict | None = None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="adpilot.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )
    if extra is not None:
        record.extra = extra
    return record


def test_sanitize_mapping_redacts_sensitive_keys() -> None:
    payload = {
        "ADS_API_ACCESS_TOKEN": FAKE_TOKEN,
        "nested": {"authorization": f"Bearer {FAKE_SECRET}", "safe": 1},
    }

    sanitized = sanitize_mapping(payload)

    assert sanitized["ADS_API_ACCESS_TOKEN"] != FAKE_TOKEN
    assert sanitized["nested"]["authorization"] != f"Bearer {FAKE_SECRET}"
    assert sanitized["nested"]["safe"] == 1


def test_sanitize_text_redacts_known_secrets_headers_and_query() -> None:
    text = (
        f"Authorization: Bearer {FAKE_SECRET} raw={FAKE_TOKEN} "
        "https://x.example/r?access_token=abcdefghijkl"
    )

    sanitized = sanitize_text(text, known_secrets=[FAKE_TOKEN])

    assert FAKE_TOKEN not in sanitized
    assert FAKE_SECRET not in sanitized
    assert "abcdefghijkl" not in sanitized
    assert "Authorization: Bearer [REDACTED]" in sanitized


def test_json_formatter_redacts_sensitive_log_content() -> None:
    output = JsonFormatter().format(_record("Authorization: Bearer %s", FAKE_SECRET))

    assert FAKE_SECRET not in output
    assert "[REDACTED]" in output


def test_json_formatter_merges_extra_and_context() -> None:
    record = _record("sync_job_completed", extra={"records": 4, "access_token": FAKE_TOKEN})

    with with_logging_context(account_id="acct-1", job_id="job-9"):
        payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "sync_job_completed"
    assert payload["records"] == 4
    assert payload["account_id"] == "acct-1"
    assert payload["job_id"] == "job-9"
    assert payload["access_token"] != FAKE_TOKEN


def test_logging_context_is_restored() -> None:
    formatter = JsonFormatter()
    with with_logging_context(schedule_id="s-1"):
        with with_logging_context(schedule_id="s-2"):
            inner = json.loads(formatter.format(_record("x")))
        outer = json.loads(formatter.format(_record("x")))
    after = json.loads(formatter.format(_record("x")))

    assert inner["schedule_id"] == "s-2"
    assert outer["schedule_id"] == "s-1"
    assert "schedule_id" not in after
