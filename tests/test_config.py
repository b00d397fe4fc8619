from __future__ import annotations

import pytest
from pydantic import ValidationError

from adpilot.config import Settings
from adpilot.services.rate_limiter import budget_from_settings


def test_defaults_are_safe() -> None:
    settings = Settings()

    assert settings.dry_run is True
    assert settings.is_live_api_enabled() is False
    assert settings.has_api_credentials() is False
    budget = budget_from_settings(settings)
    assert (budget.per_second, budget.per_minute, budget.per_hour) == (5, 100, 1000)
    assert budget.max_queue_depth == 100


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "20")
    monkeypatch.setenv("SCHEDULE_MAX_ATTEMPTS", "6")
    monkeypatch.setenv("MAX_BID_CHANGE_PERCENT", "15")

    settings = Settings()

    assert settings.rate_limit_per_minute == 20
    assert settings.schedule_max_attempts == 6
    assert settings.default_safety_boundary().max_bid_change_percent == 15.0


def test_live_api_needs_credentials_and_dry_run_off(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DRY_RUN", "false")
    assert Settings().is_live_api_enabled() is False

    monkeypatch.setenv("ADS_API_CLIENT_ID", "client")
    monkeypatch.setenv("ADS_API_ACCESS_TOKEN", "tok-live-7781")
    settings = Settings()

    assert settings.is_live_api_enabled() is True
    assert "tok-live-7781" not in repr(settings)


@pytest.mark.parametrize(
    ("env_name", "value"),
    [
        ("RATE_LIMIT_PER_SECOND", "0"),
        ("RATE_LIMIT_MAX_QUEUE_DEPTH", "-1"),
        ("SCHEDULE_RETRY_BASE_DELAY_MS", "-5"),
        ("OBSERVABILITY_METRICS_EXPORTER", "statsd"),
        ("AUTO_EXECUTE_CONFIDENCE", "120"),
    ],
)
def test_invalid_values_are_rejected(
    monkeypatch: pytest.MonkeyPatch, env_name: str, value: str
) -> None:
    monkeypatch.setenv(env_name, value)

    with pytest.raises(ValidationError):
        Settings()


def test_inconsistent_confidence_thresholds_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPERVISED_CONFIDENCE", "90")
    monkeypatch.setenv("AUTO_EXECUTE_CONFIDENCE", "80")

    with pytest.raises(ValidationError):
        Settings()


def test_metrics_exporter_is_normalized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OBSERVABILITY_METRICS_EXPORTER", " OTLP ")

    assert Settings().observability_metrics_exporter == "otlp"
