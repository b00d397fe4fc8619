from __future__ import annotations

import pytest

from adpilot import observability
from adpilot.config import Settings
from adpilot.observability import Instrumentation, NoopInstrumentation, configure_instrumentation
from adpilot.services.automation_governor import AutomationGovernor
from adpilot.services.execution_ledger import ExecutionLedger
from adpilot.services.rate_limiter import RateLimitBudget, SlidingWindowRateLimiter


class _FakeInstrumentation(Instrumentation):
    def __init__(self) -> None:
        self.counters: list[tuple[str, int, dict[str, object] | None]] = []
        self.histograms: list[tuple[str, dict[str, object] | None]] = []

    def counter(self, name: str, value: int = 1, *, attrs=None) -> None:  # type: ignore[no-untyped-def]
        self.counters.append((name, value, attrs))

    def histogram(self, name: str, value: float, *, attrs=None) -> None:  # type: ignore[no-untyped-def]
        assert value >= 0
        self.histograms.append((name, attrs))


@pytest.fixture
def fresh_instrumentation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(observability, "_CONFIGURED_ONCE", False)
    monkeypatch.setattr(observability, "_INSTRUMENTATION", NoopInstrumentation())


def test_timed_records_duration_histogram() -> None:
    fake = _FakeInstrumentation()

    with fake.timed("sync_step", attrs={"step": "campaigns"}):
        pass

    assert fake.histograms == [("sync_step_ms", {"step": "campaigns"})]


def test_timed_records_even_when_block_raises() -> None:
    fake = _FakeInstrumentation()

    with pytest.raises(RuntimeError):
        with fake.timed("ads_api_request"):
            raise RuntimeError("boom")

    assert [name for name, _ in fake.histograms] == ["ads_api_request_ms"]


def test_disabled_settings_install_noop(fresh_instrumentation) -> None:
    installed = configure_instrumentation(Settings())

    assert isinstance(installed, NoopInstrumentation)
    assert observability.get_instrumentation() is installed


def test_configuration_happens_once(fresh_instrumentation) -> None:
    first = configure_instrumentation(Settings())
    second = configure_instrumentation(Settings(OBSERVABILITY_ENABLED=True))

    assert second is first


def test_setup_failure_falls_back_to_noop(fresh_instrumentation, monkeypatch, caplog) -> None:
    def _broken(**kwargs):  # type: ignore[no-untyped-def]
        raise ImportError("opentelemetry is not installed")

    monkeypatch.setattr(observability, "OTelInstrumentation", _broken)

    installed = configure_instrumentation(Settings(OBSERVABILITY_ENABLED=True))

    assert isinstance(installed, NoopInstrumentation)
    assert "observability_setup_failed_falling_back_to_noop" in caplog.text


def test_emergency_stop_is_counted(monkeypatch, uow_factory, fake_api, clock, add_account) -> None:
    fake = _FakeInstrumentation()
    monkeypatch.setattr("adpilot.services.automation_governor.get_instrumentation", lambda: fake)
    add_account()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=10, per_minute=10, per_hour=10),
        clock=clock.monotonic,
        sleep_fn=clock.sleep,
    )
    governor = AutomationGovernor(
        uow_factory=uow_factory,
        api=fake_api,
        limiter=limiter,
        ledger=ExecutionLedger(uow_factory=uow_factory, now_fn=clock.utcnow),
        now_fn=clock.utcnow,
    )

    governor.emergency_stop("acct-1", "spend anomaly")

    assert fake.counters == [("automation_emergency_stops_total", 1, None)]
