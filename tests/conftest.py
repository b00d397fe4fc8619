from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest

from adpilot.adapters.ads_api import AdsApiClient, MutationRequest, MutationResult, Record
from adpilot.config import Settings
from adpilot.persistence.uow import UnitOfWorkFactory


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    request: pytest.FixtureRequest,
) -> None:
    del isolate_settings_from_host_env
    worker_id = os.getenv("PYTEST_XDIST_WORKER", "gw0")
    test_slug = request.node.nodeid.replace(os.sep, "_").replace("/", "_").replace("::", "_")
    db_name = f"{worker_id}-{test_slug}.sqlite"
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / db_name))
    lock_dir = tmp_path / "locks"
    lock_dir.mkdir(exist_ok=True)
    monkeypatch.setenv("ADPILOT_LOCK_DIR", str(lock_dir))


@pytest.fixture
def uow_factory(tmp_path: Path) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(str(tmp_path / "state.db"))


class FakeClock:
    """Wall clock (UTC datetimes) and monotonic clock moved together by ``sleep``."""

    def __init__(self, start: datetime) -> None:
        self.now = start
        self.mono = 0.0
        self.sleeps: list[float] = []

    def utcnow(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.mono += seconds
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 15, 17, 0, tzinfo=UTC))


class FakeAdsApi(AdsApiClient):
    """In-memory ads API; ``failures`` maps a call name to exceptions raised in order."""

    def __init__(self) -> None:
        self.campaigns: list[Record] = []
        self.keywords: list[Record] = []
        self.report_rows: list[Record] = []
        self.entities: list[Record] = []
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.mutations: list[tuple[str, MutationRequest]] = []
        self.reject_mutations = False

    def _maybe_fail(self, name: str) -> None:
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def list_campaigns(self, profile_id: str) -> list[Record]:
        self.calls.append(("list_campaigns", (profile_id,)))
        self._maybe_fail("list_campaigns")
        return list(self.campaigns)

    def list_keywords(self, profile_id: str) -> list[Record]:
        self.calls.append(("list_keywords", (profile_id,)))
        self._maybe_fail("list_keywords")
        return list(self.keywords)

    def list_entities(self, profile_id: str, *, ad_product: str, entity: str) -> list[Record]:
        self.calls.append(("list_entities", (profile_id, ad_product, entity)))
        self._maybe_fail("list_entities")
        return [dict(row) for row in self.entities]

    def fetch_report(
        self,
        profile_id: str,
        *,
        ad_product: str,
        report_type: str,
        start_date: date,
        end_date: date,
    ) -> list[Record]:
        self.calls.append(("fetch_report", (profile_id, ad_product, report_type, start_date, end_date)))
        self._maybe_fail("fetch_report")
        return [dict(row) for row in self.report_rows]

    def apply_mutation(self, profile_id: str, request: MutationRequest) -> MutationResult:
        self.calls.append(("apply_mutation", (profile_id, request)))
        self._maybe_fail("apply_mutation")
        self.mutations.append((profile_id, request))
        return MutationResult(
            target_id=request.target_id,
            accepted=not self.reject_mutations,
            message="rejected" if self.reject_mutations else "ok",
        )


@pytest.fixture
def fake_api() -> FakeAdsApi:
    return FakeAdsApi()


@pytest.fixture
def add_account(uow_factory: UnitOfWorkFactory, clock: FakeClock) -> Callable[..., None]:
    def _add(account_id: str = "acct-1", marketplace: str = "US") -> None:
        with uow_factory() as uow:
            uow.accounts.upsert_account(account_id, marketplace, now=clock.utcnow())

    return _add
