from __future__ import annotations

import threading
from pathlib import Path

import pytest

from adpilot.services.process_lock import LockHeldError, get_lock_dir, single_instance_lock


def test_single_instance_lock_blocks_second_acquire(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")
    with single_instance_lock(db_path=db_path, scope="daemon"):
        with pytest.raises(LockHeldError, match="LOCKED:"):
            with single_instance_lock(db_path=db_path, scope="daemon"):
                pass


def test_single_instance_lock_reacquire_after_release(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")
    with single_instance_lock(db_path=db_path, scope="daemon"):
        pass

    with single_instance_lock(db_path=db_path, scope="daemon"):
        pass


def test_single_instance_lock_writes_and_removes_pid(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")
    with single_instance_lock(db_path=db_path) as lock:
        lock_path = Path(lock.path)
        assert lock_path.parent == get_lock_dir()
        pid_raw = lock_path.with_suffix(".pid").read_text(encoding="utf-8").strip()
        assert pid_raw == str(lock.pid)

    assert lock_path.exists()
    assert not lock_path.with_suffix(".pid").exists()


def test_single_instance_lock_removes_pid_on_exception(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")

    with pytest.raises(RuntimeError, match="boom"):
        with single_instance_lock(db_path=db_path) as lock:
            lock_path = Path(lock.path)
            raise RuntimeError("boom")

    assert not lock_path.with_suffix(".pid").exists()


def test_lock_path_depends_on_scope(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")

    with single_instance_lock(db_path=db_path, scope="automation-cycle:a") as first:
        first_path = first.path
        with single_instance_lock(db_path=db_path, scope="automation-cycle:b") as other:
            assert other.path != first_path

    with single_instance_lock(db_path=db_path, scope="automation-cycle:a") as again:
        assert again.path == first_path


def test_lock_error_reports_owner_pid(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")
    with single_instance_lock(db_path=db_path) as lock:
        with pytest.raises(LockHeldError) as excinfo:
            with single_instance_lock(db_path=db_path):
                pass

    assert excinfo.value.owner_pid == lock.pid
    assert f"owner_pid={lock.pid}" in str(excinfo.value)


def test_lock_excludes_other_threads(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state.db")
    outcome: dict[str, object] = {}

    def contender() -> None:
        try:
            with single_instance_lock(db_path=db_path, scope="automation-cycle:acct"):
                outcome["acquired"] = True
        except LockHeldError as exc:
            outcome["error"] = exc

    with single_instance_lock(db_path=db_path, scope="automation-cycle:acct"):
        thread = threading.Thread(target=contender)
        thread.start()
        thread.join(timeout=5)

    assert "acquired" not in outcome
    assert isinstance(outcome["error"], LockHeldError)
