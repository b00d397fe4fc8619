from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO


class LockHeldError(RuntimeError):
    def __init__(self, message: str, *, lock_key: str, owner_pid: int | None) -> None:
        super().__init__(message)
        self.lock_key = lock_key
        self.owner_pid = owner_pid


@dataclass(frozen=True)
class ProcessLock:
    path: str
    handle: object
    pid: int


def _default_lock_dir() -> Path:
    if os.name == "nt":
        root = os.getenv("LOCALAPPDATA") or tempfile.gettempdir()
        return Path(root) / "adpilot" / "locks"
    return Path(tempfile.gettempdir()) / "adpilot-locks"


def get_lock_dir() -> Path:
    configured = os.getenv("ADPILOT_LOCK_DIR")
    lock_dir = Path(configured).expanduser() if configured else _default_lock_dir()
    lock_dir.mkdir(parents=True, exist_ok=True)
    if not lock_dir.is_dir():
        raise RuntimeError(f"lock directory is not a directory: {lock_dir}")
    return lock_dir.resolve()


def _lock_key(db_path: str, scope: str) -> str:
    return f"{Path(db_path).expanduser().resolve()}::{scope}"


def _lock_file_path(key: str) -> Path:
    digest = hashlib.sha256(key.encode()).hexdigest()[:16]
    return get_lock_dir() / f"adpilot-{digest}.lock"


def _read_owner_pid(pid_path: Path) -> int | None:
    try:
        text = pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


def _lock_fh(fh: BinaryIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt_mod: Any = msvcrt
        msvcrt_mod.locking(fh.fileno(), msvcrt_mod.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_fh(fh: BinaryIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt_mod: Any = msvcrt
        msvcrt_mod.locking(fh.fileno(), msvcrt_mod.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


@contextmanager
def single_instance_lock(*, db_path: str, scope: str = "daemon") -> Iterator[ProcessLock]:
    """Hold an exclusive OS file lock for ``scope`` on this state DB.

    Every acquisition opens its own file description, so the lock excludes
    other threads of this process as well as other processes. Intended for
    local filesystems.
    """
    key = _lock_key(db_path, scope)
    path = _lock_file_path(key)
    pid_path = path.with_suffix(".pid")
    fd = os.open(path, os.O_CREAT | os.O_RDWR)
    fh: BinaryIO = os.fdopen(fd, "r+b")
    pid = os.getpid()
    lock_acquired = False
    try:
        try:
            _lock_fh(fh)
            lock_acquired = True
        except OSError as exc:
            owner_pid = _read_owner_pid(pid_path)
            raise LockHeldError(
                f"LOCKED: scope={scope} db_path={db_path} lock_path={path} owner_pid={owner_pid}",
                lock_key=key,
                owner_pid=owner_pid,
            ) from exc
        pid_path.write_text(f"{pid}\n", encoding="utf-8")
        yield ProcessLock(path=str(path), handle=fh, pid=pid)
    finally:
        if lock_acquired:
            try:
                _unlock_fh(fh)
            except OSError:
                pass
            if _read_owner_pid(pid_path) == pid:
                pid_path.unlink(missing_ok=True)
        fh.close()
