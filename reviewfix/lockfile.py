# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Per-project lock files coordinating concurrent sessions.

One JSON file per project at ``<logs_dir>/<sanitized-project>.lock``.
Staleness is checked lazily on every read: a ``pending`` lock gets a short
grace window to reach ``running``; any other lock is stale once its owning
process is gone.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from reviewfix.config import LOGS_DIR
from reviewfix.errors import LockHeldError
from reviewfix.models import LockData
from reviewfix.models import now_ms as current_time_ms
from reviewfix.session_log import atomic_write_text, get_project_name

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
DEFAULT_BRANCH = "default"
PENDING_GRACE_MS = 30_000
ACTIVE_STATUSES = ("pending", "running")


class ActiveSession(LockData):
    """A live lock plus the file it was read from."""
    lock_path: str


def get_lock_path(logs_dir: Optional[str], project_path: str) -> str:
    return os.path.join(logs_dir or str(LOGS_DIR), get_project_name(project_path) + LOCK_SUFFIX)


def _load(lock_path: str) -> Optional[LockData]:
    try:
        with open(lock_path, "r", encoding="utf-8") as handle:
            return LockData.model_validate_json(handle.read())
    except FileNotFoundError:
        return None
    except ValidationError as e:
        logger.warning("Ignoring unreadable lock file %s: %s", lock_path, e.errors()[:1])
        return None


def _write(lock_path: str, lock: LockData) -> None:
    atomic_write_text(lock_path, lock.model_dump_json(indent=2))


def _write_exclusive(lock_path: str, lock: LockData) -> bool:
    """Publish *lock* only if no file exists yet. Returns False if one does."""
    directory = os.path.dirname(lock_path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".lock.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(lock.model_dump_json(indent=2))
        try:
            os.link(tmp_path, lock_path)
        except FileExistsError:
            return False
        return True
    finally:
        os.unlink(tmp_path)


def _build(
    project_path: str,
    session_name: str,
    branch: Optional[str],
    session_id: Optional[str],
    pid: Optional[int],
) -> LockData:
    now = current_time_ms()
    return LockData(
        session_id=session_id or session_name,
        session_name=session_name,
        start_time=now,
        last_heartbeat=now,
        pid=pid if pid is not None else os.getpid(),
        project_path=project_path,
        branch=(branch or "").strip() or DEFAULT_BRANCH,
        status="pending",
    )


# ── Basic operations ──────────────────────────────────────────


def create_lockfile(
    logs_dir: Optional[str],
    project_path: str,
    session_name: str,
    branch: Optional[str] = None,
    session_id: Optional[str] = None,
    pid: Optional[int] = None,
) -> LockData:
    """Write a fresh ``pending`` lock, replacing whatever was there."""
    lock = _build(project_path, session_name, branch, session_id, pid)
    _write(get_lock_path(logs_dir, project_path), lock)
    return lock


def read_lockfile(logs_dir: Optional[str], project_path: str) -> Optional[LockData]:
    return _load(get_lock_path(logs_dir, project_path))


def update_lockfile(
    logs_dir: Optional[str],
    project_path: str,
    updates: Dict[str, Any],
    expected_session_id: Optional[str] = None,
) -> bool:
    """Merge *updates* into the existing lock.

    A missing lock, or one owned by another session when
    ``expected_session_id`` is given, is left alone and False is returned.
    """
    lock_path = get_lock_path(logs_dir, project_path)
    existing = _load(lock_path)
    if existing is None:
        return False
    if expected_session_id is not None and existing.session_id != expected_session_id:
        logger.debug("Lock %s now belongs to %s, skipping update", lock_path, existing.session_id)
        return False
    merged = existing.model_dump()
    merged["last_heartbeat"] = current_time_ms()
    merged.update(updates)
    _write(lock_path, LockData.model_validate(merged))
    return True


def touch_heartbeat(
    logs_dir: Optional[str],
    project_path: str,
    expected_session_id: Optional[str] = None,
) -> bool:
    return update_lockfile(
        logs_dir, project_path,
        {"last_heartbeat": current_time_ms()},
        expected_session_id=expected_session_id,
    )


def remove_lockfile(
    logs_dir: Optional[str],
    project_path: str,
    expected_session_id: Optional[str] = None,
) -> bool:
    lock_path = get_lock_path(logs_dir, project_path)
    if expected_session_id is not None:
        existing = _load(lock_path)
        if existing is not None and existing.session_id != expected_session_id:
            return False
    try:
        os.unlink(lock_path)
    except FileNotFoundError:
        return False
    return True


# ── Staleness ─────────────────────────────────────────────────


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    except OSError:
        return False
    return True


def is_lock_stale(lock: LockData, now_ms: Optional[int] = None) -> bool:
    if lock.status == "pending":
        now = now_ms if now_ms is not None else current_time_ms()
        return now - lock.start_time >= PENDING_GRACE_MS
    return not is_process_alive(lock.pid)


def _is_active(lock: LockData) -> bool:
    return lock.status in ACTIVE_STATUSES and not is_lock_stale(lock)


def cleanup_stale_lockfile(logs_dir: Optional[str], project_path: str) -> bool:
    """Remove the project's lock if it is stale. Returns True if removed."""
    lock = read_lockfile(logs_dir, project_path)
    if lock is None or not is_lock_stale(lock):
        return False
    logger.info("Removing stale lock for %s (pid %d, %s)", project_path, lock.pid, lock.status)
    return remove_lockfile(logs_dir, project_path)


def has_active_lockfile(logs_dir: Optional[str], project_path: str) -> bool:
    lock = read_lockfile(logs_dir, project_path)
    return lock is not None and _is_active(lock)


def acquire_lock(
    logs_dir: Optional[str],
    project_path: str,
    session_name: str,
    branch: Optional[str] = None,
    session_id: Optional[str] = None,
) -> LockData:
    """Take the project lock for a new session.

    Stale and terminal locks are reclaimed.

    Raises:
        LockHeldError: A live session already owns the project.
    """
    lock_path = get_lock_path(logs_dir, project_path)
    lock = _build(project_path, session_name, branch, session_id, None)
    existing = _load(lock_path)
    if existing is not None:
        if _is_active(existing):
            raise LockHeldError(
                "Session '{}' (pid {}) is already {} for {}".format(
                    existing.session_name, existing.pid, existing.status, project_path,
                ),
                lock=existing,
            )
        logger.info("Reclaiming %s lock left by pid %d", existing.status, existing.pid)
        _write(lock_path, lock)
        return lock
    if not _write_exclusive(lock_path, lock):
        raise LockHeldError(
            "Another session acquired the lock for {} concurrently".format(project_path),
            lock=_load(lock_path),
        )
    return lock


# ── Cross-project ─────────────────────────────────────────────


def _lock_files(logs_dir: Optional[str]) -> List[Path]:
    root = Path(logs_dir or LOGS_DIR)
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.is_file() and p.name.endswith(LOCK_SUFFIX))


def list_all_active_sessions(logs_dir: Optional[str] = None) -> List[ActiveSession]:
    """Live sessions across all projects. Stale and finished locks are hidden."""
    sessions = []
    for path in _lock_files(logs_dir):
        lock = _load(str(path))
        if lock is None or not _is_active(lock):
            continue
        sessions.append(ActiveSession(lock_path=str(path), **lock.model_dump()))
    return sessions


def remove_all_lockfiles(logs_dir: Optional[str] = None) -> int:
    removed = 0
    for path in _lock_files(logs_dir):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        removed += 1
    return removed
