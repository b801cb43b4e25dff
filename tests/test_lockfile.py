# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for per-project lock files — acquisition, staleness, cleanup."""
import os
import subprocess
import sys

import pytest

from reviewfix.errors import LockHeldError
from reviewfix.lockfile import (
    PENDING_GRACE_MS,
    acquire_lock,
    cleanup_stale_lockfile,
    create_lockfile,
    get_lock_path,
    has_active_lockfile,
    is_lock_stale,
    is_process_alive,
    list_all_active_sessions,
    read_lockfile,
    remove_all_lockfiles,
    remove_lockfile,
    touch_heartbeat,
    update_lockfile,
)

PROJECT = "/work/app"


@pytest.fixture
def dead_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class TestLockBasics:

    def test_path(self, tmp_path):
        assert get_lock_path(str(tmp_path), PROJECT) == str(tmp_path / "work-app.lock")

    def test_create_and_read(self, tmp_path):
        create_lockfile(str(tmp_path), PROJECT, "s1", branch="main", session_id="id1")
        lock = read_lockfile(str(tmp_path), PROJECT)
        assert lock.session_id == "id1"
        assert lock.status == "pending"
        assert lock.branch == "main"
        assert lock.pid == os.getpid()

    def test_blank_branch_defaults(self, tmp_path):
        lock = create_lockfile(str(tmp_path), PROJECT, "s1", branch="  ")
        assert lock.branch == "default"
        assert lock.session_id == "s1"

    def test_read_missing(self, tmp_path):
        assert read_lockfile(str(tmp_path), PROJECT) is None

    def test_read_corrupt(self, tmp_path):
        with open(get_lock_path(str(tmp_path), PROJECT), "w") as handle:
            handle.write("{not json")
        assert read_lockfile(str(tmp_path), PROJECT) is None

    def test_update_merges(self, tmp_path):
        create_lockfile(str(tmp_path), PROJECT, "s1", session_id="id1")
        assert update_lockfile(str(tmp_path), PROJECT, {"status": "running", "iteration": 2})
        lock = read_lockfile(str(tmp_path), PROJECT)
        assert lock.status == "running"
        assert lock.iteration == 2
        assert lock.session_name == "s1"

    def test_update_wrong_session_ignored(self, tmp_path):
        create_lockfile(str(tmp_path), PROJECT, "s1", session_id="id1")
        assert not update_lockfile(str(tmp_path), PROJECT, {"status": "running"}, expected_session_id="other")
        assert read_lockfile(str(tmp_path), PROJECT).status == "pending"

    def test_update_missing(self, tmp_path):
        assert update_lockfile(str(tmp_path), PROJECT, {"status": "running"}) is False

    def test_touch_heartbeat(self, tmp_path):
        lock = create_lockfile(str(tmp_path), PROJECT, "s1")
        assert touch_heartbeat(str(tmp_path), PROJECT)
        assert read_lockfile(str(tmp_path), PROJECT).last_heartbeat >= lock.last_heartbeat

    def test_remove_respects_owner(self, tmp_path):
        create_lockfile(str(tmp_path), PROJECT, "s1", session_id="id1")
        assert remove_lockfile(str(tmp_path), PROJECT, expected_session_id="other") is False
        assert remove_lockfile(str(tmp_path), PROJECT, expected_session_id="id1") is True
        assert remove_lockfile(str(tmp_path), PROJECT) is False


class TestStaleness:

    def test_current_process_alive(self):
        assert is_process_alive(os.getpid())
        assert not is_process_alive(0)

    def test_pending_within_grace(self, tmp_path):
        lock = create_lockfile(str(tmp_path), PROJECT, "s1")
        assert not is_lock_stale(lock, now_ms=lock.start_time + PENDING_GRACE_MS - 1)

    def test_pending_past_grace(self, tmp_path):
        lock = create_lockfile(str(tmp_path), PROJECT, "s1")
        assert is_lock_stale(lock, now_ms=lock.start_time + PENDING_GRACE_MS)

    def test_running_with_dead_pid(self, tmp_path, dead_pid):
        create_lockfile(str(tmp_path), PROJECT, "s1", pid=dead_pid)
        update_lockfile(str(tmp_path), PROJECT, {"status": "running"})
        lock = read_lockfile(str(tmp_path), PROJECT)
        assert is_lock_stale(lock)
        assert not has_active_lockfile(str(tmp_path), PROJECT)
        assert cleanup_stale_lockfile(str(tmp_path), PROJECT) is True
        assert read_lockfile(str(tmp_path), PROJECT) is None

    def test_running_with_live_pid(self, tmp_path):
        create_lockfile(str(tmp_path), PROJECT, "s1")
        update_lockfile(str(tmp_path), PROJECT, {"status": "running"})
        assert has_active_lockfile(str(tmp_path), PROJECT)
        assert cleanup_stale_lockfile(str(tmp_path), PROJECT) is False


class TestAcquire:

    def test_acquire_fresh(self, tmp_path):
        lock = acquire_lock(str(tmp_path), PROJECT, "s1", session_id="id1")
        assert read_lockfile(str(tmp_path), PROJECT).session_id == lock.session_id == "id1"

    def test_acquire_held(self, tmp_path):
        acquire_lock(str(tmp_path), PROJECT, "s1", session_id="id1")
        with pytest.raises(LockHeldError) as exc_info:
            acquire_lock(str(tmp_path), PROJECT, "s2", session_id="id2")
        assert exc_info.value.lock.session_id == "id1"

    def test_acquire_reclaims_stale(self, tmp_path, dead_pid):
        create_lockfile(str(tmp_path), PROJECT, "old", pid=dead_pid, session_id="old")
        update_lockfile(str(tmp_path), PROJECT, {"status": "running"})
        acquire_lock(str(tmp_path), PROJECT, "new", session_id="new")
        assert read_lockfile(str(tmp_path), PROJECT).session_id == "new"

    def test_acquire_reclaims_completed(self, tmp_path):
        create_lockfile(str(tmp_path), PROJECT, "old", session_id="old")
        update_lockfile(str(tmp_path), PROJECT, {"status": "completed"})
        acquire_lock(str(tmp_path), PROJECT, "new", session_id="new")
        assert read_lockfile(str(tmp_path), PROJECT).session_id == "new"


class TestCrossProject:

    def test_list_active_and_remove_all(self, tmp_path, dead_pid):
        create_lockfile(str(tmp_path), "/work/a", "a", session_id="a")
        update_lockfile(str(tmp_path), "/work/a", {"status": "running"})
        create_lockfile(str(tmp_path), "/work/b", "b", session_id="b", pid=dead_pid)
        update_lockfile(str(tmp_path), "/work/b", {"status": "running"})
        create_lockfile(str(tmp_path), "/work/c", "c", session_id="c")
        update_lockfile(str(tmp_path), "/work/c", {"status": "failed"})

        active = list_all_active_sessions(str(tmp_path))
        assert [s.session_id for s in active] == ["a"]
        assert active[0].lock_path.endswith("work-a.lock")
        assert remove_all_lockfiles(str(tmp_path)) == 3
        assert list_all_active_sessions(str(tmp_path)) == []

    def test_missing_logs_dir(self, tmp_path):
        assert list_all_active_sessions(str(tmp_path / "nope")) == []
        assert remove_all_lockfiles(str(tmp_path / "nope")) == 0
