import pytest

from agent_teams import locks
from agent_teams.errors import LockError


def test_exclusive_lock_blocks_other_holders(tmp_path):
    path = tmp_path / "state" / ".lock"
    held = locks.acquire(path)
    try:
        assert locks.try_acquire(path) is None
        assert locks.try_acquire(path, exclusive=False) is None
    finally:
        held.release()

    again = locks.try_acquire(path)
    assert again is not None
    again.release()


def test_shared_locks_coexist(tmp_path):
    path = tmp_path / ".lock"
    first = locks.acquire(path, exclusive=False)
    second = locks.try_acquire(path, exclusive=False)
    try:
        assert second is not None
        assert locks.try_acquire(path, exclusive=True) is None
    finally:
        second.release()
        first.release()


def test_release_is_idempotent(tmp_path):
    lock = locks.acquire(tmp_path / ".lock")
    lock.release()
    lock.release()
    assert lock.released


def test_file_lock_released_when_body_raises(tmp_path):
    path = tmp_path / ".lock"
    with pytest.raises(RuntimeError):
        with locks.file_lock(path):
            raise RuntimeError("boom")

    probe = locks.try_acquire(path)
    assert probe is not None
    probe.release()


def test_lock_error_when_parent_is_a_file(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    with pytest.raises(LockError):
        locks.acquire(blocker / ".lock")
