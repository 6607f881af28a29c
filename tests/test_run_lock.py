import json

import pytest

from trade_autopilot.locks import RunLock, RunLockError


def test_second_holder_is_rejected_until_release(tmp_path: object) -> None:
    first = RunLock(tmp_path, "auto-entry", 60)  # type: ignore[arg-type]
    second = RunLock(tmp_path, "auto-entry", 60)  # type: ignore[arg-type]

    assert first.acquire()
    assert not second.acquire()
    assert first.release()
    assert second.acquire()
    assert second.held


def test_expired_lock_is_taken_over(tmp_path: object) -> None:
    now = {"t": 1000.0}
    stale = RunLock(tmp_path, "auto-manage", 30, clock=lambda: now["t"])  # type: ignore[arg-type]
    assert stale.acquire()

    now["t"] += 31
    fresh = RunLock(tmp_path, "auto-manage", 30, clock=lambda: now["t"])  # type: ignore[arg-type]
    assert fresh.acquire()

    # The previous holder no longer owns the file and must not delete it.
    assert not stale.release()
    assert fresh.path.exists()
    assert fresh.release()
    assert not fresh.path.exists()


def test_unreadable_lock_falls_back_to_mtime(tmp_path: object) -> None:
    lock = RunLock(tmp_path, "auto-entry", 60)  # type: ignore[arg-type]
    lock.path.parent.mkdir(parents=True)
    lock.path.write_text("garbage")
    assert not lock.acquire()


def test_lock_file_records_owner_and_expiry(tmp_path: object) -> None:
    lock = RunLock(tmp_path, "auto-entry", 60, clock=lambda: 500.0)  # type: ignore[arg-type]
    with lock as acquired:
        assert acquired
        payload = json.loads(lock.path.read_text())
        assert payload["expires_at"] == 560.0
        assert payload["owner"]
    assert not lock.held


def test_io_error_raises_run_lock_error(tmp_path: object) -> None:
    blocker = tmp_path / "locks"  # type: ignore[operator]
    blocker.write_text("not a directory")
    with pytest.raises(RunLockError):
        RunLock(tmp_path, "auto-entry", 60).acquire()  # type: ignore[arg-type]
