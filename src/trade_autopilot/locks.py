"""File-based TTL run lock preventing overlapping runs."""

from __future__ import annotations

import json
import os
import time
import uuid
from pathlib import Path
from typing import Callable

from trade_autopilot.utils.logging import get_logger


class RunLockError(Exception):
    """Raised when the lock file cannot be created or inspected."""


class RunLock:
    """Exclusive-create lock file with an owner token and a bounded TTL.

    An expired lock is taken over; release only removes a lock this
    instance still owns.
    """

    def __init__(
        self,
        state_dir: Path,
        name: str,
        ttl_sec: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = state_dir / "locks" / f"{name}.lock"
        self._ttl_sec = ttl_sec
        self._clock = clock
        self._token = uuid.uuid4().hex
        self._held = False
        self._logger = get_logger("trade_autopilot.locks")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            for _ in range(2):
                if self._try_create():
                    self._held = True
                    return True
                if not self._expired():
                    return False
                self._logger.warning("run_lock_expired_takeover", lock=self._path.name)
                self._path.unlink(missing_ok=True)
        except OSError as exc:
            raise RunLockError(f"run_lock_io_error: {exc}") from exc
        return False

    def release(self) -> bool:
        if not self._held:
            return False
        self._held = False
        try:
            owner = self._read().get("owner")
            if owner != self._token:
                self._logger.warning("run_lock_release_not_owner", lock=self._path.name)
                return False
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            raise RunLockError(f"run_lock_io_error: {exc}") from exc
        return True

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def _try_create(self) -> bool:
        now = self._clock()
        payload = {"owner": self._token, "acquired_at": now, "expires_at": now + self._ttl_sec}
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(payload))
        return True

    def _expired(self) -> bool:
        raw = self._read()
        expires_at = raw.get("expires_at")
        if not isinstance(expires_at, (int, float)):
            try:
                expires_at = self._path.stat().st_mtime + self._ttl_sec
            except FileNotFoundError:
                return True
        return self._clock() >= float(expires_at)

    def _read(self) -> dict[str, object]:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            return {}
        return raw if isinstance(raw, dict) else {}
