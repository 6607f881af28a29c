"""Per-trading-day guardrail state and its JSON store."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable

from trade_autopilot.entry.breaker import BreakerTransition, evaluate_breaker_transition
from trade_autopilot.types import Outcome
from trade_autopilot.utils.logging import get_logger, log_guardrail_event


@dataclass(slots=True)
class FailureInfo:
    at: str
    run_id: str
    trade_id: str | None
    reason: str


@dataclass(slots=True)
class GuardrailState:
    """Guardrail counters for one ET trading day."""

    et_date: str
    entries_today: int = 0
    last_entry_at: str | None = None
    ticker_last_entry_at: dict[str, str] = field(default_factory=dict)
    consecutive_failures: int = 0
    auto_disabled_reason: str | None = None
    auto_disabled_at: str | None = None
    last_loss_at: str | None = None
    last_failure: FailureInfo | None = None

    @classmethod
    def from_dict(cls, et_date: str, raw: dict[str, Any]) -> "GuardrailState":
        failure = raw.get("last_failure")
        tickers = raw.get("ticker_last_entry_at")
        return cls(
            et_date=et_date,
            entries_today=max(0, int(raw.get("entries_today") or 0)),
            last_entry_at=raw.get("last_entry_at"),
            ticker_last_entry_at=dict(tickers) if isinstance(tickers, dict) else {},
            consecutive_failures=max(0, int(raw.get("consecutive_failures") or 0)),
            auto_disabled_reason=raw.get("auto_disabled_reason"),
            auto_disabled_at=raw.get("auto_disabled_at"),
            last_loss_at=raw.get("last_loss_at"),
            last_failure=FailureInfo(**failure) if isinstance(failure, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class GuardrailStore:
    """One JSON document per ET day; days older than the retention window are purged.

    Every mutation is a locked read-modify-write of the day's document.
    """

    def __init__(self, state_dir: Path, retention_days: int = 3) -> None:
        self._dir = state_dir / "guardrails"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._retention_days = max(1, retention_days)
        self._lock = threading.Lock()
        self._logger = get_logger("trade_autopilot.entry.guardrails")

    def load(self, et_date: str) -> GuardrailState:
        path = self._path(et_date)
        if not path.exists():
            return GuardrailState(et_date=et_date)
        raw = json.loads(path.read_text(encoding="utf-8") or "{}")
        return GuardrailState.from_dict(et_date, raw if isinstance(raw, dict) else {})

    def bump_entry(self, et_date: str, ticker: str, at: str) -> GuardrailState:
        def _apply(state: GuardrailState) -> None:
            state.entries_today += 1
            state.last_entry_at = at
            state.ticker_last_entry_at[ticker.upper()] = at

        return self._update(et_date, _apply)

    def record_failure(
        self,
        et_date: str,
        *,
        at: str,
        run_id: str,
        trade_id: str | None,
        reason: str,
    ) -> int:
        """Atomically increment the failure counter and return the new value."""

        def _apply(state: GuardrailState) -> None:
            state.consecutive_failures += 1
            state.last_failure = FailureInfo(at=at, run_id=run_id, trade_id=trade_id, reason=reason)

        return self._update(et_date, _apply).consecutive_failures

    def reset_failures(self, et_date: str) -> GuardrailState:
        def _apply(state: GuardrailState) -> None:
            state.consecutive_failures = 0

        return self._update(et_date, _apply)

    def set_auto_disabled(self, et_date: str, reason: str, at: str) -> GuardrailState:
        def _apply(state: GuardrailState) -> None:
            state.auto_disabled_reason = reason
            state.auto_disabled_at = at

        return self._update(et_date, _apply)

    def clear_auto_disabled(self, et_date: str) -> GuardrailState:
        def _apply(state: GuardrailState) -> None:
            state.auto_disabled_reason = None
            state.auto_disabled_at = None

        return self._update(et_date, _apply)

    def record_loss(self, et_date: str, at: str) -> GuardrailState:
        def _apply(state: GuardrailState) -> None:
            state.last_loss_at = at

        return self._update(et_date, _apply)

    def reset(
        self,
        et_date: str,
        *,
        failures: bool = False,
        entries: bool = False,
        auto_disabled: bool = False,
        loss: bool = False,
    ) -> GuardrailState:
        """Maintenance reset of selected parts of one day's state."""

        def _apply(state: GuardrailState) -> None:
            if failures:
                state.consecutive_failures = 0
                state.last_failure = None
            if entries:
                state.entries_today = 0
                state.last_entry_at = None
                state.ticker_last_entry_at = {}
            if auto_disabled:
                state.auto_disabled_reason = None
                state.auto_disabled_at = None
            if loss:
                state.last_loss_at = None

        state = self._update(et_date, _apply)
        log_guardrail_event(
            self._logger,
            event_type="reset",
            action="maintenance_reset",
            et_date=et_date,
            failures=failures,
            entries=entries,
            auto_disabled=auto_disabled,
            loss=loss,
        )
        return state

    def purge_expired(self, today: str) -> list[str]:
        """Delete day documents older than the retention window."""
        cutoff = date.fromisoformat(today) - timedelta(days=self._retention_days)
        removed: list[str] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                day = date.fromisoformat(path.stem)
            except ValueError:
                continue
            if day < cutoff:
                path.unlink(missing_ok=True)
                removed.append(path.stem)
        return removed

    def _update(self, et_date: str, apply: Callable[[GuardrailState], None]) -> GuardrailState:
        with self._lock:
            state = self.load(et_date)
            apply(state)
            self._write(state)
            return state

    def _write(self, state: GuardrailState) -> None:
        path = self._path(state.et_date)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(state.to_dict(), ensure_ascii=True, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def _path(self, et_date: str) -> Path:
        return self._dir / f"{date.fromisoformat(et_date).isoformat()}.json"


def apply_breaker(
    store: GuardrailStore,
    et_date: str,
    *,
    outcome: Outcome,
    reason: str,
    max_failures: int,
    run_id: str,
    trade_id: str | None,
    at: str,
) -> BreakerTransition:
    """Run the breaker transition against the stored counter and persist its effects."""
    if outcome == "FAIL":
        after = store.record_failure(
            et_date, at=at, run_id=run_id, trade_id=trade_id, reason=reason
        )
        transition = evaluate_breaker_transition(outcome, reason, after - 1, max_failures)
        if transition.should_disable:
            store.set_auto_disabled(
                et_date,
                f"consecutive_failures={transition.failures_after} last_reason={reason}",
                at,
            )
        return transition

    before = store.load(et_date).consecutive_failures
    transition = evaluate_breaker_transition(outcome, reason, before, max_failures)
    if transition.action == "reset":
        store.reset_failures(et_date)
    if transition.clear_disabled:
        store.clear_auto_disabled(et_date)
    return transition
