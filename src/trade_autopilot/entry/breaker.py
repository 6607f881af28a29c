"""Consecutive-failure circuit breaker for auto-entry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from trade_autopilot.types import Outcome

BreakerAction = Literal["increment", "reset", "none"]


@dataclass(frozen=True, slots=True)
class BreakerTransition:
    outcome: Outcome
    reason: str
    failures_before: int
    failures_after: int
    action: BreakerAction
    should_disable: bool
    clear_disabled: bool


def evaluate_breaker_transition(
    outcome: Outcome,
    reason: str,
    failures_before: int,
    max_failures: int,
) -> BreakerTransition:
    """Pure transition of the failure counter.

    FAIL increments and asks to disable once the new count reaches the
    limit. SUCCESS resets to zero and clears the disabled flag. SKIP
    leaves everything unchanged whatever the reason.
    """
    limit = max(1, _as_count(max_failures))
    before = max(0, _as_count(failures_before))

    if outcome == "FAIL":
        after = before + 1
        return BreakerTransition(
            outcome=outcome,
            reason=reason,
            failures_before=before,
            failures_after=after,
            action="increment",
            should_disable=after >= limit,
            clear_disabled=False,
        )
    if outcome == "SUCCESS":
        return BreakerTransition(
            outcome=outcome,
            reason=reason,
            failures_before=before,
            failures_after=0,
            action="reset",
            should_disable=False,
            clear_disabled=True,
        )
    return BreakerTransition(
        outcome=outcome,
        reason=reason,
        failures_before=before,
        failures_after=before,
        action="none",
        should_disable=False,
        clear_disabled=False,
    )


def _as_count(value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        return 0
