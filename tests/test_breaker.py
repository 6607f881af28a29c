from __future__ import annotations

import pytest

from trade_autopilot.entry.breaker import evaluate_breaker_transition
from trade_autopilot.entry.guardrails import GuardrailStore, apply_breaker

DAY = "2026-03-10"
AT = "2026-03-10T15:00:00+00:00"


def test_skip_never_changes_counter() -> None:
    failures = 2
    for reason in ["market_closed", "stale_trade", "max_open_positions"] * 40:
        transition = evaluate_breaker_transition("SKIP", reason, failures, 3)
        assert transition.action == "none"
        assert not transition.should_disable
        assert not transition.clear_disabled
        failures = transition.failures_after
    assert failures == 2


def test_disables_exactly_on_nth_failure() -> None:
    failures = 0
    tripped_at = None
    for attempt in range(1, 6):
        transition = evaluate_breaker_transition("FAIL", "order_failed", failures, 3)
        assert transition.action == "increment"
        assert transition.failures_after == failures + 1
        failures = transition.failures_after
        if transition.should_disable and tripped_at is None:
            tripped_at = attempt
    assert tripped_at == 3


def test_success_resets_and_clears_disabled() -> None:
    transition = evaluate_breaker_transition("SUCCESS", "executed", 5, 3)
    assert transition.failures_before == 5
    assert transition.failures_after == 0
    assert transition.action == "reset"
    assert transition.clear_disabled


@pytest.mark.parametrize("garbage", [None, "abc", -4, float("nan")])
def test_garbage_counter_is_treated_as_zero(garbage: object) -> None:
    transition = evaluate_breaker_transition("FAIL", "order_failed", garbage, 3)  # type: ignore[arg-type]
    assert transition.failures_before == 0
    assert transition.failures_after == 1


def test_limit_is_at_least_one() -> None:
    transition = evaluate_breaker_transition("FAIL", "order_failed", 0, 0)
    assert transition.should_disable


def test_apply_breaker_persists_failures_and_disable(tmp_path: object) -> None:
    store = GuardrailStore(tmp_path)  # type: ignore[arg-type]
    for n in range(1, 3):
        transition = apply_breaker(
            store, DAY, outcome="FAIL", reason="order_failed",
            max_failures=2, run_id=f"run{n}", trade_id="t1", at=AT,
        )
    assert transition.should_disable
    state = store.load(DAY)
    assert state.consecutive_failures == 2
    assert state.auto_disabled_reason == "consecutive_failures=2 last_reason=order_failed"
    assert state.last_failure is not None
    assert state.last_failure.run_id == "run2"


def test_apply_breaker_skip_is_inert_and_success_clears(tmp_path: object) -> None:
    store = GuardrailStore(tmp_path)  # type: ignore[arg-type]
    apply_breaker(
        store, DAY, outcome="FAIL", reason="order_failed",
        max_failures=1, run_id="r", trade_id=None, at=AT,
    )
    apply_breaker(
        store, DAY, outcome="SKIP", reason="market_closed",
        max_failures=1, run_id="r", trade_id=None, at=AT,
    )
    state = store.load(DAY)
    assert state.consecutive_failures == 1
    assert state.auto_disabled_reason is not None

    apply_breaker(
        store, DAY, outcome="SUCCESS", reason="executed",
        max_failures=1, run_id="r", trade_id=None, at=AT,
    )
    state = store.load(DAY)
    assert state.consecutive_failures == 0
    assert state.auto_disabled_reason is None
