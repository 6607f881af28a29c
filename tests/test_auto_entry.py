from __future__ import annotations

import itertools
import json
from datetime import timedelta

import httpx
from conftest import NOW, FakeBroker
from tenacity import wait_none

from trade_autopilot.ai.openrouter_client import OpenRouterRescorer, RescoreAPIError
from trade_autopilot.ai.schemas import ScoreResult
from trade_autopilot.broker.schemas import Order, Position, Quote
from trade_autopilot.config import RunMode, SelectionPolicy, Settings
from trade_autopilot.entry.guardrails import GuardrailStore
from trade_autopilot.entry.orchestrator import run_auto_entry
from trade_autopilot.journal.store import TelemetryJournal
from trade_autopilot.locks import RunLock
from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.store.trades import TradeStore
from trade_autopilot.types import AutoEntryResult

DAY = "2026-03-10"


class _FakeRescorer:
    def __init__(self, result: ScoreResult | None = None, error: Exception | None = None) -> None:
        self.result = result or ScoreResult(qualified=True, score=9.0, grade="A")
        self.error = error
        self.calls: list[str] = []

    def rescore(self, trade: TradeRecord) -> ScoreResult:
        self.calls.append(trade.id)
        if self.error is not None:
            raise self.error
        return self.result


def _run(
    settings: Settings,
    broker: FakeBroker,
    trade_store: TradeStore,
    guardrails: GuardrailStore,
    journal: TelemetryJournal,
    **kw: object,
) -> AutoEntryResult:
    kw.setdefault("token", "secret-token")
    kw.setdefault("dry_run", True)
    return run_auto_entry(
        settings,
        broker=broker,
        trade_store=trade_store,
        guardrails=guardrails,
        journal=journal,
        **kw,  # type: ignore[arg-type]
    )


def _actions(result: AutoEntryResult) -> dict[str, tuple[str, str]]:
    return {action.id: (action.decision, action.reason) for action in result.actions}


def test_duplicate_candidates_end_to_end(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([
        make_pending("AAPL", age_min=8, id="a8"),
        make_pending("AAPL", age_min=3, id="a3"),
        make_pending("MSFT", age_min=4, id="b4"),
    ])

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert result.ok
    assert result.status == "completed"
    assert result.pending_count == 3
    assert result.eligible_count == 2
    assert result.skips_by_reason == {"duplicate_ticker": 1}
    actions = _actions(result)
    assert actions["a3"] == ("WOULD_EXECUTE", "dry_run")
    assert actions["a8"] == ("SKIP", "duplicate_ticker")
    assert actions["b4"] == ("WOULD_EXECUTE", "dry_run")
    assert "create_order" not in broker.calls
    assert guardrails.load(DAY).entries_today == 0
    assert len(result.pending_sample) == 3


def test_dry_run_checks_open_orders_like_live(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    broker.open_orders["AAPL"] = [Order(id="x", type="limit", side="buy")]
    trade_store.write_trades([make_pending("AAPL", id="a")])

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert _actions(result)["a"] == ("SKIP", "open_order_exists")
    assert broker.calls.count("get_open_orders") == 1


def test_market_closed_dry_run_reports_would_execute(
    settings: Settings, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    closed = FakeBroker(is_open=False)
    trade_store.write_trades([make_pending("AAPL", id="a")])

    result = _run(settings, closed, trade_store, guardrails, journal)

    assert result.market is not None and result.market.is_open is False
    assert _actions(result)["a"] == ("WOULD_EXECUTE", "market_closed")
    assert result.skips_by_reason == {"market_closed": 1}


def test_market_closed_live_skip_is_not_a_failure(
    settings: Settings, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    closed = FakeBroker(is_open=False)
    trade_store.write_trades([make_pending("AAPL", id="a")])

    for _ in range(5):
        result = _run(settings, closed, trade_store, guardrails, journal, dry_run=False)
        assert _actions(result)["a"] == ("SKIP", "market_closed")

    state = guardrails.load(DAY)
    assert state.consecutive_failures == 0
    assert state.auto_disabled_reason is None
    assert closed.created == []
    assert trade_store.read_trades()[0].status == "AUTO_PENDING"


def test_stale_and_carryover_candidates(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([
        make_pending("AAPL", age_min=20, id="old"),
        make_pending("MSFT", age_min=1, id="yday", et_date="2026-03-09", session_tag="RTH"),
    ])

    result = _run(settings, broker, trade_store, guardrails, journal)

    actions = _actions(result)
    assert actions["old"] == ("SKIP", "stale_trade")
    assert actions["yday"] == ("SKIP", "carryover_session")
    assert result.eligible_count == 0


def test_stale_candidate_rescored_once(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([make_pending("AAPL", age_min=12, score=7.0, id="a")])
    rescorer = _FakeRescorer()

    first = _run(settings, broker, trade_store, guardrails, journal, rescorer=rescorer)

    assert rescorer.calls == ["a"]
    assert _actions(first)["a"] == ("WOULD_EXECUTE", "dry_run")
    stored = trade_store.read_trades()[0]
    assert stored.ai_score == 9.0
    assert stored.ai_grade == "A"
    assert stored.scored_at == NOW.isoformat()
    assert stored.rescore_attempted_at == NOW.isoformat()
    assert (stored.et_date, stored.session_tag) == (DAY, "RTH")

    _run(settings, broker, trade_store, guardrails, journal, rescorer=rescorer)
    assert rescorer.calls == ["a"]


def test_unusable_rescore_is_not_retried(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([
        make_pending("AAPL", age_min=12, id="a"),
        make_pending("MSFT", age_min=12, id="m"),
    ])
    rejected = _FakeRescorer(result=ScoreResult.rejected_default("model_response_not_json"))

    first = _run(settings, broker, trade_store, guardrails, journal, rescorer=rejected)
    assert _actions(first)["a"] == ("SKIP", "rescore_failed")

    failing = _FakeRescorer(error=RescoreAPIError("timeout"))
    second = _run(settings, broker, trade_store, guardrails, journal, rescorer=failing)

    assert sorted(rejected.calls) == ["a", "m"]
    assert failing.calls == []
    assert _actions(second) == {"a": ("SKIP", "rescore_failed"), "m": ("SKIP", "rescore_failed")}


def test_rescore_window_without_scorer_is_stale(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([make_pending("AAPL", age_min=12, id="a")])
    result = _run(settings, broker, trade_store, guardrails, journal)
    assert _actions(result)["a"] == ("SKIP", "stale_trade")


def test_portfolio_limits(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    broker.positions = [Position(symbol="AAPL", qty=5)]
    trade_store.write_trades([
        make_pending("AAPL", id="a"),
        make_pending("MSFT", id="m"),
        make_pending("NVDA", id="n"),
    ])
    settings.auto_entry_max_open = 2

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert result.open_positions == 2
    assert _actions(result) == {
        "a": ("SKIP", "position_already_open"),
        "m": ("WOULD_EXECUTE", "dry_run"),
        "n": ("SKIP", "max_open_positions"),
    }


def test_max_entries_per_day_counts_in_run(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    guardrails.bump_entry(DAY, "TSLA", (NOW - timedelta(hours=2)).isoformat())
    settings.auto_entry_max_per_day = 2
    trade_store.write_trades([make_pending("AAPL", id="a"), make_pending("MSFT", id="m")])

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert _actions(result) == {
        "a": ("WOULD_EXECUTE", "dry_run"),
        "m": ("SKIP", "max_entries_per_day"),
    }


def test_cooldowns(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    guardrails.bump_entry(DAY, "AAPL", (NOW - timedelta(minutes=10)).isoformat())
    trade_store.write_trades([make_pending("AAPL", id="a"), make_pending("MSFT", id="m")])

    result = _run(settings, broker, trade_store, guardrails, journal)
    assert _actions(result)["a"] == ("SKIP", "ticker_cooldown")
    assert _actions(result)["m"] == ("WOULD_EXECUTE", "dry_run")

    guardrails.record_loss(DAY, (NOW - timedelta(minutes=5)).isoformat())
    result = _run(settings, broker, trade_store, guardrails, journal)
    assert _actions(result)["m"] == ("SKIP", "cooldown_after_loss")


def test_tier_gate(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    settings.auto_entry_allowed_tiers = "A"
    trade_store.write_trades([
        make_pending("AAPL", score=9.0, id="a"),
        make_pending("MSFT", score=8.0, id="b"),
        make_pending("NVDA", score=5.0, id="low"),
    ])

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert _actions(result) == {
        "a": ("WOULD_EXECUTE", "dry_run"),
        "b": ("SKIP", "tier_not_allowed"),
        "low": ("SKIP", "tier_not_allowed"),
    }


def test_positions_lookup_failure_skips_candidates(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    broker.fail.add("get_positions")
    trade_store.write_trades([make_pending("AAPL", id="a")])

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert result.ok
    assert _actions(result)["a"] == ("SKIP", "positions_unavailable")


def test_price_through_stop_is_a_skip(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    broker.quotes["AAPL"] = Quote(last=97.0)
    trade_store.write_trades([make_pending("AAPL", id="a")])

    result = _run(settings, broker, trade_store, guardrails, journal, dry_run=False)

    assert _actions(result)["a"] == ("SKIP", "invalid_stop_vs_base_price")
    assert guardrails.load(DAY).consecutive_failures == 0


def test_live_execution_opens_trade(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    broker.quotes["AAPL"] = Quote(last=100.0)
    trade_store.write_trades([make_pending("AAPL", score=9.0, id="t1")])

    result = _run(settings, broker, trade_store, guardrails, journal, dry_run=False)

    assert result.actions[0].decision == "EXECUTED"
    assert result.actions[0].order_id == "ord-1"
    assert result.actions[0].qty == 100
    assert result.entries_today == 1

    request = broker.created[0]
    assert request.order_class == "bracket"
    assert request.client_order_id == "ae-t1"
    assert request.stop_loss is not None and request.stop_loss.stop_price == 98.0
    assert request.take_profit is not None and request.take_profit.limit_price == 104.0

    stored = trade_store.read_trades()[0]
    assert stored.status == "OPEN"
    assert stored.quantity == 100
    assert stored.broker_order_id == "ord-1"
    assert stored.stop_order_id == "ord-1-stop"
    assert stored.take_profit_order_id == "ord-1-tp"
    assert stored.initial_stop_price == 98.0
    assert stored.opened_at == NOW.isoformat()

    state = guardrails.load(DAY)
    assert state.entries_today == 1
    assert state.ticker_last_entry_at["AAPL"] == NOW.isoformat()


def test_open_trade_blocks_next_candidate(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object, make_open: object,
) -> None:
    trade_store.write_trades([make_open("AAPL"), make_pending("AAPL", id="again")])

    result = _run(settings, broker, trade_store, guardrails, journal, dry_run=False)

    assert _actions(result)["again"] == ("SKIP", "position_already_open")


def test_execution_failures_trip_breaker(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    settings.auto_entry_max_consecutive_failures = 1
    broker.fail.add("create_order")
    trade_store.write_trades([make_pending("AAPL", id="a"), make_pending("MSFT", id="m")])

    result = _run(settings, broker, trade_store, guardrails, journal, dry_run=False)

    assert result.ok
    assert _actions(result) == {
        "a": ("FAILED", "order_failed"),
        "m": ("SKIP", "auto_entry_disabled"),
    }
    state = guardrails.load(DAY)
    assert state.consecutive_failures == 1
    assert state.auto_disabled_reason == "consecutive_failures=1 last_reason=order_failed"
    assert trade_store.read_trades()[0].status == "ERROR"

    events = [event["event_type"] for event in journal.load_recent(20)]
    assert "auto_entry_disabled" in events

    broker.fail.clear()
    blocked = _run(settings, broker, trade_store, guardrails, journal, dry_run=False)
    assert blocked.status == "auto_disabled"
    assert blocked.actions == []
    assert broker.created == []


def test_success_resets_failure_counter(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    guardrails.record_failure(DAY, at="x", run_id="r0", trade_id=None, reason="order_failed")
    guardrails.record_failure(DAY, at="x", run_id="r0", trade_id=None, reason="order_failed")
    trade_store.write_trades([make_pending("AAPL", id="a")])

    _run(settings, broker, trade_store, guardrails, journal, dry_run=False)

    assert guardrails.load(DAY).consecutive_failures == 0


def test_deadline_reports_partial_progress(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    ticks = itertools.chain([0.0, 1.0], itertools.repeat(100.0))
    trade_store.write_trades([make_pending("AAPL", id="a"), make_pending("MSFT", id="m")])

    result = _run(settings, broker, trade_store, guardrails, journal, monotonic=lambda: next(ticks))

    assert result.status == "partial"
    assert result.partial
    assert _actions(result) == {
        "a": ("WOULD_EXECUTE", "dry_run"),
        "m": ("SKIP", "deadline_exceeded"),
    }


def test_token_and_config_short_circuits(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal,
) -> None:
    for token in ("wrong", None, ""):
        result = _run(settings, broker, trade_store, guardrails, journal, token=token)
        assert not result.ok
        assert result.status == "unauthorized"
        assert result.error == "unauthorized"

    settings.auto_entry_token = ""
    result = _run(settings, broker, trade_store, guardrails, journal)
    assert not result.ok
    assert result.status == "config_error"
    assert broker.calls == []


def test_disabled_and_paper_only(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal,
) -> None:
    settings.mode = RunMode.LIVE
    blocked = _run(settings, broker, trade_store, guardrails, journal)
    assert blocked.ok
    assert blocked.status == "paper_only_blocked"

    settings.auto_entry_enabled = False
    disabled = _run(settings, broker, trade_store, guardrails, journal)
    assert disabled.ok
    assert disabled.status == "disabled"
    assert broker.calls == []


def test_overlapping_run_is_locked_out(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([make_pending("AAPL", id="a")])
    with RunLock(settings.state_dir, "auto-entry", 120) as acquired:
        assert acquired
        result = _run(settings, broker, trade_store, guardrails, journal)

    assert result.status == "locked"
    assert result.actions == []
    again = _run(settings, broker, trade_store, guardrails, journal)
    assert again.status == "completed"


def test_run_is_journaled(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    trade_store.write_trades([make_pending("AAPL", id="a")])

    result = _run(settings, broker, trade_store, guardrails, journal)

    events = journal.load_recent(10)
    assert [e["event_type"] for e in events] == ["auto_entry", "auto_entry_run"]
    assert events[0]["payload"]["source"] == "dry_run"
    assert events[0]["payload"]["outcome"] == "SKIP"
    assert events[1]["payload"]["run_id"] == result.run_id


def test_malformed_candidate_row_does_not_abort_run(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    bad = {"id": "m", "ticker": "MSFT", "status": "AUTO_PENDING", "created_at": 1773154800000}
    trade_store.path.write_text(json.dumps([make_pending("AAPL", id="a").to_dict(), bad]))

    result = _run(settings, broker, trade_store, guardrails, journal)

    assert result.ok
    assert result.pending_count == 1
    assert _actions(result) == {"a": ("WOULD_EXECUTE", "dry_run")}


def test_rescorer_returning_html_degrades_to_rescore_failed(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object, monkeypatch: object,
) -> None:
    monkeypatch.setattr(OpenRouterRescorer._request_completion.retry, "wait", wait_none())
    settings.openrouter_api_key = "or-key"
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>bad gateway</html>"))
    trade_store.write_trades([make_pending("AAPL", age_min=12, id="a")])

    result = _run(
        settings, broker, trade_store, guardrails, journal,
        rescorer=OpenRouterRescorer(settings, transport=transport),
    )

    assert result.ok
    assert result.status == "completed"
    assert _actions(result)["a"] == ("SKIP", "rescore_failed")
    assert trade_store.read_trades()[0].rescore_attempted_at == NOW.isoformat()


def test_order_placement_ignores_newest_selection_setting(
    settings: Settings, broker: FakeBroker, trade_store: TradeStore,
    guardrails: GuardrailStore, journal: TelemetryJournal, make_pending: object,
) -> None:
    settings.auto_entry_selection_policy = SelectionPolicy.NEWEST
    trade_store.write_trades([
        make_pending("AAPL", age_min=6, id="older"),
        make_pending("AAPL", age_min=1, id="newer_bad", stop=105.0),
    ])

    result = _run(settings, broker, trade_store, guardrails, journal)

    actions = _actions(result)
    assert actions["older"] == ("WOULD_EXECUTE", "dry_run")
    assert actions["newer_bad"] == ("SKIP", "invalid_trade")
    sample = {row["id"]: row["canonical"] for row in result.pending_sample}
    assert sample == {"older": False, "newer_bad": True}
