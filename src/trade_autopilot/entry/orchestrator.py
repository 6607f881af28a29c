"""Auto-entry run: admission control over pending candidates."""

from __future__ import annotations

import hmac
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from trade_autopilot.ai.openrouter_client import RescoreError, Rescorer
from trade_autopilot.broker.base import BrokerClient, BrokerError
from trade_autopilot.broker.schemas import OrderRequest, StopLossSpec, TakeProfitSpec
from trade_autopilot.config import SelectionPolicy, Settings
from trade_autopilot.entry.eligibility import (
    CandidateVerdict,
    CanonicalSelection,
    EligibilityConfig,
    group_by_ticker,
    select_canonical,
)
from trade_autopilot.entry.guardrails import GuardrailState, GuardrailStore, apply_breaker
from trade_autopilot.entry.pricing import (
    Tier,
    compute_bracket,
    compute_quantity,
    resolve_decision_price,
    risk_multiplier,
    tier_for_grade,
    tier_for_score,
)
from trade_autopilot.journal.store import TelemetryJournal
from trade_autopilot.locks import RunLock, RunLockError
from trade_autopilot.session import derive_session, minutes_between, parse_iso, utc_now
from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.store.trades import TradeStore
from trade_autopilot.types import AutoEntryResult, EntryAction, EntryDecision, MarketState, Outcome
from trade_autopilot.utils.logging import get_logger, log_entry_decision, log_guardrail_event

_logger = get_logger("trade_autopilot.entry.orchestrator")

PENDING_SAMPLE_SIZE = 5

_OUTCOME_BY_DECISION: dict[EntryDecision, Outcome] = {
    "EXECUTED": "SUCCESS",
    "FAILED": "FAIL",
    "WOULD_EXECUTE": "SKIP",
    "SKIP": "SKIP",
}


@dataclass(slots=True)
class _RunContext:
    """Mutable per-run state shared by the candidate checks."""

    settings: Settings
    broker: BrokerClient
    guardrails: GuardrailStore
    journal: TelemetryJournal
    result: AutoEntryResult
    now: datetime
    et_date: str
    state: GuardrailState
    open_symbols: set[str]
    positions_error: str | None
    deadline: float
    monotonic: Callable[[], float]
    entered_tickers: dict[str, str] = field(default_factory=dict)
    disabled: bool = False
    store_dirty: bool = False


def run_auto_entry(
    settings: Settings,
    *,
    broker: BrokerClient,
    trade_store: TradeStore,
    guardrails: GuardrailStore,
    journal: TelemetryJournal,
    token: str | None,
    rescorer: Rescorer | None = None,
    dry_run: bool = False,
    run_lock: RunLock | None = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> AutoEntryResult:
    """Run one auto-entry pass and return a structured result.

    Token and configuration problems are hard failures (``ok=False``).
    Everything else, including broker trouble on individual candidates,
    yields a well-formed result with per-candidate decisions.
    """
    result = AutoEntryResult(
        ok=True,
        status="running",
        run_id=uuid.uuid4().hex[:12],
        dry_run=dry_run,
        started_at=utc_now().isoformat(),
    )

    expected = settings.auto_entry_token
    if not expected:
        return _fail(result, journal, status="config_error", error="auto_entry_token_not_configured")
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        return _fail(result, journal, status="unauthorized", error="unauthorized")

    if not settings.auto_entry_enabled:
        return _finish(result, journal, status="disabled")
    if settings.is_live_mode and settings.auto_entry_paper_only:
        return _finish(result, journal, status="paper_only_blocked")

    lock = run_lock or RunLock(settings.state_dir, "auto-entry", settings.run_lock_ttl_sec)
    try:
        if not lock.acquire():
            return _finish(result, journal, status="locked")
    except RunLockError as exc:
        return _fail(result, journal, status="lock_error", error=str(exc))

    try:
        return _run_locked(
            settings,
            result,
            broker=broker,
            trade_store=trade_store,
            guardrails=guardrails,
            journal=journal,
            rescorer=rescorer,
            monotonic=monotonic,
        )
    finally:
        lock.release()


def _run_locked(
    settings: Settings,
    result: AutoEntryResult,
    *,
    broker: BrokerClient,
    trade_store: TradeStore,
    guardrails: GuardrailStore,
    journal: TelemetryJournal,
    rescorer: Rescorer | None,
    monotonic: Callable[[], float],
) -> AutoEntryResult:
    deadline = monotonic() + settings.auto_entry_deadline_sec

    try:
        clock = broker.get_clock()
        result.market = MarketState(is_open=clock.is_open, timestamp=clock.timestamp)
    except BrokerError as exc:
        result.market = MarketState(is_open=False, error=str(exc))
    now = parse_iso(result.market.timestamp) or utc_now()
    et_date, _ = derive_session(now)

    state = guardrails.load(et_date)
    result.entries_today = state.entries_today
    if state.auto_disabled_reason:
        result.error = state.auto_disabled_reason
        return _finish(result, journal, status="auto_disabled")

    trades = trade_store.read_trades()
    pending = [trade for trade in trades if trade.is_pending]
    result.pending_count = len(pending)

    use_rescore = settings.auto_entry_rescore_enabled and rescorer is not None
    config = EligibilityConfig.from_settings(
        settings, now, market_is_open=result.market.is_open, rescore_enabled=use_rescore
    )
    # Order placement always works from the newest eligible candidate.
    policy = SelectionPolicy.NEWEST_ELIGIBLE
    selection = select_canonical(pending, now, config, policy)
    store_dirty = False
    if use_rescore and rescorer is not None:
        if _rescore_stale_groups(pending, selection, rescorer, now):
            store_dirty = True
            selection = select_canonical(pending, now, config, policy)
    result.eligible_count = selection.eligible_count
    sample_view = selection
    if settings.auto_entry_selection_policy is not policy:
        sample_view = select_canonical(pending, now, config, settings.auto_entry_selection_policy)
    result.pending_sample = [_sample(item) for item in sample_view.items[:PENDING_SAMPLE_SIZE]]

    open_symbols, positions_error = _open_symbols(broker, trades)
    result.open_positions = len(open_symbols)

    ctx = _RunContext(
        settings=settings,
        broker=broker,
        guardrails=guardrails,
        journal=journal,
        result=result,
        now=now,
        et_date=et_date,
        state=state,
        open_symbols=open_symbols,
        positions_error=positions_error,
        deadline=deadline,
        monotonic=monotonic,
        store_dirty=store_dirty,
    )

    for item in selection.items:
        if not item.canonical:
            _record(ctx, item.trade, "SKIP", item.reason)
            continue
        if ctx.disabled:
            _record(ctx, item.trade, "SKIP", "auto_entry_disabled")
            continue
        if monotonic() >= ctx.deadline:
            result.partial = True
            _record(ctx, item.trade, "SKIP", "deadline_exceeded")
            continue
        _decide_candidate(ctx, item)

    if ctx.store_dirty:
        trade_store.write_trades(trades)
    return _finish(result, journal, status="partial" if result.partial else "completed")


def _decide_candidate(ctx: _RunContext, item: CandidateVerdict) -> None:
    trade = item.trade
    settings = ctx.settings
    ticker = trade.ticker

    if not item.eligibility.eligible:
        _record(ctx, trade, "SKIP", item.eligibility.verdict)
        return
    if ctx.positions_error is not None:
        _record(ctx, trade, "SKIP", "positions_unavailable")
        return
    if ticker in ctx.open_symbols:
        _record(ctx, trade, "SKIP", "position_already_open")
        return
    if len(ctx.open_symbols) >= settings.auto_entry_max_open:
        _record(ctx, trade, "SKIP", "max_open_positions")
        return
    if ctx.result.entries_today >= settings.auto_entry_max_per_day:
        _record(ctx, trade, "SKIP", "max_entries_per_day")
        return
    cooldown = _cooldown_reason(ctx, ticker)
    if cooldown is not None:
        _record(ctx, trade, "SKIP", cooldown)
        return

    tier = _tier_for(trade, settings)
    if tier is None or tier not in settings.allowed_tiers:
        _record(ctx, trade, "SKIP", "tier_not_allowed")
        return

    try:
        open_orders = ctx.broker.get_open_orders(ticker)
    except BrokerError as exc:
        _logger.warning("open_orders_lookup_failed", ticker=ticker, error=str(exc))
        _record(ctx, trade, "SKIP", "open_orders_unavailable")
        return
    if open_orders:
        _record(ctx, trade, "SKIP", "open_order_exists")
        return

    market = ctx.result.market
    if market is None or not market.is_open:
        if ctx.result.dry_run:
            _count_entry(ctx, ticker)
            _record(ctx, trade, "WOULD_EXECUTE", "market_closed")
        else:
            _record(ctx, trade, "SKIP", "market_closed")
        return

    try:
        quote = ctx.broker.get_latest_quote(ticker)
    except BrokerError as exc:
        _logger.warning("quote_lookup_failed", ticker=ticker, error=str(exc))
        quote = None
    try:
        decision_price = resolve_decision_price(quote, trade.entry_price)
        bracket = compute_bracket(
            side=trade.side,
            decision_price=decision_price.price,
            stop_price=trade.stop_price or 0.0,
            take_profit_price=trade.take_profit_price,
            fallback_rr=settings.auto_entry_fallback_rr,
        )
    except ValueError as exc:
        _record(ctx, trade, "SKIP", str(exc))
        return

    risk_dollars = settings.auto_entry_base_risk_dollars * risk_multiplier(tier)
    qty = compute_quantity(risk_dollars, bracket.entry_price, bracket.stop_price)
    if qty <= 0:
        _record(ctx, trade, "SKIP", "quantity_zero")
        return

    if ctx.result.dry_run:
        _count_entry(ctx, ticker)
        _record(ctx, trade, "WOULD_EXECUTE", "dry_run", qty=qty)
        return

    _execute(ctx, trade, bracket.stop_price, bracket.take_profit_price, qty, tier)


def _execute(
    ctx: _RunContext,
    trade: TradeRecord,
    stop_price: float,
    take_profit_price: float,
    qty: int,
    tier: Tier,
) -> None:
    stamp = ctx.now.isoformat()
    client_order_id = f"ae-{trade.id}"[:48]
    try:
        order = ctx.broker.create_order(
            OrderRequest(
                symbol=trade.ticker,
                qty=qty,
                side="buy" if trade.side == "LONG" else "sell",
                type="market",
                time_in_force="day",
                order_class="bracket",
                take_profit=TakeProfitSpec(limit_price=take_profit_price),
                stop_loss=StopLossSpec(stop_price=stop_price),
                client_order_id=client_order_id,
            )
        )
    except (BrokerError, ValueError) as exc:
        trade.status = "ERROR"
        trade.error = str(exc)
        trade.updated_at = stamp
        ctx.store_dirty = True
        _record(ctx, trade, "FAILED", "order_failed")
        return

    stop_leg = order.stop_leg()
    take_profit_leg = order.take_profit_leg()
    trade.status = "OPEN"
    trade.quantity = qty
    trade.client_order_id = client_order_id
    trade.broker_order_id = order.id
    trade.stop_order_id = stop_leg.id if stop_leg else None
    trade.take_profit_order_id = take_profit_leg.id if take_profit_leg else None
    trade.stop_price = stop_price
    trade.initial_stop_price = stop_price
    trade.take_profit_price = take_profit_price
    trade.opened_at = stamp
    trade.updated_at = stamp
    trade.error = None
    ctx.store_dirty = True

    ctx.guardrails.bump_entry(ctx.et_date, trade.ticker, stamp)
    _count_entry(ctx, trade.ticker)
    _logger.info("auto_entry_executed", ticker=trade.ticker, tier=tier, qty=qty, order_id=order.id)
    _record(ctx, trade, "EXECUTED", "executed", qty=qty, order_id=order.id)


def _record(
    ctx: _RunContext,
    trade: TradeRecord,
    decision: EntryDecision,
    reason: str,
    *,
    qty: int | None = None,
    order_id: str | None = None,
) -> None:
    result = ctx.result
    action = EntryAction(
        id=trade.id,
        ticker=trade.ticker,
        side=trade.side,
        decision=decision,
        reason=reason,
        qty=qty,
        order_id=order_id,
    )
    result.actions.append(action)
    if decision == "SKIP" or reason == "market_closed":
        result.skips_by_reason[reason] = result.skips_by_reason.get(reason, 0) + 1
    log_entry_decision(
        _logger,
        trade_id=trade.id,
        ticker=trade.ticker,
        decision=decision,
        reason=reason,
        run_id=result.run_id,
    )

    outcome = _OUTCOME_BY_DECISION[decision]
    ctx.journal.record_auto_entry(
        outcome=outcome,
        reason=reason,
        ticker=trade.ticker or None,
        trade_id=trade.id or None,
        run_id=result.run_id,
        source="dry_run" if result.dry_run else "live",
    )
    if result.dry_run or outcome == "SKIP":
        return

    transition = apply_breaker(
        ctx.guardrails,
        ctx.et_date,
        outcome=outcome,
        reason=reason,
        max_failures=ctx.settings.auto_entry_max_consecutive_failures,
        run_id=result.run_id,
        trade_id=trade.id or None,
        at=ctx.now.isoformat(),
    )
    if transition.should_disable:
        ctx.disabled = True
        log_guardrail_event(
            _logger,
            event_type="auto_entry_disabled",
            action="disable",
            failures=transition.failures_after,
            reason=reason,
            run_id=result.run_id,
        )
        _logger.error("auto_entry_disabled", failures=transition.failures_after, run_id=result.run_id)
        ctx.journal.append(
            "auto_entry_disabled",
            {
                "run_id": result.run_id,
                "et_date": ctx.et_date,
                "failures": transition.failures_after,
                "reason": reason,
                "trade_id": trade.id,
            },
        )


def _count_entry(ctx: _RunContext, ticker: str) -> None:
    ctx.open_symbols.add(ticker)
    ctx.entered_tickers[ticker] = ctx.now.isoformat()
    ctx.result.entries_today += 1
    ctx.result.open_positions = len(ctx.open_symbols)


def _cooldown_reason(ctx: _RunContext, ticker: str) -> str | None:
    settings = ctx.settings
    last_loss = parse_iso(ctx.state.last_loss_at)
    if last_loss is not None and settings.auto_entry_cooldown_after_loss_min > 0:
        if minutes_between(last_loss, ctx.now) < settings.auto_entry_cooldown_after_loss_min:
            return "cooldown_after_loss"
    last_entry = parse_iso(
        ctx.entered_tickers.get(ticker) or ctx.state.ticker_last_entry_at.get(ticker)
    )
    if last_entry is not None and settings.auto_entry_ticker_cooldown_min > 0:
        if minutes_between(last_entry, ctx.now) < settings.auto_entry_ticker_cooldown_min:
            return "ticker_cooldown"
    return None


def _tier_for(trade: TradeRecord, settings: Settings) -> Tier | None:
    if trade.ai_score is not None:
        return tier_for_score(trade.ai_score, settings)
    return tier_for_grade(trade.ai_grade) or ("C" if trade.qualified else None)


def _open_symbols(broker: BrokerClient, trades: list[TradeRecord]) -> tuple[set[str], str | None]:
    """Tickers held at the broker plus locally OPEN records."""
    symbols = {trade.ticker for trade in trades if trade.is_open and trade.ticker}
    try:
        positions = broker.get_positions()
    except BrokerError as exc:
        _logger.warning("positions_lookup_failed", error=str(exc))
        return symbols, str(exc)
    symbols.update(p.symbol.upper() for p in positions if p.abs_qty > 0)
    return symbols, None


def _rescore_stale_groups(
    pending: list[TradeRecord],
    selection: CanonicalSelection,
    rescorer: Rescorer,
    now: datetime,
) -> bool:
    """Rescore the newest candidate of each ticker that has nothing eligible.

    At most one scorer call per ticker; the attempt is stamped on the
    candidate so a second run reports ``rescore_failed`` instead of looping.
    """
    verdicts = {item.index: item.eligibility.verdict for item in selection.items}
    changed = False
    for indexes in group_by_ticker(pending).values():
        if any(verdicts.get(i) == "eligible" for i in indexes):
            continue
        target = next((i for i in indexes if verdicts.get(i) == "rescore_required"), None)
        if target is None:
            continue
        trade = pending[target]
        stamp = now.isoformat()
        trade.rescore_attempted_at = stamp
        changed = True
        try:
            score = rescorer.rescore(trade)
        except RescoreError as exc:
            _logger.warning("rescore_failed", ticker=trade.ticker, trade_id=trade.id, error=str(exc))
            continue
        if not score.usable:
            _logger.info("rescore_not_qualified", ticker=trade.ticker, reasons=score.reasons)
            continue

        trade.ai_score = score.score if score.score is not None else trade.ai_score
        trade.ai_grade = score.grade or trade.ai_grade
        trade.qualified = True
        for attr in ("entry_price", "stop_price", "take_profit_price"):
            value = getattr(score, attr)
            if value is not None:
                setattr(trade, attr, value)
        trade.scored_at = stamp
        trade.et_date, trade.session_tag = derive_session(now)
        _logger.info("rescore_refreshed", ticker=trade.ticker, trade_id=trade.id, score=trade.ai_score)
    return changed


def _sample(item: CandidateVerdict) -> dict[str, object]:
    trade = item.trade
    age = item.eligibility.age_min
    return {
        "id": trade.id,
        "ticker": trade.ticker,
        "side": trade.side,
        "scored_at": trade.effective_scored_at,
        "age_min": round(age, 2) if age != float("inf") else None,
        "verdict": item.eligibility.verdict,
        "canonical": item.canonical,
    }


def _fail(result: AutoEntryResult, journal: TelemetryJournal, *, status: str, error: str) -> AutoEntryResult:
    result.ok = False
    result.error = error
    return _finish(result, journal, status=status)


def _finish(result: AutoEntryResult, journal: TelemetryJournal, *, status: str) -> AutoEntryResult:
    result.status = status
    result.finished_at = utc_now().isoformat()
    journal.append(
        "auto_entry_run",
        {
            "run_id": result.run_id,
            "status": status,
            "dry_run": result.dry_run,
            "pending_count": result.pending_count,
            "eligible_count": result.eligible_count,
            "skips_by_reason": dict(result.skips_by_reason),
            "decisions": len(result.actions),
            "partial": result.partial,
        },
    )
    return result
