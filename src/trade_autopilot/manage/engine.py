"""Stop lifecycle manager: one pass over open positions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from trade_autopilot.broker.base import BrokerClient, BrokerError
from trade_autopilot.broker.schemas import OrderRequest
from trade_autopilot.config import Settings
from trade_autopilot.journal.store import TelemetryJournal
from trade_autopilot.locks import RunLock, RunLockError
from trade_autopilot.manage.grade_rules import get_grade_rule
from trade_autopilot.manage.risk import (
    compute_tightened_stop,
    compute_unrealized_r,
    decide_cut_loss,
    is_tightening,
    more_protective,
    select_canonical_open_trades,
)
from trade_autopilot.manage.stop_sync import (
    closing_side,
    rescue_stop,
    resolve_quantity,
    sync_stop_for_trade,
)
from trade_autopilot.manage.tick_size import validate_stop_directional
from trade_autopilot.session import parse_iso, utc_now
from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.store.trades import TradeStore
from trade_autopilot.types import MarketState, StopManagerResult
from trade_autopilot.utils.logging import get_logger

MAX_NOTES = 50

_logger = get_logger("trade_autopilot.manage.engine")


@dataclass(slots=True)
class _TradeOutcome:
    changed: bool = False
    acted: bool = False
    failed: bool = False
    updated: bool = False
    flattened: bool = False


def run_stop_manager(
    settings: Settings,
    *,
    broker: BrokerClient,
    trade_store: TradeStore,
    journal: TelemetryJournal,
    force: bool = False,
    run_lock: RunLock | None = None,
) -> StopManagerResult:
    """Run one stop-management pass.

    Per canonical open trade: rescue a missing stop, then tighten by grade
    and replace the broker stop when the result is strictly more
    protective. Per-trade failures are recorded and counted; they never
    abort the pass.
    """
    result = StopManagerResult(
        ok=True,
        status="running",
        run_id=uuid.uuid4().hex[:12],
        started_at=utc_now().isoformat(),
    )

    if not settings.auto_manage_enabled:
        return _finish(result, journal, status="disabled")

    lock = run_lock or RunLock(settings.state_dir, "auto-manage", settings.run_lock_ttl_sec)
    try:
        if not lock.acquire():
            return _finish(result, journal, status="locked")
    except RunLockError as exc:
        result.ok = False
        result.error = str(exc)
        return _finish(result, journal, status="lock_error")

    try:
        return _run_locked(settings, result, broker, trade_store, journal, force)
    finally:
        lock.release()


def _run_locked(
    settings: Settings,
    result: StopManagerResult,
    broker: BrokerClient,
    trade_store: TradeStore,
    journal: TelemetryJournal,
    force: bool,
) -> StopManagerResult:
    try:
        clock = broker.get_clock()
        result.market = MarketState(is_open=clock.is_open, timestamp=clock.timestamp)
    except BrokerError as exc:
        result.market = MarketState(is_open=False, error=str(exc))
    now = parse_iso(result.market.timestamp) or utc_now()

    trades = trade_store.read_trades()
    open_trades = [trade for trade in trades if trade.status == "OPEN"]
    canonical, duplicates = select_canonical_open_trades(open_trades)
    for duplicate in duplicates:
        _note(result, f"{duplicate.ticker}: duplicate_open_trade {duplicate.id} not managed")

    if not canonical:
        return _finish(result, journal, status="no_open_trades")
    if not result.market.is_open and not force:
        return _finish(result, journal, status="market_closed")

    batch = canonical[: settings.auto_manage_max_per_run]
    if len(canonical) > len(batch):
        _note(result, f"max_per_run reached: {len(canonical) - len(batch)} deferred")

    any_changed = False
    any_acted = False
    any_failed = False
    stamp = now.isoformat()
    for trade in batch:
        result.checked += 1
        outcome = _manage_trade(settings, broker, trade, result, stamp)
        any_changed = any_changed or outcome.changed
        any_acted = any_acted or outcome.acted
        any_failed = any_failed or outcome.failed
        if outcome.updated:
            result.updated += 1
        if outcome.flattened:
            result.flattened += 1

    if any_changed:
        trade_store.write_trades(trades)

    result.outcome = "FAIL" if any_failed else ("SUCCESS" if any_acted else "SKIP")
    _logger.info(
        "stop_manager_pass",
        run_id=result.run_id,
        checked=result.checked,
        updated=result.updated,
        flattened=result.flattened,
        outcome=result.outcome,
    )
    return _finish(result, journal, status="completed")


def _manage_trade(
    settings: Settings,
    broker: BrokerClient,
    trade: TradeRecord,
    result: StopManagerResult,
    stamp: str,
) -> _TradeOutcome:
    outcome = _TradeOutcome()
    ticker = trade.ticker
    side = trade.side
    if side not in ("LONG", "SHORT") or not trade.entry_price or not trade.stop_price:
        _note(result, f"{ticker}: invalid_open_trade")
        return outcome

    if trade.initial_stop_price is None:
        trade.initial_stop_price = trade.stop_price
    trade.manage.last_run_at = stamp
    outcome.changed = True

    if trade.close_order_id:
        _note(result, f"{ticker}: close_pending {trade.close_order_id}")
        return outcome

    if not trade.stop_order_id:
        result.rescue_attempted += 1
        rescue = rescue_stop(broker, trade)
        trade.manage.last_rescue_at = stamp
        trade.manage.last_rescue_status = rescue.status
        trade.manage.last_rescue_error = rescue.error
        if rescue.note:
            _note(result, f"{ticker}: {rescue.note}")
        if rescue.ok:
            result.rescue_ok += 1
            if rescue.order_id:
                outcome.acted = True
                _note(result, f"{ticker}: stop rescue {rescue.status} {rescue.order_id}")
        else:
            result.rescue_failed += 1
            outcome.failed = True
            _note(result, f"{ticker}: stop rescue failed: {rescue.error}")
        if rescue.status == "no_position":
            _note(result, f"{ticker}: no_broker_position")
            return outcome

    try:
        price = broker.get_latest_quote(ticker).price()
    except BrokerError as exc:
        _note(result, f"{ticker}: quote_unavailable: {exc}")
        return outcome
    if price is None:
        _note(result, f"{ticker}: quote_unavailable")
        return outcome

    r = compute_unrealized_r(side, trade.entry_price, trade.initial_stop_price, price)
    trade.last_price = price
    trade.unrealized_r = round(r, 4) if r is not None else None
    if r is None:
        _note(result, f"{ticker}: r_unavailable")
        return outcome

    if decide_cut_loss(r, settings.auto_manage_cut_loss_r, settings.auto_manage_cut_loss_enabled):
        _cut_loss(broker, trade, r, result, outcome, stamp)
        return outcome

    rule = get_grade_rule(trade.ai_grade)
    trade.manage.last_rule = rule.grade
    plan = compute_tightened_stop(
        side=side,
        entry_price=trade.entry_price,
        initial_stop=trade.initial_stop_price,
        current_stop=trade.stop_price,
        price=price,
        r=r,
        rule=rule,
        trail_enabled=settings.auto_manage_trail_enabled,
        trail_pct=settings.auto_manage_trail_pct,
    )
    restore = trade.manage.restore_stop_price
    if restore is not None:
        if not is_tightening(side, trade.stop_price, restore):
            trade.manage.restore_stop_price = None
        elif validate_stop_directional(side, price, restore).ok:
            plan.stop = more_protective(side, plan.stop, restore)
            plan.steps.append("restore")
        else:
            trade.manage.restore_stop_price = None
            _note(
                result,
                f"{ticker}: recorded stop {restore:g} is through price {price:g}, "
                f"keeping {trade.stop_price:g}",
            )
    if not is_tightening(side, trade.stop_price, plan.stop):
        return outcome

    result.sync_attempted += 1
    previous = trade.stop_price
    sync = sync_stop_for_trade(broker, trade, plan.stop, reference_price=price)
    trade.manage.last_sync_at = stamp
    trade.manage.last_sync_status = sync.status
    trade.manage.last_sync_error = sync.error
    trade.manage.last_sync_cancelled = list(sync.cancelled)
    if sync.note:
        _note(result, f"{ticker}: {sync.note}")
    if sync.ok and sync.status == "replaced":
        result.sync_ok += 1
        trade.manage.restore_stop_price = None
        outcome.updated = True
        outcome.acted = True
        _note(
            result,
            f"{ticker}: stop {previous:g}->{trade.stop_price:g} ({'+'.join(plan.steps)}, R={r:.2f})",
        )
    elif not sync.ok:
        result.sync_failed += 1
        outcome.failed = True
        _note(result, f"{ticker}: stop sync {sync.status}: {sync.error}")
    return outcome


def _cut_loss(
    broker: BrokerClient,
    trade: TradeRecord,
    r: float,
    result: StopManagerResult,
    outcome: _TradeOutcome,
    stamp: str,
) -> None:
    trade.manage.last_cut_loss_at = stamp
    try:
        qty = resolve_quantity(broker, trade)
        if qty <= 0:
            trade.manage.last_cut_loss_status = "no_quantity"
            _note(result, f"{trade.ticker}: cut_loss skipped, no quantity")
            return
        order = broker.create_order(
            OrderRequest(
                symbol=trade.ticker,
                qty=qty,
                side=closing_side(trade.side),  # type: ignore[arg-type]
                type="market",
                time_in_force="day",
            )
        )
    except (BrokerError, ValueError) as exc:
        trade.manage.last_cut_loss_status = "failed"
        trade.manage.last_cut_loss_error = str(exc)
        outcome.failed = True
        _note(result, f"{trade.ticker}: cut_loss failed: {exc}")
        return

    trade.close_order_id = order.id
    trade.close_reason = "cut_loss"
    trade.manage.last_cut_loss_status = "submitted"
    trade.manage.last_cut_loss_error = None
    outcome.flattened = True
    outcome.acted = True
    _note(result, f"{trade.ticker}: cut_loss at R={r:.2f} order {order.id}")


def _note(result: StopManagerResult, note: str) -> None:
    if len(result.notes) < MAX_NOTES:
        result.notes.append(note)


def _finish(
    result: StopManagerResult,
    journal: TelemetryJournal,
    *,
    status: str,
) -> StopManagerResult:
    result.status = status
    result.finished_at = utc_now().isoformat()
    journal.record_auto_manage(
        {
            "run_id": result.run_id,
            "status": status,
            "outcome": result.outcome,
            "checked": result.checked,
            "updated": result.updated,
            "flattened": result.flattened,
            "rescue_attempted": result.rescue_attempted,
            "rescue_ok": result.rescue_ok,
            "rescue_failed": result.rescue_failed,
            "sync_attempted": result.sync_attempted,
            "sync_ok": result.sync_ok,
            "sync_failed": result.sync_failed,
        }
    )
    return result
