"""Broker-side protective stop rescue and replacement."""

from __future__ import annotations

from dataclasses import dataclass, field

from trade_autopilot.broker.base import BrokerClient, BrokerError, BrokerNotFoundError
from trade_autopilot.broker.schemas import Order, OrderRequest
from trade_autopilot.manage.risk import is_tightening
from trade_autopilot.manage.tick_size import normalize_stop_price, quantize_stop_price
from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.utils.logging import get_logger, log_stop_event

_logger = get_logger("trade_autopilot.manage.stop_sync")

_CANCELLABLE_STATUSES = frozenset(
    {"new", "accepted", "held", "pending_new", "partially_filled", "accepted_for_bidding"}
)


@dataclass(slots=True)
class StopActionResult:
    """Outcome of one rescue or sync attempt."""

    ok: bool
    status: str
    order_id: str | None = None
    stop_price: float | None = None
    cancelled: list[str] = field(default_factory=list)
    error: str | None = None
    note: str | None = None


def closing_side(side: str) -> str:
    return "sell" if side == "LONG" else "buy"


def resolve_quantity(broker: BrokerClient, trade: TradeRecord) -> float:
    """Trade quantity, falling back to the live broker position."""
    if trade.quantity is not None and trade.quantity > 0:
        return abs(trade.quantity)
    return position_quantity(broker, trade.ticker)


def position_quantity(broker: BrokerClient, ticker: str) -> float:
    for position in broker.get_positions(ticker):
        if position.symbol.upper() == ticker.upper() and position.abs_qty > 0:
            return position.abs_qty
    return 0.0


def rescue_stop(broker: BrokerClient, trade: TradeRecord) -> StopActionResult:
    """Give an unprotected live position a standalone GTC stop.

    Strictly additive: never cancels. A trade that already records a stop
    order id costs no broker calls. An existing closing-side stop found
    among open orders is adopted instead of placing another; its real
    price is recorded, and when it is looser than the recorded stop the
    recorded level is kept in ``manage.restore_stop_price`` for the next
    priced pass to restore.
    """
    if trade.stop_order_id:
        return StopActionResult(ok=True, status="already_protected", order_id=trade.stop_order_id)
    if trade.stop_price is None or trade.side not in ("LONG", "SHORT"):
        return StopActionResult(ok=False, status="invalid_trade", error="missing_stop_or_side")

    quantized = quantize_stop_price(trade.side, trade.stop_price)
    if not quantized.ok or quantized.stop is None:
        return StopActionResult(ok=False, status="invalid_stop", error=quantized.reason)
    stop = quantized.stop
    note = None
    if abs(stop - trade.stop_price) > 1e-9:
        note = f"quantized {trade.stop_price:.6f}->{stop:.4f}"

    try:
        qty = position_quantity(broker, trade.ticker)
        if qty <= 0:
            return StopActionResult(ok=True, status="no_position")

        for order in broker.get_open_orders(trade.ticker):
            if order.is_stop and (order.side or "").lower() == closing_side(trade.side):
                return _adopt_stop(trade, order, stop)

        order = broker.create_order(
            OrderRequest(
                symbol=trade.ticker,
                qty=qty,
                side=closing_side(trade.side),  # type: ignore[arg-type]
                type="stop",
                time_in_force="gtc",
                stop_price=stop,
            )
        )
    except (BrokerError, ValueError) as exc:
        log_stop_event(_logger, ticker=trade.ticker, action="rescue", ok=False, error=str(exc))
        return StopActionResult(ok=False, status="failed", error=str(exc), note=note)

    trade.stop_order_id = order.id
    trade.stop_price = stop
    log_stop_event(_logger, ticker=trade.ticker, action="rescue", ok=True, order_id=order.id, qty=qty)
    return StopActionResult(ok=True, status="created", order_id=order.id, stop_price=stop, note=note)


def _adopt_stop(trade: TradeRecord, order: Order, recorded: float) -> StopActionResult:
    trade.stop_order_id = order.id
    note = None
    if order.stop_price is not None:
        if is_tightening(trade.side, order.stop_price, recorded):
            trade.manage.restore_stop_price = recorded
            note = f"adopted looser stop {order.stop_price:g} (recorded {recorded:g})"
        trade.stop_price = order.stop_price
    log_stop_event(
        _logger,
        ticker=trade.ticker,
        action="rescue_adopt",
        ok=True,
        order_id=order.id,
        stop_price=order.stop_price,
        restore_to=trade.manage.restore_stop_price,
    )
    return StopActionResult(
        ok=True, status="adopted", order_id=order.id, stop_price=order.stop_price, note=note
    )


def sync_stop_for_trade(
    broker: BrokerClient,
    trade: TradeRecord,
    new_stop: float,
    *,
    reference_price: float,
) -> StopActionResult:
    """Replace the broker-side stop with a strictly more protective one.

    Two phases: cancel the recorded stop and any open stop leg of the
    parent bracket, then create a GTC stop. When creation fails after a
    successful cancel the trade is left without a stop order id so the
    next rescue pass repairs it.
    """
    side = trade.side
    normalized = normalize_stop_price(side, reference_price, new_stop)
    if not normalized.ok or normalized.stop is None:
        return StopActionResult(ok=False, status="invalid_stop", error=normalized.reason)
    stop = normalized.stop
    if not is_tightening(side, trade.stop_price, stop):
        return StopActionResult(ok=True, status="not_tightening", stop_price=trade.stop_price)
    note = None
    if abs(stop - new_stop) > 1e-9:
        note = f"quantized {new_stop:.6f}->{stop:.4f}"

    try:
        qty = resolve_quantity(broker, trade)
        if qty <= 0:
            return StopActionResult(ok=False, status="no_quantity", error="quantity_unresolved")
        targets = _stop_orders_to_cancel(broker, trade)
    except BrokerError as exc:
        return StopActionResult(ok=False, status="lookup_failed", error=str(exc))

    cancelled: list[str] = []
    for order_id in targets:
        try:
            broker.cancel_order(order_id)
        except BrokerError as exc:
            if trade.stop_order_id in cancelled:
                trade.stop_order_id = None
            log_stop_event(_logger, ticker=trade.ticker, action="cancel", ok=False, error=str(exc))
            return StopActionResult(
                ok=False, status="cancel_failed", cancelled=cancelled, error=str(exc), note=note
            )
        cancelled.append(order_id)

    try:
        order = broker.create_order(
            OrderRequest(
                symbol=trade.ticker,
                qty=qty,
                side=closing_side(side),  # type: ignore[arg-type]
                type="stop",
                time_in_force="gtc",
                stop_price=stop,
            )
        )
    except (BrokerError, ValueError) as exc:
        trade.stop_order_id = None
        log_stop_event(
            _logger,
            ticker=trade.ticker,
            action="replace",
            ok=False,
            error=str(exc),
            cancelled=cancelled,
            stop_missing=True,
        )
        return StopActionResult(
            ok=False, status="create_failed", cancelled=cancelled, error=str(exc), note=note
        )

    trade.stop_order_id = order.id
    trade.stop_price = stop
    log_stop_event(
        _logger, ticker=trade.ticker, action="replace", ok=True, order_id=order.id, stop_price=stop
    )
    return StopActionResult(
        ok=True, status="replaced", order_id=order.id, stop_price=stop, cancelled=cancelled, note=note
    )


def _stop_orders_to_cancel(broker: BrokerClient, trade: TradeRecord) -> list[str]:
    targets: list[str] = []
    if trade.stop_order_id:
        targets.append(trade.stop_order_id)
    if trade.broker_order_id:
        try:
            parent = broker.get_order(trade.broker_order_id)
        except BrokerNotFoundError:
            parent = None
        if parent is not None:
            leg = _open_stop_leg(parent)
            if leg is not None and leg.id not in targets:
                targets.append(leg.id)
    return targets


def _open_stop_leg(parent: Order) -> Order | None:
    leg = parent.stop_leg()
    if leg is None:
        return None
    if leg.status and leg.status.lower() not in _CANCELLABLE_STATUSES:
        return None
    return leg
