"""Position risk math: unrealized R, stop tightening, cut-loss and open-trade selection."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from trade_autopilot.manage.grade_rules import (
    GradeRule,
    should_enable_trailing,
    should_move_to_break_even,
)
from trade_autopilot.session import parse_iso
from trade_autopilot.store.schemas import TradeRecord

LOCK_PROFIT_AT_R = 2.0
_EPSILON = 1e-9


@dataclass(slots=True)
class TighteningPlan:
    """Next protective stop and the steps that produced it."""

    stop: float
    steps: list[str] = field(default_factory=list)


def compute_unrealized_r(
    side: str,
    entry_price: float | None,
    stop_price: float | None,
    price: float | None,
) -> float | None:
    """Signed favorable move divided by risk-per-share; None when undefined."""
    if entry_price is None or stop_price is None or price is None:
        return None
    if not all(math.isfinite(v) and v > 0 for v in (entry_price, stop_price, price)):
        return None
    risk = abs(entry_price - stop_price)
    if risk <= 0:
        return None
    if side == "LONG":
        return (price - entry_price) / risk
    if side == "SHORT":
        return (entry_price - price) / risk
    return None


def more_protective(side: str, first: float, second: float) -> float:
    return max(first, second) if side == "LONG" else min(first, second)


def is_tightening(side: str, current: float | None, proposed: float | None) -> bool:
    """True when ``proposed`` is strictly more protective than ``current``."""
    if proposed is None or not math.isfinite(proposed) or proposed <= 0:
        return False
    if current is None:
        return True
    if side == "LONG":
        return proposed > current + _EPSILON
    if side == "SHORT":
        return proposed < current - _EPSILON
    return False


def compute_tightened_stop(
    *,
    side: str,
    entry_price: float,
    initial_stop: float,
    current_stop: float,
    price: float,
    r: float,
    rule: GradeRule,
    trail_enabled: bool,
    trail_pct: float,
) -> TighteningPlan:
    """Combine break-even, 1R lock and trailing targets; never loosens ``current_stop``."""
    risk = abs(entry_price - initial_stop)
    direction = 1.0 if side == "LONG" else -1.0
    plan = TighteningPlan(stop=current_stop)

    if should_move_to_break_even(rule, r):
        plan.stop = more_protective(side, plan.stop, entry_price)
        plan.steps.append("break_even")
    if r >= LOCK_PROFIT_AT_R:
        plan.stop = more_protective(side, plan.stop, entry_price + direction * risk)
        plan.steps.append("lock_1r")
    if trail_enabled and should_enable_trailing(rule, r):
        trail_stop = price * (1.0 - direction * trail_pct)
        plan.stop = more_protective(side, plan.stop, trail_stop)
        plan.steps.append("trailing")
    return plan


def decide_cut_loss(r: float | None, threshold_r: float, enabled: bool) -> bool:
    return enabled and r is not None and r <= threshold_r


def select_canonical_open_trades(
    trades: list[TradeRecord],
) -> tuple[list[TradeRecord], list[TradeRecord]]:
    """Pick one managed record per ticker; the rest are duplicates.

    Preference: auto-entry source, then valid entry/stop, then newest
    ``opened_at``, then input order.
    """
    groups: dict[str, list[tuple[int, TradeRecord]]] = {}
    for index, trade in enumerate(trades):
        groups.setdefault(trade.ticker, []).append((index, trade))

    canonical: list[tuple[int, TradeRecord]] = []
    duplicates: list[TradeRecord] = []
    for members in groups.values():
        ranked = sorted(members, key=_open_trade_rank)
        canonical.append(ranked[0])
        duplicates.extend(trade for _, trade in ranked[1:])

    canonical.sort(key=lambda item: item[0])
    return [trade for _, trade in canonical], duplicates


def _open_trade_rank(item: tuple[int, TradeRecord]) -> tuple[int, int, float, int]:
    index, trade = item
    is_auto = (trade.source or "").lower() == "auto-entry"
    has_prices = bool(trade.entry_price and trade.stop_price)
    opened = parse_iso(trade.opened_at or trade.created_at)
    opened_ts = opened.timestamp() if opened else float("-inf")
    return (0 if is_auto else 1, 0 if has_prices else 1, -opened_ts, index)
