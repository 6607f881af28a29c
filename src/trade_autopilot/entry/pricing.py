"""Tiering, sizing and bracket pricing for auto-entry orders."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

from trade_autopilot.broker.schemas import Quote
from trade_autopilot.config import Settings
from trade_autopilot.manage.tick_size import normalize_limit_price, normalize_stop_price

Tier = Literal["A", "B", "C"]
PriceSource = Literal["QUOTE_LAST", "QUOTE_MID", "SEED"]

RISK_MULTIPLIERS: dict[Tier, float] = {"A": 2.0, "B": 1.5, "C": 1.0}


@dataclass(frozen=True, slots=True)
class DecisionPrice:
    price: float
    source: PriceSource


@dataclass(frozen=True, slots=True)
class Bracket:
    entry_price: float
    stop_price: float
    take_profit_price: float

    @property
    def risk_per_share(self) -> float:
        return abs(self.entry_price - self.stop_price)


def tier_for_score(score: float | None, settings: Settings) -> Tier | None:
    if score is None or not math.isfinite(score):
        return None
    if score >= settings.auto_entry_tier_a_min:
        return "A"
    if score >= settings.auto_entry_tier_b_min:
        return "B"
    if score >= settings.auto_entry_tier_c_min:
        return "C"
    return None


def tier_for_grade(grade: str | None) -> Tier | None:
    letter = (grade or "").strip().upper()[:1]
    if letter == "A":
        return "A"
    if letter == "B":
        return "B"
    if letter == "C":
        return "C"
    return None


def risk_multiplier(tier: Tier) -> float:
    return RISK_MULTIPLIERS[tier]


def compute_quantity(risk_dollars: float, entry_price: float, stop_price: float) -> int:
    """Whole shares risking ``risk_dollars`` between entry and stop (at least one)."""
    per_share = abs(entry_price - stop_price)
    if risk_dollars <= 0 or per_share <= 0 or not math.isfinite(per_share):
        return 0
    return max(1, math.floor(risk_dollars / per_share))


def resolve_decision_price(quote: Quote | None, seed_price: float | None) -> DecisionPrice:
    """Price to act on: last trade, then bid/ask mid, then the candidate's own entry."""
    if quote is not None:
        if quote.last is not None:
            return DecisionPrice(quote.last, "QUOTE_LAST")
        if quote.mid is not None:
            return DecisionPrice(round(quote.mid, 2), "QUOTE_MID")
    if seed_price is not None and math.isfinite(seed_price) and seed_price > 0:
        return DecisionPrice(seed_price, "SEED")
    raise ValueError("no_decision_price")


def compute_bracket(
    *,
    side: str,
    decision_price: float,
    stop_price: float,
    take_profit_price: float | None,
    fallback_rr: float,
) -> Bracket:
    """Bracket around the decision price keeping the candidate's protective stop.

    Raises ``ValueError("invalid_stop_vs_base_price")`` when the market has
    already moved through the candidate's stop.
    """
    entry = normalize_limit_price(decision_price)
    stop = normalize_stop_price(side, entry, stop_price)
    if not stop.ok or stop.stop is None:
        raise ValueError("invalid_stop_vs_base_price")

    distance = abs(entry - stop.stop)
    direction = 1.0 if side == "LONG" else -1.0
    target = take_profit_price
    if target is None or (target - entry) * direction <= 0:
        target = entry + direction * distance * fallback_rr
    return Bracket(
        entry_price=entry,
        stop_price=stop.stop,
        take_profit_price=normalize_limit_price(target),
    )
