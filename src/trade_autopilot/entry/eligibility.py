"""Pending-candidate eligibility and per-ticker canonical selection.

Both entry points are pure: they read candidates and a session context and
never mutate the records they are given.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from trade_autopilot.config import SelectionPolicy, Settings
from trade_autopilot.session import (
    SessionTag,
    derive_session,
    minutes_between,
    normalize_session_tag,
    parse_iso,
)
from trade_autopilot.store.schemas import TradeRecord

EligibilityVerdict = Literal[
    "eligible",
    "stale_trade",
    "stale_session",
    "carryover_session",
    "invalid_trade",
    "not_scored",
    "rescore_required",
    "rescore_failed",
]

ELIGIBILITY_VERDICTS: tuple[EligibilityVerdict, ...] = (
    "eligible",
    "stale_trade",
    "stale_session",
    "carryover_session",
    "invalid_trade",
    "not_scored",
    "rescore_required",
    "rescore_failed",
)

DUPLICATE_TICKER = "duplicate_ticker"


@dataclass(frozen=True, slots=True)
class EligibilityConfig:
    """Session context and age windows for one run."""

    today_et: str
    session_tag: SessionTag
    market_is_open: bool = False
    max_age_min: float = 15.0
    rescore_after_min: float = 10.0
    block_carryover: bool = True
    rescore_enabled: bool = True

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        now: datetime,
        *,
        market_is_open: bool,
        rescore_enabled: bool | None = None,
    ) -> "EligibilityConfig":
        today_et, tag = derive_session(now)
        return cls(
            today_et=today_et,
            session_tag=tag,
            market_is_open=market_is_open,
            max_age_min=settings.auto_entry_max_age_min,
            rescore_after_min=settings.auto_entry_rescore_after_min,
            block_carryover=settings.auto_entry_block_carryover,
            rescore_enabled=(
                settings.auto_entry_rescore_enabled if rescore_enabled is None else rescore_enabled
            ),
        )


@dataclass(frozen=True, slots=True)
class EligibilityResult:
    verdict: EligibilityVerdict
    age_min: float

    @property
    def eligible(self) -> bool:
        return self.verdict == "eligible"


@dataclass(slots=True)
class CandidateVerdict:
    """Selection outcome for one pending candidate."""

    index: int
    trade: TradeRecord
    eligibility: EligibilityResult
    canonical: bool
    reason: str


@dataclass(slots=True)
class CanonicalSelection:
    """Every pending candidate classified, in input order."""

    policy: SelectionPolicy
    items: list[CandidateVerdict]

    @property
    def canonical(self) -> list[CandidateVerdict]:
        return [item for item in self.items if item.canonical]

    @property
    def rejected(self) -> list[CandidateVerdict]:
        return [item for item in self.items if not item.canonical]

    @property
    def eligible_count(self) -> int:
        return sum(1 for item in self.items if item.canonical and item.eligibility.eligible)


def has_valid_trade_risk(trade: TradeRecord) -> bool:
    """Ticker, side and prices present with stop and target on the correct sides."""
    if not trade.ticker or trade.side not in ("LONG", "SHORT"):
        return False
    entry, stop, target = trade.entry_price, trade.stop_price, trade.take_profit_price
    if entry is None or stop is None or target is None:
        return False
    if entry <= 0 or stop <= 0 or target <= 0:
        return False
    if trade.side == "LONG":
        return stop < entry < target
    return target < entry < stop


def is_scored_trade(trade: TradeRecord) -> bool:
    return trade.ai_score is not None or trade.qualified or trade.ai_grade is not None


def trade_age_minutes(trade: TradeRecord, now: datetime) -> float:
    """Minutes since scoring (creation as fallback); infinite when unknown."""
    stamp = parse_iso(trade.effective_scored_at)
    if stamp is None:
        return math.inf
    return max(0.0, minutes_between(stamp, now))


def effective_timestamp(trade: TradeRecord) -> float:
    stamp = parse_iso(trade.effective_scored_at)
    return stamp.timestamp() if stamp else -math.inf


def trade_session(trade: TradeRecord) -> tuple[str | None, SessionTag | None]:
    """Stored ``(et_date, session_tag)``, derived from the timestamp when missing."""
    et_date = trade.et_date or None
    tag = normalize_session_tag(trade.session_tag)
    if et_date and tag:
        return et_date, tag
    stamp = parse_iso(trade.effective_scored_at)
    if stamp is None:
        return et_date, tag
    derived_date, derived_tag = derive_session(stamp)
    return et_date or derived_date, tag or derived_tag


def evaluate_pending_eligibility(
    trade: TradeRecord,
    now: datetime,
    config: EligibilityConfig,
) -> EligibilityResult:
    """Return exactly one verdict; the first matching rule wins."""
    age = trade_age_minutes(trade, now)

    trade_date, trade_tag = trade_session(trade)
    if trade_date is None:
        return EligibilityResult("stale_session", age)
    if trade_date != config.today_et:
        if config.block_carryover:
            return EligibilityResult("carryover_session", age)
    elif trade_tag is not None and trade_tag != config.session_tag:
        return EligibilityResult("stale_session", age)

    if not has_valid_trade_risk(trade):
        return EligibilityResult("invalid_trade", age)
    if not is_scored_trade(trade):
        return EligibilityResult("not_scored", age)
    if age > config.max_age_min:
        return EligibilityResult("stale_trade", age)
    if age > config.rescore_after_min:
        if not config.rescore_enabled:
            return EligibilityResult("stale_trade", age)
        if trade.rescore_attempted_at:
            return EligibilityResult("rescore_failed", age)
        return EligibilityResult("rescore_required", age)
    return EligibilityResult("eligible", age)


def group_by_ticker(trades: list[TradeRecord]) -> dict[str, list[int]]:
    """Indexes per uppercased ticker, newest first (ties keep input order)."""
    groups: dict[str, list[int]] = {}
    for index, trade in enumerate(trades):
        if trade.ticker:
            groups.setdefault(trade.ticker.upper(), []).append(index)
    for indexes in groups.values():
        indexes.sort(key=lambda i: (-effective_timestamp(trades[i]), i))
    return groups


def select_canonical(
    trades: list[TradeRecord],
    now: datetime,
    config: EligibilityConfig,
    policy: SelectionPolicy = SelectionPolicy.NEWEST_ELIGIBLE,
) -> CanonicalSelection:
    """Pick at most one candidate per ticker and classify the rest.

    ``NEWEST`` takes the newest candidate whatever its verdict.
    ``NEWEST_ELIGIBLE`` takes the newest eligible one; ineligible
    candidates report their own verdict and older eligible ones are
    duplicates. Anything that leads to order placement uses the latter.
    """
    results = [evaluate_pending_eligibility(trade, now, config) for trade in trades]
    items: list[CandidateVerdict | None] = [None] * len(trades)

    for index, trade in enumerate(trades):
        if not trade.ticker:
            items[index] = CandidateVerdict(index, trade, results[index], False, "invalid_trade")

    for indexes in group_by_ticker(trades).values():
        if policy == SelectionPolicy.NEWEST:
            chosen: int | None = indexes[0]
        else:
            chosen = next((i for i in indexes if results[i].eligible), None)

        for i in indexes:
            if i == chosen:
                items[i] = CandidateVerdict(i, trades[i], results[i], True, results[i].verdict)
            elif policy == SelectionPolicy.NEWEST or results[i].eligible:
                items[i] = CandidateVerdict(i, trades[i], results[i], False, DUPLICATE_TICKER)
            else:
                items[i] = CandidateVerdict(i, trades[i], results[i], False, results[i].verdict)

    return CanonicalSelection(policy=policy, items=[item for item in items if item is not None])
