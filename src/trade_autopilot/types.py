"""Shared domain types for the entry and stop-management runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

Side = Literal["LONG", "SHORT"]
Outcome = Literal["SUCCESS", "SKIP", "FAIL"]
EntryDecision = Literal["EXECUTED", "WOULD_EXECUTE", "SKIP", "FAILED"]


@dataclass(slots=True)
class MarketState:
    """Market clock snapshot taken at the start of a run."""

    is_open: bool
    timestamp: str | None = None
    error: str | None = None


@dataclass(slots=True)
class EntryAction:
    """One per-candidate decision of an auto-entry run."""

    id: str
    ticker: str
    side: str
    decision: EntryDecision
    reason: str
    qty: int | None = None
    order_id: str | None = None


@dataclass(slots=True)
class AutoEntryResult:
    """Outcome of one auto-entry run."""

    ok: bool
    status: str
    run_id: str
    dry_run: bool
    started_at: str
    finished_at: str | None = None
    market: MarketState | None = None
    pending_count: int = 0
    eligible_count: int = 0
    open_positions: int = 0
    entries_today: int = 0
    skips_by_reason: dict[str, int] = field(default_factory=dict)
    actions: list[EntryAction] = field(default_factory=list)
    pending_sample: list[dict[str, Any]] = field(default_factory=list)
    partial: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StopManagerResult:
    """Outcome of one stop-management run."""

    ok: bool
    status: str
    run_id: str
    started_at: str
    finished_at: str | None = None
    outcome: Outcome = "SKIP"
    market: MarketState | None = None
    checked: int = 0
    updated: int = 0
    flattened: int = 0
    rescue_attempted: int = 0
    rescue_ok: int = 0
    rescue_failed: int = 0
    sync_attempted: int = 0
    sync_ok: int = 0
    sync_failed: int = 0
    notes: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
