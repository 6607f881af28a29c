"""Trade record schema shared by the entry and manage engines."""

from __future__ import annotations

import math
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

PENDING_STATUSES = frozenset({"AUTO_PENDING"})
OPEN_STATUSES = frozenset({"OPEN", "BROKER_PENDING", "UNMANAGED", "MANAGING"})


def coerce_price(value: Any) -> float | None:
    """Lenient numeric coercion: unparsable or non-finite values become None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


class ManageState(BaseModel):
    """Bookkeeping written by the stop lifecycle manager."""

    model_config = ConfigDict(extra="allow")

    last_run_at: str | None = None
    last_rule: str | None = None
    last_rescue_at: str | None = None
    last_rescue_status: str | None = None
    last_rescue_error: str | None = None
    last_sync_at: str | None = None
    last_sync_status: str | None = None
    last_sync_error: str | None = None
    last_sync_cancelled: list[str] = Field(default_factory=list)
    last_cut_loss_at: str | None = None
    last_cut_loss_status: str | None = None
    last_cut_loss_error: str | None = None
    # Recorded stop level to restore after adopting a looser broker stop.
    restore_stop_price: float | None = None


class TradeRecord(BaseModel):
    """One trade as persisted by the trade store.

    The same record carries a candidate (``AUTO_PENDING``) through execution
    (``OPEN``) and live management. Unknown keys are preserved so a
    last-write-wins store never drops fields written by other tools.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = ""
    ticker: str = ""
    side: str = ""
    status: str = ""
    source: str | None = None

    entry_price: float | None = None
    stop_price: float | None = None
    take_profit_price: float | None = Field(
        default=None,
        validation_alias=AliasChoices("take_profit_price", "target_price"),
    )
    initial_stop_price: float | None = None
    quantity: float | None = Field(
        default=None,
        validation_alias=AliasChoices("quantity", "qty"),
    )

    ai_score: float | None = Field(
        default=None,
        validation_alias=AliasChoices("ai_score", "score"),
    )
    ai_grade: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ai_grade", "grade"),
    )
    qualified: bool = False

    created_at: str | None = None
    scored_at: str | None = None
    updated_at: str | None = None
    opened_at: str | None = None
    et_date: str | None = None
    session_tag: str | None = None
    rescore_attempted_at: str | None = None

    client_order_id: str | None = None
    broker_order_id: str | None = None
    stop_order_id: str | None = None
    take_profit_order_id: str | None = None
    close_order_id: str | None = None
    close_reason: str | None = None
    error: str | None = None

    last_price: float | None = None
    unrealized_r: float | None = None
    manage: ManageState = Field(default_factory=ManageState)

    @field_validator(
        "entry_price",
        "stop_price",
        "take_profit_price",
        "initial_stop_price",
        "quantity",
        "ai_score",
        "last_price",
        "unrealized_r",
        mode="before",
    )
    @classmethod
    def _lenient_number(cls, v: Any) -> float | None:
        return coerce_price(v)

    @field_validator("ticker", "side", "status", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> str:
        return str(v or "").strip().upper()

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("ai_grade", mode="before")
    @classmethod
    def _blank_grade(cls, v: Any) -> str | None:
        text = str(v or "").strip().upper()
        return text or None

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def effective_scored_at(self) -> str | None:
        return self.scored_at or self.created_at

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=False)
