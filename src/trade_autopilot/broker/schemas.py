"""Broker payload schemas (Alpaca trading and market-data shapes)."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trade_autopilot.store.schemas import coerce_price

STOP_ORDER_TYPES = frozenset({"stop", "stop_limit", "trailing_stop"})


class Clock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    is_open: bool = False
    timestamp: str | None = None
    next_open: str | None = None
    next_close: str | None = None


class Position(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str
    qty: float = 0.0
    side: str | None = None
    avg_entry_price: float | None = None

    @field_validator("qty", mode="before")
    @classmethod
    def _qty(cls, v: Any) -> float:
        return coerce_price(v) or 0.0

    @field_validator("avg_entry_price", mode="before")
    @classmethod
    def _price(cls, v: Any) -> float | None:
        return coerce_price(v)

    @property
    def abs_qty(self) -> float:
        return abs(self.qty)


class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    client_order_id: str | None = None
    symbol: str | None = None
    side: str | None = None
    type: str | None = None
    status: str | None = None
    qty: float | None = None
    stop_price: float | None = None
    limit_price: float | None = None
    order_class: str | None = None
    legs: list[Order] | None = None

    @field_validator("qty", "stop_price", "limit_price", mode="before")
    @classmethod
    def _numbers(cls, v: Any) -> float | None:
        return coerce_price(v)

    @property
    def is_stop(self) -> bool:
        return (self.type or "").lower() in STOP_ORDER_TYPES

    @property
    def is_limit(self) -> bool:
        return (self.type or "").lower() == "limit"

    def stop_leg(self) -> Order | None:
        for leg in self.legs or []:
            if leg.is_stop:
                return leg
        return None

    def take_profit_leg(self) -> Order | None:
        for leg in self.legs or []:
            if leg.is_limit:
                return leg
        return None


class Quote(BaseModel):
    model_config = ConfigDict(extra="ignore")

    last: float | None = None
    bid: float | None = None
    ask: float | None = None

    @field_validator("last", "bid", "ask", mode="before")
    @classmethod
    def _positive(cls, v: Any) -> float | None:
        number = coerce_price(v)
        return number if number is not None and number > 0 else None

    @property
    def mid(self) -> float | None:
        if self.bid is None or self.ask is None:
            return None
        return (self.bid + self.ask) / 2.0

    def price(self) -> float | None:
        """Best single price: last trade, then mid, then ask, then bid."""
        for value in (self.last, self.mid, self.ask, self.bid):
            if value is not None:
                return value
        return None


class TakeProfitSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit_price: float = Field(gt=0)


class StopLossSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stop_price: float = Field(gt=0)


class OrderRequest(BaseModel):
    """Order submission payload."""

    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(pattern=r"^[A-Z0-9.\-]+$")
    qty: float = Field(gt=0)
    side: Literal["buy", "sell"]
    type: Literal["market", "limit", "stop"]
    time_in_force: Literal["day", "gtc"] = "day"
    order_class: Literal["simple", "bracket"] | None = None
    stop_price: float | None = Field(default=None, gt=0)
    limit_price: float | None = Field(default=None, gt=0)
    take_profit: TakeProfitSpec | None = None
    stop_loss: StopLossSpec | None = None
    client_order_id: str | None = Field(default=None, max_length=48)

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        payload["qty"] = _format_qty(self.qty)
        return payload


def _format_qty(qty: float) -> str:
    if float(qty).is_integer():
        return str(int(qty))
    return str(qty)
