from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest

from trade_autopilot.broker.base import BrokerAPIError, BrokerNotFoundError, CancelStatus
from trade_autopilot.broker.schemas import Clock, Order, OrderRequest, Position, Quote
from trade_autopilot.config import Settings
from trade_autopilot.entry.guardrails import GuardrailStore
from trade_autopilot.journal.store import TelemetryJournal
from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.store.trades import TradeStore

# 11:00 New York time, regular session.
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)


class FakeBroker:
    """In-memory broker recording every call."""

    def __init__(self, *, is_open: bool = True, timestamp: datetime = NOW) -> None:
        self.clock = Clock(is_open=is_open, timestamp=timestamp.isoformat())
        self.positions: list[Position] = []
        self.open_orders: dict[str, list[Order]] = {}
        self.orders: dict[str, Order] = {}
        self.quotes: dict[str, Quote] = {}
        self.created: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self.missing_orders: set[str] = set()
        self._seq = 0

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise BrokerAPIError(f"{name}_failed", status_code=500)

    def get_clock(self) -> Clock:
        self._call("get_clock")
        return self.clock

    def get_positions(self, symbol: str | None = None) -> list[Position]:
        self._call("get_positions")
        if symbol is None:
            return list(self.positions)
        return [p for p in self.positions if p.symbol == symbol.upper()]

    def get_open_orders(self, symbol: str) -> list[Order]:
        self._call("get_open_orders")
        return list(self.open_orders.get(symbol.upper(), []))

    def create_order(self, request: OrderRequest) -> Order:
        self._call("create_order")
        self.created.append(request)
        self._seq += 1
        order_id = f"ord-{self._seq}"
        legs = None
        if request.order_class == "bracket":
            legs = [
                Order(id=f"{order_id}-tp", type="limit", side="sell", status="held"),
                Order(id=f"{order_id}-stop", type="stop", side="sell", status="held"),
            ]
        order = Order(
            id=order_id,
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            status="accepted",
            qty=request.qty,
            stop_price=request.stop_price,
            order_class=request.order_class,
            legs=legs,
        )
        self.orders[order_id] = order
        return order

    def cancel_order(self, order_id: str) -> CancelStatus:
        self._call("cancel_order")
        if order_id in self.missing_orders:
            return "not_found"
        self.cancelled.append(order_id)
        return "ok"

    def get_order(self, order_id: str) -> Order:
        self._call("get_order")
        if order_id not in self.orders:
            raise BrokerNotFoundError(order_id)
        return self.orders[order_id]

    def get_latest_quote(self, symbol: str) -> Quote:
        self._call("get_latest_quote")
        return self.quotes.get(symbol.upper(), Quote())


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        state_dir=tmp_path,
        auto_entry_enabled=True,
        auto_entry_token="secret-token",
        auto_manage_enabled=True,
        alpaca_api_key="key",
        alpaca_api_secret="secret",
    )


@pytest.fixture
def trade_store(tmp_path: Path) -> TradeStore:
    return TradeStore(tmp_path)


@pytest.fixture
def guardrails(tmp_path: Path) -> GuardrailStore:
    return GuardrailStore(tmp_path)


@pytest.fixture
def journal(tmp_path: Path) -> TelemetryJournal:
    return TelemetryJournal(tmp_path / "telemetry")


@pytest.fixture
def make_pending() -> Callable[..., TradeRecord]:
    counter = {"n": 0}

    def _make(
        ticker: str = "AAPL",
        *,
        age_min: float = 5.0,
        side: str = "LONG",
        entry: float = 100.0,
        stop: float = 98.0,
        take_profit: float = 104.0,
        score: float | None = 8.0,
        **extra: Any,
    ) -> TradeRecord:
        counter["n"] += 1
        scored = (NOW - timedelta(minutes=age_min)).isoformat()
        payload: dict[str, Any] = {
            "id": extra.pop("id", f"t{counter['n']}"),
            "ticker": ticker,
            "side": side,
            "status": "AUTO_PENDING",
            "source": "auto-entry",
            "entry_price": entry,
            "stop_price": stop,
            "take_profit_price": take_profit,
            "ai_score": score,
            "created_at": scored,
            "scored_at": scored,
        }
        payload.update(extra)
        return TradeRecord.model_validate(payload)

    return _make


@pytest.fixture
def make_open() -> Callable[..., TradeRecord]:
    def _make(
        ticker: str = "AAPL",
        *,
        side: str = "LONG",
        entry: float = 100.0,
        stop: float = 98.0,
        qty: float = 10,
        grade: str = "A",
        stop_order_id: str | None = "stop-1",
        **extra: Any,
    ) -> TradeRecord:
        payload: dict[str, Any] = {
            "id": extra.pop("id", f"open-{ticker.lower()}"),
            "ticker": ticker,
            "side": side,
            "status": "OPEN",
            "source": "auto-entry",
            "entry_price": entry,
            "stop_price": stop,
            "quantity": qty,
            "ai_grade": grade,
            "stop_order_id": stop_order_id,
            "opened_at": (NOW - timedelta(hours=1)).isoformat(),
        }
        payload.update(extra)
        return TradeRecord.model_validate(payload)

    return _make
