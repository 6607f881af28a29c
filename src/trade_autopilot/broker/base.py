"""Broker interface consumed by the entry and stop-management runs."""

from __future__ import annotations

from typing import Literal, Protocol

from trade_autopilot.broker.schemas import Clock, Order, OrderRequest, Position, Quote

CancelStatus = Literal["ok", "not_found"]


class BrokerError(Exception):
    """Base broker error."""


class BrokerAPIError(BrokerError):
    """Raised when a broker request fails in transport or is rejected."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BrokerNotFoundError(BrokerError):
    """Raised when the broker reports the requested resource does not exist."""


class BrokerClient(Protocol):
    """Synchronous broker REST surface."""

    def get_clock(self) -> Clock:
        """Return the market clock."""

    def get_positions(self, symbol: str | None = None) -> list[Position]:
        """Return open positions, optionally for one symbol."""

    def get_open_orders(self, symbol: str) -> list[Order]:
        """Return open orders for one symbol."""

    def create_order(self, request: OrderRequest) -> Order:
        """Submit one order."""

    def cancel_order(self, order_id: str) -> CancelStatus:
        """Cancel one order; an already-gone order is ``not_found``."""

    def get_order(self, order_id: str) -> Order:
        """Fetch one order including its legs."""

    def get_latest_quote(self, symbol: str) -> Quote:
        """Return the latest trade/quote snapshot."""
