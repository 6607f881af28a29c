"""Alpaca REST broker client."""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from trade_autopilot.broker.base import (
    BrokerAPIError,
    BrokerNotFoundError,
    CancelStatus,
)
from trade_autopilot.broker.schemas import Clock, Order, OrderRequest, Position, Quote
from trade_autopilot.config import Settings
from trade_autopilot.utils.logging import get_logger, log_order_execution


class AlpacaBroker:
    """Thin client for the Alpaca trading and market-data endpoints.

    Reads are retried with exponential backoff. Order submission and
    cancellation are sent once; callers decide how to recover.
    """

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("trade_autopilot.broker.alpaca")

    def get_clock(self) -> Clock:
        return Clock.model_validate(self._get(self._trading_url("/v2/clock")))

    def get_positions(self, symbol: str | None = None) -> list[Position]:
        if symbol:
            try:
                payload = self._get(self._trading_url(f"/v2/positions/{symbol.upper()}"))
            except BrokerNotFoundError:
                return []
            return [Position.model_validate(payload)]
        payload = self._get(self._trading_url("/v2/positions"))
        return [Position.model_validate(row) for row in _as_list(payload)]

    def get_open_orders(self, symbol: str) -> list[Order]:
        payload = self._get(
            self._trading_url("/v2/orders"),
            params={"status": "open", "symbols": symbol.upper(), "nested": "true"},
        )
        return [Order.model_validate(row) for row in _as_list(payload)]

    def get_order(self, order_id: str) -> Order:
        payload = self._get(self._trading_url(f"/v2/orders/{order_id}"), params={"nested": "true"})
        return Order.model_validate(payload)

    def get_latest_quote(self, symbol: str) -> Quote:
        payload = self._get(self._data_url(f"/v2/stocks/{symbol.upper()}/snapshot"))
        if not isinstance(payload, dict):
            return Quote()
        trade = payload.get("latestTrade") or {}
        quote = payload.get("latestQuote") or {}
        return Quote(last=trade.get("p"), bid=quote.get("bp"), ask=quote.get("ap"))

    def create_order(self, request: OrderRequest) -> Order:
        payload = self._request("POST", self._trading_url("/v2/orders"), json=request.to_payload())
        order = Order.model_validate(payload)
        log_order_execution(
            self._logger,
            symbol=request.symbol,
            side=request.side,
            quantity=request.qty,
            price=request.stop_price or request.limit_price,
            order_id=order.id,
            status=order.status or "submitted",
            order_type=request.type,
        )
        return order

    def cancel_order(self, order_id: str) -> CancelStatus:
        try:
            self._request("DELETE", self._trading_url(f"/v2/orders/{order_id}"))
        except BrokerNotFoundError:
            return "not_found"
        return "ok"

    @retry(
        retry=retry_if_exception_type(BrokerAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _get(self, url: str, params: dict[str, str] | None = None) -> Any:
        return self._request("GET", url, params=params)

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if not self._settings.alpaca_api_key or not self._settings.alpaca_api_secret:
            raise BrokerAPIError("missing_alpaca_credentials")

        headers = {
            "APCA-API-KEY-ID": self._settings.alpaca_api_key,
            "APCA-API-SECRET-KEY": self._settings.alpaca_api_secret,
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(
                timeout=self._settings.broker_timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, url, headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            raise BrokerAPIError(str(exc)) from exc

        if response.status_code == 404:
            raise BrokerNotFoundError(f"{method} {url}: not found")
        if response.status_code >= 400:
            raise BrokerAPIError(
                f"http_{response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _trading_url(self, path: str) -> str:
        return self._settings.alpaca_base_url.rstrip("/") + path

    def _data_url(self, path: str) -> str:
        return self._settings.alpaca_data_url.rstrip("/") + path


def _as_list(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        return []
    return [row for row in payload if isinstance(row, dict)]
