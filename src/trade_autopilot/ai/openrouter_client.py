"""OpenRouter-backed candidate rescorer."""

from __future__ import annotations

import time
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from trade_autopilot.ai.schemas import RescoreRequest, ScoreResult
from trade_autopilot.config import Settings
from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.utils.logging import get_logger, log_llm_call

_OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class RescoreError(Exception):
    """Base rescoring error."""


class RescoreAPIError(RescoreError):
    """Raised when API transport/request fails."""


class Rescorer(Protocol):
    """Scores one stale candidate again."""

    def rescore(self, trade: TradeRecord) -> ScoreResult:
        """Return a strict verdict for the candidate."""


class OpenRouterRescorer:
    """Thin client for OpenRouter chat completion endpoint."""

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("trade_autopilot.ai.openrouter_client")

    def rescore(self, trade: TradeRecord) -> ScoreResult:
        """Rescore one candidate and return a strict result."""
        started = time.perf_counter()
        try:
            request = RescoreRequest.from_trade(trade)
        except ValueError as exc:
            return ScoreResult.rejected_default(f"invalid_candidate: {exc}")

        try:
            content = self._request_completion(request)
        except RescoreAPIError:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_llm_call(
                self._logger,
                model=self._settings.openrouter_model,
                success=False,
                latency_ms=elapsed_ms,
                reason="api_error",
                ticker=trade.ticker,
            )
            raise

        result = ScoreResult.parse_response_text(content)
        elapsed_ms = (time.perf_counter() - started) * 1000
        log_llm_call(
            self._logger,
            model=self._settings.openrouter_model,
            success="INVALID_RESPONSE" not in result.reasons,
            latency_ms=elapsed_ms,
            ticker=trade.ticker,
            qualified=result.qualified,
            score=result.score,
        )
        return result

    @retry(
        retry=retry_if_exception_type(RescoreAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _request_completion(self, request: RescoreRequest) -> str:
        if not self._settings.openrouter_api_key:
            raise RescoreAPIError("missing_openrouter_api_key")

        headers = {
            "Authorization": f"Bearer {self._settings.openrouter_api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._settings.openrouter_model,
            "temperature": 0,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You re-check intraday equity trade setups. Return only JSON with keys: "
                        "qualified, score (0-10), grade (A+, A, B, C, D, F), entry_price, "
                        "stop_price, take_profit_price, reasons."
                    ),
                },
                {
                    "role": "user",
                    "content": (
                        "Rescore this pending setup with current conditions. "
                        f"Candidate: {request.model_dump_json()}"
                    ),
                },
            ],
        }

        try:
            with httpx.Client(
                timeout=self._settings.openrouter_timeout,
                transport=self._transport,
            ) as client:
                response = client.post(_OPENROUTER_URL, headers=headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RescoreAPIError(str(exc)) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise RescoreAPIError(f"response_not_json: {exc}") from exc
        if not isinstance(body, dict):
            raise RescoreAPIError("response_not_object")
        return _extract_message_content(body)


def _extract_message_content(payload: dict[str, Any]) -> str:
    """Read assistant content from OpenRouter response payload."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return "{}"
    first = choices[0]
    if not isinstance(first, dict):
        return "{}"
    message = first.get("message")
    if not isinstance(message, dict):
        return "{}"
    content = message.get("content")
    if isinstance(content, str):
        return content
    return "{}"
