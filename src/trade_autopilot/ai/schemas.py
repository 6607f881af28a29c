"""AI rescoring input/output schemas and strict parsing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trade_autopilot.store.schemas import TradeRecord


class RescoreRequest(BaseModel):
    """Candidate snapshot sent to the scorer."""

    model_config = ConfigDict(extra="forbid")

    ticker: str = Field(pattern=r"^[A-Z0-9.\-]+$")
    side: Literal["LONG", "SHORT"]
    entry_price: float = Field(gt=0)
    stop_price: float = Field(gt=0)
    take_profit_price: float | None = Field(default=None, gt=0)
    previous_score: float | None = None
    previous_grade: str | None = None
    scored_at: str | None = None

    @classmethod
    def from_trade(cls, trade: TradeRecord) -> "RescoreRequest":
        return cls(
            ticker=trade.ticker,
            side=trade.side,  # type: ignore[arg-type]
            entry_price=trade.entry_price or 0.0,
            stop_price=trade.stop_price or 0.0,
            take_profit_price=trade.take_profit_price,
            previous_score=trade.ai_score,
            previous_grade=trade.ai_grade,
            scored_at=trade.effective_scored_at,
        )


class ScoreResult(BaseModel):
    """Strict scorer verdict."""

    model_config = ConfigDict(extra="forbid")

    qualified: bool
    score: float | None = Field(default=None, ge=0.0, le=10.0)
    grade: Literal["A+", "A", "B", "C", "D", "F"] | None = None
    entry_price: float | None = Field(default=None, gt=0)
    stop_price: float | None = Field(default=None, gt=0)
    take_profit_price: float | None = Field(default=None, gt=0)
    reasons: list[str] = Field(default_factory=list)

    @classmethod
    def rejected_default(cls, reason: str) -> "ScoreResult":
        """Construct a conservative not-qualified result."""
        return cls(qualified=False, reasons=["INVALID_RESPONSE", reason])

    @classmethod
    def parse_strict(cls, payload: dict[str, Any]) -> "ScoreResult":
        """Parse a raw dict. Any violation is mapped to not-qualified."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            return cls.rejected_default(f"schema_validation_error: {exc.errors()[0]['msg']}")

    @classmethod
    def parse_response_text(cls, text: str) -> "ScoreResult":
        """Parse model text response. Non-JSON/invalid JSON is not qualified."""
        try:
            json_obj = _extract_json_obj(text)
        except ValueError as exc:
            return cls.rejected_default(str(exc))
        return cls.parse_strict(json_obj)

    @property
    def usable(self) -> bool:
        return self.qualified and (self.score is not None or self.grade is not None)


def _extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first JSON object from plain text or fenced content."""
    stripped = text.strip()
    candidates: list[str] = []
    if stripped.startswith("{") and stripped.endswith("}"):
        candidates.append(stripped)
    fenced_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced_match:
        candidates.append(fenced_match.group(1))
    brace_match = re.search(r"\{.*\}", stripped, re.DOTALL)
    if brace_match:
        candidates.append(brace_match.group(0))

    if not candidates:
        raise ValueError("model_response_not_json")

    try:
        decoded = json.loads(candidates[0])
    except json.JSONDecodeError as exc:
        raise ValueError(f"model_response_invalid_json: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise ValueError("model_response_json_not_object")
    return decoded
