"""Equity tick-size helpers and directional stop validation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

QuantizeMode = Literal["round", "floor", "ceil"]

_EPSILON = 1e-12


@dataclass(frozen=True, slots=True)
class StopCheck:
    ok: bool
    stop: float | None = None
    reason: str | None = None


def tick_for_price(price: float) -> float:
    if not math.isfinite(price):
        return 0.01
    return 0.0001 if price < 1 else 0.01


def quantize_price(price: float, tick: float = 0.01, mode: QuantizeMode = "round") -> float:
    """Snap a price onto the tick grid; returns NaN for unusable input."""
    if not math.isfinite(price) or not math.isfinite(tick) or tick <= 0:
        return math.nan
    inverse = round(1 / tick)
    if inverse <= 0:
        return math.nan

    scaled = price * inverse
    if mode == "floor":
        steps = math.floor(scaled + _EPSILON)
    elif mode == "ceil":
        steps = math.ceil(scaled - _EPSILON)
    else:
        steps = round(scaled)
    return steps / inverse


def validate_stop_directional(side: str, reference_price: float, stop_price: float) -> StopCheck:
    """A LONG stop must sit below the reference price, a SHORT stop above it."""
    if not math.isfinite(reference_price) or not math.isfinite(stop_price):
        return StopCheck(ok=False, reason="non_finite_price")
    if stop_price <= 0:
        return StopCheck(ok=False, stop=stop_price, reason="non_positive_stop")
    if side == "LONG" and not stop_price < reference_price:
        return StopCheck(ok=False, stop=stop_price, reason="stop_not_below_price_for_long")
    if side == "SHORT" and not stop_price > reference_price:
        return StopCheck(ok=False, stop=stop_price, reason="stop_not_above_price_for_short")
    if side not in ("LONG", "SHORT"):
        return StopCheck(ok=False, stop=stop_price, reason="invalid_side")
    return StopCheck(ok=True, stop=stop_price)


def quantize_stop_price(side: str, stop_price: float, tick: float | None = None) -> StopCheck:
    """Quantize a stop away from the market when no reference price is at hand."""
    if side not in ("LONG", "SHORT"):
        return StopCheck(ok=False, stop=stop_price, reason="invalid_side")
    resolved_tick = tick if tick and tick > 0 else tick_for_price(stop_price)
    mode: QuantizeMode = "floor" if side == "LONG" else "ceil"
    quantized = quantize_price(stop_price, resolved_tick, mode)
    if not math.isfinite(quantized):
        return StopCheck(ok=False, reason="stop_quantize_failed")
    if quantized <= 0:
        return StopCheck(ok=False, stop=quantized, reason="non_positive_stop")
    return StopCheck(ok=True, stop=quantized)


def normalize_stop_price(
    side: str,
    reference_price: float,
    stop_price: float,
    tick: float | None = None,
) -> StopCheck:
    """Quantize a stop away from the market (floor LONG, ceil SHORT) and validate it."""
    resolved_tick = tick if tick and tick > 0 else tick_for_price(reference_price)
    mode: QuantizeMode = "floor" if side == "LONG" else "ceil"
    quantized = quantize_price(stop_price, resolved_tick, mode)
    if not math.isfinite(quantized):
        return StopCheck(ok=False, reason="stop_quantize_failed")
    return validate_stop_directional(side, reference_price, quantized)


def normalize_limit_price(price: float, tick: float | None = None) -> float:
    resolved_tick = tick if tick and tick > 0 else tick_for_price(price)
    quantized = quantize_price(price, resolved_tick, "round")
    return quantized if math.isfinite(quantized) else price
