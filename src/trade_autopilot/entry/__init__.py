"""Auto-entry package exports."""

from trade_autopilot.entry.breaker import BreakerTransition, evaluate_breaker_transition
from trade_autopilot.entry.eligibility import (
    EligibilityConfig,
    EligibilityResult,
    evaluate_pending_eligibility,
    select_canonical,
)
from trade_autopilot.entry.guardrails import GuardrailState, GuardrailStore, apply_breaker
from trade_autopilot.entry.orchestrator import run_auto_entry

__all__ = [
    "BreakerTransition",
    "EligibilityConfig",
    "EligibilityResult",
    "GuardrailState",
    "GuardrailStore",
    "apply_breaker",
    "evaluate_breaker_transition",
    "evaluate_pending_eligibility",
    "run_auto_entry",
    "select_canonical",
]
