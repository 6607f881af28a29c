"""Stop lifecycle package exports."""

from trade_autopilot.manage.engine import run_stop_manager
from trade_autopilot.manage.grade_rules import GRADE_RULES, GradeRule, get_grade_rule
from trade_autopilot.manage.stop_sync import StopActionResult, rescue_stop, sync_stop_for_trade

__all__ = [
    "GRADE_RULES",
    "GradeRule",
    "StopActionResult",
    "get_grade_rule",
    "rescue_stop",
    "run_stop_manager",
    "sync_stop_for_trade",
]
