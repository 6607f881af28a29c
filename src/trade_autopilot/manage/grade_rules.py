"""Grade-tiered exit policy table.

Each signal grade maps to one immutable rule: where the stop moves to
break-even, optional partial exits, an optional hard profit cap and
whether a trailing stop is allowed. Unknown or missing grades use the
``C`` rule.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True, slots=True)
class PartialExit:
    at_r: float
    percent: float


@dataclass(frozen=True, slots=True)
class GradeRule:
    grade: str
    break_even_at_r: float
    partials: tuple[PartialExit, ...] = ()
    cap_r: float | None = None
    trailing: bool = False
    trail_start_r: float | None = None


DEFAULT_GRADE = "C"

GRADE_RULES: dict[str, GradeRule] = {
    "A+": GradeRule(grade="A+", break_even_at_r=0.75, trailing=True, trail_start_r=2.5),
    "A": GradeRule(grade="A", break_even_at_r=0.75, trailing=True, trail_start_r=2.5),
    "B": GradeRule(
        grade="B",
        break_even_at_r=1.0,
        partials=(PartialExit(at_r=1.25, percent=50.0),),
        cap_r=2.0,
        trailing=True,
        trail_start_r=1.5,
    ),
    "C": GradeRule(grade="C", break_even_at_r=0.5, cap_r=1.0),
    "D": GradeRule(grade="D", break_even_at_r=0.25, cap_r=0.5),
    "F": GradeRule(grade="F", break_even_at_r=0.1, cap_r=0.25),
}


def normalize_grade(grade: str | None) -> str:
    key = (grade or "").strip().upper()
    return key if key in GRADE_RULES else DEFAULT_GRADE


def get_grade_rule(grade: str | None) -> GradeRule:
    return GRADE_RULES[normalize_grade(grade)]


def should_move_to_break_even(rule: GradeRule, r: float | None) -> bool:
    return r is not None and r >= rule.break_even_at_r


def should_take_partial(
    rule: GradeRule,
    r: float | None,
    taken: Iterable[float] = (),
) -> PartialExit | None:
    """Return the first partial exit reached and not yet taken."""
    if r is None:
        return None
    done = set(taken)
    for partial in rule.partials:
        if r >= partial.at_r and partial.at_r not in done:
            return partial
    return None


def should_exit_at_target(rule: GradeRule, r: float | None) -> bool:
    return r is not None and rule.cap_r is not None and r >= rule.cap_r


def should_enable_trailing(rule: GradeRule, r: float | None) -> bool:
    if r is None or not rule.trailing or rule.trail_start_r is None:
        return False
    return r >= rule.trail_start_r


def describe_grade_rule(rule: GradeRule) -> str:
    parts = [f"{rule.grade}: BE@{rule.break_even_at_r:g}R"]
    for partial in rule.partials:
        parts.append(f"partial {partial.percent:g}%@{partial.at_r:g}R")
    parts.append(f"cap {rule.cap_r:g}R" if rule.cap_r is not None else "no cap")
    if rule.trailing and rule.trail_start_r is not None:
        parts.append(f"trail from {rule.trail_start_r:g}R")
    else:
        parts.append("no trail")
    return ", ".join(parts)
