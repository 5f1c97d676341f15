"""Condition predicates evaluated against a contact snapshot."""

from __future__ import annotations

import operator
from datetime import datetime
from typing import Callable, Dict

from .contracts import (
    ConditionConfig,
    ConditionStep,
    HasTagCondition,
    LastOpenDaysCondition,
    LeadScoreCondition,
    LifecycleStageCondition,
)
from .persistence.models import Contact

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

_SECONDS_PER_DAY = 86400


def _norm(value: object) -> str:
    return str(value or "").strip().lower()


def days_since(moment: datetime | None, now: datetime) -> int | None:
    if moment is None:
        return None
    return int((now - moment).total_seconds() // _SECONDS_PER_DAY)


def evaluate_condition(config: ConditionConfig, contact: Contact, now: datetime) -> bool:
    """Return the truth value of ``config`` for ``contact`` at ``now``.

    Evaluation is a pure function of its arguments so the same snapshot
    always selects the same branch.
    """
    match config:
        case LeadScoreCondition(op=op, value=threshold):
            score = contact.lead_score or 0
            return _COMPARATORS[op](score, threshold)
        case LifecycleStageCondition(value=expected):
            return _norm(contact.lifecycle_stage) == _norm(expected)
        case LastOpenDaysCondition(days=days):
            elapsed = days_since(contact.last_open_date, now)
            # never opened counts as not opened for any window
            return elapsed is None or elapsed >= days
        case HasTagCondition(tag=tag):
            wanted = _norm(tag)
            if not wanted:
                return True
            return any(wanted in _norm(t) for t in contact.tags)
        case _:
            raise TypeError(f"Unsupported condition: {config!r}")


def select_branch(step: ConditionStep, contact: Contact, now: datetime) -> str | None:
    """Pick ``next_yes`` or ``next_no`` for a condition step."""
    if evaluate_condition(step.config, contact, now):
        return step.next_yes
    return step.next_no
