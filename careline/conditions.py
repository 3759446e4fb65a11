"""Branch condition evaluation.

The evaluator is a pure function of the condition descriptor, the step result
and the current time. It never raises: anything it cannot interpret counts as
"not met" so that a workflow never branches on data it does not have.
"""

from __future__ import annotations

import numbers
import operator as op
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from .errors import ConditionEvaluationError
from .models import (
    EventCondition,
    NoCondition,
    Operator,
    ParameterCondition,
    Patient,
    TimeCondition,
)
from .utils.logging import get_logger
from .utils.timing import ensure_utc, utcnow

logger = get_logger()

_ORDERING = {
    Operator.GT: op.gt,
    Operator.GE: op.ge,
    Operator.LT: op.lt,
    Operator.LE: op.le,
}


@dataclass(frozen=True)
class ConditionOutcome:
    met: bool
    reason: str = ""


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def compare(left: Any, operator: Operator, right: Any) -> bool:
    """Apply *operator* without coercing operand types.

    Equality works on any values. Ordering operators are only defined for
    numbers.
    """
    if operator == Operator.EQ:
        return left == right
    if operator == Operator.NE:
        return left != right
    if not (_is_number(left) and _is_number(right)):
        raise ConditionEvaluationError(
            f"operator {operator.value!r} needs numeric operands, got {type(left).__name__} and {type(right).__name__}"
        )
    return _ORDERING[operator](left, right)


def _parameter(condition: ParameterCondition, step_result: Optional[Mapping[str, Any]]) -> ConditionOutcome:
    if not step_result or condition.parameter not in step_result:
        return ConditionOutcome(False, f"parameter {condition.parameter!r} missing from result")
    value = step_result[condition.parameter]
    if value is None:
        return ConditionOutcome(False, f"parameter {condition.parameter!r} is empty")
    met = compare(value, condition.operator, condition.threshold)
    return ConditionOutcome(met, f"{condition.parameter}={value!r} {condition.operator.value} {condition.threshold!r}")


def _time(condition: TimeCondition, now: datetime) -> ConditionOutcome:
    if condition.specific_time is not None:
        met = ensure_utc(now) >= condition.specific_time
        return ConditionOutcome(met, f"now {'>=' if met else '<'} {condition.specific_time.isoformat()}")
    # relative timing was applied as a dispatch delay
    return ConditionOutcome(True, f"waited {condition.after} before execution")


def evaluate(
    condition: Any,
    patient: Optional[Patient] = None,
    step_result: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
    event_flag: bool = True,
) -> ConditionOutcome:
    """Decide whether *condition* holds for the latest *step_result*.

    ``patient`` is accepted so conditions can grow patient-level parameters;
    none of the current kinds read it. ``event_flag`` is the externally
    supplied signal for ``event_based`` conditions.
    """
    try:
        if condition is None or isinstance(condition, NoCondition):
            return ConditionOutcome(True, "no condition")
        if isinstance(condition, ParameterCondition):
            return _parameter(condition, step_result)
        if isinstance(condition, TimeCondition):
            return _time(condition, now or utcnow())
        if isinstance(condition, EventCondition):
            return ConditionOutcome(bool(event_flag), f"event {condition.event or 'external'} flag={event_flag}")
        raise ConditionEvaluationError(f"unsupported condition descriptor {condition!r}")
    except ConditionEvaluationError as exc:
        logger.warning(f"Condition treated as not met: {exc}")
        return ConditionOutcome(False, str(exc))
    except (TypeError, ValueError, AttributeError) as exc:
        logger.warning(f"Malformed condition treated as not met: {exc!r}")
        return ConditionOutcome(False, f"malformed condition: {exc}")
