from datetime import datetime, timedelta, timezone

import pytest

from careline.conditions import compare, evaluate
from careline.errors import ConditionEvaluationError
from careline.models import EventCondition, NoCondition, Operator, ParameterCondition, TimeCondition

NOW = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


def creatinine(op: str, threshold) -> ParameterCondition:
    return ParameterCondition(parameter="creatinine", operator=op, threshold=threshold)


def test_no_condition_is_always_met():
    assert evaluate(NoCondition()).met
    assert evaluate(None).met


@pytest.mark.parametrize(
    "value, met",
    [(2.5, True), (1.0, False), (2, False)],
)
def test_numeric_comparison(value, met):
    assert evaluate(creatinine(">", 2.0), step_result={"creatinine": value}).met is met


def test_operator_aliases_are_normalised():
    assert creatinine("==", 1).operator == Operator.EQ
    assert creatinine("≠", 1).operator == Operator.NE
    assert creatinine("≥", 1).operator == Operator.GE
    assert evaluate(creatinine("≤", 3), step_result={"creatinine": 3}).met


def test_missing_parameter_is_not_met():
    outcome = evaluate(creatinine(">", 2.0), step_result={"potassium": 5.1})
    assert not outcome.met
    assert "missing" in outcome.reason
    assert not evaluate(creatinine(">", 2.0), step_result=None).met
    assert not evaluate(creatinine("=", None), step_result={"creatinine": None}).met


def test_no_coercion_between_strings_and_numbers():
    assert not evaluate(creatinine("=", 2), step_result={"creatinine": "2"}).met
    outcome = evaluate(creatinine(">", 2), step_result={"creatinine": "3"})
    assert not outcome.met
    assert "numeric" in outcome.reason


def test_booleans_do_not_order():
    with pytest.raises(ConditionEvaluationError):
        compare(True, Operator.GT, 0)
    assert compare(True, Operator.EQ, True)


def test_specific_time():
    cond = TimeCondition(specific_time=NOW)
    assert evaluate(cond, now=NOW).met
    assert not evaluate(cond, now=NOW - timedelta(seconds=1)).met


def test_relative_time_is_met_at_evaluation():
    assert evaluate(TimeCondition(after="2d"), now=NOW).met


def test_event_uses_flag():
    cond = EventCondition(event="lab_received")
    assert evaluate(cond).met
    assert not evaluate(cond, event_flag=False).met


def test_malformed_descriptor_never_raises():
    outcome = evaluate({"kind": "parameter_based"})
    assert not outcome.met
