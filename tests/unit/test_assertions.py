"""
Unit tests for assertion operators and the assertion engine.
"""

import pytest
from shared.types import Assertion, AssertionDataSource, AssertionType
from services.orchestrator.engine.assertions import (
    AssertionEngine,
    ResponseSnapshot,
    coerce_expected_value,
    list_operators,
    loose_equals,
    type_name,
)
from services.orchestrator.engine.assertions import _operators as OPERATORS
from services.orchestrator.engine.template import TemplateContext


SNAPSHOT = ResponseSnapshot(
    status_code=201,
    headers={"Content-Type": "application/json", "X-Request-Id": "r-1"},
    body={"id": 7, "name": "Widget", "tags": ["a", "b"], "price": "12.50", "owner": None},
    transformed={"summary": {"count": 2}},
    response_time_ms=85,
)


def body_assertion(data_id, operator, expected=None, **kwargs):
    return Assertion(data_id=data_id, operator=operator, expected_value=expected, **kwargs)


@pytest.mark.parametrize("operator,actual,expected,passed", [
    ("equals", 7, "7", True),
    ("equals", "12.50", 12.5, True),
    ("equals", True, 1, True),
    ("not_equals", "a", "b", True),
    ("contains", "Widget", "dge", True),
    ("contains", ["a", "b"], "b", True),
    ("not_contains", ["a", "b"], "c", True),
    ("exists", 0, None, True),
    ("exists", None, None, False),
    ("greater_than", 5, 3, True),
    ("greater_than", "5", 3, False),
    ("less_than_or_equal", 3, 3, True),
    ("starts_with", "Widget", "Wid", True),
    ("ends_with", "Widget", "get", True),
    ("matches_regex", "abc-123", r"^\w+-\d+$", True),
    ("matches_regex", "aaa", "(a+)+$", False),
    ("is_empty", [], None, True),
    ("is_not_empty", "x", None, True),
    ("between", 5, [1, 10], True),
    ("not_between", 50, [1, 10], True),
    ("between", 5, [1], False),
    ("has_length", [1, 2], 2, True),
    ("length_greater_than", "abc", 2, True),
    ("length_less_than", [1], 2, True),
    ("has_length", [], 0, True),
    ("length_less_than", [], 1, True),
    ("has_length", "", 0, False),
    ("contains_all", [1, 2, 3], [1, 3], True),
    ("contains_any", [1, 2, 3], [9, 3], True),
    ("not_contains_any", [1, 2, 3], [8, 9], True),
    ("one_of", "b", ["a", "b"], True),
    ("not_one_of", "c", ["a", "b"], True),
    ("is_type", [1], "array", True),
    ("is_type", 1.5, "number", True),
    ("is_null", None, None, True),
    ("is_not_null", 0, None, True),
])
def test_operators(operator, actual, expected, passed):
    assert OPERATORS[operator](actual, expected) is passed


def test_every_operator_is_registered():
    assert len(list_operators()) == 27


def test_loose_equals_handles_none():
    assert loose_equals(None, None) is True
    assert loose_equals(None, "") is False


def test_type_name():
    assert type_name(None) == "null"
    assert type_name(True) == "boolean"
    assert type_name({}) == "object"


def test_coerce_expected_value():
    assert coerce_expected_value("42", "number") == 42
    assert coerce_expected_value("abc", "number") == "abc"
    assert coerce_expected_value("yes", "boolean") is True
    assert coerce_expected_value("[1, 2]", "array") == [1, 2]
    assert coerce_expected_value("{\"a\": 1}", "array") == "{\"a\": 1}"
    assert coerce_expected_value("null", "null") is None
    assert coerce_expected_value(5, "string") == 5


def test_extract_values_by_type():
    engine = AssertionEngine()

    assert engine.extract_value(Assertion(assertion_type=AssertionType.STATUS_CODE, operator="equals"), SNAPSHOT) == 201
    assert engine.extract_value(Assertion(assertion_type=AssertionType.RESPONSE_TIME, operator="less_than"), SNAPSHOT) == 85
    assert engine.extract_value(
        Assertion(assertion_type=AssertionType.HEADER, data_id="x-request-id", operator="equals"), SNAPSHOT
    ) == "r-1"
    assert engine.extract_value(body_assertion("$.tags[0]", "equals"), SNAPSHOT) == "a"
    assert engine.extract_value(
        body_assertion("$.summary.count", "equals", data_source=AssertionDataSource.TRANSFORMED_DATA), SNAPSHOT
    ) == 2


def test_passing_assertion_message():
    engine = AssertionEngine()

    result = engine.evaluate_assertion(body_assertion("$.id", "equals", 7), 7)

    assert result.passed is True
    assert result.message == "Assertion passed: json_body $.id equals 7"


def test_failing_assertion_message_includes_actual():
    engine = AssertionEngine()

    result = engine.evaluate_assertion(body_assertion("$.name", "equals", "Gadget"), "Widget")

    assert result.passed is False
    assert result.message == 'Assertion failed: json_body $.name equals "Gadget", actual value: "Widget"'


def test_template_expected_value():
    engine = AssertionEngine()
    context = TemplateContext(parameters={"expected_id": 7})
    assertion = body_assertion("$.id", "equals", "{{param:expected_id}}", is_template_expression=True)

    result = engine.evaluate_assertion(assertion, 7, context)

    assert result.passed is True
    assert result.expected_value == 7
    assert result.original_expected_value == "{{param:expected_id}}"


def test_template_resolution_failure_fails_assertion():
    engine = AssertionEngine()
    assertion = body_assertion("$.id", "equals", "{{param:missing}}", is_template_expression=True)

    result = engine.evaluate_assertion(assertion, 7, TemplateContext())

    assert result.passed is False
    assert result.error.startswith("Template resolution failed: Parameter not found: missing")


def test_unknown_operator():
    result = AssertionEngine().evaluate_assertion(body_assertion("$.id", "roughly", 7), 7)

    assert result.passed is False
    assert result.message == "Error evaluating assertion: Unknown operator: roughly"


def test_run_skips_disabled_and_stops_at_first_failure():
    engine = AssertionEngine()
    assertions = [
        body_assertion("$.id", "equals", 999, enabled=False),
        Assertion(assertion_type=AssertionType.STATUS_CODE, operator="equals", expected_value=201),
        body_assertion("$.name", "equals", "Gadget"),
        body_assertion("$.tags", "has_length", 2),
    ]

    run = engine.run(assertions, SNAPSHOT)

    assert run.passed is False
    assert len(run.results) == 2
    assert run.failure_message == run.results[-1].message


def test_run_all_pass():
    engine = AssertionEngine()
    assertions = [
        body_assertion("$.price", "equals", 12.5),
        body_assertion("$.owner", "is_null"),
        body_assertion("$.tags", "contains", "a"),
    ]

    run = engine.run(assertions, SNAPSHOT)

    assert run.passed is True
    assert run.failure_message is None
    assert len(run.results) == 3


def test_run_reports_extraction_errors():
    run = AssertionEngine().run([body_assertion("$.tags[", "exists")], SNAPSHOT)

    assert run.passed is False
    assert run.results[0].error.startswith("Error extracting assertion value:")
