"""Assertion evaluation against invocation responses."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from shared.exceptions import FlowEngineError
from shared.types import (
    Assertion,
    AssertionDataSource,
    AssertionResult,
    AssertionRunResult,
    AssertionType,
)
from shared.utils import is_number, to_json_text, to_text
from services.orchestrator.engine.expressions import is_nan, is_unsafe_pattern, strict_equals, to_number
from services.orchestrator.engine.path_evaluator import PathEvaluator, default_evaluator
from services.orchestrator.engine.template import (
    TemplateContext,
    TemplateResolver,
    default_resolver,
    has_template_expressions,
)

Operator = Callable[[Any, Any], bool]

_operators: Dict[str, Operator] = {}


def register_operator(name: str):
    """Decorator to register an assertion operator"""
    def decorator(func: Operator):
        _operators[name] = func
        return func
    return decorator


def list_operators() -> List[str]:
    return sorted(_operators)


def loose_equals(actual: Any, expected: Any) -> bool:
    """Equality that lets numeric text match numbers"""
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, bool) and not isinstance(expected, bool):
        return loose_equals(1 if actual else 0, expected)
    if isinstance(expected, bool) and not isinstance(actual, bool):
        return loose_equals(actual, 1 if expected else 0)
    if is_number(actual) and isinstance(expected, str):
        number = to_number(expected)
        return not is_nan(number) and actual == number
    if isinstance(actual, str) and is_number(expected):
        number = to_number(actual)
        return not is_nan(number) and number == expected
    return actual == expected


def _in_list(items: List[Any], value: Any) -> bool:
    return any(strict_equals(item, value) for item in items)


def _range(expected: Any) -> Optional[List[float]]:
    if isinstance(expected, list) and len(expected) == 2 and all(is_number(v) for v in expected):
        return expected
    return None


@register_operator("equals")
def equals(actual: Any, expected: Any) -> bool:
    return loose_equals(actual, expected)


@register_operator("not_equals")
def not_equals(actual: Any, expected: Any) -> bool:
    return not loose_equals(actual, expected)


@register_operator("contains")
def contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return to_text(expected) in actual
    if isinstance(actual, list):
        return _in_list(actual, expected)
    return False


@register_operator("not_contains")
def not_contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return to_text(expected) not in actual
    if isinstance(actual, list):
        return not _in_list(actual, expected)
    return True


@register_operator("exists")
def exists(actual: Any, expected: Any) -> bool:
    return actual is not None


@register_operator("greater_than")
def greater_than(actual: Any, expected: Any) -> bool:
    return is_number(actual) and is_number(expected) and actual > expected


@register_operator("less_than")
def less_than(actual: Any, expected: Any) -> bool:
    return is_number(actual) and is_number(expected) and actual < expected


@register_operator("greater_than_or_equal")
def greater_than_or_equal(actual: Any, expected: Any) -> bool:
    return is_number(actual) and is_number(expected) and actual >= expected


@register_operator("less_than_or_equal")
def less_than_or_equal(actual: Any, expected: Any) -> bool:
    return is_number(actual) and is_number(expected) and actual <= expected


@register_operator("starts_with")
def starts_with(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)


@register_operator("ends_with")
def ends_with(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)


@register_operator("matches_regex")
def matches_regex(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str) or is_unsafe_pattern(expected):
        return False
    try:
        return re.search(expected, actual) is not None
    except re.error:
        return False


@register_operator("is_empty")
def is_empty(actual: Any, expected: Any) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, dict)):
        return len(actual) == 0
    return False


@register_operator("is_not_empty")
def is_not_empty(actual: Any, expected: Any) -> bool:
    return actual is not None and not is_empty(actual, expected)


@register_operator("between")
def between(actual: Any, expected: Any) -> bool:
    bounds = _range(expected)
    return bounds is not None and is_number(actual) and bounds[0] <= actual <= bounds[1]


@register_operator("not_between")
def not_between(actual: Any, expected: Any) -> bool:
    bounds = _range(expected)
    return bounds is not None and is_number(actual) and not bounds[0] <= actual <= bounds[1]


def _sized(actual: Any) -> Optional[int]:
    if isinstance(actual, list) or (isinstance(actual, str) and actual):
        return len(actual)
    return None


@register_operator("has_length")
def has_length(actual: Any, expected: Any) -> bool:
    size = _sized(actual)
    return size is not None and is_number(expected) and size == expected


@register_operator("length_greater_than")
def length_greater_than(actual: Any, expected: Any) -> bool:
    size = _sized(actual)
    return size is not None and is_number(expected) and size > expected


@register_operator("length_less_than")
def length_less_than(actual: Any, expected: Any) -> bool:
    size = _sized(actual)
    return size is not None and is_number(expected) and size < expected


@register_operator("contains_all")
def contains_all(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, list) or not isinstance(expected, list):
        return False
    return all(_in_list(actual, item) for item in expected)


@register_operator("contains_any")
def contains_any(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, list) or not isinstance(expected, list):
        return False
    return any(_in_list(actual, item) for item in expected)


@register_operator("not_contains_any")
def not_contains_any(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, list) or not isinstance(expected, list):
        return False
    return not any(_in_list(actual, item) for item in expected)


@register_operator("one_of")
def one_of(actual: Any, expected: Any) -> bool:
    return isinstance(expected, list) and _in_list(expected, actual)


@register_operator("not_one_of")
def not_one_of(actual: Any, expected: Any) -> bool:
    return isinstance(expected, list) and not _in_list(expected, actual)


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


@register_operator("is_type")
def is_type(actual: Any, expected: Any) -> bool:
    return type_name(actual) == expected


@register_operator("is_null")
def is_null(actual: Any, expected: Any) -> bool:
    return actual is None


@register_operator("is_not_null")
def is_not_null(actual: Any, expected: Any) -> bool:
    return actual is not None


def coerce_expected_value(value: Any, value_type: Optional[str]) -> Any:
    """Converts a declared expected value to its declared type when it arrived as text"""
    if not value_type or not isinstance(value, str):
        return value

    if value_type == "number":
        number = to_number(value)
        return value if is_nan(number) or not value.strip() else number
    if value_type == "boolean":
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
        return value
    if value_type in ("array", "object"):
        try:
            parsed = json.loads(value)
        except ValueError:
            return value
        return parsed if type_name(parsed) == value_type else value
    if value_type == "null" and value.strip() in ("", "null"):
        return None
    return value


@dataclass
class ResponseSnapshot:
    """What assertions may inspect about one invocation"""
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    transformed: Optional[Dict[str, Any]] = None
    response_time_ms: int = 0


class AssertionEngine:

    def __init__(
        self,
        resolver: Optional[TemplateResolver] = None,
        path_evaluator: Optional[PathEvaluator] = None
    ):
        self.resolver = resolver or default_resolver
        self.path_evaluator = path_evaluator or default_evaluator

    def extract_value(self, assertion: Assertion, snapshot: ResponseSnapshot) -> Any:
        if assertion.assertion_type == AssertionType.STATUS_CODE:
            return snapshot.status_code

        if assertion.assertion_type == AssertionType.RESPONSE_TIME:
            return snapshot.response_time_ms

        if assertion.assertion_type == AssertionType.HEADER:
            wanted = assertion.data_id.lower()
            for name, value in snapshot.headers.items():
                if name.lower() == wanted:
                    return value
            return None

        source = snapshot.body
        if assertion.data_source == AssertionDataSource.TRANSFORMED_DATA and snapshot.transformed is not None:
            source = snapshot.transformed
        return self.path_evaluator.evaluate(assertion.data_id or "$", source)

    def evaluate_assertion(
        self,
        assertion: Assertion,
        actual_value: Any,
        context: Optional[TemplateContext] = None
    ) -> AssertionResult:
        original = assertion.expected_value
        expected = original
        label = f"{assertion.assertion_type.value} {assertion.data_id} {assertion.operator}".replace("  ", " ")

        if assertion.is_template_expression and has_template_expressions(original):
            try:
                expected = self.resolver.resolve_string(original, context or TemplateContext())
            except FlowEngineError as e:
                error = f"Template resolution failed: {e.message}"
                return AssertionResult(
                    assertion_id=assertion.id,
                    passed=False,
                    actual_value=actual_value,
                    expected_value=original,
                    original_expected_value=original,
                    message=f"Assertion failed: {label} {original}, {error}",
                    error=error,
                )

        expected = coerce_expected_value(expected, assertion.expected_value_type)

        operator = _operators.get(assertion.operator)
        if operator is None:
            error = f"Unknown operator: {assertion.operator}"
            return AssertionResult(
                assertion_id=assertion.id,
                passed=False,
                actual_value=actual_value,
                expected_value=expected,
                original_expected_value=original,
                message=f"Error evaluating assertion: {error}",
                error=error,
            )

        passed = operator(actual_value, expected)

        expected_text = to_json_text(expected)
        if expected is not original and isinstance(original, str):
            expected_text = f"{original} -> {expected_text}"

        if passed:
            message = f"Assertion passed: {label} {expected_text}"
        else:
            message = f"Assertion failed: {label} {expected_text}, actual value: {to_json_text(actual_value)}"

        return AssertionResult(
            assertion_id=assertion.id,
            passed=passed,
            actual_value=actual_value,
            expected_value=expected,
            original_expected_value=original,
            message=message,
        )

    def run(
        self,
        assertions: List[Assertion],
        snapshot: ResponseSnapshot,
        context: Optional[TemplateContext] = None
    ) -> AssertionRunResult:
        """Evaluates enabled assertions in order, stopping at the first failure"""
        run_result = AssertionRunResult()

        for assertion in assertions:
            if not assertion.enabled:
                continue

            try:
                actual = self.extract_value(assertion, snapshot)
            except FlowEngineError as e:
                error = f"Error extracting assertion value: {e.message}"
                run_result.results.append(AssertionResult(
                    assertion_id=assertion.id,
                    passed=False,
                    expected_value=assertion.expected_value,
                    original_expected_value=assertion.expected_value,
                    message=error,
                    error=error,
                ))
                run_result.passed = False
                run_result.failure_message = error
                break

            result = self.evaluate_assertion(assertion, actual, context)
            run_result.results.append(result)
            if not result.passed:
                run_result.passed = False
                run_result.failure_message = result.message
                break

        return run_result
