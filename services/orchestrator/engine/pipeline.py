"""Pipeline functions applied by `$.path | fn(args) | fn(args)` expressions."""

import logging
import math
import re
import sys
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Optional
from shared.exceptions import ExpressionError
from shared.utils import is_number, to_text
from services.orchestrator.engine.expressions import (
    arithmetic,
    cast_to_bool,
    cast_to_float,
    cast_to_int,
    cast_to_string,
    compile_expression,
    is_nan,
    normalize_number,
    to_number,
    truthy,
)
from services.orchestrator.engine.paths import evaluate_path

_STEP_RE = re.compile(r"^([A-Za-z_]\w*)\s*\((.*)\)$", re.DOTALL)
_BARE_STEP_RE = re.compile(r"^([A-Za-z_]\w*)$")
_KEY_VALUE_RE = re.compile(r"^\s*([A-Za-z_]\w*)\s*:(.*)$", re.DOTALL)
_NUMBER_LITERAL_RE = re.compile(r"^-?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

# fn(evaluator, data, raw argument text) -> result
PipelineFunction = Callable[[Any, Any, str], Any]

_pipeline_functions: Dict[str, PipelineFunction] = {}


def register_pipeline_function(*names: str):
    """Decorator to register a pipeline function under one or more names"""
    def decorator(func: PipelineFunction):
        for name in names:
            _pipeline_functions[name] = func
        return func
    return decorator


def get_pipeline_function(name: str) -> PipelineFunction:
    if name not in _pipeline_functions:
        raise ExpressionError(
            f"Unknown pipeline function: {name}. Available functions: {', '.join(sorted(_pipeline_functions))}"
        )
    return _pipeline_functions[name]


# Splitting helpers

def _split_top_level(text: str, separator: str) -> List[str]:
    """Splits on a single-character separator outside quotes, parens and brackets"""
    parts: List[str] = []
    depth = 0
    quote = None
    current = ""
    index = 0

    while index < len(text):
        char = text[index]
        if quote:
            current += char
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
            current += char
        elif char in "([{":
            depth += 1
            current += char
        elif char in ")]}":
            depth -= 1
            current += char
        elif char == separator and depth == 0:
            # `||` is the logical operator, never a pipe
            if separator == "|" and (text[index + 1:index + 2] == "|" or text[index - 1:index] == "|"):
                current += char
            else:
                parts.append(current.strip())
                current = ""
        else:
            current += char
        index += 1

    parts.append(current.strip())
    return parts


def split_pipeline(expression: str) -> List[str]:
    return _split_top_level(expression, "|")


def split_arguments(text: str) -> List[str]:
    if not text.strip():
        return []
    return _split_top_level(text, ",")


def parse_literal(text: str) -> Any:
    """Converts an argument literal; anything unrecognized stays raw text"""
    value = text.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "null":
        return None
    if _NUMBER_LITERAL_RE.match(value):
        return normalize_number(float(value))
    return value


def parse_keyword_arguments(text: str) -> Dict[str, str]:
    arguments: Dict[str, str] = {}
    for part in split_arguments(text):
        match = _KEY_VALUE_RE.match(part)
        if not match:
            raise ExpressionError(f"Expected 'key: value' argument but found: {part}")
        arguments[match.group(1)] = match.group(2).strip()
    return arguments


def _is_keyword_form(text: str) -> bool:
    parts = split_arguments(text)
    return bool(parts) and _KEY_VALUE_RE.match(parts[0]) is not None


def _field_path(field: str) -> str:
    return field if field.startswith("$") else f"$.{field}"


def apply_pipeline_step(evaluator: Any, step: str, data: Any) -> Any:
    text = step.strip()
    match = _STEP_RE.match(text) or _BARE_STEP_RE.match(text)
    if not match:
        raise ExpressionError(f"Invalid pipeline step: {step}")

    name = match.group(1)
    raw_args = match.group(2) if match.re is _STEP_RE else ""
    return get_pipeline_function(name)(evaluator, data, raw_args.strip())


# Projection helpers

def _is_projection_expression(text: str) -> bool:
    return "$" in text or "|" in text or "(" in text or re.search(r"\bitem\b", text) is not None


def _project(evaluator: Any, expression: str, item: Any) -> Any:
    if len(split_pipeline(expression)) > 1:
        return evaluator.evaluate(expression, item)
    return compile_expression(expression).evaluate(item)


def _project_object(evaluator: Any, fields: Dict[str, str], item: Any) -> Dict[str, Any]:
    projected: Dict[str, Any] = {}
    for key, expression in fields.items():
        if _is_projection_expression(expression):
            projected[key] = _project(evaluator, expression, item)
        else:
            projected[key] = parse_literal(expression)
    return projected


# Filtering and projection

@register_pipeline_function("where", "select")
def where(evaluator: Any, data: Any, raw_args: str) -> List[Any]:
    if not isinstance(data, list):
        return []
    if not raw_args:
        raise ExpressionError("where() requires a condition")
    condition = compile_expression(raw_args)
    return [item for item in data if truthy(condition.evaluate(item))]


@register_pipeline_function("map")
def map_items(evaluator: Any, data: Any, raw_args: str) -> List[Any]:
    if not isinstance(data, list):
        return []
    if not raw_args:
        raise ExpressionError("map() requires an expression")

    if _is_keyword_form(raw_args):
        fields = parse_keyword_arguments(raw_args)
        return [_project_object(evaluator, fields, item) for item in data]

    if len(split_pipeline(raw_args)) == 1:
        compile_expression(raw_args)
    return [_project(evaluator, raw_args, item) for item in data]


@register_pipeline_function("transform")
def transform(evaluator: Any, data: Any, raw_args: str) -> Any:
    if isinstance(data, list):
        return map_items(evaluator, data, raw_args)
    if isinstance(data, dict):
        if _is_keyword_form(raw_args):
            return _project_object(evaluator, parse_keyword_arguments(raw_args), data)
        return _project(evaluator, raw_args, data)
    return data


@register_pipeline_function("pick")
def pick(evaluator: Any, data: Any, raw_args: str) -> Any:
    keys = [to_text(parse_literal(arg)) for arg in split_arguments(raw_args)]
    if isinstance(data, list):
        return [pick(evaluator, item, raw_args) for item in data]
    if not isinstance(data, dict):
        return data
    return {key: data[key] for key in keys if key in data}


# Aggregation

@register_pipeline_function("sum")
def sum_items(evaluator: Any, data: Any, raw_args: str) -> Any:
    if not isinstance(data, list):
        return 0
    field = parse_literal(raw_args) if raw_args else None

    total = 0
    for item in data:
        value = evaluate_path(_field_path(field), item) if isinstance(field, str) and field else item
        number = to_number(value)
        if not is_nan(number):
            total += number
    return normalize_number(total)


@register_pipeline_function("count")
def count(evaluator: Any, data: Any, raw_args: str) -> int:
    return len(data) if isinstance(data, list) else 0


@register_pipeline_function("first")
def first(evaluator: Any, data: Any, raw_args: str) -> Any:
    return data[0] if isinstance(data, list) and data else None


@register_pipeline_function("last")
def last(evaluator: Any, data: Any, raw_args: str) -> Any:
    return data[-1] if isinstance(data, list) and data else None


# Ordering and slicing

def compare_values(left: Any, right: Any) -> int:
    if strict_order_equal(left, right):
        return 0
    if left is None:
        return -1
    if right is None:
        return 1

    a, b = to_number(left), to_number(right)
    if not is_nan(a) and not is_nan(b):
        return (a > b) - (a < b)

    a_text, b_text = to_text(left), to_text(right)
    return (a_text > b_text) - (a_text < b_text)


def strict_order_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    return type(left) is type(right) and left == right


@register_pipeline_function("sort")
def sort_items(evaluator: Any, data: Any, raw_args: str) -> List[Any]:
    if not isinstance(data, list):
        return []

    options = parse_keyword_arguments(raw_args) if raw_args else {}
    by = parse_literal(options["by"]) if "by" in options else None
    descending = cast_to_bool(parse_literal(options.get("desc", "false"))) is True

    def key_of(item: Any) -> Any:
        if isinstance(by, str) and by:
            return evaluate_path(_field_path(by), item)
        return item

    def compare(left: Any, right: Any) -> int:
        result = compare_values(key_of(left), key_of(right))
        return -result if descending else result

    return sorted(data, key=cmp_to_key(compare))


def _count_argument(raw_args: str) -> Optional[int]:
    value = to_number(parse_literal(raw_args)) if raw_args else math.nan
    if is_nan(value):
        return None
    return int(max(min(value, sys.maxsize), -sys.maxsize))


@register_pipeline_function("take", "limit")
def take(evaluator: Any, data: Any, raw_args: str) -> Any:
    if not isinstance(data, list):
        return []
    size = _count_argument(raw_args)
    return list(data) if size is None else data[:max(size, 0)]


@register_pipeline_function("skip")
def skip(evaluator: Any, data: Any, raw_args: str) -> Any:
    if not isinstance(data, list):
        return []
    size = _count_argument(raw_args)
    return list(data) if size is None else data[max(size, 0):]


@register_pipeline_function("at")
def at(evaluator: Any, data: Any, raw_args: str) -> Any:
    if not isinstance(data, list):
        return None
    index = _count_argument(raw_args)
    if index is None or not -len(data) <= index < len(data):
        return None
    return data[index]


def _flatten(items: List[Any], depth: int) -> List[Any]:
    flattened: List[Any] = []
    for item in items:
        if isinstance(item, list) and depth > 0:
            flattened.extend(_flatten(item, depth - 1))
        else:
            flattened.append(item)
    return flattened


@register_pipeline_function("flatten")
def flatten(evaluator: Any, data: Any, raw_args: str) -> List[Any]:
    if not isinstance(data, list):
        return []
    depth = _count_argument(raw_args)
    return _flatten(data, 1 if depth is None else depth)


# Casting

def _cast_function(caster: Callable[[Any, Any], Any], map_lists: bool = True) -> PipelineFunction:
    def apply(evaluator: Any, data: Any, raw_args: str) -> Any:
        default = parse_literal(raw_args) if raw_args else None
        if map_lists and isinstance(data, list):
            return [caster(item, default) for item in data]
        return caster(data, default)
    return apply


register_pipeline_function("int", "toInt")(_cast_function(cast_to_int))
register_pipeline_function("float", "toFloat")(_cast_function(cast_to_float))
register_pipeline_function("string", "toString")(_cast_function(cast_to_string))
register_pipeline_function("bool", "toBool")(_cast_function(cast_to_bool, map_lists=False))


# Arithmetic on a single number

def _operand(evaluator: Any, raw_args: str) -> Any:
    value = parse_literal(raw_args)
    if not isinstance(value, str) or not value:
        return value
    if len(split_pipeline(value)) > 1:
        return evaluator.evaluate(value, {})
    return compile_expression(value).evaluate({})


def _arithmetic_function(operator: str) -> PipelineFunction:
    def apply(evaluator: Any, data: Any, raw_args: str) -> Any:
        if not is_number(data):
            logging.warning(
                "Arithmetic pipeline step applied to a non-number",
                extra={"operator": operator, "value_type": type(data).__name__}
            )
            return None
        operand = _operand(evaluator, raw_args)
        if not is_number(operand):
            return None
        return arithmetic(operator, data, operand)
    return apply


register_pipeline_function("add")(_arithmetic_function("+"))
register_pipeline_function("sub", "subtract")(_arithmetic_function("-"))
register_pipeline_function("mul", "multiply")(_arithmetic_function("*"))
register_pipeline_function("div", "divide")(_arithmetic_function("/"))
register_pipeline_function("mod")(_arithmetic_function("%"))


def list_pipeline_functions() -> List[str]:
    return sorted(_pipeline_functions)

