"""
Unit tests for pipeline functions.
"""

import pytest
from shared.exceptions import ExpressionError
from services.orchestrator.engine.path_evaluator import evaluate
from services.orchestrator.engine.pipeline import (
    compare_values,
    list_pipeline_functions,
    parse_literal,
    split_arguments,
    split_pipeline,
)


ORDERS = {
    "orders": [
        {"id": "o1", "total": 20, "status": "paid", "priority": 2},
        {"id": "o2", "total": 5.5, "status": "open", "priority": 1},
        {"id": "o3", "total": "12", "status": "paid", "priority": 2},
        {"id": "o4", "total": None, "status": "void", "priority": 1},
    ]
}


def test_split_pipeline_respects_quotes_and_parens():
    """Pipes inside strings or calls are not separators"""
    assert split_pipeline("$.a | where($.b == 'x|y') | count()") == ["$.a", "where($.b == 'x|y')", "count()"]


def test_split_arguments_respects_nesting():
    assert split_arguments("a, f(b, c), 'd,e'") == ["a", "f(b, c)", "'d,e'"]


def test_parse_literal():
    assert parse_literal("'text'") == "text"
    assert parse_literal("42") == 42
    assert parse_literal("2.5") == 2.5
    assert parse_literal("true") is True
    assert parse_literal("null") is None
    assert parse_literal("bare") == "bare"


def test_sum_and_count():
    """sum skips values with no numeric view and reads numeric text"""
    assert evaluate("$.orders | sum('total')", ORDERS) == 37.5
    assert evaluate("$.orders | count()", ORDERS) == 4


def test_first_last_take_skip_at():
    assert evaluate("$.orders | first()", ORDERS)["id"] == "o1"
    assert evaluate("$.orders | last()", ORDERS)["id"] == "o4"
    assert [o["id"] for o in evaluate("$.orders | take(2)", ORDERS)] == ["o1", "o2"]
    assert [o["id"] for o in evaluate("$.orders | skip(3)", ORDERS)] == ["o4"]
    assert evaluate("$.orders | at(-2)", ORDERS)["id"] == "o3"
    assert evaluate("$.orders | at(10)", ORDERS) is None


def test_infinite_counts_are_clamped():
    assert len(evaluate("$.orders | take(1e999)", ORDERS)) == 4
    assert evaluate("$.orders | skip(1e999)", ORDERS) == []
    assert evaluate("$.orders | take(-1e999)", ORDERS) == []
    assert evaluate("$.orders | at(1e999)", ORDERS) is None


def test_map_overflow_yields_none():
    assert evaluate("$.values | map(pow(item, 1000))", {"values": [10, 100]}) == [None, None]


def test_where_keeps_items_with_empty_lists():
    users = {"users": [{"id": 1, "tags": []}, {"id": 2}, {"id": 3, "tags": ""}]}

    assert evaluate("$.users | where(tags)", users) == [{"id": 1, "tags": []}]


def test_sort_by_field_is_stable():
    """Elements with equal keys keep their input order"""
    result = evaluate("$.orders | sort(by: 'priority')", ORDERS)

    assert [o["id"] for o in result] == ["o2", "o4", "o1", "o3"]


def test_sort_descending():
    result = evaluate("$.orders | sort(by: 'priority', desc: true)", ORDERS)

    assert [o["id"] for o in result] == ["o1", "o3", "o2", "o4"]


def test_sort_is_idempotent():
    """Sorting an already sorted list changes nothing"""
    once = evaluate("$.orders | sort(by: 'total')", ORDERS)
    twice = evaluate("data | sort(by: 'total')", once)

    assert once == twice
    assert once[0]["id"] == "o4"


def test_compare_values_orders_none_first():
    assert compare_values(None, 1) == -1
    assert compare_values(2, "10") == -1
    assert compare_values("b", "a") == 1
    assert compare_values(3, 3) == 0


def test_pick_and_flatten():
    picked = evaluate("$.orders | take(1) | pick('id', 'status')", ORDERS)
    assert picked == [{"id": "o1", "status": "paid"}]

    assert evaluate("data | flatten()", [[1, 2], [3, [4]]]) == [1, 2, 3, [4]]
    assert evaluate("data | flatten(2)", [[1, 2], [3, [4]]]) == [1, 2, 3, 4]


def test_map_with_nested_pipeline():
    data = {"groups": [{"items": [1, 2]}, {"items": [3]}]}

    assert evaluate("$.groups | map($.items | count())", data) == [2, 1]


def test_transform_object():
    result = evaluate("$.orders | first() | transform(ref: $.id, paid: $.status == 'paid')", ORDERS)

    assert result == {"ref": "o1", "paid": True}


def test_casts_map_over_lists():
    assert evaluate("data | int()", ["1", "2.7", "x"]) == [1, 2, None]
    assert evaluate("data | float(0)", ["1.5", "x"]) == [1.5, 0]
    assert evaluate("data | string()", 5) == "5"


def test_arithmetic_steps():
    assert evaluate("$.n | add(2) | mul(3)", {"n": 4}) == 18
    assert evaluate("$.n | div(0)", {"n": 4}) == float("inf")
    assert evaluate("$.n | mod(0)", {"n": 4}) is None


def test_arithmetic_on_non_number_returns_none():
    assert evaluate("$.n | add(1)", {"n": "4"}) is None


def test_where_on_non_list_is_empty():
    assert evaluate("$.orders[0] | where($.total > 1)", ORDERS) == []


def test_where_requires_condition():
    with pytest.raises(ExpressionError, match="requires a condition"):
        evaluate("$.orders | where()", ORDERS)


def test_registered_functions_include_aliases():
    names = list_pipeline_functions()

    for name in ("where", "select", "map", "sort", "take", "limit", "toInt"):
        assert name in names
