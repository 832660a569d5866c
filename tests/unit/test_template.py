"""
Unit tests for template resolution.
"""

import pytest
from shared.exceptions import ExpressionError, TemplateResolutionError
from services.orchestrator.engine.template import (
    TemplateContext,
    TemplateResolver,
    TemplateSource,
    find_template_expressions,
    has_template_expressions,
    parse_function_arguments,
    parse_template_expression,
)


def make_context(**overrides):
    context = TemplateContext(
        responses={
            "login-0": {"token": "abc123", "user": {"id": 42, "active": True}, "roles": ["admin", "dev"]},
            "list-0": [{"id": 1}, {"id": 2}],
        },
        transformations={
            "login-0": {"session": {"token": "abc123", "expires": 3600}, "ids": [1, 2, 3]},
        },
        parameters={"limit": 10, "name": "Ann", "empty": None},
        environment={"BASE_PATH": "/v2", "RETRIES": 3},
    )
    for key, value in overrides.items():
        setattr(context, key, value)
    return context


def test_has_template_expressions():
    assert has_template_expressions("Bearer {{res:login-0.$.token}}") is True
    assert has_template_expressions("{{{param:limit}}}") is True
    assert has_template_expressions("no templates here") is False
    assert has_template_expressions(42) is False


def test_find_template_expressions():
    found = find_template_expressions("{{param:name}}-{{{param:limit}}}")

    assert found == ["{{param:name}}", "{{{param:limit}}}"]


def test_parse_template_expression_synonyms():
    """Every synonym maps onto its canonical source"""
    assert parse_template_expression("{{response:a-0.$.x}}").source == TemplateSource.RESPONSE
    assert parse_template_expression("{{transform:a-0.$.x}}").source == TemplateSource.TRANSFORMATION
    assert parse_template_expression("{{var:x}}").source == TemplateSource.PARAMETER
    assert parse_template_expression("{{function:uuid()}}").source == TemplateSource.FUNCTION
    assert parse_template_expression("{{environment:X}}").source == TemplateSource.ENVIRONMENT

    triple = parse_template_expression("{{{param:limit}}}")
    assert triple.preserve_type is True
    assert triple.path == "limit"


def test_parse_template_expression_unknown_source():
    with pytest.raises(ExpressionError, match="Unknown template source: db"):
        parse_template_expression("{{db:users}}")


def test_single_expression_preserves_type():
    """A string that is exactly one expression yields the native value"""
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string("{{res:login-0.$.user.id}}", context) == 42
    assert resolver.resolve_string("{{res:login-0.$.user}}", context) == {"id": 42, "active": True}
    assert resolver.resolve_string("{{param:limit}}", context) == 10
    assert resolver.resolve_string('"{{param:limit}}"', context) == 10


def test_triple_braces_keep_native_types():
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string("{{{res:login-0.$.roles}}}", context) == ["admin", "dev"]
    assert resolver.resolve_string("{{{res:login-0.$.user.active}}}", context) is True
    assert resolver.resolve_string("{{{env:RETRIES}}}", context) == 3


def test_multiple_expressions_coerce_to_text():
    """Embedded expressions are substituted as text"""
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string("{{env:BASE_PATH}}/users?limit={{param:limit}}", context) == "/v2/users?limit=10"
    assert resolver.resolve_string("Bearer {{res:login-0.$.token}}", context) == "Bearer abc123"
    assert resolver.resolve_string("active={{res:login-0.$.user.active}}", context) == "active=true"
    assert resolver.resolve_string("value={{param:empty}}", context) == "value="


def test_triple_braces_embedded_dump_json():
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string("roles={{{res:login-0.$.roles}}}", context) == 'roles=["admin", "dev"]'
    assert resolver.resolve_string("name={{{param:name}}}", context) == "name=Ann"


def test_single_versus_multi_expression_behavior():
    """The same reference is native alone and text when embedded"""
    resolver = TemplateResolver()
    context = make_context()

    alone = resolver.resolve_string("{{param:limit}}", context)
    embedded = resolver.resolve_string("{{param:limit}}{{param:name}}", context)

    assert alone == 10
    assert embedded == "10Ann"


def test_quoted_substitution_is_parsed_back():
    """A substituted result that is a quoted JSON string is read back"""
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string('"{{param:name}} {{param:limit}}"', context) == "Ann 10"


def test_failed_embedded_expression_keeps_literal():
    resolver = TemplateResolver()
    context = make_context()

    result = resolver.resolve_string("id={{res:missing-0.$.id}}&n={{param:limit}}", context)

    assert result == "id={{res:missing-0.$.id}}&n=10"


def test_single_expression_errors_propagate():
    resolver = TemplateResolver()
    context = make_context()

    with pytest.raises(TemplateResolutionError, match="Response data not found for: missing-0. Available keys: login-0, list-0"):
        resolver.resolve_string("{{res:missing-0.$.id}}", context)
    with pytest.raises(TemplateResolutionError, match="Parameter not found: nope"):
        resolver.resolve_string("{{param:nope}}", context)
    with pytest.raises(TemplateResolutionError, match="Environment variable not found: NOPE"):
        resolver.resolve_string("{{env:NOPE}}", context)


def test_transformation_lookup():
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string("{{proc:login-0.$.session.token}}", context) == "abc123"
    assert resolver.resolve_string("{{proc:login-0.$.session}}", context) == {"token": "abc123", "expires": 3600}
    assert resolver.resolve_string("{{proc:login-0.$.ids[1]}}", context) == 2


def test_transformation_errors():
    resolver = TemplateResolver()
    context = make_context()

    with pytest.raises(ExpressionError, match="Invalid transformation template"):
        resolver.resolve_string("{{proc:login-0.session}}", context)
    with pytest.raises(TemplateResolutionError, match="Transformation alias not found: nope for step login-0"):
        resolver.resolve_string("{{proc:login-0.$.nope}}", context)
    with pytest.raises(TemplateResolutionError, match="Transformation data not found for: other-0"):
        resolver.resolve_string("{{proc:other-0.$.session}}", context)


def test_response_pipeline_expression():
    resolver = TemplateResolver()
    context = make_context()

    assert resolver.resolve_string("{{res:list-0.$ | map($.id) | sum()}}", context) == 3


def test_function_calls():
    resolver = TemplateResolver(functions={"double": lambda x: x * 2, "greet": lambda name: f"hi {name}"})
    context = make_context()

    assert resolver.resolve_string("{{func:double(21)}}", context) == 42
    assert resolver.resolve_string("{{func:greet('Ann')}}", context) == "hi Ann"


def test_unknown_function():
    resolver = TemplateResolver(functions={"uuid": lambda: "x"})

    with pytest.raises(TemplateResolutionError, match="Function not found: nope. Available functions: uuid"):
        resolver.resolve_string("{{func:nope()}}", make_context())


def test_invalid_function_format():
    with pytest.raises(ExpressionError, match="Invalid function template format"):
        TemplateResolver().resolve_string("{{func:uuid}}", make_context())


def test_parse_function_arguments():
    assert parse_function_arguments("1, 'YYYY-MM-DD', \"x\", true, [1, 2]") == [1, "YYYY-MM-DD", "x", True, [1, 2]]
    assert parse_function_arguments("") == []


def test_resolve_walks_structures():
    """Nested dicts and lists are resolved leaf by leaf"""
    resolver = TemplateResolver()
    context = make_context()

    body = {
        "user": "{{res:login-0.$.user.id}}",
        "filters": ["{{param:name}}", 5, None],
        "path": "{{env:BASE_PATH}}/items",
        "nested": {"count": "{{{param:limit}}}"},
    }

    assert resolver.resolve(body, context) == {
        "user": 42,
        "filters": ["Ann", 5, None],
        "path": "/v2/items",
        "nested": {"count": 10},
    }


def test_context_functions_override_resolver_functions():
    resolver = TemplateResolver(functions={"now": lambda: "resolver"})
    context = make_context(functions={"now": lambda: "context"})

    assert resolver.resolve_string("{{func:now()}}", context) == "context"
