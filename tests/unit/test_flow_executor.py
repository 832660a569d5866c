"""
Unit tests for step and invocation execution.

Transports are mocked; each handler maps a request to a canned response.
"""

from unittest.mock import Mock
from shared.exceptions import RequestTimeoutError, TaskError
from shared.types import (
    ApiHost,
    Assertion,
    AssertionType,
    EndpointDefinition,
    ExecutionPreferences,
    FlowDefinition,
    FlowSettings,
    FlowStep,
    HeaderValue,
    InvocationState,
    StepEndpoint,
    Transformation,
)
from services.orchestrator.engine.context import CancellationToken, ExecutionContext
from services.orchestrator.engine.cookies import Cookie
from services.orchestrator.engine.flow_executor import FlowExecutionEngine, default_transport
from services.orchestrator.engine.transport import (
    DirectTransport,
    ProxiedTransport,
    Transport,
    TransportResponse,
)


def make_transport(handler):
    transport = Mock(spec=Transport)
    transport.send.side_effect = handler
    transport.select_cookies.return_value = []
    return transport


def shop_handler(request):
    if request.url.endswith("/login"):
        return TransportResponse(status_code=200, reason="OK", body={"token": "t-1", "user": {"id": 7}})
    if "/orders" in request.url:
        return TransportResponse(status_code=200, reason="OK", body={"items": [{"id": 1, "total": 5}, {"id": 2, "total": 9}]})
    if request.url.endswith("/me"):
        return TransportResponse(status_code=200, reason="OK", body={"id": 7, "auth": request.headers.get("Authorization")})
    return TransportResponse(status_code=404, reason="Not Found", body={"error": "missing"})


def build_flow(steps):
    return FlowDefinition(
        id="flow-1",
        name="Shop",
        endpoints=[
            EndpointDefinition(id="login", method="POST", path="/login"),
            EndpointDefinition(id="me", path="/me"),
            EndpointDefinition(id="orders", path="/orders"),
            EndpointDefinition(id="broken", path="/broken"),
        ],
        settings=FlowSettings(api_hosts={"shop": ApiHost(url="https://shop.test")}),
        steps=steps,
    )


def call(endpoint_id, **kwargs):
    return StepEndpoint(endpoint_id=endpoint_id, api_id="shop", **kwargs)


def make_engine(steps, handler=shop_handler, **preferences):
    context = ExecutionContext(build_flow(steps), preferences=ExecutionPreferences(**preferences))
    transport = make_transport(handler)
    return FlowExecutionEngine(context, transport, sleep=Mock()), context, transport


def test_default_transport_follows_cookie_preference():
    assert isinstance(default_transport(False), DirectTransport)
    assert isinstance(default_transport(True), ProxiedTransport)


def test_response_feeds_later_request():
    """A token from one invocation reaches the next invocation's header"""
    steps = [
        FlowStep(step_id="login", endpoints=[call("login", body={"user": "ann"})]),
        FlowStep(step_id="me", endpoints=[call(
            "me", headers=[HeaderValue(name="Authorization", value="Bearer {{res:login-0.$.token}}")]
        )]),
    ]
    engine, context, transport = make_engine(steps)

    for step in steps:
        engine.execute_step(step)

    assert context.invocations["login-0"].state == InvocationState.COMPLETED
    assert context.invocations["me-0"].request.headers == {"Authorization": "Bearer t-1"}
    assert context.stored_responses["me-0"]["auth"] == "Bearer t-1"
    assert transport.send.call_count == 2


def test_transformations_are_stored_per_alias():
    step = FlowStep(step_id="orders", endpoints=[call("orders", transformations=[
        Transformation(alias="ids", expression="$.items | map($.id)"),
        Transformation(alias="raw"),
        Transformation(alias="missing", expression="$.nothing"),
        Transformation(alias="broken", expression="$.items | explode()"),
    ])])
    engine, context, _ = make_engine([step])

    engine.execute_step(step)

    stored = context.stored_transformations["orders-0"]
    raw = context.stored_responses["orders-0"]
    assert stored["ids"] == [1, 2]
    assert stored["raw"] == raw
    assert stored["missing"] == raw
    assert stored["broken"] == raw


def test_transformation_expression_templates_are_substituted_first():
    steps = [
        FlowStep(step_id="login", endpoints=[call("login")]),
        FlowStep(step_id="orders", endpoints=[call("orders", transformations=[
            Transformation(alias="mine", expression="$.items | where($.total > {{res:login-0.$.user.id}})"),
        ])]),
    ]
    engine, context, _ = make_engine(steps)

    for step in steps:
        engine.execute_step(step)

    assert context.stored_transformations["orders-0"]["mine"] == [{"id": 2, "total": 9}]


def test_failed_assertion_does_not_fail_invocation():
    step = FlowStep(step_id="orders", endpoints=[call("orders", assertions=[
        Assertion(assertion_type=AssertionType.STATUS_CODE, operator="equals", expected_value=200),
        Assertion(data_id="$.items", operator="has_length", expected_value=5),
    ])])
    engine, context, _ = make_engine([step])

    engine.execute_step(step)

    invocation = context.invocations["orders-0"]
    assert invocation.state == InvocationState.COMPLETED
    assert invocation.assertions.passed is False
    assert len(invocation.assertions.results) == 2
    assert context.error is None


def test_non_2xx_fails_invocation_and_sets_error():
    step = FlowStep(step_id="broken", endpoints=[call("broken")])
    engine, context, _ = make_engine([step])

    engine.execute_step(step)

    invocation = context.invocations["broken-0"]
    assert invocation.state == InvocationState.FAILED
    assert invocation.error == "Request failed with status 404: Not Found"
    assert context.error == invocation.error
    assert context.stored_responses["broken-0"] == {"error": "missing"}


def test_skip_default_status_check():
    step = FlowStep(step_id="broken", endpoints=[call("broken", skip_default_status_check=True)])
    engine, context, _ = make_engine([step])

    engine.execute_step(step)

    assert context.invocations["broken-0"].state == InvocationState.COMPLETED
    assert context.error is None


def test_failure_without_stop_on_error_keeps_context_clean():
    step = FlowStep(step_id="broken", endpoints=[call("broken"), call("login")])
    engine, context, _ = make_engine([step], stop_on_error=False)

    engine.execute_step(step)

    assert context.invocations["broken-0"].state == InvocationState.FAILED
    assert context.invocations["login-1"].state == InvocationState.COMPLETED
    assert context.error is None


def test_stop_on_error_skips_rest_of_step():
    step = FlowStep(step_id="mixed", endpoints=[call("broken"), call("login")])
    engine, context, transport = make_engine([step])

    engine.execute_step(step)

    assert context.invocations["mixed-1"].state == InvocationState.SKIPPED
    assert transport.send.call_count == 1


def test_missing_host_fails_invocation():
    step = FlowStep(step_id="s", endpoints=[StepEndpoint(endpoint_id="login", api_id="unknown")])
    engine, context, transport = make_engine([step])

    engine.execute_step(step)

    assert context.invocations["s-0"].state == InvocationState.FAILED
    assert "No API host available" in context.invocations["s-0"].error
    transport.send.assert_not_called()


def test_environment_host_wins_over_flow_host():
    step = FlowStep(step_id="login", endpoints=[call("login")])
    context = ExecutionContext(build_flow([step]), environment_hosts={"shop": "https://staging.shop.test/"})
    transport = make_transport(shop_handler)
    engine = FlowExecutionEngine(context, transport)

    engine.execute_step(step)

    assert context.invocations["login-0"].request.url == "https://staging.shop.test/login"


def test_unresolvable_template_fails_invocation():
    step = FlowStep(step_id="me", endpoints=[call(
        "me", headers=[HeaderValue(name="Authorization", value="{{res:login-0.$.token}}")]
    )])
    engine, context, transport = make_engine([step])

    engine.execute_step(step)

    assert context.invocations["me-0"].state == InvocationState.FAILED
    assert "Response data not found for: login-0" in context.invocations["me-0"].error
    transport.send.assert_not_called()


def test_timeout_is_retried_then_fails():
    def timing_out(request):
        raise RequestTimeoutError(
            f"Request timed out: {request.url}",
            task_error=TaskError(error_type="NETWORK_ERROR", error_message="timeout", is_retryable=True)
        )

    step = FlowStep(step_id="login", endpoints=[call("login")])
    engine, context, transport = make_engine([step], handler=timing_out, retry_count=2)

    engine.execute_step(step)

    assert transport.send.call_count == 3
    assert context.invocations["login-0"].state == InvocationState.FAILED
    assert "after 3 attempts" in context.invocations["login-0"].error


def test_parallel_step_keeps_declaration_order():
    step = FlowStep(step_id="batch", endpoints=[call("orders"), call("login"), call("me")])
    engine, context, transport = make_engine([step], parallel_execution=True)

    engine.execute_step(step)

    assert list(context.stored_responses) == ["batch-0", "batch-1", "batch-2"]
    assert list(context.invocations) == ["batch-0", "batch-1", "batch-2"]
    assert all(result.state == InvocationState.COMPLETED for result in context.invocations.values())
    assert transport.send.call_count == 3


def test_stopped_context_skips_step():
    cancellation = CancellationToken()
    cancellation.cancel()
    step = FlowStep(step_id="login", endpoints=[call("login"), call("me")])
    context = ExecutionContext(build_flow([step]), cancellation=cancellation)
    transport = make_transport(shop_handler)

    FlowExecutionEngine(context, transport).execute_step(step)

    assert [result.state for result in context.invocations.values()] == [InvocationState.SKIPPED] * 2
    transport.send.assert_not_called()


def test_cookies_are_stored_and_cleared():
    def with_cookie(request):
        return TransportResponse(status_code=200, reason="OK", body={}, cookies=[Cookie(name="sid", value="s1")])

    first = FlowStep(step_id="login", endpoints=[call("login")])
    second = FlowStep(step_id="me", endpoints=[call("me")], clear_cookies_before_execution=True)
    engine, context, _ = make_engine([first, second], handler=with_cookie)

    engine.execute_step(first)
    assert len(context.cookie_store) == 1

    context.cookie_store.store("other", [])
    engine.execute_step(second)
    assert context.cookie_store.snapshot() == {"me-0": [Cookie(name="sid", value="s1").to_dict()]}


def test_invocation_updates_are_reported():
    updates = []
    step = FlowStep(step_id="login", endpoints=[call("login")])
    context = ExecutionContext(build_flow([step]), on_invocation_update=lambda result: updates.append(result.state))

    FlowExecutionEngine(context, make_transport(shop_handler)).execute_step(step)

    assert updates[0] == InvocationState.RUNNING
    assert updates[-1] == InvocationState.COMPLETED


def test_raising_invocation_callback_is_ignored():
    step = FlowStep(step_id="login", endpoints=[call("login")])
    context = ExecutionContext(build_flow([step]), on_invocation_update=Mock(side_effect=RuntimeError("boom")))

    FlowExecutionEngine(context, make_transport(shop_handler)).execute_step(step)

    assert context.invocations["login-0"].state == InvocationState.COMPLETED


def test_unexpected_error_fails_invocation():
    step = FlowStep(step_id="login", endpoints=[call("login"), call("me")])
    engine, context, transport = make_engine([step], retry_count=2)
    transport.send.side_effect = RuntimeError("socket exploded")

    engine.execute_step(step)

    invocation = context.invocations["login-0"]
    assert invocation.state == InvocationState.FAILED
    assert invocation.error == "Unexpected error: socket exploded"
    assert context.error == invocation.error
    assert context.invocations["login-1"].state == InvocationState.SKIPPED
    assert transport.send.call_count == 1
