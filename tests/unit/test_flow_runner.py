"""
Unit tests for flow validation and complete flow runs.
"""

from unittest.mock import Mock
from shared.types import (
    ApiHost,
    EndpointDefinition,
    Environment,
    ExecutionPreferences,
    FlowDefinition,
    FlowOutput,
    FlowParameter,
    FlowSettings,
    FlowStep,
    HeaderValue,
    InvocationState,
    StepEndpoint,
    SubEnvironment,
    Transformation,
)
from services.orchestrator.engine.context import CancellationToken
from services.orchestrator.engine.flow_runner import FlowRunner, FlowValidator
from services.orchestrator.engine.transport import Transport, TransportResponse


def make_transport(handler):
    transport = Mock(spec=Transport)
    transport.send.side_effect = handler
    transport.select_cookies.return_value = []
    return transport


def auth_handler(request):
    if request.url.endswith("/login"):
        return TransportResponse(status_code=200, reason="OK", body={"token": "t-1", "user": {"id": 7}})
    if request.url.endswith("/me"):
        if request.headers.get("Authorization") != "Bearer t-1":
            return TransportResponse(status_code=401, reason="Unauthorized", body={"error": "bad token"})
        return TransportResponse(status_code=200, reason="OK", body={"id": 7, "name": "Ann"})
    return TransportResponse(status_code=500, reason="Internal Server Error", body=None)


def login_flow(outputs=None, parameters=None, hosts=None):
    return FlowDefinition(
        id="auth",
        name="Auth",
        endpoints=[
            EndpointDefinition(id="login", method="POST", path="/login"),
            EndpointDefinition(id="me", path="/me"),
            EndpointDefinition(id="boom", path="/boom"),
        ],
        settings=FlowSettings(api_hosts=hosts if hosts is not None else {"auth": ApiHost(url="https://auth.test")}),
        parameters=parameters or [],
        outputs=outputs or [],
        steps=[
            FlowStep(step_id="login", endpoints=[StepEndpoint(
                endpoint_id="login", api_id="auth", body={"user": "ann"}
            )]),
            FlowStep(step_id="me", endpoints=[StepEndpoint(
                endpoint_id="me",
                api_id="auth",
                headers=[HeaderValue(name="Authorization", value="Bearer {{res:login-0.$.token}}")],
            )]),
        ],
    )


def make_runner(flow, handler=auth_handler, **kwargs):
    return FlowRunner(flow, transport=make_transport(handler), sleep=Mock(), **kwargs)


def test_validation_messages():
    assert FlowValidator.validation_error(FlowDefinition(id="f")) == (
        "Invalid flow: Flow has no steps; Flow has no endpoint definitions"
    )
    assert FlowValidator.validation_error(login_flow(hosts={})) == (
        "No API hosts configured. Please configure API hosts in flow settings."
    )
    assert FlowValidator.validation_error(login_flow(hosts={}), {"auth": "https://env.test"}) is None


def test_duplicate_step_ids_are_invalid():
    flow = login_flow()
    flow.steps.append(flow.steps[0])

    assert "Duplicate step ID: login" in FlowValidator.validation_error(flow)


def test_successful_run_with_outputs():
    flow = login_flow(outputs=[
        FlowOutput(name="token", value="{{res:login-0.$.token}}"),
        FlowOutput(name="user_id", value="{{res:me-0.$.id}}", type="number"),
        FlowOutput(name="label", value="static", is_template=False),
    ])
    flow.steps[0].endpoints[0].body = {"user": "{{param:user}}"}
    on_complete = Mock()
    runner = make_runner(flow, on_complete=on_complete)

    result = runner.run_flow({"user": "ann"})

    assert result.success is True
    assert result.error is None
    assert result.outputs == {"token": "t-1", "user_id": 7, "label": "static"}
    assert list(result.stored_responses) == ["login-0", "me-0"]
    assert result.invocations["login-0"].request.body == {"user": "ann"}
    on_complete.assert_called_once_with(result)


def test_failing_output_is_reported_without_failing_run():
    flow = login_flow(outputs=[FlowOutput(name="missing", value="{{res:nothing-0.$.id}}")])

    result = make_runner(flow).run_flow()

    assert result.success is True
    assert result.outputs == {"missing": None}
    assert "Response data not found for: nothing-0" in result.output_errors["missing"]


def test_missing_required_parameters_stop_before_execution():
    flow = login_flow(parameters=[
        FlowParameter(name="user", required=True),
        FlowParameter(name="tenant", required=True),
        FlowParameter(name="region", required=True, default_value="eu"),
    ])
    transport = make_transport(auth_handler)

    result = FlowRunner(flow, transport=transport).run_flow({"tenant": ""})

    assert result.success is False
    assert result.error == "Missing required parameters: user, tenant"
    assert result.missing_parameters == ["user", "tenant"]
    transport.send.assert_not_called()


def test_set_parameter_values_fills_missing_parameters():
    flow = login_flow(parameters=[FlowParameter(name="user", required=True)])
    runner = make_runner(flow)
    runner.set_parameter_values({"user": "bob"})

    result = runner.run_flow()

    assert result.success is True
    assert result.parameter_values == {"user": "bob"}


def test_failure_skips_later_steps():
    flow = login_flow()
    flow.steps.insert(1, FlowStep(step_id="boom", endpoints=[StepEndpoint(endpoint_id="boom", api_id="auth")]))

    result = make_runner(flow).run_flow()

    assert result.success is False
    assert result.error == "Request failed with status 500: Internal Server Error"
    assert result.invocations["me-0"].state == InvocationState.SKIPPED
    assert "me-0" not in result.stored_responses


def test_failure_without_stop_on_error_continues():
    flow = login_flow()
    flow.steps.insert(1, FlowStep(step_id="boom", endpoints=[StepEndpoint(endpoint_id="boom", api_id="auth")]))

    result = make_runner(flow, preferences=ExecutionPreferences(stop_on_error=False)).run_flow()

    assert result.success is False
    assert result.error == "Request failed with status 500: Internal Server Error"
    assert result.invocations["me-0"].state == InvocationState.COMPLETED


def test_outputs_skipped_when_run_failed():
    flow = login_flow(outputs=[FlowOutput(name="token", value="{{res:login-0.$.token}}")])
    flow.steps.insert(1, FlowStep(step_id="boom", endpoints=[StepEndpoint(endpoint_id="boom", api_id="auth")]))

    result = make_runner(flow).run_flow()

    assert result.outputs == {}


def test_sub_environment_supplies_hosts_and_variables():
    flow = login_flow(hosts={})
    flow.steps[0].endpoints[0].body = {"user": "{{env:USER}}"}
    environment = Environment(id="env", environments={
        "staging": SubEnvironment(variables={"USER": "stage-user"}, api_hosts={"auth": "https://staging.auth.test"}),
    })

    result = make_runner(flow, environment=environment, sub_environment="staging").run_flow()

    assert result.success is True
    assert result.invocations["login-0"].request.url == "https://staging.auth.test/login"
    assert result.invocations["login-0"].request.body == {"user": "stage-user"}


def test_stopped_run_reports_stopped():
    cancellation = CancellationToken()

    def stopping_handler(request):
        cancellation.cancel()
        return auth_handler(request)

    runner = make_runner(login_flow(), handler=stopping_handler, cancellation=cancellation)

    result = runner.run_flow()

    assert result.stopped is True
    assert result.success is False
    assert result.invocations["login-0"].state == InvocationState.COMPLETED
    assert result.invocations["me-0"].state == InvocationState.SKIPPED


def test_reset_clears_stop_and_parameters():
    runner = make_runner(login_flow())
    runner.set_parameter_values({"user": "x"})
    runner.stop()

    runner.reset()

    assert runner.cancellation.is_cancelled is False
    assert runner.parameter_values == {}
    assert runner.run_flow().success is True


def test_logs_reach_callback():
    on_log = Mock()

    make_runner(login_flow(), run_id="run-1", on_log=on_log).run_flow()

    levels = [call.args[0] for call in on_log.call_args_list]
    messages = [call.args[1] for call in on_log.call_args_list]
    assert "info" in levels
    assert "Starting flow Auth" in messages


def test_overflowing_transformations_do_not_break_run():
    flow = login_flow()
    flow.steps = flow.steps[:1]
    flow.steps[0].endpoints[0].transformations = [
        Transformation(alias="all", expression="$.items | take(1e999)"),
        Transformation(alias="powers", expression="$.items | map(pow(item, 1000))"),
    ]

    def items_handler(request):
        return TransportResponse(status_code=200, reason="OK", body={"items": [10, 20]})

    result = make_runner(flow, handler=items_handler).run_flow()

    assert result.success is True
    assert result.stored_transformations["login-0"] == {"all": [10, 20], "powers": [None, None]}
