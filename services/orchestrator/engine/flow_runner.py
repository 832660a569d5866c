"""Flow validation and the lifecycle of a single flow run."""

import time
from typing import Any, Callable, Dict, List, Optional
from shared.constants import MAX_STEPS_PER_FLOW
from shared.logging_config import LogCallback, RunLogger
from shared.types import (
    Environment,
    ExecutionPreferences,
    FlowDefinition,
    FlowRunResult,
)
from shared.utils import generate_invocation_id
from services.orchestrator.engine.context import CancellationToken, ExecutionContext, InvocationCallback
from services.orchestrator.engine.flow_executor import FlowExecutionEngine, failed_invocations
from services.orchestrator.engine.parameters import OutputEvaluator, ParameterManager
from services.orchestrator.engine.template import TemplateResolver, default_resolver
from services.orchestrator.engine.transport import Transport

FlowCompleteCallback = Callable[[FlowRunResult], None]


class FlowValidator:

    @staticmethod
    def validate_flow(flow: FlowDefinition) -> List[str]:
        errors = []
        if not flow.steps:
            errors.append("Flow has no steps")
        elif len(flow.steps) > MAX_STEPS_PER_FLOW:
            errors.append(f"Flow has more than {MAX_STEPS_PER_FLOW} steps")
        if not flow.endpoints:
            errors.append("Flow has no endpoint definitions")

        seen = set()
        for step in flow.steps:
            if step.step_id in seen:
                errors.append(f"Duplicate step ID: {step.step_id}")
            seen.add(step.step_id)
        return errors

    @staticmethod
    def validate_api_hosts(flow: FlowDefinition, environment_hosts: Optional[Dict[str, str]] = None) -> bool:
        if any(host for host in (environment_hosts or {}).values()):
            return True
        return any(host.url for host in flow.settings.api_hosts.values())

    @classmethod
    def validation_error(
        cls,
        flow: FlowDefinition,
        environment_hosts: Optional[Dict[str, str]] = None
    ) -> Optional[str]:
        errors = cls.validate_flow(flow)
        if errors:
            return f"Invalid flow: {'; '.join(errors)}"
        if not cls.validate_api_hosts(flow, environment_hosts):
            return "No API hosts configured. Please configure API hosts in flow settings."
        return None


class FlowRunner:
    """Validates, parameterizes and executes one flow"""

    def __init__(
        self,
        flow: FlowDefinition,
        preferences: Optional[ExecutionPreferences] = None,
        environment: Optional[Environment] = None,
        sub_environment: Optional[str] = None,
        environment_hosts: Optional[Dict[str, str]] = None,
        transport: Optional[Transport] = None,
        resolver: Optional[TemplateResolver] = None,
        cancellation: Optional[CancellationToken] = None,
        run_id: str = "",
        on_log: Optional[LogCallback] = None,
        on_invocation_update: Optional[InvocationCallback] = None,
        on_complete: Optional[FlowCompleteCallback] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.flow = flow
        self.preferences = preferences or ExecutionPreferences()
        self.transport = transport
        self.resolver = resolver or default_resolver
        self.cancellation = cancellation or CancellationToken()
        self.logger = RunLogger(run_id, on_log, flow_id=flow.id)
        self.on_invocation_update = on_invocation_update
        self.on_complete = on_complete
        self.sleep = sleep

        selected = environment.get_sub_environment(sub_environment) if environment else None
        self.environment_variables: Dict[str, Any] = dict(selected.variables) if selected else {}
        self.environment_hosts: Dict[str, str] = dict(selected.api_hosts) if selected else {}
        if environment_hosts:
            self.environment_hosts.update(environment_hosts)

        self.parameter_manager = ParameterManager(flow, self.environment_variables, self.logger)
        self.output_evaluator = OutputEvaluator(self.resolver, self.logger)
        self.parameter_values: Dict[str, Any] = {}
        self.context: Optional[ExecutionContext] = None

    def set_parameter_values(self, values: Dict[str, Any]) -> None:
        self.parameter_values = dict(values)

    def stop(self) -> None:
        self.logger.info("Stop requested")
        self.cancellation.cancel()

    def reset(self) -> None:
        self.cancellation.reset()
        self.parameter_values = {}
        self.context = None

    def run_flow(self, overrides: Optional[Dict[str, Any]] = None) -> FlowRunResult:
        error = FlowValidator.validation_error(self.flow, self.environment_hosts)
        if error:
            self.logger.error(error)
            return self._finish(FlowRunResult(flow_id=self.flow.id, success=False, error=error))

        values = self.parameter_manager.prepare_parameters(overrides)
        values = self.parameter_manager.update_parameter_values(values, self.parameter_values)
        missing = self.parameter_manager.check_required_parameters(values)
        if missing:
            error = f"Missing required parameters: {', '.join(missing)}"
            self.logger.error(error)
            return self._finish(FlowRunResult(
                flow_id=self.flow.id,
                success=False,
                error=error,
                missing_parameters=missing,
                parameter_values=values,
            ))

        self.parameter_values = values
        return self.execute_after_parameter_check()

    def execute_after_parameter_check(self) -> FlowRunResult:
        """Runs every step with the parameter values already set"""
        started = time.perf_counter()
        context = ExecutionContext(
            self.flow,
            preferences=self.preferences,
            parameter_values=self.parameter_values,
            environment_variables=self.environment_variables,
            environment_hosts=self.environment_hosts,
            cancellation=self.cancellation,
            logger=self.logger,
            on_invocation_update=self.on_invocation_update,
        )
        self.context = context
        engine = FlowExecutionEngine(context, self.transport, resolver=self.resolver, sleep=self.sleep)

        self.logger.info(f"Starting flow {self.flow.name or self.flow.id}", f"{len(self.flow.steps)} step(s)")

        stopped = False
        for position, step in enumerate(self.flow.steps):
            if context.should_stop:
                stopped = True
                self.logger.info("Execution stopped by user")
                self._skip_remaining(context, position)
                break
            if context.error and self.preferences.stop_on_error:
                self._skip_remaining(context, position)
                break
            engine.execute_step(step)

        outputs: Dict[str, Any] = {}
        output_errors: Dict[str, str] = {}
        if context.error is None:
            outputs, output_errors = self.output_evaluator.evaluate_outputs(
                self.flow.outputs, context.template_context()
            )

        failed = failed_invocations(context.invocations)
        error = context.error or (failed[0].error if failed else None)
        assertions_passed = all(
            result.assertions is None or result.assertions.passed
            for result in context.invocations.values()
        )

        result = FlowRunResult(
            flow_id=self.flow.id,
            success=error is None and not stopped,
            error=error,
            stopped=stopped,
            assertions_passed=assertions_passed,
            parameter_values=dict(self.parameter_values),
            stored_responses=dict(context.stored_responses),
            stored_transformations=dict(context.stored_transformations),
            outputs=outputs,
            output_errors=output_errors,
            invocations=dict(context.invocations),
            execution_time_ms=int(round((time.perf_counter() - started) * 1000)),
        )

        if result.success:
            self.logger.info(f"Flow {self.flow.name or self.flow.id} completed", f"{result.execution_time_ms}ms")
        elif not stopped:
            self.logger.error(f"Flow {self.flow.name or self.flow.id} failed", error)

        return self._finish(result)

    def _skip_remaining(self, context: ExecutionContext, position: int) -> None:
        for step in self.flow.steps[position:]:
            context.mark_skipped(generate_invocation_id(step.step_id, i) for i in range(len(step.endpoints)))

    def _finish(self, result: FlowRunResult) -> FlowRunResult:
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception as e:
                self.logger.warning("Flow completion callback failed", str(e))
        return result

