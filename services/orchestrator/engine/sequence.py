"""Ordered execution of the flows of a sequence."""

import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from shared.constants import MAX_FLOWS_PER_SEQUENCE
from shared.exceptions import FlowEngineError, SequenceValidationError
from shared.logging_config import LogCallback, RunLogger
from shared.types import (
    Environment,
    ExecutionPreferences,
    FlowDefinition,
    ProjectConfig,
    SequenceDefinition,
    SequenceFlowResult,
    SequenceRunResult,
    SequenceStep,
)
from shared.utils import flow_output_key
from services.orchestrator.engine.context import CancellationToken, InvocationCallback
from services.orchestrator.engine.flow_runner import FlowRunner
from services.orchestrator.engine.sequence_resolver import (
    SequenceParameterResolver,
    get_error_from_response,
    has_error_in_response,
)
from services.orchestrator.engine.template import TemplateResolver, default_resolver
from services.orchestrator.engine.transport import Transport

EXPECTED_FAILURE_MISSING = "Expected flow to fail but it succeeded"


@dataclass
class SequenceCallbacks:
    """Observability hooks; a raising hook is logged and ignored"""
    on_sequence_start: Optional[Callable[[], None]] = None
    on_sequence_complete: Optional[Callable[[SequenceRunResult], None]] = None
    on_flow_start: Optional[Callable[[int, FlowDefinition, int], None]] = None
    on_flow_complete: Optional[Callable[[SequenceFlowResult], None]] = None
    on_state_update: Optional[Callable[["SequenceExecutionState"], None]] = None
    on_invocation_update: Optional[InvocationCallback] = None
    on_log: Optional[LogCallback] = None


@dataclass
class SequenceExecutionState:
    total_flows: int = 0
    current_flow_index: int = 0
    progress: int = 0
    is_running: bool = False
    error: Optional[str] = None
    flow_results: List[SequenceFlowResult] = field(default_factory=list)
    accumulated_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    accumulated_responses: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    sequence_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def order_sequence_steps(sequence: SequenceDefinition) -> List[SequenceStep]:
    """Steps sorted by step_order; orders must be positive and unique"""
    if len(sequence.steps) > MAX_FLOWS_PER_SEQUENCE:
        raise SequenceValidationError(f"Sequence has more than {MAX_FLOWS_PER_SEQUENCE} flows")

    seen = set()
    for step in sequence.steps:
        if step.step_order <= 0:
            raise SequenceValidationError(
                f"Invalid step order {step.step_order} for flow {step.test_flow_id}: must be positive"
            )
        if step.step_order in seen:
            raise SequenceValidationError(f"Duplicate step order: {step.step_order}")
        seen.add(step.step_order)

    return sorted(sequence.steps, key=lambda step: step.step_order)


class SequenceOrchestrator:
    """Runs a sequence's flows one after another, wiring outputs into parameters"""

    def __init__(
        self,
        sequence: SequenceDefinition,
        flows: List[FlowDefinition],
        preferences: Optional[ExecutionPreferences] = None,
        project: Optional[ProjectConfig] = None,
        environment: Optional[Environment] = None,
        sub_environment: Optional[str] = None,
        transport: Optional[Transport] = None,
        resolver: Optional[TemplateResolver] = None,
        cancellation: Optional[CancellationToken] = None,
        callbacks: Optional[SequenceCallbacks] = None,
        run_id: str = "",
        sleep: Callable[[float], None] = time.sleep
    ):
        self.sequence = sequence
        self.flows = {flow.id: flow for flow in flows}
        self.preferences = preferences or ExecutionPreferences()
        self.environment = environment
        self.sub_environment = sub_environment
        self.transport = transport
        self.resolver = resolver or default_resolver
        self.cancellation = cancellation or CancellationToken()
        self.callbacks = callbacks or SequenceCallbacks()
        self.run_id = run_id
        self.sleep = sleep
        self.logger = RunLogger(run_id, self.callbacks.on_log, sequence_id=sequence.id)
        self.parameter_resolver = SequenceParameterResolver(
            project, environment, sub_environment, self.logger, self.resolver
        )
        self.state = SequenceExecutionState(total_flows=len(sequence.steps))

    @property
    def progress(self) -> int:
        return self.state.progress

    def stop(self) -> None:
        if self.state.is_running:
            self.logger.info("User requested to stop sequence execution")
        self.cancellation.cancel()

    def reset(self) -> None:
        self.state = SequenceExecutionState(total_flows=len(self.sequence.steps))

    def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.warning(f"Sequence callback {name} failed", str(e))

    def run_sequence(self) -> SequenceRunResult:
        self.reset()
        self.state.is_running = True
        self._emit("on_sequence_start")
        self.logger.info(f"Starting sequence {self.sequence.name or self.sequence.id}")

        stopped = False
        try:
            ordered = order_sequence_steps(self.sequence)

            for index, step in enumerate(ordered):
                if self.cancellation.is_cancelled:
                    stopped = True
                    self.logger.info("Sequence execution stopped by user")
                    break

                self.state.current_flow_index = index
                self.state.progress = math.floor(index / len(ordered) * 100)

                flow = self.flows.get(step.test_flow_id)
                if flow is None:
                    error = f"Flow with ID {step.test_flow_id} not found in sequence step {step.step_order}"
                    self.logger.error("Flow not found", error)
                    self.state.error = error
                    break

                flow_result = self.execute_flow(flow, step, index)
                self.state.flow_results.append(flow_result)

                key = flow_output_key(step.step_order)
                self.state.sequence_outputs[key] = flow_result.outputs
                self.state.accumulated_responses[key] = flow_result.responses

                if flow_result.success:
                    self.state.accumulated_outputs[key] = flow_result.outputs
                else:
                    self.state.accumulated_outputs[key] = {}
                    if flow_result.stopped:
                        stopped = True
                        self.logger.info("Sequence execution stopped by user")
                        self._emit("on_state_update", self.state)
                        break
                    if self.preferences.stop_on_error:
                        self.logger.error(
                            "Sequence execution stopped due to flow failure",
                            f"Flow {flow.name or flow.id} failed: {flow_result.error}"
                        )
                        self._emit("on_state_update", self.state)
                        break
                    self.logger.warning(
                        "Flow failed but continuing due to execution options",
                        f"Flow {flow.name or flow.id} failed: {flow_result.error}"
                    )

                self._emit("on_state_update", self.state)

        except SequenceValidationError as e:
            self.state.error = e.message
            self.logger.error("Sequence validation failed", e.message)

        finally:
            self.state.is_running = False

        if not stopped:
            self.state.progress = 100

        failed = any(not result.success for result in self.state.flow_results)
        result = SequenceRunResult(
            sequence_id=self.sequence.id,
            success=self.state.error is None and not failed and not stopped,
            error=self.state.error,
            stopped=stopped,
            completed_flows=len(self.state.flow_results),
            total_flows=self.state.total_flows,
            flow_results=list(self.state.flow_results),
            sequence_outputs=dict(self.state.sequence_outputs),
        )

        self.logger.info(
            f"Sequence {self.sequence.name or self.sequence.id} finished",
            f"success={result.success}, completed {result.completed_flows}/{result.total_flows} flows"
        )
        self._emit("on_sequence_complete", result)
        return result

    def execute_flow(self, flow: FlowDefinition, step: SequenceStep, index: int) -> SequenceFlowResult:
        started = time.perf_counter()
        self._emit("on_flow_start", index, flow, step.step_order)
        self.logger.info(
            f"Starting execution of flow {flow.name or flow.id}",
            f"Step order: {step.step_order}, Flow ID: {flow.id}"
        )

        parameters: Dict[str, Any] = {}
        try:
            resolved = self.parameter_resolver.resolve_flow_parameters(
                flow, step, self.state.accumulated_outputs
            )
            parameters = resolved.parameters

            runner = FlowRunner(
                resolved.flow,
                preferences=self.preferences,
                environment=self.environment,
                sub_environment=self.sub_environment,
                transport=self.transport,
                resolver=self.resolver,
                cancellation=self.cancellation,
                run_id=self.run_id,
                on_log=self.callbacks.on_log,
                on_invocation_update=self.callbacks.on_invocation_update,
                sleep=self.sleep,
            )
            runner.set_parameter_values(parameters)
            flow_run = runner.execute_after_parameter_check()

            response_error = None
            for invocation_id, response in flow_run.stored_responses.items():
                if has_error_in_response(response):
                    response_error = get_error_from_response(response)
                    self.logger.error(f"API error detected in endpoint {invocation_id}", response_error)
                    break

            success = flow_run.success and response_error is None
            error = flow_run.error or response_error
            outputs = flow_run.outputs
            responses = flow_run.stored_responses
            assertions_passed = flow_run.assertions_passed
            stopped = flow_run.stopped

        except FlowEngineError as e:
            self.logger.error(f"Flow {flow.name or flow.id} execution failed", e.message)
            success, error = False, e.message
            outputs, responses, assertions_passed = {}, {}, True
            stopped = False

        expected_error = None
        if step.expects_error and not stopped:
            if success:
                success, error = False, EXPECTED_FAILURE_MISSING
            else:
                self.logger.info(f"Flow {flow.name or flow.id} failed as expected", error)
                success, expected_error, error = True, error, None

        flow_result = SequenceFlowResult(
            flow_id=flow.id,
            flow_name=flow.name,
            step_order=step.step_order,
            success=success,
            stopped=stopped,
            error=error,
            expected_error=expected_error,
            assertions_passed=assertions_passed,
            outputs=outputs,
            responses=responses,
            parameter_values=parameters,
            execution_time_ms=int(round((time.perf_counter() - started) * 1000)),
        )

        self.logger.log(
            "info" if success else "error",
            f"Flow {flow.name or flow.id} execution {'completed successfully' if success else 'failed'}",
            f"Execution time: {flow_result.execution_time_ms}ms" + (f", Error: {error}" if error else "")
        )
        self._emit("on_flow_complete", flow_result)
        return flow_result
