"""Step and invocation execution for one flow run."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional
from shared.constants import MAX_PARALLEL_INVOCATIONS
from shared.exceptions import FlowEngineError, FlowValidationError
from shared.types import FlowStep, InvocationResult, InvocationState, PreparedRequest, StepEndpoint
from shared.utils import generate_invocation_id
from services.orchestrator.engine.assertions import AssertionEngine, ResponseSnapshot
from services.orchestrator.engine.context import ExecutionContext
from services.orchestrator.engine.path_evaluator import PathEvaluator, default_evaluator
from services.orchestrator.engine.request_builder import RequestBuilder
from services.orchestrator.engine.retry_handler import RetryHandler
from services.orchestrator.engine.template import TemplateResolver, default_resolver, has_template_expressions
from services.orchestrator.engine.transport import (
    DirectTransport,
    ProxiedTransport,
    Transport,
    TransportRequest,
    TransportResponse,
)


def default_transport(server_cookie_handling: bool) -> Transport:
    return ProxiedTransport() if server_cookie_handling else DirectTransport()


class FlowExecutionEngine:
    """Runs the invocations of flow steps against a shared ExecutionContext"""

    def __init__(
        self,
        context: ExecutionContext,
        transport: Optional[Transport] = None,
        resolver: Optional[TemplateResolver] = None,
        path_evaluator: Optional[PathEvaluator] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.context = context
        self.logger = context.logger
        self.transport = transport or default_transport(context.preferences.server_cookie_handling)
        self.resolver = resolver or default_resolver
        self.path_evaluator = path_evaluator or default_evaluator
        self.request_builder = RequestBuilder(self.resolver)
        self.assertion_engine = AssertionEngine(self.resolver, self.path_evaluator)
        self.retry_handler = RetryHandler(context.preferences.retry_count, sleep=sleep)

    def update_parameter_values(self, values: Dict[str, Any]) -> None:
        self.context.parameter_values.update(values)

    def execute_step(self, step: FlowStep) -> None:
        invocation_ids = [generate_invocation_id(step.step_id, i) for i in range(len(step.endpoints))]

        if self.context.should_stop:
            self.logger.info(f"Skipping step {step.step_id}: execution stopped by user")
            self.context.mark_skipped(invocation_ids)
            return

        if step.clear_cookies_before_execution:
            self.context.cookie_store.clear()
            self.logger.info(f"Cleared cookies before step {step.label or step.step_id}")

        if not step.endpoints:
            self.logger.debug(f"Step {step.step_id} has no endpoints")
            return

        self.logger.info(
            f"Executing step {step.label or step.step_id}",
            f"{len(step.endpoints)} endpoint(s), parallel={self.context.preferences.parallel_execution}",
            step_id=step.step_id
        )

        if self.context.preferences.parallel_execution and len(step.endpoints) > 1:
            workers = min(len(step.endpoints), MAX_PARALLEL_INVOCATIONS)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(self.execute_invocation, invocation, step.step_id, index)
                    for index, invocation in enumerate(step.endpoints)
                ]
                for future in futures:
                    future.result()
            self.context.restore_order(invocation_ids)
            return

        for index, invocation in enumerate(step.endpoints):
            self.execute_invocation(invocation, step.step_id, index)

            if self.context.error and self.context.preferences.stop_on_error:
                self.context.mark_skipped(invocation_ids[index + 1:])
                break
            if self.context.should_stop:
                self.logger.info("Execution stopped by user")
                self.context.mark_skipped(invocation_ids[index + 1:])
                break

    def execute_invocation(self, invocation: StepEndpoint, step_id: str, index: int) -> InvocationResult:
        invocation_id = generate_invocation_id(step_id, index)
        self.context.update_invocation(invocation_id, state=InvocationState.RUNNING)

        try:
            definition = self.context.flow.find_endpoint(invocation.endpoint_id)
            if definition is None:
                raise FlowValidationError(f"Endpoint definition not found for ID: {invocation.endpoint_id}")

            host = self.endpoint_host(invocation)
            if not host:
                raise FlowValidationError(f"No API host available for endpoint {invocation.endpoint_id}")

            prepared = self.request_builder.build(definition, invocation, host, self.context.template_context())
            self.context.update_invocation(invocation_id, request=prepared)
            self.logger.info(f"{prepared.method} {prepared.url}", invocation_id=invocation_id)

            response, attempts = self.retry_handler.run(
                invocation_id,
                lambda: self._send(prepared, invocation_id)
            )

            self.context.update_invocation(
                invocation_id,
                status_code=response.status_code,
                reason=response.reason,
                response_headers=response.headers,
                response_body=response.body,
                timing_ms=response.elapsed_ms,
                attempts=attempts,
            )
            self.context.store_response(invocation_id, response.body)

            transformed = self.process_transformations(invocation, invocation_id, response.body)
            self.process_assertions(invocation, invocation_id, response, transformed)
            self.update_final_status(invocation, invocation_id, response)

        except FlowEngineError as e:
            self.fail_invocation(invocation_id, e.message)
        except Exception as e:
            logging.exception("Unexpected error in invocation", extra={"invocation_id": invocation_id})
            self.fail_invocation(invocation_id, f"Unexpected error: {e}")

        return self.context.invocations[invocation_id]

    def fail_invocation(self, invocation_id: str, message: str) -> None:
        self.context.update_invocation(invocation_id, state=InvocationState.FAILED, error=message)
        self.logger.error(f"Invocation {invocation_id} failed", message, invocation_id=invocation_id)
        if self.context.preferences.stop_on_error:
            self.context.set_error(message)

    def endpoint_host(self, invocation: StepEndpoint) -> str:
        """Sub-environment host first, then the flow's configured host"""
        if invocation.api_id is None:
            return ""

        environment_host = self.context.environment_hosts.get(invocation.api_id)
        if environment_host:
            self.logger.debug(f"Using environment host for API {invocation.api_id}", environment_host)
            return environment_host

        api_host = self.context.flow.settings.api_hosts.get(invocation.api_id)
        if api_host and api_host.url:
            return api_host.url

        self.logger.warning(f"API host not found for ID: {invocation.api_id}")
        return ""

    def _send(self, prepared: PreparedRequest, invocation_id: str) -> TransportResponse:
        request = TransportRequest(
            method=prepared.method,
            url=prepared.url,
            headers=prepared.headers,
            body=prepared.body,
            timeout_seconds=self.context.preferences.timeout_ms / 1000,
        )
        request.cookies = self.transport.select_cookies(self.context.cookie_store, request.hostname)

        started = time.perf_counter()
        response = self.transport.send(request)
        response.elapsed_ms = int(round((time.perf_counter() - started) * 1000))

        if response.cookies:
            self.context.cookie_store.store(invocation_id, response.cookies)
            self.logger.debug(f"Stored {len(response.cookies)} cookie(s) from {invocation_id}")

        return response

    def process_transformations(self, invocation: StepEndpoint, invocation_id: str, body: Any) -> Dict[str, Any]:
        if not invocation.transformations:
            return {}

        transformed: Dict[str, Any] = {}
        for transformation in invocation.transformations:
            alias = transformation.alias
            transformed[alias] = body

            expression = (transformation.expression or "").strip()
            if not expression:
                self.logger.debug(f"Transformation {alias} has no expression, keeping raw response")
                continue

            try:
                if has_template_expressions(expression):
                    expression = str(self.resolver.substitute(expression, self.context.template_context()))
                value = self.path_evaluator.evaluate(expression, body)
            except FlowEngineError as e:
                self.logger.error(
                    f"Failed to apply transformation: {alias}",
                    f"Expression: {expression}\nError: {e.message}"
                )
                continue

            if value is None:
                self.logger.warning(
                    f"Transformation {alias} returned no value, keeping raw response",
                    f"Expression: {expression}"
                )
                continue

            transformed[alias] = value
            self.logger.debug(f"Applied transformation {alias}", expression)

        self.context.store_transformations(invocation_id, transformed)
        self.context.update_invocation(invocation_id, transformations=transformed)
        return transformed

    def process_assertions(
        self,
        invocation: StepEndpoint,
        invocation_id: str,
        response: TransportResponse,
        transformed: Dict[str, Any]
    ) -> None:
        if not invocation.assertions:
            return

        snapshot = ResponseSnapshot(
            status_code=response.status_code,
            headers=response.headers,
            body=response.body,
            transformed=transformed or None,
            response_time_ms=response.elapsed_ms,
        )
        run_result = self.assertion_engine.run(invocation.assertions, snapshot, self.context.template_context())
        self.context.update_invocation(invocation_id, assertions=run_result)

        for result in run_result.results:
            if result.passed:
                self.logger.debug(result.message or "Assertion passed")
            else:
                self.logger.error(result.message or "Assertion failed", result.error)

        if not run_result.passed:
            self.logger.warning(f"Assertions failed for {invocation_id}", run_result.failure_message)

    def update_final_status(self, invocation: StepEndpoint, invocation_id: str, response: TransportResponse) -> None:
        if invocation.skip_default_status_check or response.ok:
            self.context.update_invocation(invocation_id, state=InvocationState.COMPLETED)
            return

        message = f"Request failed with status {response.status_code}: {response.reason}"
        self.context.update_invocation(invocation_id, state=InvocationState.FAILED, error=message)
        self.logger.error(message, invocation_id=invocation_id)
        if self.context.preferences.stop_on_error:
            self.context.set_error(message)


def failed_invocations(invocations: Dict[str, InvocationResult]) -> List[InvocationResult]:
    return [result for result in invocations.values() if result.state == InvocationState.FAILED]
