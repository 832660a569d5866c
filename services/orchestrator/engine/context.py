"""Per-run execution state shared by the executor's invocations."""

import threading
from typing import Any, Callable, Dict, Iterable, Optional
from shared.logging_config import RunLogger
from shared.types import ExecutionPreferences, FlowDefinition, InvocationResult, InvocationState
from services.orchestrator.engine.cookies import CookieStore
from services.orchestrator.engine.template import TemplateContext

InvocationCallback = Callable[[InvocationResult], None]


class CancellationToken:
    """Cooperative stop signal, checked before each step and each flow"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class ExecutionContext:
    """Mutable state of one flow run.

    Invocations of a parallel step run on worker threads; every write to the
    shared stores goes through the lock.
    """

    def __init__(
        self,
        flow: FlowDefinition,
        preferences: Optional[ExecutionPreferences] = None,
        parameter_values: Optional[Dict[str, Any]] = None,
        environment_variables: Optional[Dict[str, Any]] = None,
        environment_hosts: Optional[Dict[str, str]] = None,
        cancellation: Optional[CancellationToken] = None,
        logger: Optional[RunLogger] = None,
        on_invocation_update: Optional[InvocationCallback] = None,
        functions: Optional[Dict[str, Callable[..., Any]]] = None
    ):
        self.flow = flow
        self.preferences = preferences or ExecutionPreferences()
        self.parameter_values: Dict[str, Any] = dict(parameter_values or {})
        self.environment_variables: Dict[str, Any] = dict(environment_variables or {})
        self.environment_hosts: Dict[str, str] = dict(environment_hosts or {})
        self.cancellation = cancellation or CancellationToken()
        self.logger = logger or RunLogger(flow_id=flow.id)
        self.on_invocation_update = on_invocation_update
        self.functions = functions

        self.stored_responses: Dict[str, Any] = {}
        self.stored_transformations: Dict[str, Dict[str, Any]] = {}
        self.invocations: Dict[str, InvocationResult] = {}
        self.cookie_store = CookieStore()
        self.error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def should_stop(self) -> bool:
        return self.cancellation.is_cancelled

    def set_error(self, message: str) -> None:
        with self._lock:
            if self.error is None:
                self.error = message

    def template_context(self) -> TemplateContext:
        with self._lock:
            return TemplateContext(
                responses=dict(self.stored_responses),
                transformations=dict(self.stored_transformations),
                parameters=dict(self.parameter_values),
                environment=dict(self.environment_variables),
                functions=self.functions,
            )

    def store_response(self, invocation_id: str, body: Any) -> None:
        with self._lock:
            self.stored_responses[invocation_id] = body

    def store_transformations(self, invocation_id: str, transformed: Dict[str, Any]) -> None:
        with self._lock:
            self.stored_transformations[invocation_id] = transformed

    def update_invocation(self, invocation_id: str, **changes: Any) -> InvocationResult:
        with self._lock:
            current = self.invocations.get(invocation_id) or InvocationResult(invocation_id=invocation_id)
            updated = current.model_copy(update=changes)
            self.invocations[invocation_id] = updated

        if self.on_invocation_update is not None:
            try:
                self.on_invocation_update(updated)
            except Exception as e:
                self.logger.warning("Invocation update callback failed", str(e))
        return updated

    def mark_skipped(self, invocation_ids: Iterable[str]) -> None:
        for invocation_id in invocation_ids:
            existing = self.invocations.get(invocation_id)
            if existing is None or existing.state == InvocationState.PENDING:
                self.update_invocation(invocation_id, state=InvocationState.SKIPPED)

    def restore_order(self, invocation_ids: Iterable[str]) -> None:
        """Re-inserts this step's entries in declaration order after a parallel fan-in"""
        ids = list(invocation_ids)
        with self._lock:
            for store in (self.stored_responses, self.stored_transformations, self.invocations):
                for invocation_id in ids:
                    if invocation_id in store:
                        store[invocation_id] = store.pop(invocation_id)
