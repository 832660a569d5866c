"""Runs queued flow and sequence requests and records their outcome."""

import logging
from typing import Any, Callable, Dict, Optional
from pydantic import ValidationError
from shared.types import (
    Environment,
    ExecutionPreferences,
    FlowDefinition,
    FlowRunResult,
    ProjectConfig,
    RunKind,
    RunStatus,
    SequenceDefinition,
    SequenceRunResult,
)
from shared.logging_config import LogCallback
from services.orchestrator.engine.flow_runner import FlowRunner
from services.orchestrator.engine.sequence import SequenceCallbacks, SequenceExecutionState, SequenceOrchestrator
from services.orchestrator.engine.transport import Transport
from services.orchestrator.infra.redis_store import RedisCancellationToken, RedisStore


def final_status(success: bool, stopped: bool) -> RunStatus:
    if stopped:
        return RunStatus.STOPPED
    return RunStatus.COMPLETED if success else RunStatus.FAILED


class RunOrchestrator:

    def __init__(self, store: RedisStore, transport_factory: Optional[Callable[[], Optional[Transport]]] = None):
        self.store = store
        self.transport_factory = transport_factory or (lambda: None)

    def _load_request(self, run_id: str, kind: RunKind) -> Optional[Dict[str, Any]]:
        request = self.store.get_run_request(run_id)
        if not request:
            logging.error("Run request not found", extra={"run_id": run_id})
            self.store.update_run_meta(run_id, kind=kind.value, status=RunStatus.FAILED.value,
                                       error=f"Run {run_id} not found")
            return None
        return request

    def _log_sink(self, run_id: str) -> LogCallback:
        def on_log(level: str, message: str, details: Optional[str] = None) -> None:
            self.store.append_run_log(run_id, level, message, details)
        return on_log

    def _fail(self, run_id: str, error: str) -> None:
        logging.error("Run failed before execution", extra={"run_id": run_id, "error": error})
        self.store.update_run_meta(run_id, status=RunStatus.FAILED.value, error=error, progress=100)

    def execute_flow_run(self, run_id: str) -> Optional[FlowRunResult]:
        request = self._load_request(run_id, RunKind.FLOW)
        if request is None:
            return None

        self.store.update_run_meta(run_id, status=RunStatus.RUNNING.value, progress=0)

        try:
            flow = FlowDefinition.model_validate(request["flow"])
            preferences = ExecutionPreferences.model_validate(request.get("preferences") or {})
            environment = Environment.model_validate(request["environment"]) if request.get("environment") else None
        except (KeyError, ValidationError) as e:
            self._fail(run_id, f"Invalid flow run request: {e}")
            return None

        runner = FlowRunner(
            flow,
            preferences=preferences,
            environment=environment,
            sub_environment=request.get("sub_environment"),
            transport=self.transport_factory(),
            cancellation=RedisCancellationToken(self.store, run_id),
            run_id=run_id,
            on_log=self._log_sink(run_id),
        )
        result = runner.run_flow(request.get("parameters") or {})

        status = final_status(result.success, result.stopped)
        self.store.store_run_result(run_id, result.model_dump(mode="json"))
        self.store.update_run_meta(run_id, status=status.value, error=result.error, progress=100)

        logging.info("Flow run finished", extra={"run_id": run_id, "flow_id": flow.id, "status": status.value})
        return result

    def execute_sequence_run(self, run_id: str) -> Optional[SequenceRunResult]:
        request = self._load_request(run_id, RunKind.SEQUENCE)
        if request is None:
            return None

        self.store.update_run_meta(run_id, status=RunStatus.RUNNING.value, progress=0)

        try:
            sequence = SequenceDefinition.model_validate(request["sequence"])
            flows = [FlowDefinition.model_validate(flow) for flow in request.get("flows") or []]
            preferences = ExecutionPreferences.model_validate(request.get("preferences") or {})
            project = ProjectConfig.model_validate(request["project"]) if request.get("project") else None
            environment = Environment.model_validate(request["environment"]) if request.get("environment") else None
        except (KeyError, ValidationError) as e:
            self._fail(run_id, f"Invalid sequence run request: {e}")
            return None

        def on_state_update(state: SequenceExecutionState) -> None:
            self.store.update_run_meta(run_id, progress=state.progress)

        orchestrator = SequenceOrchestrator(
            sequence,
            flows,
            preferences=preferences,
            project=project,
            environment=environment,
            sub_environment=request.get("sub_environment"),
            transport=self.transport_factory(),
            cancellation=RedisCancellationToken(self.store, run_id),
            callbacks=SequenceCallbacks(on_state_update=on_state_update, on_log=self._log_sink(run_id)),
            run_id=run_id,
        )
        result = orchestrator.run_sequence()

        status = final_status(result.success, result.stopped)
        error = result.error or next((flow.error for flow in result.flow_results if not flow.success), None)
        self.store.store_run_result(run_id, result.model_dump(mode="json"))
        self.store.update_run_meta(run_id, status=status.value, error=error, progress=orchestrator.progress)

        logging.info("Sequence run finished", extra={
            "run_id": run_id,
            "sequence_id": sequence.id,
            "status": status.value,
            "completed_flows": result.completed_flows,
        })
        return result
