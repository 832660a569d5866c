"""Flow and sequence run routes."""

from fastapi import APIRouter, HTTPException, status
from services.api.domain.models import (
    RunCreatedResponse,
    RunFlowRequest,
    RunLogsResponse,
    RunSequenceRequest,
    StopRunResponse,
)
from services.api.domain.validation import (
    RunValidationError,
    validate_flow_definition,
    validate_sequence_request,
)
from services.api.infra.redis_store import RedisStore
from services.api.infra.broker import BrokerClient
from shared.types import RunKind, RunResultsResponse, RunStatus, RunStatusResponse
import logging
import uuid


router = APIRouter()
redis_store = RedisStore()
broker = BrokerClient()

TERMINAL_STATUSES = {RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.STOPPED.value}


def _get_meta_or_404(run_id: str) -> dict:
    meta = redis_store.get_run_meta(run_id)
    if not meta:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Run {run_id} not found")
    return meta


@router.post("/flows/run", response_model=RunCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_flow(request: RunFlowRequest):
    try:
        validate_flow_definition(request.flow)
    except RunValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    run_id = str(uuid.uuid4())
    redis_store.store_run_request(run_id, request.model_dump(mode="json", by_alias=True))
    redis_store.init_run_meta(run_id, RunKind.FLOW)
    broker.trigger_flow_run(run_id)

    logging.info("Flow run queued", extra={"run_id": run_id, "flow_id": request.flow.id})
    return RunCreatedResponse(run_id=run_id, kind=RunKind.FLOW, status=RunStatus.PENDING)


@router.post("/sequences/run", response_model=RunCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_sequence(request: RunSequenceRequest):
    try:
        validate_sequence_request(request.sequence, request.flows)
    except RunValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    run_id = str(uuid.uuid4())
    redis_store.store_run_request(run_id, request.model_dump(mode="json", by_alias=True))
    redis_store.init_run_meta(run_id, RunKind.SEQUENCE)
    broker.trigger_sequence_run(run_id)

    logging.info("Sequence run queued", extra={"run_id": run_id, "sequence_id": request.sequence.id})
    return RunCreatedResponse(run_id=run_id, kind=RunKind.SEQUENCE, status=RunStatus.PENDING)


@router.get("/runs/{run_id}", response_model=RunStatusResponse)
async def get_run_status(run_id: str):
    meta = _get_meta_or_404(run_id)
    return RunStatusResponse(
        run_id=run_id,
        kind=RunKind(meta["kind"]),
        status=RunStatus(meta["status"]),
        error=meta.get("error"),
        progress=meta.get("progress", 0)
    )


@router.get("/runs/{run_id}/results", response_model=RunResultsResponse)
async def get_run_results(run_id: str):
    meta = _get_meta_or_404(run_id)
    return RunResultsResponse(
        run_id=run_id,
        kind=RunKind(meta["kind"]),
        status=RunStatus(meta["status"]),
        result=redis_store.get_run_result(run_id)
    )


@router.get("/runs/{run_id}/logs", response_model=RunLogsResponse)
async def get_run_logs(run_id: str):
    _get_meta_or_404(run_id)
    return RunLogsResponse(run_id=run_id, logs=redis_store.get_run_logs(run_id))


@router.post("/runs/{run_id}/stop", response_model=StopRunResponse)
async def stop_run(run_id: str):
    meta = _get_meta_or_404(run_id)

    if meta.get("status") in TERMINAL_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Run already finished with status {meta['status']}. Cannot stop."
        )

    redis_store.request_stop(run_id)
    logging.info("Stop requested", extra={"run_id": run_id})
    return StopRunResponse(run_id=run_id, status="STOP_REQUESTED",
                           message="Run will stop before its next step")
