"""Orchestrator service for flow and sequence runs."""

import logging
from services.orchestrator.infra.broker import create_celery_app
from services.orchestrator.infra.redis_store import RedisStore
from services.orchestrator.engine.orchestrator import RunOrchestrator
from shared.logging_config import setup_logging, set_correlation_id
from shared.types import RunStatus

setup_logging("orchestrator")

celery_app = create_celery_app()
store = RedisStore()
orchestrator = RunOrchestrator(store)


def _mark_crashed(run_id: str, error: Exception) -> None:
    logging.exception("Run crashed", extra={"run_id": run_id})
    store.update_run_meta(run_id, status=RunStatus.FAILED.value, error=f"Unexpected error: {error}")


@celery_app.task(name="orchestrator.run_flow", bind=True)
def run_flow(self, run_id: str, correlation_id: str = ""):
    set_correlation_id(correlation_id or run_id)

    logging.info("Starting flow run", extra={"run_id": run_id})
    try:
        orchestrator.execute_flow_run(run_id)
    except Exception as e:
        _mark_crashed(run_id, e)
        raise


@celery_app.task(name="orchestrator.run_sequence", bind=True)
def run_sequence(self, run_id: str, correlation_id: str = ""):
    set_correlation_id(correlation_id or run_id)

    logging.info("Starting sequence run", extra={"run_id": run_id})
    try:
        orchestrator.execute_sequence_run(run_id)
    except Exception as e:
        _mark_crashed(run_id, e)
        raise


if __name__ == "__main__":
    celery_app.worker_main([
        "worker",
        "--loglevel=info",
        "-Q", "orchestrator",
        "--concurrency=4"
    ])
