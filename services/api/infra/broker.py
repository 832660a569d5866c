"""
Message broker client for API service.
"""

from celery import Celery
import os
from shared.logging_config import get_correlation_id


class BrokerClient:
    """Celery client for API service"""

    def __init__(self, broker_url: str = None):
        url = broker_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")

        self.app = Celery(
            "api",
            broker=url,
            backend=url
        )

        self.app.conf.update(
            task_serializer="json",
            accept_content=["json"],
            result_serializer="json",
            timezone="UTC",
            enable_utc=True,
        )

    def _send(self, task_name: str, run_id: str) -> None:
        correlation_id = get_correlation_id()
        self.app.send_task(
            task_name,
            kwargs={"run_id": run_id, "correlation_id": correlation_id},
            queue="orchestrator"
        )

    def trigger_flow_run(self, run_id: str) -> None:
        """Send task to orchestrator to execute a single flow"""
        self._send("orchestrator.run_flow", run_id)

    def trigger_sequence_run(self, run_id: str) -> None:
        """Send task to orchestrator to execute a sequence of flows"""
        self._send("orchestrator.run_sequence", run_id)
