"""Retry handler for automatic invocation retries."""

import logging
import time
from typing import Callable, Optional, Tuple
from shared.exceptions import RetryExhaustedError, TaskError, TransportError
from shared.constants import (
    INITIAL_RETRY_DELAY_SECONDS,
    MAX_RETRY_DELAY_SECONDS,
    RETRYABLE_HTTP_STATUS_CODES,
)
from services.orchestrator.engine.transport import TransportResponse


def task_error_for_response(response: TransportResponse) -> Optional[TaskError]:
    """Structured error for a response whose status is worth retrying"""
    if response.status_code not in RETRYABLE_HTTP_STATUS_CODES:
        return None

    retry_after = None
    if response.status_code == 429:
        # Only delta-seconds Retry-After values are honored
        retry_after_header = None
        for name, value in response.headers.items():
            if name.lower() == "retry-after":
                retry_after_header = str(value)
        if retry_after_header and retry_after_header.isdigit():
            retry_after = int(retry_after_header)

    return TaskError(
        error_type="HTTP_ERROR",
        error_message=f"HTTP {response.status_code}: {response.reason}",
        http_status_code=response.status_code,
        is_retryable=True,
        retry_after_seconds=retry_after,
    )


class RetryHandler:
    """Decides when to retry failed attempts and calculates backoff delays"""

    def __init__(self, max_retries: int = 0, sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max_retries
        self.sleep = sleep

    def should_retry(
        self,
        invocation_id: str,
        retry_count: int,
        task_error: Optional[TaskError]
    ) -> Tuple[bool, Optional[float]]:
        """Checks if the attempt should be retried and calculates delay"""
        if task_error is None or not task_error.is_retryable:
            logging.info(
                "Invocation error is not retryable",
                extra={"invocation_id": invocation_id}
            )
            return False, None

        if retry_count >= self.max_retries:
            if self.max_retries:
                logging.warning(
                    "Maximum retry attempts reached",
                    extra={
                        "invocation_id": invocation_id,
                        "retry_count": retry_count,
                        "max_attempts": self.max_retries
                    }
                )
            return False, None

        delay = self._calculate_backoff_delay(retry_count, task_error)

        logging.info(
            "Invocation will be retried",
            extra={
                "invocation_id": invocation_id,
                "retry_attempt": retry_count + 1,
                "delay_seconds": delay
            }
        )

        return True, delay

    def _calculate_backoff_delay(self, retry_count: int, task_error: TaskError) -> float:
        """Exponential backoff with Retry-After header support"""
        if task_error.retry_after_seconds:
            # Honor Retry-After header (e.g., from 429 responses)
            delay = min(task_error.retry_after_seconds, MAX_RETRY_DELAY_SECONDS)
            logging.debug(
                f"Using Retry-After header delay: {delay}s",
                extra={"retry_after": task_error.retry_after_seconds}
            )
        else:
            # Exponential backoff: 1s, 2s, 4s, 8s, ...
            delay = min(
                INITIAL_RETRY_DELAY_SECONDS * (2 ** retry_count),
                MAX_RETRY_DELAY_SECONDS
            )
            logging.debug(
                f"Using exponential backoff delay: {delay}s",
                extra={"retry_count": retry_count}
            )

        return delay

    def run(
        self,
        invocation_id: str,
        send: Callable[[], TransportResponse]
    ) -> Tuple[TransportResponse, int]:
        """Calls send until it succeeds or retries run out.

        Returns the final response and the number of attempts made. A
        non-retryable status is returned as is; transport errors are raised
        once retries are exhausted.
        """
        retry_count = 0
        while True:
            try:
                response = send()
            except TransportError as e:
                retry, delay = self.should_retry(invocation_id, retry_count, e.task_error)
                if not retry:
                    if retry_count:
                        raise RetryExhaustedError(
                            f"{e.message} (after {retry_count + 1} attempts)",
                            task_error=e.task_error,
                            invocation_id=invocation_id
                        )
                    raise
            else:
                task_error = task_error_for_response(response)
                if task_error is None:
                    return response, retry_count + 1
                retry, delay = self.should_retry(invocation_id, retry_count, task_error)
                if not retry:
                    return response, retry_count + 1

            self.sleep(delay)
            retry_count += 1
