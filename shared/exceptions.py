"""Structured exception hierarchy for the flow execution engine."""

from typing import Optional, Dict, Any
from pydantic import BaseModel


class TaskError(BaseModel):
    """Structured error describing a failed transport attempt"""
    error_type: str
    error_message: str
    http_status_code: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    is_retryable: bool = False
    context: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class FlowEngineError(Exception):
    """Base exception for engine errors"""

    def __init__(self, message: str, run_id: str = "", **context):
        self.message = message
        self.run_id = run_id
        self.context = context
        super().__init__(message)


class ExpressionError(FlowEngineError):
    """Malformed path, pipeline or template syntax"""
    pass


class TemplateResolutionError(FlowEngineError):
    """A referenced response, alias, parameter, variable or function is missing"""
    pass


class TransportError(FlowEngineError):
    """The request could not be completed"""

    def __init__(self, message: str, task_error: Optional[TaskError] = None, **context):
        self.task_error = task_error
        super().__init__(message, **context)


class RequestTimeoutError(TransportError):
    pass


class RetryExhaustedError(TransportError):
    pass


class FlowValidationError(FlowEngineError):
    pass


class SequenceValidationError(FlowEngineError):
    pass
