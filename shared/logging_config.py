"""Centralized logging configuration with correlation ID support."""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional
from pythonjsonlogger import jsonlogger

correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')

# (level, message, details)
LogCallback = Callable[[str, str, Optional[str]], None]

_RUN_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class CorrelationIdFilter(logging.Filter):
    """Adds correlation_id to all log records"""

    def filter(self, record):
        record.correlation_id = correlation_id_var.get('')
        return True


def setup_logging(service_name: str, level: int = logging.INFO) -> None:
    """Sets up JSON logging with correlation ID support"""
    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(correlation_id)s %(message)s',
        rename_fields={
            'asctime': 'timestamp',
            'name': 'logger',
            'levelname': 'level',
        }
    )

    json_handler.setFormatter(formatter)
    json_handler.addFilter(CorrelationIdFilter())
    logger.addHandler(json_handler)
    logging.info(f"{service_name} logging configured with JSON format and correlation ID support")


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    return correlation_id_var.get('')


class RunLogger:
    """Writes run log entries to the service log and to the caller's on_log hook.

    The hook is observability only: when it raises, the failure is logged and
    the run carries on.
    """

    def __init__(self, run_id: str = "", on_log: Optional[LogCallback] = None, **context: Any):
        self.run_id = run_id
        self.on_log = on_log
        self.context = context

    def log(self, level: str, message: str, details: Optional[str] = None, **extra: Any) -> None:
        payload: Dict[str, Any] = {"run_id": self.run_id}
        payload.update(self.context)
        payload.update(extra)
        if details:
            payload["details"] = details

        logging.log(_RUN_LOG_LEVELS.get(level, logging.INFO), message, extra=payload)

        if self.on_log is None:
            return
        try:
            self.on_log(level, message, details)
        except Exception as e:
            logging.warning(
                "Run log callback failed",
                extra={"run_id": self.run_id, "error": str(e)}
            )

    def debug(self, message: str, details: Optional[str] = None, **extra: Any) -> None:
        self.log("debug", message, details, **extra)

    def info(self, message: str, details: Optional[str] = None, **extra: Any) -> None:
        self.log("info", message, details, **extra)

    def warning(self, message: str, details: Optional[str] = None, **extra: Any) -> None:
        self.log("warning", message, details, **extra)

    def error(self, message: str, details: Optional[str] = None, **extra: Any) -> None:
        self.log("error", message, details, **extra)
