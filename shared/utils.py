"""Shared utilities."""

import json
import math
from typing import Any
from shared.constants import FLOW_OUTPUT_KEY_PREFIX


def generate_invocation_id(step_id: str, endpoint_index: int) -> str:
    return f"{step_id}-{endpoint_index}"


def flow_output_key(step_order: int) -> str:
    return f"{FLOW_OUTPUT_KEY_PREFIX}{step_order}"


def to_text(value: Any) -> str:
    """Renders a value the way it appears inside a URL, header or message"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def to_json_text(value: Any) -> str:
    return json.dumps(value, default=str)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def run_key(run_id: str, suffix: str) -> str:
    return f"run:{run_id}:{suffix}"
