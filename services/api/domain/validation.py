"""Validation of submitted flows, sequences and proxy targets."""

import ipaddress
import os
import re
from typing import Any, List, Set
from urllib.parse import urlparse
from shared.constants import (
    BLOCKED_PROXY_HOST_PREFIXES,
    BLOCKED_PROXY_HOST_SUFFIXES,
    BLOCKED_PROXY_HOSTS,
    MAX_FLOWS_PER_SEQUENCE,
    MAX_STEPS_PER_FLOW,
    MAX_TEMPLATE_LENGTH,
)
from shared.types import FlowDefinition, MappingSourceType, SequenceDefinition

TEMPLATE_PATTERN = re.compile(r'\{\{\{?(.*?)\}?\}\}')

ALLOWED_TEMPLATE_SOURCES = {
    "res", "response",
    "proc", "process", "transform",
    "param", "parameter", "var",
    "func", "function",
    "env", "environment",
}


class RunValidationError(Exception):
    pass


def validate_flow_definition(flow: FlowDefinition) -> None:
    if not flow.steps:
        raise RunValidationError(f"Flow '{flow.id}' must contain at least one step")

    if len(flow.steps) > MAX_STEPS_PER_FLOW:
        raise RunValidationError(f"Flow '{flow.id}' exceeds maximum step limit: {len(flow.steps)} > {MAX_STEPS_PER_FLOW}")

    if not flow.endpoints:
        raise RunValidationError(f"Flow '{flow.id}' has no endpoint definitions")

    endpoint_ids = {endpoint.id for endpoint in flow.endpoints}
    step_ids: Set[str] = set()
    for step in flow.steps:
        if step.step_id in step_ids:
            raise RunValidationError(f"Flow '{flow.id}' has duplicate step ID: {step.step_id}")
        step_ids.add(step.step_id)

        for index, invocation in enumerate(step.endpoints):
            if invocation.endpoint_id not in endpoint_ids:
                raise RunValidationError(
                    f"Step '{step.step_id}' endpoint {index} references unknown endpoint '{invocation.endpoint_id}'"
                )
            validate_templates(f"{step.step_id}-{index}", invocation.model_dump())

    for output in flow.outputs:
        if output.is_template:
            validate_templates(f"output '{output.name}'", output.value)


def validate_sequence_request(sequence: SequenceDefinition, flows: List[FlowDefinition]) -> None:
    if not sequence.steps:
        raise RunValidationError(f"Sequence '{sequence.id}' must contain at least one step")

    if len(sequence.steps) > MAX_FLOWS_PER_SEQUENCE:
        raise RunValidationError(
            f"Sequence '{sequence.id}' exceeds maximum flow limit: {len(sequence.steps)} > {MAX_FLOWS_PER_SEQUENCE}"
        )

    flow_ids = {flow.id for flow in flows}
    orders: Set[int] = set()
    for step in sequence.steps:
        if step.step_order <= 0:
            raise RunValidationError(f"Step order must be positive, got {step.step_order}")
        if step.step_order in orders:
            raise RunValidationError(f"Duplicate step order: {step.step_order}")
        orders.add(step.step_order)

        if step.test_flow_id not in flow_ids:
            raise RunValidationError(
                f"Sequence step {step.step_order} references flow '{step.test_flow_id}' that was not provided"
            )

    for step in sequence.steps:
        for mapping in step.parameter_mappings:
            if mapping.source_type != MappingSourceType.PREVIOUS_OUTPUT:
                continue
            if not mapping.source_flow_step:
                raise RunValidationError(
                    f"Mapping for '{mapping.flow_parameter_name}' in step {step.step_order} has no source_flow_step"
                )
            if mapping.source_flow_step >= step.step_order:
                raise RunValidationError(
                    f"Mapping for '{mapping.flow_parameter_name}' in step {step.step_order} "
                    f"reads from step {mapping.source_flow_step}, which does not run before it"
                )

    for flow in flows:
        validate_flow_definition(flow)


def validate_templates(location: str, value: Any) -> None:
    """Checks template expressions for length and known sources"""

    def check_value(value: Any, path: str = "") -> None:
        if isinstance(value, str):
            for match in TEMPLATE_PATTERN.finditer(value):
                template = match.group(0)
                if len(template) > MAX_TEMPLATE_LENGTH:
                    raise RunValidationError(
                        f"{location} has template exceeding length limit at {path or 'value'}: "
                        f"{len(template)} > {MAX_TEMPLATE_LENGTH}"
                    )
                source = match.group(1).split(":", 1)[0].strip()
                if ":" in match.group(1) and source not in ALLOWED_TEMPLATE_SOURCES:
                    raise RunValidationError(
                        f"{location} has template with unknown source '{source}' at {path or 'value'}"
                    )

        elif isinstance(value, dict):
            for k, v in value.items():
                check_value(v, f"{path}.{k}" if path else str(k))

        elif isinstance(value, list):
            for i, item in enumerate(value):
                check_value(item, f"{path}[{i}]")

    check_value(value)


def _private_networks_allowed() -> bool:
    return os.getenv("PROXY_ALLOW_PRIVATE_NETWORKS", "").lower() in ("1", "true", "yes")


def validate_proxy_target(url: str) -> None:
    """Rejects non-http(s) URLs and, unless allowed, private or internal hosts"""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise RunValidationError(f"Unsupported URL scheme: '{parsed.scheme}'. Only http and https are allowed")

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise RunValidationError(f"URL has no host: {url}")

    if _private_networks_allowed():
        return

    if (
        hostname in BLOCKED_PROXY_HOSTS
        or hostname.startswith(BLOCKED_PROXY_HOST_PREFIXES)
        or hostname.endswith(BLOCKED_PROXY_HOST_SUFFIXES)
    ):
        raise RunValidationError(f"Requests to private or internal hosts are not allowed: {hostname}")

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return
    if address.is_private or address.is_loopback or address.is_link_local or address.is_reserved:
        raise RunValidationError(f"Requests to private or internal hosts are not allowed: {hostname}")
