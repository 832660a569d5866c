"""Parameter wiring between the flows of a sequence."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from shared.constants import (
    ERROR_INDICATOR_FIELDS,
    ERROR_MESSAGE_FALLBACK_FIELD,
    SUCCESS_INDICATOR_FIELD,
    UNKNOWN_RESPONSE_ERROR,
)
from shared.exceptions import SequenceValidationError
from shared.logging_config import RunLogger
from shared.types import (
    ApiHost,
    Environment,
    FlowDefinition,
    FlowSettings,
    MappingSourceType,
    ParameterMapping,
    ProjectConfig,
    SequenceStep,
)
from shared.utils import flow_output_key, to_text
from services.orchestrator.engine.expressions import is_nan, to_number
from services.orchestrator.engine.template import (
    TemplateContext,
    TemplateResolver,
    default_resolver,
    has_template_expressions,
)

_MISSING = object()


@dataclass
class ResolvedFlowExecution:
    flow: FlowDefinition
    parameters: Dict[str, Any]


def has_error_in_response(response: Any) -> bool:
    """True when a response body carries one of the error indicator fields"""
    if not isinstance(response, dict):
        return False
    for field_name in ERROR_INDICATOR_FIELDS:
        if response.get(field_name) is not None:
            return True
    return response.get(SUCCESS_INDICATOR_FIELD) is False


def get_error_from_response(response: Dict[str, Any]) -> str:
    for field_name in ERROR_INDICATOR_FIELDS + (ERROR_MESSAGE_FALLBACK_FIELD,):
        value = response.get(field_name)
        if value:
            return value if isinstance(value, str) else json.dumps(value)
    return UNKNOWN_RESPONSE_ERROR


def convert_static_value(value: Any, data_type: Optional[str]) -> Any:
    if not data_type:
        return value
    if data_type == "string":
        return to_text(value)
    if data_type == "number":
        number = to_number(value)
        return value if is_nan(number) else number
    if data_type == "boolean":
        if isinstance(value, bool):
            return value
        return to_text(value).strip().lower() in ("true", "1", "yes")
    return value


class SequenceParameterResolver:
    """Turns a sequence step's parameter mappings into concrete flow parameter values"""

    def __init__(
        self,
        project: Optional[ProjectConfig] = None,
        environment: Optional[Environment] = None,
        sub_environment: Optional[str] = None,
        logger: Optional[RunLogger] = None,
        resolver: Optional[TemplateResolver] = None
    ):
        self.project = project
        self.environment = environment
        self.sub_environment = sub_environment
        self.logger = logger or RunLogger()
        self.resolver = resolver or default_resolver

        selected = environment.get_sub_environment(sub_environment) if environment else None
        self.environment_variables: Dict[str, Any] = dict(selected.variables) if selected else {}
        self.environment_hosts: Dict[str, str] = dict(selected.api_hosts) if selected else {}

    def resolve_flow_parameters(
        self,
        flow: FlowDefinition,
        step: SequenceStep,
        accumulated_outputs: Dict[str, Dict[str, Any]]
    ) -> ResolvedFlowExecution:
        self.logger.debug(
            f"Resolving parameters for flow {flow.name or flow.id}",
            f"{len(step.parameter_mappings)} parameter mapping(s)"
        )

        mappings = {mapping.flow_parameter_name: mapping for mapping in step.parameter_mappings}
        resolved: Dict[str, Any] = {}

        for parameter in flow.parameters:
            mapping = mappings.get(parameter.name)
            if mapping is not None:
                value = self.resolve_mapping(mapping, accumulated_outputs)
                if value is not _MISSING:
                    resolved[parameter.name] = value
                continue

            if self.project is not None and self.project.find_variable(parameter.name) is not None:
                value = self.resolve_project_variable(parameter.name)
                if value is not _MISSING:
                    resolved[parameter.name] = value
                    continue

            if parameter.default_value is not None:
                resolved[parameter.name] = parameter.default_value
            elif parameter.required:
                self.logger.warning(
                    f"Required parameter '{parameter.name}' has no mapping, no project variable "
                    f"match and no default value in flow {flow.name or flow.id}"
                )

        self.logger.info(
            f"Resolved {len(resolved)} parameters for flow {flow.name or flow.id}",
            f"Parameters: {', '.join(resolved)}"
        )

        settings = FlowSettings(api_hosts=self.resolve_api_hosts(flow))
        return ResolvedFlowExecution(
            flow=flow.model_copy(update={"settings": settings}),
            parameters=resolved,
        )

    def resolve_mapping(self, mapping: ParameterMapping, accumulated_outputs: Dict[str, Dict[str, Any]]) -> Any:
        """Value for one mapping, or _MISSING when its source has nothing to offer"""
        source = mapping.source_type

        if source == MappingSourceType.PROJECT_VARIABLE:
            return self.resolve_project_variable(to_text(mapping.source_value))

        if source == MappingSourceType.PREVIOUS_OUTPUT:
            if not mapping.source_flow_step:
                raise SequenceValidationError(
                    f"Missing source_flow_step for previous_output mapping of parameter "
                    f"'{mapping.flow_parameter_name}'"
                )
            outputs = accumulated_outputs.get(flow_output_key(mapping.source_flow_step))
            if not outputs:
                self.logger.warning(
                    f"No outputs found from flow step {mapping.source_flow_step} "
                    f"for parameter '{mapping.flow_parameter_name}'"
                )
                return None
            field_name = mapping.source_output_field or to_text(mapping.source_value)
            return outputs.get(field_name)

        if source == MappingSourceType.STATIC_VALUE:
            return convert_static_value(mapping.source_value, mapping.data_type)

        if source == MappingSourceType.ENVIRONMENT_VARIABLE:
            name = to_text(mapping.source_value)
            if name not in self.environment_variables:
                self.logger.warning(
                    f"Environment variable '{name}' not found for parameter '{mapping.flow_parameter_name}'",
                    f"Available environment variables: {', '.join(self.environment_variables)}"
                )
                return _MISSING
            return self.environment_variables[name]

        if source == MappingSourceType.FUNCTION:
            return self.resolve_function(to_text(mapping.source_value))

        raise SequenceValidationError(f"Unknown parameter mapping source type: {source}")

    def resolve_function(self, expression: str) -> Any:
        template = expression.strip()
        if not has_template_expressions(template):
            template = "{{func:" + template + "}}"
        context = TemplateContext(environment=dict(self.environment_variables))
        return self.resolver.resolve_string(template, context)

    def resolve_project_variable(self, name: str) -> Any:
        """Environment value mapped to the project variable, else its default"""
        if self.project is None:
            self.logger.warning(f"No project variables found for project variable '{name}'")
            return _MISSING

        variable = self.project.find_variable(name)
        if variable is None:
            self.logger.warning(f"Project variable '{name}' not found in project configuration")
            return _MISSING

        if self.environment is not None:
            for mapping in self.project.environment_mappings:
                if mapping.environment_id != self.environment.id:
                    continue
                environment_name = mapping.variable_mappings.get(name)
                if not environment_name:
                    break
                if environment_name in self.environment_variables:
                    self.logger.info(
                        f"Parameter '{name}' resolved from environment variable '{environment_name}'"
                    )
                    return self.environment_variables[environment_name]
                self.logger.warning(
                    f"Environment variable '{environment_name}' not found for project variable "
                    f"'{name}', falling back to default value"
                )
                break

        if variable.default_value is not None:
            self.logger.info(f"Parameter '{name}' resolved from default value")
            return variable.default_value

        self.logger.warning(f"Project variable '{name}' has no environment mapping and no default value")
        return _MISSING

    def resolve_api_hosts(self, flow: FlowDefinition) -> Dict[str, ApiHost]:
        """Flow hosts, overridden by project defaults, overridden by the sub-environment"""
        hosts: Dict[str, ApiHost] = dict(flow.settings.api_hosts)

        if self.project is not None:
            for api_host in self.project.api_hosts:
                if api_host.default_host:
                    hosts[api_host.api_id] = ApiHost(
                        url=api_host.default_host,
                        name=api_host.name,
                        description="Project default host"
                    )

        for api_id, url in self.environment_hosts.items():
            if url:
                existing = hosts.get(api_id)
                hosts[api_id] = ApiHost(
                    url=url,
                    name=existing.name if existing else f"API {api_id}",
                    description=f"Environment {self.sub_environment} host"
                )

        if hosts:
            self.logger.info(f"Resolved {len(hosts)} API host(s) for flow execution", f"APIs: {', '.join(hosts)}")
        else:
            self.logger.error(
                "No API hosts configured",
                "Either configure project default API hosts or environment-specific API hosts"
            )
        return hosts


def is_missing(value: Any) -> bool:
    return value is _MISSING

