"""Flow parameter preparation and flow output evaluation."""

import json
from typing import Any, Dict, List, Optional, Tuple
from shared.exceptions import FlowEngineError
from shared.logging_config import RunLogger
from shared.types import FlowDefinition, FlowOutput
from services.orchestrator.engine.expressions import cast_to_bool, cast_to_float, cast_to_string
from services.orchestrator.engine.template import TemplateContext, TemplateResolver, default_resolver


class ParameterManager:
    """Resolves flow parameter values from overrides, environment and defaults"""

    def __init__(
        self,
        flow: FlowDefinition,
        environment_variables: Optional[Dict[str, Any]] = None,
        logger: Optional[RunLogger] = None
    ):
        self.flow = flow
        self.environment_variables = environment_variables or {}
        self.logger = logger or RunLogger(flow_id=flow.id)

    def _mapped_environment_value(self, name: str) -> Tuple[bool, Any]:
        binding = self.flow.settings.environment
        if binding is None:
            return False, None
        variable = binding.parameter_mappings.get(name)
        if variable and variable in self.environment_variables:
            return True, self.environment_variables[variable]
        return False, None

    def prepare_parameters(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Override, then mapped environment variable, then declared default"""
        overrides = overrides or {}
        values: Dict[str, Any] = {}

        for parameter in self.flow.parameters:
            name = parameter.name

            if overrides.get(name) is not None:
                values[name] = overrides[name]
                self.logger.debug(f"Parameter {name} set from provided value")
                continue

            found, value = self._mapped_environment_value(name)
            if found:
                values[name] = value
                self.logger.debug(f"Parameter {name} set from environment variable")
                continue

            if parameter.default_value is not None:
                values[name] = parameter.default_value
                self.logger.debug(f"Parameter {name} set from default value")
                continue

            self.logger.warning(f"No value available for parameter {name}")

        # Provided values for undeclared names still reach templates
        for name, value in overrides.items():
            if name not in values and value is not None:
                values[name] = value

        return values

    def update_parameter_values(self, values: Dict[str, Any], provided: Dict[str, Any]) -> Dict[str, Any]:
        """Fills parameters that are still missing with caller-supplied values"""
        merged = dict(values)
        for name, value in provided.items():
            if value is None or (isinstance(value, str) and value == ""):
                continue
            if merged.get(name) in (None, ""):
                merged[name] = value
        return merged

    def check_required_parameters(self, values: Dict[str, Any]) -> List[str]:
        """Names of required parameters that still have no usable value"""
        missing = []
        for parameter in self.flow.parameters:
            if not parameter.required:
                continue
            value = values.get(parameter.name)
            if value is None or (isinstance(value, str) and value == ""):
                missing.append(parameter.name)
        return missing


def cast_output_value(value: Any, output_type: Optional[str]) -> Any:
    if value is None or not output_type:
        return value

    if output_type == "string":
        return cast_to_string(value)
    if output_type == "number":
        return cast_to_float(value)
    if output_type == "boolean":
        return cast_to_bool(value)
    if output_type == "object":
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value
    if output_type == "array":
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                return [value]
            return parsed if isinstance(parsed, list) else [value]
        return value if isinstance(value, list) else [value]
    if output_type == "null":
        return None
    return value


class OutputEvaluator:
    """Evaluates a flow's declared outputs once its steps have finished"""

    def __init__(self, resolver: Optional[TemplateResolver] = None, logger: Optional[RunLogger] = None):
        self.resolver = resolver or default_resolver
        self.logger = logger or RunLogger()

    def evaluate_outputs(
        self,
        outputs: List[FlowOutput],
        context: TemplateContext
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        results: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        if not outputs:
            return results, errors

        self.logger.info("Evaluating flow outputs", f"{len(outputs)} outputs to evaluate")

        for output in outputs:
            try:
                if output.is_template and isinstance(output.value, str) and output.value:
                    value = self.resolver.resolve_string(output.value, context)
                    value = cast_output_value(value, output.type)
                else:
                    value = output.value
            except FlowEngineError as e:
                self.logger.error(f"Failed to evaluate output \"{output.name}\"", e.message)
                results[output.name] = None
                errors[output.name] = e.message
                continue

            results[output.name] = value
            self.logger.debug(f"Output \"{output.name}\" evaluated successfully", str(value))

        return results, errors
