"""Template resolution for {{source:path}} and {{{source:path}}} syntax."""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from shared.exceptions import ExpressionError, FlowEngineError, TemplateResolutionError
from shared.utils import to_text
from services.orchestrator.engine.path_evaluator import PathEvaluator, default_evaluator
from services.orchestrator.engine.pipeline import split_arguments
from services.orchestrator.engine.template_functions import get_template_functions

_TRIPLE_RE = re.compile(r"^\{\{\{([^:{}]+):(.+)\}\}\}$", re.DOTALL)
_DOUBLE_RE = re.compile(r"^\{\{([^:{}]+):(.+)\}\}$", re.DOTALL)
_EXPRESSION_SCAN_RE = re.compile(r"\{\{\{[^}]+\}\}\}|\{\{[^}]+\}\}")
_FUNCTION_CALL_RE = re.compile(r"^([a-zA-Z0-9_]+)\s*\((.*)\)$", re.DOTALL)
_ALIAS_RE = re.compile(r"^([^\[]+)(.*)$")


class TemplateSource(str, Enum):
    RESPONSE = "res"
    TRANSFORMATION = "proc"
    PARAMETER = "param"
    FUNCTION = "func"
    ENVIRONMENT = "env"


SOURCE_SYNONYMS = {
    "res": TemplateSource.RESPONSE,
    "response": TemplateSource.RESPONSE,
    "proc": TemplateSource.TRANSFORMATION,
    "process": TemplateSource.TRANSFORMATION,
    "transform": TemplateSource.TRANSFORMATION,
    "param": TemplateSource.PARAMETER,
    "parameter": TemplateSource.PARAMETER,
    "var": TemplateSource.PARAMETER,
    "func": TemplateSource.FUNCTION,
    "function": TemplateSource.FUNCTION,
    "env": TemplateSource.ENVIRONMENT,
    "environment": TemplateSource.ENVIRONMENT,
}


@dataclass
class TemplateExpression:
    source: TemplateSource
    path: str
    preserve_type: bool
    text: str


@dataclass
class TemplateContext:
    """Everything a template may reference during one flow run"""
    responses: Dict[str, Any] = field(default_factory=dict)
    transformations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)
    functions: Optional[Dict[str, Callable[..., Any]]] = None


def has_template_expressions(value: Any) -> bool:
    return isinstance(value, str) and _EXPRESSION_SCAN_RE.search(value) is not None


def find_template_expressions(value: str) -> List[str]:
    return _EXPRESSION_SCAN_RE.findall(value)


def parse_template_expression(text: str) -> Optional[TemplateExpression]:
    """Parses one `{{source:path}}` token; None when it is not source-qualified"""
    match = _TRIPLE_RE.match(text)
    preserve_type = match is not None
    if match is None:
        match = _DOUBLE_RE.match(text)
    if match is None:
        return None

    source_name = match.group(1).strip()
    source = SOURCE_SYNONYMS.get(source_name)
    if source is None:
        raise ExpressionError(f"Unknown template source: {source_name}")

    return TemplateExpression(source, match.group(2).strip(), preserve_type, text)


def parse_function_arguments(text: str) -> List[Any]:
    args: List[Any] = []
    for raw in split_arguments(text):
        try:
            args.append(json.loads(raw))
        except ValueError:
            if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
                args.append(raw[1:-1])
            else:
                args.append(raw)
    return args


def _available(keys: Any) -> str:
    return ", ".join(str(key) for key in keys)


class TemplateResolver:
    """Resolves template expressions inside strings and nested structures.

    A string that is exactly one expression (optionally wrapped in double
    quotes) resolves to the referenced native value and raises when the
    reference is missing. Expressions embedded in longer text are
    substituted as text; those that fail are left as written.
    """

    def __init__(
        self,
        path_evaluator: Optional[PathEvaluator] = None,
        functions: Optional[Dict[str, Callable[..., Any]]] = None
    ):
        self.path_evaluator = path_evaluator or default_evaluator
        self.functions = functions if functions is not None else get_template_functions()
        self._resolvers = {
            TemplateSource.RESPONSE: self._resolve_response,
            TemplateSource.TRANSFORMATION: self._resolve_transformation,
            TemplateSource.PARAMETER: self._resolve_parameter,
            TemplateSource.FUNCTION: self._resolve_function,
            TemplateSource.ENVIRONMENT: self._resolve_environment,
        }

    def resolve(self, value: Any, context: TemplateContext) -> Any:
        """Recursively walks through a value to resolve all templates"""
        if isinstance(value, str):
            return self.resolve_string(value, context)

        elif isinstance(value, dict):
            return {k: self.resolve(v, context) for k, v in value.items()}

        elif isinstance(value, list):
            return [self.resolve(item, context) for item in value]

        else:
            return value

    def resolve_string(self, template: str, context: TemplateContext) -> Any:
        if not has_template_expressions(template):
            return template

        single = self._single_expression(template)
        if single is not None:
            expression = parse_template_expression(single)
            if expression is None:
                raise ExpressionError(f"Invalid template expression: {single}")
            return self.resolve_expression(expression, context)

        return self.substitute(template, context)

    def substitute(self, template: str, context: TemplateContext) -> Any:
        """Replaces every embedded expression with its text rendering"""

        def replace(match: "re.Match") -> str:
            text = match.group(0)
            try:
                expression = parse_template_expression(text)
                if expression is None:
                    return text
                resolved = self.resolve_expression(expression, context)
            except FlowEngineError as e:
                logging.warning(
                    "Template expression left unresolved",
                    extra={"expression": text, "error": e.message}
                )
                return text

            if expression.preserve_type:
                return resolved if isinstance(resolved, str) else json.dumps(resolved)
            return to_text(resolved)

        result = _EXPRESSION_SCAN_RE.sub(replace, template)

        # A quoted JSON string produced by substitution is read back as its value
        if result != template and len(result) >= 2 and result[0] == '"' and result[-1] == '"':
            try:
                return json.loads(result)
            except ValueError:
                pass

        return result

    def resolve_expression(self, expression: TemplateExpression, context: TemplateContext) -> Any:
        return self._resolvers[expression.source](expression.path, context)

    def _single_expression(self, template: str) -> Optional[str]:
        candidate = template
        if len(candidate) >= 2 and candidate[0] == '"' and candidate[-1] == '"':
            candidate = candidate[1:-1]
        if _EXPRESSION_SCAN_RE.fullmatch(candidate):
            return candidate
        return None

    def _resolve_response(self, path: str, context: TemplateContext) -> Any:
        invocation_id, _, remainder = path.partition(".")
        invocation_id = invocation_id.strip()

        if invocation_id not in context.responses:
            raise TemplateResolutionError(
                f"Response data not found for: {invocation_id}. "
                f"Available keys: {_available(context.responses)}"
            )

        data = context.responses[invocation_id]
        remainder = remainder.strip()
        if not remainder or remainder == "$":
            return data
        return self.path_evaluator.evaluate(remainder, data)

    def _resolve_transformation(self, path: str, context: TemplateContext) -> Any:
        parts = path.split(".")
        if len(parts) < 3:
            raise ExpressionError(
                f"Invalid transformation template: {path}. "
                f"Format should be stepId-endpointIndex.$.alias.path"
            )

        invocation_id, marker = parts[0].strip(), parts[1].strip()
        if marker != "$":
            raise ExpressionError(
                f"Invalid transformation template: {path}. Format should include $ to indicate JSON path"
            )

        alias_match = _ALIAS_RE.match(parts[2])
        if alias_match is None:
            raise ExpressionError(f"Invalid transformation template: {path}. Alias is empty")
        alias, bracket_path = alias_match.group(1), alias_match.group(2)

        if invocation_id not in context.transformations:
            raise TemplateResolutionError(
                f"Transformation data not found for: {invocation_id}. "
                f"Available keys: {_available(context.transformations)}"
            )

        aliases = context.transformations[invocation_id]
        if alias not in aliases:
            raise TemplateResolutionError(
                f"Transformation alias not found: {alias} for step {invocation_id}. "
                f"Available aliases: {_available(aliases)}"
            )

        sub_path = "$" + bracket_path
        if len(parts) > 3:
            sub_path += "." + ".".join(parts[3:])
        if sub_path == "$":
            return aliases[alias]
        return self.path_evaluator.evaluate(sub_path, aliases[alias])

    def _resolve_parameter(self, name: str, context: TemplateContext) -> Any:
        if name not in context.parameters:
            raise TemplateResolutionError(
                f"Parameter not found: {name}. Available parameters: {_available(context.parameters)}"
            )
        return context.parameters[name]

    def _resolve_environment(self, name: str, context: TemplateContext) -> Any:
        if name not in context.environment:
            raise TemplateResolutionError(
                f"Environment variable not found: {name}. Available variables: {_available(context.environment)}"
            )
        return context.environment[name]

    def _resolve_function(self, call: str, context: TemplateContext) -> Any:
        match = _FUNCTION_CALL_RE.match(call.strip())
        if not match:
            raise ExpressionError(f"Invalid function template format: {call}")

        name = match.group(1)
        functions = context.functions if context.functions is not None else self.functions
        if name not in functions:
            raise TemplateResolutionError(
                f"Function not found: {name}. Available functions: {_available(sorted(functions))}"
            )

        args = parse_function_arguments(match.group(2).strip())
        try:
            return functions[name](*args)
        except (TypeError, ValueError, OverflowError) as e:
            raise TemplateResolutionError(f"Function {name} failed: {e}")


default_resolver = TemplateResolver()
