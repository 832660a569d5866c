"""Builds concrete HTTP requests from step invocations."""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode
from shared.exceptions import FlowEngineError, TemplateResolutionError
from shared.types import EndpointDefinition, EndpointParameter, PreparedRequest, StepEndpoint
from shared.utils import to_text
from services.orchestrator.engine.template import TemplateContext, TemplateResolver, default_resolver

ARRAY_DELIMITERS = {
    "csv": ",",
    "form": ",",
    "ssv": " ",
    "spaceDelimited": " ",
    "tsv": "\t",
    "pipes": "|",
    "pipeDelimited": "|",
}

_PATH_SAFE_CHARACTERS = "-_.!~*'()"


def array_format(param: EndpointParameter) -> str:
    return param.collection_format or param.style or "csv"


def parse_array_parameter(value: str, param: EndpointParameter) -> List[str]:
    """Splits a user-entered array value using the parameter's declared format"""
    if not value or not value.strip():
        return []

    fmt = array_format(param)
    if fmt == "multi":
        return [value]

    delimiter = ARRAY_DELIMITERS.get(fmt, ",")
    return [item.strip() for item in value.split(delimiter) if item.strip()]


def serialize_array_parameter(name: str, values: List[str], param: EndpointParameter) -> List[Tuple[str, str]]:
    """Query pairs for an array parameter"""
    if not values:
        return []

    fmt = array_format(param)
    explode = param.explode is not False

    if fmt in ("csv", "form"):
        if explode:
            return [(name, value) for value in values]
        return [(name, ",".join(values))]

    if fmt in ARRAY_DELIMITERS:
        return [(name, ARRAY_DELIMITERS[fmt].join(values))]

    # multi and unknown formats repeat the key
    return [(name, value) for value in values]


def join_url(host: str, path: str) -> str:
    if host.endswith("/") and path.startswith("/"):
        return host + path[1:]
    return host + path


class RequestBuilder:

    def __init__(self, resolver: Optional[TemplateResolver] = None):
        self.resolver = resolver or default_resolver

    def _resolve(self, value: Any, context: TemplateContext, where: str) -> Any:
        try:
            return self.resolver.resolve(value, context)
        except FlowEngineError as e:
            raise TemplateResolutionError(f"Template resolution failed for {where}: {e.message}")

    def build(
        self,
        definition: EndpointDefinition,
        invocation: StepEndpoint,
        host: str,
        context: TemplateContext
    ) -> PreparedRequest:
        url = join_url(host, definition.path)

        for name, raw in invocation.path_params.items():
            value = self._resolve(raw, context, f"path parameter '{name}'")
            url = url.replace("{" + name + "}", quote(to_text(value), safe=_PATH_SAFE_CHARACTERS))

        query = urlencode(self.build_query_pairs(definition, invocation, context))
        if query:
            url += ("&" if "?" in url else "?") + query

        headers: Dict[str, str] = {}
        for header in invocation.headers:
            if not header.enabled or not header.name:
                continue
            headers[header.name] = to_text(self._resolve(header.value, context, f"header '{header.name}'"))

        body = None
        if invocation.body is not None:
            body = self._resolve(invocation.body, context, "request body")

        return PreparedRequest(
            url=url,
            method=definition.method.upper(),
            headers=headers,
            body=body,
        )

    def build_query_pairs(
        self,
        definition: EndpointDefinition,
        invocation: StepEndpoint,
        context: TemplateContext
    ) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []

        for name, raw in invocation.query_params.items():
            param = definition.find_parameter(name, "query")
            value = self._resolve(raw, context, f"query parameter '{name}'")

            if isinstance(raw, list):
                # Already split into items
                values = [to_text(item) for item in value]
                if param is not None and param.is_array:
                    pairs.extend(serialize_array_parameter(name, values, param))
                else:
                    pairs.extend((name, item) for item in values)
                continue

            if param is not None and param.is_array:
                if isinstance(value, list):
                    values = [to_text(item) for item in value]
                else:
                    values = parse_array_parameter(to_text(value), param)
                pairs.extend(serialize_array_parameter(name, values, param))
            else:
                pairs.append((name, to_text(value)))

        return pairs
