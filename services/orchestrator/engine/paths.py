"""Plain `$`-rooted path lookups into JSON-like data."""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Optional, Tuple
from shared.exceptions import ExpressionError

_INTEGER_RE = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class PathStep:
    kind: str  # property, key, index, slice, wildcard
    value: Any = None
    end: Optional[int] = None


def _parse_bound(text: str, path: str) -> Optional[int]:
    text = text.strip()
    if not text:
        return None
    if not _INTEGER_RE.match(text):
        raise ExpressionError(f"Invalid slice bound '{text}' in path: {path}")
    return int(text)


def _parse_index(content: str, path: str) -> PathStep:
    text = content.strip()
    if not text:
        raise ExpressionError(f"Empty index in path: {path}")

    if text == "*":
        return PathStep("wildcard")

    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return PathStep("key", text[1:-1])

    if ":" in text:
        start, end = text.split(":", 1)
        return PathStep("slice", _parse_bound(start, path), _parse_bound(end, path))

    if _INTEGER_RE.match(text):
        return PathStep("index", int(text))

    return PathStep("key", text)


@lru_cache(maxsize=512)
def compile_path(path: str) -> Tuple[PathStep, ...]:
    """Tokenizes a path such as `$.items[0].name` or `$['a-b'][*].id`"""
    text = path.strip()
    if text.startswith("$"):
        text = text[1:]

    steps: List[PathStep] = []
    current = ""
    in_brackets = False
    quote = None

    for char in text:
        if in_brackets:
            if quote:
                current += char
                if char == quote:
                    quote = None
                continue
            if char in ("'", '"'):
                quote = char
                current += char
            elif char == "]":
                steps.append(_parse_index(current, path))
                current = ""
                in_brackets = False
            elif char == "[":
                raise ExpressionError(f"Nested '[' in path: {path}")
            else:
                current += char
            continue

        if char == "[":
            if current:
                steps.append(PathStep("property", current))
                current = ""
            in_brackets = True
        elif char == "]":
            raise ExpressionError(f"Unexpected ']' in path: {path}")
        elif char == ".":
            if current:
                steps.append(PathStep("property", current))
            current = ""
        else:
            current += char

    if in_brackets:
        raise ExpressionError(f"Unclosed '[' in path: {path}")
    if current:
        steps.append(PathStep("property", current))

    return tuple(steps)


def _wildcard_items(value: Any) -> Optional[List[Any]]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    return None


def _apply_step(step: PathStep, value: Any) -> Any:
    if step.kind in ("property", "key"):
        if isinstance(value, dict):
            return value.get(step.value)
        return None

    if step.kind == "index":
        if isinstance(value, list) and -len(value) <= step.value < len(value):
            return value[step.value]
        return None

    if step.kind == "slice":
        if isinstance(value, list):
            return value[step.value:step.end]
        return None

    return None


def walk_path(steps: Tuple[PathStep, ...], data: Any) -> Any:
    current = data
    for position, step in enumerate(steps):
        if current is None:
            return None

        # Wildcards and property access on a list fan out over the elements
        if step.kind == "wildcard":
            items = _wildcard_items(current)
            if items is None:
                return None
            rest = steps[position + 1:]
            return [walk_path(rest, item) for item in items]

        if step.kind == "property" and isinstance(current, list):
            rest = steps[position:]
            return [walk_path(rest, item) for item in current]

        current = _apply_step(step, current)

    return current


def evaluate_path(path: str, data: Any) -> Any:
    """Returns the value at path, or None when any segment is missing"""
    return walk_path(compile_path(path), data)
