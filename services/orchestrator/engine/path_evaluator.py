"""Entry point for path, pipeline and expression evaluation."""

import re
from typing import Any
from shared.exceptions import ExpressionError
from services.orchestrator.engine.expressions import compile_expression
from services.orchestrator.engine.paths import evaluate_path
from services.orchestrator.engine.pipeline import apply_pipeline_step, split_pipeline

_BRACKETED_RE = re.compile(r"\[[^\]]*\]")
_OPERATOR_RE = re.compile(r"==|!=|>=|<=|&&|\|\||[<>!*/%+(]|\s-|-\s")


def _is_plain_path(expression: str) -> bool:
    if not expression.startswith("$"):
        return False
    return _OPERATOR_RE.search(_BRACKETED_RE.sub("", expression)) is None


class PathEvaluator:
    """Evaluates `$` paths, `|` pipelines and expressions against a value.

    Missing data yields None; only malformed syntax raises ExpressionError.
    """

    def evaluate(self, expression: str, data: Any) -> Any:
        if not isinstance(expression, str):
            raise ExpressionError(f"Expression must be a string, got {type(expression).__name__}")

        text = expression.strip()
        if not text:
            raise ExpressionError("Empty expression")

        segments = split_pipeline(text)
        if len(segments) > 1:
            return self._evaluate_pipeline(text, segments, data)

        if text == "data":
            return data
        if _is_plain_path(text):
            return evaluate_path(text, data)
        return compile_expression(text).evaluate(data)

    def _evaluate_pipeline(self, expression: str, segments: list, data: Any) -> Any:
        head = segments[0]
        if head == "data":
            result = data
        elif head.startswith("$"):
            result = evaluate_path(head, data)
        else:
            raise ExpressionError(f"Pipeline must start with a $ path or 'data': {expression}")

        for step in segments[1:]:
            if not step:
                raise ExpressionError(f"Empty pipeline step in: {expression}")
            result = apply_pipeline_step(self, step, result)

        return result


default_evaluator = PathEvaluator()


def evaluate(expression: str, data: Any) -> Any:
    return default_evaluator.evaluate(expression, data)
