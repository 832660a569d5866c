"""Boolean and arithmetic expressions used by `where`, `map` and friends.

Expressions are evaluated against a single element. `$` paths and bare
identifiers (`name`, `item.name`, `user.profile.age`) read fields of that
element. Operator precedence, lowest first:

    ||   &&   == !=   < <= > >=   + -   * / %   unary ! -
"""

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional
from shared.exceptions import ExpressionError
from shared.utils import is_number, to_text
from services.orchestrator.engine.paths import evaluate_path

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?")
_IDENTIFIER_RE = re.compile(r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*")
_NUMERIC_TEXT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_PREFIX_RE = re.compile(r"^\s*([+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?)")

# Lookarounds, nested quantifiers and open-ended repetition ranges
_UNSAFE_PATTERN_RE = re.compile(r"\(\?[=!<]|[*+]\)[*+{]|\{\d*,\d*\}")
MAX_PATTERN_LENGTH = 200

_OPERATORS = ("||", "&&", "==", "!=", ">=", "<=", ">", "<", "!", "+", "-", "*", "/", "%")

_BINARY_PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "==": 3, "!=": 3,
    "<": 4, "<=": 4, ">": 4, ">=": 4,
    "+": 5, "-": 5,
    "*": 6, "/": 6, "%": 6,
}

_KEYWORDS = {"true": True, "false": False, "null": None}


# Value coercion helpers shared with the pipeline and output casting

def to_number(value: Any) -> float:
    """Numeric view of a value, NaN when it has none"""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        if _NUMERIC_TEXT_RE.match(text):
            return normalize_number(float(text))
    return math.nan


def normalize_number(value: Any) -> Any:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


def is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def truthy(value: Any) -> bool:
    """Only null, false, 0, NaN and the empty string are false; empty lists and objects are true."""
    if value is None or value is False or value == "":
        return False
    if is_number(value):
        return not is_nan(value) and value != 0
    return True


def strict_equals(left: Any, right: Any) -> bool:
    if is_number(left) and is_number(right):
        return left == right
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if left is None or right is None:
        return left is right
    if type(left) is not type(right):
        return False
    return left == right


def _default_number(default: Any) -> Optional[float]:
    if default is None:
        return None
    number = to_number(default)
    return None if is_nan(number) else number


def _floor_or_none(number: Optional[float]) -> Optional[int]:
    if number is None or not math.isfinite(number):
        return None
    return math.floor(number)


def cast_to_int(value: Any, default: Any = None) -> Optional[int]:
    if value is None:
        return _floor_or_none(_default_number(default))
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return _floor_or_none(_default_number(default))
        return math.floor(value)
    if isinstance(value, str):
        match = _INT_PREFIX_RE.match(value)
        if match:
            return int(match.group(1))
    return _floor_or_none(_default_number(default))


def cast_to_float(value: Any, default: Any = None) -> Optional[float]:
    if value is None:
        return _default_number(default)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        match = _FLOAT_PREFIX_RE.match(value)
        if match:
            return normalize_number(float(match.group(1)))
    return _default_number(default)


def cast_to_string(value: Any, default: Any = None) -> Optional[str]:
    if value is None:
        return None if default is None else to_text(default)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return to_text(value)


def cast_to_bool(value: Any, default: Any = None) -> Optional[bool]:
    if value is None:
        return None if default is None else truthy(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return truthy(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0", ""):
            return False
        return True
    return bool(value)


def is_unsafe_pattern(pattern: str) -> bool:
    return len(pattern) > MAX_PATTERN_LENGTH or bool(_UNSAFE_PATTERN_RE.search(pattern))


# Expression functions

def _arg(args: List[Any], index: int, default: Any = None) -> Any:
    return args[index] if len(args) > index else default


def _contains(args: List[Any]) -> bool:
    haystack, needle = _arg(args, 0), _arg(args, 1)
    if isinstance(haystack, list):
        return any(strict_equals(item, needle) for item in haystack)
    if haystack is None:
        return False
    return to_text(needle) in to_text(haystack)


def _starts_with(args: List[Any]) -> bool:
    value = _arg(args, 0)
    return value is not None and to_text(value).startswith(to_text(_arg(args, 1)))


def _ends_with(args: List[Any]) -> bool:
    value = _arg(args, 0)
    return value is not None and to_text(value).endswith(to_text(_arg(args, 1)))


def _matches(args: List[Any]) -> bool:
    value, pattern = _arg(args, 0), _arg(args, 1)
    if value is None or not isinstance(pattern, str) or is_unsafe_pattern(pattern):
        return False
    try:
        return re.search(pattern, to_text(value)) is not None
    except re.error:
        return False


def _empty(args: List[Any]) -> bool:
    value = _arg(args, 0)
    if value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def _length(args: List[Any]) -> int:
    value = _arg(args, 0)
    if isinstance(value, (str, list, dict)):
        return len(value)
    return 0


def _numeric(func: Callable[..., Any]) -> Callable[[List[Any]], Any]:
    def wrapper(args: List[Any]) -> Any:
        numbers = [to_number(arg) for arg in args]
        if not numbers or any(is_nan(number) for number in numbers):
            return None
        try:
            return normalize_number(func(*numbers))
        except (OverflowError, ValueError):
            return None
    return wrapper


def _round(value: float, digits: float = 0) -> float:
    factor = 10 ** int(digits)
    return math.floor(value * factor + 0.5) / factor


EXPRESSION_FUNCTIONS: Dict[str, Callable[[List[Any]], Any]] = {
    "contains": _contains,
    "startsWith": _starts_with,
    "endsWith": _ends_with,
    "matches": _matches,
    "empty": _empty,
    "length": _length,
    "int": lambda args: cast_to_int(_arg(args, 0), _arg(args, 1)),
    "float": lambda args: cast_to_float(_arg(args, 0), _arg(args, 1)),
    "string": lambda args: cast_to_string(_arg(args, 0), _arg(args, 1)),
    "bool": lambda args: cast_to_bool(_arg(args, 0), _arg(args, 1)),
    "abs": _numeric(abs),
    "round": _numeric(_round),
    "ceil": _numeric(math.ceil),
    "floor": _numeric(math.floor),
    "min": _numeric(min),
    "max": _numeric(max),
    "pow": _numeric(math.pow),
}


def arithmetic(operator: str, left: Any, right: Any) -> Any:
    a, b = to_number(left), to_number(right)
    if is_nan(a) or is_nan(b):
        return None

    if operator == "+":
        return normalize_number(a + b)
    if operator == "-":
        return normalize_number(a - b)
    if operator == "*":
        return normalize_number(a * b)
    if operator == "/":
        if b == 0:
            if a == 0:
                return None
            return math.inf if a > 0 else -math.inf
        return normalize_number(a / b)
    if operator == "%":
        if b == 0:
            return None
        return normalize_number(math.fmod(a, b))

    raise ExpressionError(f"Unknown arithmetic operator: {operator}")


def _compare(operator: str, left: Any, right: Any) -> bool:
    a, b = to_number(left), to_number(right)
    if is_nan(a) or is_nan(b):
        return False
    if operator == "<":
        return a < b
    if operator == "<=":
        return a <= b
    if operator == ">":
        return a > b
    return a >= b


# Syntax tree

class Node:
    def evaluate(self, data: Any) -> Any:
        raise NotImplementedError


@dataclass
class LiteralNode(Node):
    value: Any

    def evaluate(self, data: Any) -> Any:
        return self.value


@dataclass
class PathNode(Node):
    path: str

    def evaluate(self, data: Any) -> Any:
        return evaluate_path(self.path, data)


@dataclass
class IdentifierNode(Node):
    name: str

    def evaluate(self, data: Any) -> Any:
        parts = self.name.split(".")
        if parts[0] == "item":
            parts = parts[1:]

        current = data
        for part in parts:
            if not isinstance(current, dict):
                return None
            current = current.get(part)
        return current


@dataclass
class UnaryNode(Node):
    operator: str
    operand: Node

    def evaluate(self, data: Any) -> Any:
        value = self.operand.evaluate(data)
        if self.operator == "!":
            return not truthy(value)
        number = to_number(value)
        return None if is_nan(number) else normalize_number(-number)


@dataclass
class BinaryNode(Node):
    operator: str
    left: Node
    right: Node

    def evaluate(self, data: Any) -> Any:
        if self.operator == "&&":
            return truthy(self.left.evaluate(data)) and truthy(self.right.evaluate(data))
        if self.operator == "||":
            return truthy(self.left.evaluate(data)) or truthy(self.right.evaluate(data))

        left = self.left.evaluate(data)
        right = self.right.evaluate(data)

        if self.operator == "==":
            return strict_equals(left, right)
        if self.operator == "!=":
            return not strict_equals(left, right)
        if self.operator in ("<", "<=", ">", ">="):
            return _compare(self.operator, left, right)
        return arithmetic(self.operator, left, right)


@dataclass
class CallNode(Node):
    name: str
    args: List[Node]

    def evaluate(self, data: Any) -> Any:
        return EXPRESSION_FUNCTIONS[self.name]([arg.evaluate(data) for arg in self.args])


# Tokenizer and parser

@dataclass
class Token:
    kind: str  # path, op, string, number, ident, lparen, rparen, comma
    value: Any
    position: int


def _scan_path(expression: str, start: int) -> int:
    end = start + 1
    length = len(expression)
    while end < length:
        char = expression[end]
        if char.isalnum() or char in "_.":
            end += 1
        elif char == "[":
            end = _scan_bracket(expression, end)
        else:
            break
    return end


def _scan_bracket(expression: str, start: int) -> int:
    quote = None
    for position in range(start + 1, len(expression)):
        char = expression[position]
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "]":
            return position + 1
    raise ExpressionError(f"Unclosed '[' in expression: {expression}")


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    length = len(expression)

    while position < length:
        char = expression[position]

        if char.isspace():
            position += 1
            continue

        if char == "$":
            end = _scan_path(expression, position)
            tokens.append(Token("path", expression[position:end], position))
            position = end
            continue

        if char in ("'", '"'):
            end = expression.find(char, position + 1)
            if end == -1:
                raise ExpressionError(f"Unterminated string in expression: {expression}")
            tokens.append(Token("string", expression[position + 1:end], position))
            position = end + 1
            continue

        number = _NUMBER_RE.match(expression, position)
        if number:
            text = number.group(0)
            tokens.append(Token("number", normalize_number(float(text)), position))
            position = number.end()
            continue

        identifier = _IDENTIFIER_RE.match(expression, position)
        if identifier:
            tokens.append(Token("ident", identifier.group(0), position))
            position = identifier.end()
            continue

        if char == "(":
            tokens.append(Token("lparen", char, position))
            position += 1
            continue
        if char == ")":
            tokens.append(Token("rparen", char, position))
            position += 1
            continue
        if char == ",":
            tokens.append(Token("comma", char, position))
            position += 1
            continue

        for operator in _OPERATORS:
            if expression.startswith(operator, position):
                tokens.append(Token("op", operator, position))
                position += len(operator)
                break
        else:
            raise ExpressionError(
                f"Unexpected character '{char}' at position {position} in expression: {expression}"
            )

    return tokens


class _Parser:

    def __init__(self, tokens: List[Token], expression: str):
        self.tokens = tokens
        self.expression = expression
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self._parse_binary(1)
        leftover = self._peek()
        if leftover is not None:
            raise ExpressionError(
                f"Unexpected token '{leftover.value}' at position {leftover.position} "
                f"in expression: {self.expression}"
            )
        return node

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionError(f"Unexpected end of expression: {self.expression}")
        self.index += 1
        return token

    def _expect(self, kind: str) -> Token:
        token = self._advance()
        if token.kind != kind:
            raise ExpressionError(
                f"Expected {kind} but found '{token.value}' at position {token.position} "
                f"in expression: {self.expression}"
            )
        return token

    def _parse_binary(self, min_precedence: int) -> Node:
        left = self._parse_unary()
        while True:
            token = self._peek()
            if token is None or token.kind != "op" or token.value not in _BINARY_PRECEDENCE:
                return left
            precedence = _BINARY_PRECEDENCE[token.value]
            if precedence < min_precedence:
                return left
            self._advance()
            right = self._parse_binary(precedence + 1)
            left = BinaryNode(token.value, left, right)

    def _parse_unary(self) -> Node:
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in ("!", "-"):
            self._advance()
            return UnaryNode(token.value, self._parse_unary())
        return self._parse_primary()

    def _parse_primary(self) -> Node:
        token = self._advance()

        if token.kind in ("number", "string"):
            return LiteralNode(token.value)
        if token.kind == "path":
            return PathNode(token.value)
        if token.kind == "lparen":
            node = self._parse_binary(1)
            self._expect("rparen")
            return node
        if token.kind == "ident":
            following = self._peek()
            if following is not None and following.kind == "lparen":
                return self._parse_call(token)
            if token.value in _KEYWORDS:
                return LiteralNode(_KEYWORDS[token.value])
            return IdentifierNode(token.value)

        raise ExpressionError(
            f"Unexpected token '{token.value}' at position {token.position} in expression: {self.expression}"
        )

    def _parse_call(self, name_token: Token) -> Node:
        name = name_token.value
        if name not in EXPRESSION_FUNCTIONS:
            raise ExpressionError(f"Unknown function '{name}' in expression: {self.expression}")

        self._expect("lparen")
        args: List[Node] = []
        following = self._peek()
        if following is not None and following.kind == "rparen":
            self._advance()
            return CallNode(name, args)

        while True:
            args.append(self._parse_binary(1))
            token = self._advance()
            if token.kind == "rparen":
                return CallNode(name, args)
            if token.kind != "comma":
                raise ExpressionError(
                    f"Expected ',' or ')' at position {token.position} in expression: {self.expression}"
                )


@lru_cache(maxsize=256)
def compile_expression(expression: str) -> Node:
    """Parses an expression once so it can be evaluated per element"""
    return _Parser(tokenize(expression), expression).parse()


def evaluate_expression(expression: str, data: Any) -> Any:
    return compile_expression(expression.strip()).evaluate(data)
