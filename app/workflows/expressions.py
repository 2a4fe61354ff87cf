"""Typed expression language for edge guards and condition nodes.

Grammar::

    expr    := call | literal | path
    call    := NAME "(" expr ("," expr)* ")"
    literal := STRING | NUMBER | "true" | "false" | "null"
    path    := SEGMENT ("." SEGMENT | "[" DIGITS "]")*

Paths resolve against a nested mapping; ``a.b[2].c`` is the same as
``a.b.2.c``. A path that cannot be resolved evaluates to :data:`MISSING`,
which is falsy and equal only to itself.
"""

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .errors import ExpressionError


class _Missing:
    """Sentinel for unresolved paths."""

    _instance = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

_BRACKET_INDEX = re.compile(r"\[(\d+)\]")

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''),
    ("NUMBER", r"-?\d+(?:\.\d+)?(?![\w$\[.])"),
    ("PATH", r"[A-Za-z_$][\w$-]*(?:\.[\w$-]+|\[\d+\])*"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("COMMA", r","),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_KEYWORDS = {"true": True, "false": False, "null": None}


def split_path(path: str) -> Tuple[str, ...]:
    """Normalize ``a.b[2].c`` into ``("a", "b", "2", "c")``."""
    normalized = _BRACKET_INDEX.sub(r".\1", path.strip())
    return tuple(segment for segment in normalized.split(".") if segment)


def resolve_path(source: Any, path: str) -> Any:
    """Walk a dotted/bracketed path through mappings and sequences."""
    current = source
    for segment in split_path(path):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def is_truthy(value: Any) -> bool:
    if value is MISSING:
        return False
    return bool(value)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (``1`` is not ``True``, ``"1"`` is not ``1``)."""
    if left is MISSING or right is MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _contains(container: Any, item: Any) -> bool:
    if container is MISSING or item is MISSING:
        return False
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (list, tuple, set, Mapping)):
        return any(strict_equals(candidate, item) for candidate in container)
    return False


class Expression:
    """Base class for parsed expression nodes."""

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class PathExpr(Expression):
    path: str

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        return resolve_path(context, self.path)


@dataclass(frozen=True)
class LiteralExpr(Expression):
    value: Any

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class CallExpr(Expression):
    name: str
    args: Tuple[Expression, ...]

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        _, func = FUNCTIONS[self.name]
        return func([arg.evaluate(context) for arg in self.args])


FUNCTIONS: Dict[str, Tuple[int, Callable[[List[Any]], Any]]] = {
    "eq": (2, lambda args: strict_equals(args[0], args[1])),
    "not": (1, lambda args: not is_truthy(args[0])),
    "contains": (2, lambda args: _contains(args[0], args[1])),
}


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match:
            raise ExpressionError(f"Unexpected character {text[position]!r} at {position} in {text!r}")
        kind = match.lastgroup or ""
        if kind != "WS":
            tokens.append((kind, match.group()))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def _peek(self) -> Tuple[str, str]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return ("EOF", "")

    def _take(self, kind: str) -> str:
        actual, value = self._peek()
        if actual != kind:
            raise ExpressionError(f"Expected {kind} but found {actual} in {self.text!r}")
        self.index += 1
        return value

    def parse(self) -> Expression:
        if not self.tokens:
            raise ExpressionError("Expression is empty")
        expression = self._expression()
        if self._peek()[0] != "EOF":
            raise ExpressionError(f"Unexpected trailing input in {self.text!r}")
        return expression

    def _expression(self) -> Expression:
        kind, value = self._peek()
        if kind == "STRING":
            self.index += 1
            return LiteralExpr(_unquote(value))
        if kind == "NUMBER":
            self.index += 1
            return LiteralExpr(float(value) if "." in value else int(value))
        if kind == "PATH":
            self.index += 1
            if self._peek()[0] == "LPAREN":
                return self._call(value)
            if value in _KEYWORDS:
                return LiteralExpr(_KEYWORDS[value])
            return PathExpr(value)
        raise ExpressionError(f"Unexpected {kind or 'token'} in {self.text!r}")

    def _call(self, name: str) -> Expression:
        if name not in FUNCTIONS:
            raise ExpressionError(f"Unknown function: {name}")
        self._take("LPAREN")
        args = [self._expression()]
        while self._peek()[0] == "COMMA":
            self.index += 1
            args.append(self._expression())
        self._take("RPAREN")

        arity, _ = FUNCTIONS[name]
        if len(args) != arity:
            raise ExpressionError(f"{name}() expects {arity} argument(s), got {len(args)}")
        return CallExpr(name, tuple(args))


_STRING_ESCAPE = re.compile(r'\\(.)|"', re.DOTALL)


def _json_escape(match: "re.Match[str]") -> str:
    if match.group(0) == '"':
        return '\\"'
    if match.group(1) == "'":
        return "'"
    return match.group(0)


def _unquote(token: str) -> str:
    # Rewrite either quote style as a JSON string body; \' is not a JSON escape.
    body = _STRING_ESCAPE.sub(_json_escape, token[1:-1])
    try:
        return json.loads(f'"{body}"')
    except ValueError as exc:
        raise ExpressionError(f"Invalid string literal {token}") from exc


@lru_cache(maxsize=512)
def parse_expression(text: str) -> Expression:
    """Parse an expression string into its AST."""
    return _Parser(text.strip()).parse()


def evaluate_expression(text: str, context: Mapping[str, Any]) -> Any:
    return parse_expression(text).evaluate(context)


def evaluate_condition(text: str, context: Mapping[str, Any]) -> bool:
    """Evaluate an expression and reduce the result to a boolean."""
    return is_truthy(evaluate_expression(text, context))

