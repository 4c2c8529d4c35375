"""Condition language used by conditional-branch steps.

Grammar, loosest binding first::

    or_expr    := and_expr ("OR" and_expr)*
    and_expr   := not_expr ("AND" not_expr)*
    not_expr   := "NOT" not_expr | group
    group      := "(" or_expr ")" | comparison
    comparison := value (op value)?
    op         := "==" | "!=" | ">=" | "<=" | ">" | "<" | "contains" | "in"
    value      := string | number | "true" | "false" | "null"
                | name "(" [or_expr ("," or_expr)*] ")" | dotted.identifier

Parsing produces an immutable AST; evaluation walks it against an
:class:`~inkflow.context.ExecutionContext` without touching it. Splitting on
operators and commas ignores anything inside quotes or nested parentheses.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Tuple, Union

from .context import ExecutionContext
from .errors import ExpressionError

COMPARISON_OPERATORS = ("==", "!=", ">=", "<=", ">", "<", "contains", "in")
_WORD_OPERATORS = {"AND", "OR", "contains", "in"}

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][\w$]*(\.[\w$]+)*$")
_FUNCTION_RE = re.compile(r"^([A-Za-z_]\w*)\(", re.DOTALL)


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    path: str


@dataclass(frozen=True)
class Comparison:
    operator: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Logical:
    operator: str
    operands: Tuple["Node", ...]


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple["Node", ...]


Node = Union[Literal, Variable, Comparison, Logical, FunctionCall]


# ---------------------------------------------------------------------------
# Scanning helpers


def _scan(text: str):
    """Yield ``(index, char, depth)`` for characters outside string literals."""
    depth = 0
    quote = ""
    i = 0
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = ""
            i += 1
            continue
        if char in ("'", '"'):
            quote = char
            i += 1
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ExpressionError(f"Unbalanced ')' at position {i}: {text!r}")
        yield i, char, depth
        i += 1
    if quote:
        raise ExpressionError(f"Unterminated string literal: {text!r}")
    if depth != 0:
        raise ExpressionError(f"Unbalanced parentheses: {text!r}")


def _is_boundary(char: str) -> bool:
    return char.isspace() or char in "()"


def _find_operator(text: str, operator: str) -> int:
    """Index of the first top-level occurrence of ``operator`` or ``-1``."""
    word = operator in _WORD_OPERATORS
    for i, char, depth in _scan(text):
        # a "(" raises depth on its own position; only depth-0 text counts
        if depth != 0 or char == "(":
            continue
        if not text.startswith(operator, i):
            continue
        if word:
            before = i == 0 or _is_boundary(text[i - 1])
            end = i + len(operator)
            after = end >= len(text) or _is_boundary(text[end])
            if not (before and after):
                continue
        return i
    return -1


def _split_top_level(text: str, operator: str) -> List[str]:
    parts: List[str] = []
    rest = text
    while True:
        index = _find_operator(rest, operator)
        if index == -1:
            parts.append(rest.strip())
            return parts
        parts.append(rest[:index].strip())
        rest = rest[index + len(operator) :]


def _split_arguments(text: str) -> List[str]:
    if not text.strip():
        return []
    args: List[str] = []
    start = 0
    for i, char, depth in _scan(text):
        if char == "," and depth == 0:
            args.append(text[start:i].strip())
            start = i + 1
    args.append(text[start:].strip())
    return args


def _matching_paren(text: str, open_index: int) -> int:
    target = None
    for i, char, depth in _scan(text):
        if i == open_index:
            target = depth - 1
        elif target is not None and char == ")" and depth == target:
            return i
    return -1


def _is_wrapped(text: str) -> bool:
    """True when the whole of ``text`` is one parenthesised group."""
    return text.startswith("(") and _matching_paren(text, 0) == len(text) - 1


def _string_literal(text: str) -> Union[str, None]:
    if len(text) < 2 or text[0] not in ("'", '"') or text[-1] != text[0]:
        return None
    quote = text[0]
    chars: List[str] = []
    i = 1
    while i < len(text) - 1:
        char = text[i]
        if char == "\\" and i + 1 < len(text) - 1:
            chars.append(text[i + 1])
            i += 2
            continue
        if char == quote:
            return None
        chars.append(char)
        i += 1
    return "".join(chars)


# ---------------------------------------------------------------------------
# Parser


@lru_cache(maxsize=512)
def parse_expression(expression: str) -> Node:
    """Parse ``expression`` into an AST. Results are cached."""
    text = expression.strip()
    if not text:
        raise ExpressionError("Empty expression")
    # validates quoting and nesting once up front
    for _ in _scan(text):
        pass
    return _parse_or(text)


def _parse_or(text: str) -> Node:
    parts = _split_top_level(text, "OR")
    if len(parts) == 1:
        return _parse_and(text)
    return _fold("OR", [_parse_and(p) for p in parts])


def _parse_and(text: str) -> Node:
    parts = _split_top_level(text, "AND")
    if len(parts) == 1:
        return _parse_not(text)
    return _fold("AND", [_parse_not(p) for p in parts])


def _fold(operator: str, nodes: List[Node]) -> Node:
    result = nodes[0]
    for node in nodes[1:]:
        result = Logical(operator, (result, node))
    return result


def _parse_not(text: str) -> Node:
    text = text.strip()
    if not text:
        raise ExpressionError("Missing operand")
    if text.startswith("NOT") and (len(text) == 3 or _is_boundary(text[3])):
        operand = text[3:].strip()
        if not operand:
            raise ExpressionError("NOT requires an operand")
        return Logical("NOT", (_parse_not(operand),))
    return _parse_group(text)


def _parse_group(text: str) -> Node:
    if _is_wrapped(text):
        return _parse_or(text[1:-1])
    return _parse_comparison(text)


def _parse_comparison(text: str) -> Node:
    for operator in COMPARISON_OPERATORS:
        index = _find_operator(text, operator)
        if index == -1:
            continue
        left = text[:index].strip()
        right = text[index + len(operator) :].strip()
        if not left or not right:
            raise ExpressionError(f"Operator '{operator}' needs two operands: {text!r}")
        return Comparison(operator, _parse_value(left), _parse_value(right))
    return _parse_value(text)


def _parse_value(text: str) -> Node:
    text = text.strip()
    if not text:
        raise ExpressionError("Missing value")

    if _is_wrapped(text):
        return _parse_or(text[1:-1])

    match = _FUNCTION_RE.match(text)
    if match and _matching_paren(text, match.end() - 1) == len(text) - 1:
        name = match.group(1)
        if name not in FUNCTIONS:
            raise ExpressionError(f"Unknown function: {name}")
        inner = text[match.end() : -1]
        args = tuple(_parse_or(arg) for arg in _split_arguments(inner))
        return FunctionCall(name, args)

    literal = _string_literal(text)
    if literal is not None:
        return Literal(literal)

    if _NUMBER_RE.match(text):
        return Literal(float(text) if "." in text else int(text))

    if text == "true":
        return Literal(True)
    if text == "false":
        return Literal(False)
    if text == "null":
        return Literal(None)

    if _IDENTIFIER_RE.match(text):
        return Variable(text)

    raise ExpressionError(f"Unexpected token: {text!r}")


# ---------------------------------------------------------------------------
# Value helpers


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        text = value.strip()
        return float(text) if "." in text else int(text)
    return math.nan


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Compare numbers against numeric strings as numbers."""
    if _is_number(left) and isinstance(right, str):
        number = _to_number(right)
        if not math.isnan(number):
            return left, number
    if isinstance(left, str) and _is_number(right):
        number = _to_number(left)
        if not math.isnan(number):
            return number, right
    return left, right


def _loose_equals(left: Any, right: Any) -> bool:
    left, right = _coerce_pair(left, right)
    return left == right


def _order(operator: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    left, right = _coerce_pair(left, right)
    try:
        if operator == ">":
            return left > right
        if operator == "<":
            return left < right
        if operator == ">=":
            return left >= right
        return left <= right
    except TypeError:
        return False


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str) and isinstance(item, str):
        return item in container
    if isinstance(container, (list, tuple)):
        return any(_loose_equals(element, item) for element in container)
    if isinstance(container, dict) and isinstance(item, str):
        return item in container
    return False


# ---------------------------------------------------------------------------
# Built-in functions


def _fn_length(value: Any = None) -> int:
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    return 0


def _fn_is_empty(value: Any = None) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _fn_substring(value: Any = None, start: Any = 0, end: Any = None) -> str:
    text = _to_string(value)
    size = len(text)

    def clamp(position: Any) -> int:
        number = _to_number(position)
        if math.isnan(number):
            return 0
        return max(0, min(int(number), size))

    begin = clamp(start)
    finish = size if end is None else clamp(end)
    if begin > finish:
        begin, finish = finish, begin
    return text[begin:finish]


def _fn_split(value: Any = None, separator: Any = None) -> List[str]:
    text = _to_string(value)
    if separator is None:
        return [text]
    sep = _to_string(separator)
    return list(text) if sep == "" else text.split(sep)


def _fn_join(values: Any = None, separator: Any = ",") -> str:
    if not isinstance(values, (list, tuple)):
        return _to_string(values)
    return _to_string(separator).join(_to_string(v) for v in values)


def _rounded(value: Any, fn: Callable[[float], int]) -> Any:
    number = _to_number(value)
    if math.isnan(number) or math.isinf(number):
        return number
    return fn(number)


def _extreme(pick: Callable, *values: Any) -> Any:
    if not values:
        raise ExpressionError(f"{pick.__name__}() requires at least one argument")
    numbers = [_to_number(v) for v in values]
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return pick(numbers)


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "length": _fn_length,
    "toUpperCase": lambda value=None: _to_string(value).upper(),
    "toLowerCase": lambda value=None: _to_string(value).lower(),
    "trim": lambda value=None: _to_string(value).strip(),
    "isEmpty": _fn_is_empty,
    "startsWith": lambda value=None, prefix=None: _to_string(value).startswith(
        _to_string(prefix)
    ),
    "endsWith": lambda value=None, suffix=None: _to_string(value).endswith(
        _to_string(suffix)
    ),
    "substring": _fn_substring,
    "replace": lambda value=None, search=None, repl=None: _to_string(value).replace(
        _to_string(search), _to_string(repl), 1
    ),
    "split": _fn_split,
    "join": _fn_join,
    "concat": lambda *values: "".join(_to_string(v) for v in values),
    # half-up rounding, not banker's rounding
    "round": lambda value=None: _rounded(value, lambda n: math.floor(n + 0.5)),
    "floor": lambda value=None: _rounded(value, math.floor),
    "ceil": lambda value=None: _rounded(value, math.ceil),
    "abs": lambda value=None: abs(_to_number(value)),
    "min": lambda *values: _extreme(min, *values),
    "max": lambda *values: _extreme(max, *values),
}


# ---------------------------------------------------------------------------
# Evaluator


class ExpressionEvaluator:
    """Evaluates expressions against a context, read-only."""

    def __init__(self, context: ExecutionContext) -> None:
        self._context = context

    def evaluate(self, expression: Union[str, Node]) -> Any:
        node = parse_expression(expression) if isinstance(expression, str) else expression
        return self._eval(node)

    def _eval(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Variable):
            return self._context.resolve(node.path)
        if isinstance(node, Comparison):
            return self._eval_comparison(node)
        if isinstance(node, Logical):
            return self._eval_logical(node)
        if isinstance(node, FunctionCall):
            return self._eval_function(node)
        raise ExpressionError(f"Unknown expression node: {node!r}")

    def _eval_comparison(self, node: Comparison) -> bool:
        left = self._eval(node.left)
        right = self._eval(node.right)
        operator = node.operator
        if operator == "==":
            return _loose_equals(left, right)
        if operator == "!=":
            return not _loose_equals(left, right)
        if operator in (">", "<", ">=", "<="):
            return _order(operator, left, right)
        if operator == "contains":
            return _contains(left, right)
        if operator == "in":
            return _contains(right, left)
        raise ExpressionError(f"Unknown comparison operator: {operator}")

    def _eval_logical(self, node: Logical) -> bool:
        if node.operator == "NOT":
            return not self._eval(node.operands[0])
        if node.operator == "AND":
            return bool(self._eval(node.operands[0])) and bool(
                self._eval(node.operands[1])
            )
        if node.operator == "OR":
            return bool(self._eval(node.operands[0])) or bool(
                self._eval(node.operands[1])
            )
        raise ExpressionError(f"Unknown logical operator: {node.operator}")

    def _eval_function(self, node: FunctionCall) -> Any:
        fn = FUNCTIONS.get(node.name)
        if fn is None:
            raise ExpressionError(f"Unknown function: {node.name}")
        args = [self._eval(arg) for arg in node.args]
        try:
            return fn(*args)
        except TypeError as exc:
            raise ExpressionError(f"Bad arguments for {node.name}(): {exc}") from exc


def evaluate_condition(expression: str, context: ExecutionContext) -> bool:
    """Evaluate ``expression`` and coerce the result to ``bool``."""
    return bool(ExpressionEvaluator(context).evaluate(expression))


__all__ = [
    "Comparison",
    "ExpressionEvaluator",
    "FunctionCall",
    "FUNCTIONS",
    "Literal",
    "Logical",
    "Node",
    "Variable",
    "evaluate_condition",
    "parse_expression",
]
