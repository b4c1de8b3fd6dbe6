"""
Restricted boolean expressions for Condition nodes.

Conditions are parsed with ``ast.parse(mode="eval")`` and every node of the
tree is checked against a whitelist before anything is evaluated. The
interpreter below only ever looks values up in the variables mapping it is
given: no builtins, no attribute access on Python objects, no calls other
than ``len``.

Supported:
- comparisons: ``== != < <= > >= in not in is is not``
- boolean connectives: ``and or not`` (short-circuiting)
- arithmetic: ``+ - * / %`` and unary ``-``/``+``
- identifiers, ``a.b`` key lookups on dicts, ``a["b"]`` / ``a[0]`` with a
  literal index, list/tuple literals, ``len(x)``

Conditions written for the browser editor use JavaScript operators. Outside
of string literals ``&&``, ``||``, ``!``, ``===``, ``!==``, ``true``,
``false``, ``null`` and ``undefined`` are rewritten to their Python
equivalents, and ``x.length`` evaluates to ``len(x)`` for strings and lists.
"""

import ast
import logging
import operator
import re
from typing import Any

logger = logging.getLogger(__name__)


class ExpressionError(ValueError):
    """A condition could not be parsed or evaluated."""


BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

UNARY_OPERATORS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

COMPARE_OPERATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Call,
    *BINARY_OPERATORS,
    *UNARY_OPERATORS,
    *COMPARE_OPERATORS,
)

# Longest str/list a condition may build with `*`
MAX_SEQUENCE_LENGTH = 10_000

# Alternating code / quoted-string segments; odd indices are string literals
_STRING_LITERAL = re.compile(r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')""")

_JS_REWRITES = (
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
)


def normalise(source: str) -> str:
    """Rewrite JavaScript operators and literals outside string literals."""
    segments = _STRING_LITERAL.split(source)
    for i in range(0, len(segments), 2):
        code = segments[i]
        for pattern, replacement in _JS_REWRITES:
            code = pattern.sub(replacement, code)
        segments[i] = code
    return "".join(segments).strip()


def _check_tree(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise ExpressionError(f"Syntax not allowed in condition: {type(node).__name__}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Attribute not allowed in condition: {node.attr}")
        if isinstance(node, ast.Subscript) and not isinstance(node.slice, ast.Constant):
            raise ExpressionError("Subscripts in conditions must use a literal key")
        if isinstance(node, ast.Call):
            if not (isinstance(node.func, ast.Name) and node.func.id == "len"):
                raise ExpressionError("Only len() may be called in a condition")
            if len(node.args) != 1 or node.keywords:
                raise ExpressionError("len() takes exactly one argument")


class ConditionExpression:
    """A parsed, whitelisted condition that can be evaluated many times."""

    def __init__(self, source: str, tree: ast.Expression):
        self.source = source
        self._tree = tree

    @classmethod
    def parse(cls, source: str) -> "ConditionExpression":
        if not isinstance(source, str) or not source.strip():
            raise ExpressionError("Condition must be a non-empty string")
        try:
            tree = ast.parse(normalise(source), mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Invalid condition syntax: {e.msg}") from e
        _check_tree(tree)
        return cls(source, tree)

    def names(self) -> set[str]:
        """Top-level identifiers the condition reads."""
        return {
            node.id
            for node in ast.walk(self._tree)
            if isinstance(node, ast.Name) and node.id != "len"
        }

    def evaluate(self, variables: dict[str, Any]) -> bool:
        """Evaluate against ``variables``. Raises ExpressionError on failure."""
        return bool(_Interpreter(variables).visit(self._tree.body))

    def __repr__(self) -> str:
        return f"ConditionExpression({self.source!r})"


class _Interpreter:
    def __init__(self, variables: dict[str, Any]):
        self.variables = variables

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Syntax not allowed in condition: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id not in self.variables:
            raise ExpressionError(f"Undefined variable: {node.id}")
        return self.variables[node.id]

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, dict):
            if node.attr in value:
                return value[node.attr]
            if node.attr != "length":
                raise ExpressionError(f"Key not found: {node.attr}")
        if node.attr == "length" and isinstance(value, (str, list, tuple, dict)):
            return len(value)
        raise ExpressionError(f"Cannot read '{node.attr}' of {type(value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if not isinstance(value, (dict, list, tuple, str)):
            raise ExpressionError(f"Cannot index {type(value).__name__}")
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Lookup failed: {e}") from e

    def visit_Call(self, node: ast.Call) -> int:
        value = self.visit(node.args[0])
        try:
            return len(value)
        except TypeError as e:
            raise ExpressionError(str(e)) from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return UNARY_OPERATORS[type(node.op)](operand)
        except TypeError as e:
            raise ExpressionError(str(e)) from e

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Mult):
            _check_repeat(left, right)
        try:
            return BINARY_OPERATORS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError) as e:
            raise ExpressionError(str(e)) from e

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            try:
                if not COMPARE_OPERATORS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(str(e)) from e
            left = right
        return True


def _check_repeat(left: Any, right: Any) -> None:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if len(seq) * count > MAX_SEQUENCE_LENGTH:
                raise ExpressionError(
                    f"Repeated {type(seq).__name__} would exceed {MAX_SEQUENCE_LENGTH} items"
                )

def evaluate_condition(condition: str | ConditionExpression, variables: dict[str, Any]) -> bool:
    """
    Evaluate a condition, treating any failure as ``False``.

    A condition that references a missing input or compares incompatible
    values is logged and does not pass.
    """
    try:
        expr = (
            condition
            if isinstance(condition, ConditionExpression)
            else ConditionExpression.parse(condition)
        )
        return expr.evaluate(variables)
    except ExpressionError as e:
        logger.warning(
            f"      ⚠ Condition evaluation failed: {condition!s}\n"
            f"        Error: {e}\n"
            f"        Available variables: {sorted(variables)}"
        )
        return False
