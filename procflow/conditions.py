"""Safe boolean expressions used as transition conditions in file definitions.

Expressions look like Python (``amount > 100 and region in ["eu", "us"]``)
but are never handed to ``eval``: they are parsed with :mod:`ast`, checked
against a whitelist of node types once at load time, and interpreted against
the instance context on every evaluation. Bare names resolve to context keys;
a key that is not present evaluates to ``None``.
"""

from __future__ import annotations

import ast
import operator
from typing import Any, Callable, Mapping

from .errors import DefinitionError

_COMPARISONS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_CONSTANTS = {"true": True, "false": False, "null": None, "none": None}


class Condition:
    """Compiled condition; call it with a context mapping."""

    def __init__(self, expression: str, tree: ast.Expression) -> None:
        self.expression = expression
        self._tree = tree

    def __call__(self, context: Mapping[str, Any]) -> bool:
        return bool(_evaluate(self._tree.body, context))

    def __repr__(self) -> str:
        return f"Condition({self.expression!r})"


def compile_condition(expression: str) -> Condition:
    """Parse ``expression`` and reject anything outside the supported subset."""

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise DefinitionError(f"Invalid condition {expression!r}: {e.msg}") from e
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise DefinitionError(
                f"Unsupported construct {type(node).__name__} in condition {expression!r}"
            )
    return Condition(expression, tree)


_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    *_COMPARISONS.keys(),
)


def _evaluate(node: ast.AST, context: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in context:
            return context[node.id]
        return _CONSTANTS.get(node.id.lower())
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _evaluate(value, context)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _evaluate(value, context)
            if result:
                return result
        return result
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, context)
        if isinstance(node.op, ast.Not):
            return not operand
        return -operand
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, context)
            if not _COMPARISONS[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.Subscript):
        container = _evaluate(node.value, context)
        key = _evaluate(node.slice, context)
        if container is None:
            return None
        try:
            return container[key]
        except (KeyError, IndexError, TypeError):
            return None
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_evaluate(item, context) for item in node.elts]
    raise DefinitionError(f"Unsupported construct {type(node).__name__}")
