"""Restricted expression evaluation for LOGIC node conditions.

Expressions are parsed with ``ast`` and walked against a whitelist of node
types; nothing is ever passed to ``eval``. Variable references are substituted
as JSON literals before parsing, so by the time an expression gets here it is
made of literals, comparisons and boolean operators, e.g.

    "approved" == "approved" && 42 > 10
    "urgent" in ["low", "urgent"]
    "hello world".includes("world")
"""

import ast
import operator
import re
from typing import Any

_COMPARISONS = {
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

_ARITHMETIC = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

# Longest string or list a condition may build with `*`
MAX_SEQUENCE_LENGTH = 100_000

_JS_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

_STRING_OR_TOKEN = re.compile(r'("(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\')|(===|!==|&&|\|\||!(?!=))')


class UnsafeExpressionError(ValueError):
    """Raised for syntax the evaluator does not allow."""

    pass


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript-style operators to Python, leaving string literals alone."""

    def _swap(match: re.Match) -> str:
        if match.group(1):
            return match.group(1)
        return {"===": "==", "!==": "!=", "&&": " and ", "||": " or ", "!": " not "}[match.group(2)]

    return _STRING_OR_TOKEN.sub(_swap, expression)


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    # "42" > 10 compares numerically, like the loosely typed expressions users write
    if isinstance(left, str) and isinstance(right, int | float) and not isinstance(right, bool):
        try:
            return float(left), right
        except ValueError:
            return left, right
    if isinstance(right, str) and isinstance(left, int | float) and not isinstance(left, bool):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    return left, right


def _check_repetition(left: Any, right: Any) -> None:
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, str | list) and isinstance(count, int):
            if len(sequence) * max(count, 0) > MAX_SEQUENCE_LENGTH:
                raise UnsafeExpressionError(f"Repetition longer than {MAX_SEQUENCE_LENGTH} items")


def _eval(node: ast.AST, names: dict[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _eval(node.body, names)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in _JS_LITERALS:
            return _JS_LITERALS[node.id]
        raise UnsafeExpressionError(f"Unknown name: {node.id}")

    if isinstance(node, ast.List | ast.Tuple):
        return [_eval(e, names) for e in node.elts]

    if isinstance(node, ast.Dict):
        return {_eval(k, names): _eval(v, names) for k, v in zip(node.keys, node.values, strict=True)}

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval(value, names)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval(value, names)
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, names)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise UnsafeExpressionError(f"Unsupported unary operator: {type(node.op).__name__}")

    if isinstance(node, ast.BinOp):
        op = _ARITHMETIC.get(type(node.op))
        if op is None:
            raise UnsafeExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left, right = _eval(node.left, names), _eval(node.right, names)
        if isinstance(node.op, ast.Mult):
            _check_repetition(left, right)
        elif isinstance(node.op, ast.Mod) and isinstance(left, str | bytes):
            raise UnsafeExpressionError("String formatting is not allowed")
        return op(left, right)

    if isinstance(node, ast.Compare):
        left = _eval(node.left, names)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _COMPARISONS.get(type(op_node))
            if op is None:
                raise UnsafeExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = _eval(comparator, names)
            a, b = _coerce_pair(left, right)
            if not op(a, b):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        # Only x.includes(y), x.startsWith(y), x.endsWith(y)
        func = node.func
        if not isinstance(func, ast.Attribute) or len(node.args) != 1 or node.keywords:
            raise UnsafeExpressionError("Function calls are not allowed")
        target = _eval(func.value, names)
        arg = _eval(node.args[0], names)
        if func.attr == "includes":
            return arg in target if isinstance(target, str | list | dict) else False
        if func.attr == "startsWith":
            return isinstance(target, str) and target.startswith(str(arg))
        if func.attr == "endsWith":
            return isinstance(target, str) and target.endswith(str(arg))
        raise UnsafeExpressionError(f"Method not allowed: {func.attr}")

    if isinstance(node, ast.Attribute) and node.attr == "length":
        return len(_eval(node.value, names))

    raise UnsafeExpressionError(f"Unsupported expression: {type(node).__name__}")


def safe_eval(expression: str, names: dict[str, Any] | None = None) -> Any:
    """
    Evaluate ``expression`` with the restricted grammar.

    Raises:
        UnsafeExpressionError: on disallowed syntax or unknown names
        SyntaxError: if the expression does not parse
    """
    tree = ast.parse(normalize_expression(expression).strip(), mode="eval")
    return _eval(tree, names or {})


def evaluate_condition(expression: str, names: dict[str, Any] | None = None) -> bool:
    """Evaluate a condition; blank expressions are false, evaluation errors are false."""
    if not expression or not expression.strip():
        return False
    try:
        return bool(safe_eval(expression, names))
    except (UnsafeExpressionError, SyntaxError, TypeError, ValueError, ZeroDivisionError, KeyError):
        return False
