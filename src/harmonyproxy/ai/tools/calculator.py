"""Arithmetic evaluation restricted to a whitelisted AST subset."""

from __future__ import annotations

import ast
import math
import operator
from typing import Any, Callable, Mapping

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import BuiltinTool, ToolError

__all__ = ["CalculatorTool", "evaluate_expression"]

_BINARY_OPERATORS: Mapping[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS: Mapping[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_FUNCTIONS: Mapping[str, Callable[..., float]] = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "sinh": math.sinh,
    "cosh": math.cosh,
    "tanh": math.tanh,
    "log": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "exp": math.exp,
    "sqrt": math.sqrt,
    "cbrt": lambda value: math.copysign(abs(value) ** (1 / 3), value),
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "round": round,
    "max": max,
    "min": min,
    "pow": math.pow,
}
_CONSTANTS: Mapping[str, float] = {"pi": math.pi, "e": math.e, "PI": math.pi, "E": math.e}
_MAX_EXPONENT = 10_000
_MAX_RESULT_BITS = 100_000


def evaluate_expression(expression: str) -> float:
    """Evaluate ``expression`` without ``eval``; raises ``ValueError`` on bad input."""

    try:
        tree = ast.parse(expression.replace("^", "**"), mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"Invalid expression: {exc.msg}") from exc
    result = _evaluate(tree.body)
    if isinstance(result, bool) or not isinstance(result, (int, float)):
        raise ValueError("Expression did not evaluate to a number")
    return result


def _evaluate(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        raise ValueError(f"Unknown name: {node.id}")
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        return _BINARY_OPERATORS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
        function = _FUNCTIONS.get(node.func.id)
        if function is None:
            raise ValueError(f"Unknown function: {node.func.id}")
        return function(*(_evaluate(arg) for arg in node.args))
    raise ValueError("Invalid characters in expression")


def _check_power(base: Any, exponent: Any) -> None:
    if abs(exponent) > _MAX_EXPONENT:
        raise ValueError("Exponent too large")
    # abs(exponent) * log2(abs(base)) approximates the bit length of the result.
    if abs(base) > 1 and abs(exponent) * math.log2(abs(base)) > _MAX_RESULT_BITS:
        raise ValueError("Result too large")


class CalculatorTool(BuiltinTool):
    spec = ToolSpec(
        name="calculator",
        description=(
            "Perform mathematical calculations including basic arithmetic, trigonometry, "
            "and advanced functions."
        ),
        parameters={
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": 'Mathematical expression to evaluate (e.g., "2 + 3 * 4", "sin(pi/2)", "sqrt(16)")',
                },
                "precision": {
                    "type": "number",
                    "description": "Number of decimal places for the result (default: 10, max: 15)",
                    "minimum": 0,
                    "maximum": 15,
                },
            },
            "required": ["expression"],
        },
        category=ToolCategory.UTILITY,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        expression = str(params.get("expression") or "")
        try:
            precision = min(max(0, int(params.get("precision", 10))), 15)
        except (TypeError, ValueError):
            precision = 10
        try:
            value = evaluate_expression(expression)
            if isinstance(value, int):
                value = float(value)
        except (ValueError, ArithmeticError, TypeError) as exc:
            raise ToolError(
                f"Calculation failed: {exc}",
                {"expression": expression, "message": "Please check your mathematical expression for syntax errors."},
            ) from exc

        if isinstance(value, float) and not math.isfinite(value):
            return {
                "success": True,
                "expression": expression,
                "result": str(value),
                "formatted_result": str(value),
                "is_finite": False,
                "precision": precision,
            }
        rounded = round(value, precision)
        if rounded.is_integer():
            rounded = int(rounded)
        return {
            "success": True,
            "expression": expression,
            "result": rounded,
            "formatted_result": f"{rounded:,.{precision}f}".rstrip("0").rstrip(".") if precision else f"{rounded:,}",
            "is_finite": True,
            "precision": precision,
        }
