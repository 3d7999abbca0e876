"""Safe evaluation of unit expressions such as ``1e-3*V`` or ``um^-3``."""

from __future__ import annotations

import ast
import math
from typing import Any, Dict

# Base scale: lengths in cm, potentials in V, currents in A, time in s.
UNIT_NAMES = {
    "V": 1.0,
    "mV": 1e-3,
    "A": 1.0,
    "mA": 1e-3,
    "uA": 1e-6,
    "s": 1.0,
    "ns": 1e-9,
    "ps": 1e-12,
    "m": 1e2,
    "cm": 1.0,
    "um": 1e-4,
    "nm": 1e-7,
    "C": 1.0,
    "W": 1.0,
    "K": 1.0,
    "eV": 1.0,
    "Hz": 1.0,
}

ALLOWED_FUNCS = {
    "exp": math.exp,
    "log": math.log,
    "sqrt": math.sqrt,
    "abs": abs,
}

ALLOWED_NAMES = {"pi": math.pi}


class ExprEvaluator(ast.NodeVisitor):
    def __init__(self, names: Dict[str, float]) -> None:
        self.names = names

    def visit(self, node: ast.AST) -> float:
        return super().visit(node)

    def visit_Expression(self, node: ast.Expression) -> float:
        return self.visit(node.body)

    def visit_BinOp(self, node: ast.BinOp) -> float:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if isinstance(node.op, ast.Div):
            return left / right
        if isinstance(node.op, ast.Pow):
            return left**right
        raise ValueError("Unsupported operator")

    def visit_UnaryOp(self, node: ast.UnaryOp) -> float:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.UAdd):
            return operand
        if isinstance(node.op, ast.USub):
            return -operand
        raise ValueError("Unsupported unary operator")

    def visit_Call(self, node: ast.Call) -> float:
        if not isinstance(node.func, ast.Name):
            raise ValueError("Unsupported function")
        func = ALLOWED_FUNCS.get(node.func.id)
        if func is None:
            raise ValueError(f"Unsupported function: {node.func.id}")
        return func(*[self.visit(arg) for arg in node.args])

    def visit_Name(self, node: ast.Name) -> float:
        if node.id in self.names:
            return float(self.names[node.id])
        if node.id in ALLOWED_NAMES:
            return float(ALLOWED_NAMES[node.id])
        raise ValueError(f"Unknown name: {node.id}")

    def visit_Constant(self, node: ast.Constant) -> float:
        if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return float(node.value)
        raise ValueError("Unsupported literal")

    def generic_visit(self, node: ast.AST) -> Any:
        raise ValueError("Unsupported expression")


def eval_expr(expr: str, names: Dict[str, float] | None = None) -> float:
    tree = ast.parse(expr, mode="eval")
    return ExprEvaluator(names or {}).visit(tree)


def eval_unit(expr) -> float:
    """Evaluate a unit expression; ``^`` is accepted as power."""
    if expr is None:
        return 1.0
    if isinstance(expr, (int, float)):
        return float(expr)
    text = str(expr).strip()
    if not text:
        return 1.0
    return eval_expr(text.replace("^", "**"), UNIT_NAMES)
