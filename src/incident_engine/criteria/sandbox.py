from __future__ import annotations

import ast
import json
import sys
from collections.abc import Callable, Mapping
from typing import Any

# Runs as a standalone script in a child interpreter, so only the standard library is imported here.

SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "max": max,
    "min": min,
    "round": round,
    "str": str,
}

_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Call,
    ast.Subscript,
    ast.Slice,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Set,
    ast.IfExp,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
)

_MULTIPLY = "__multiply__"


class ExpressionRejected(ValueError):
    pass


def numeric_product(left: Any, right: Any) -> Any:
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left * right
    raise ExpressionRejected("Multiplication is only allowed between numbers")


class _Validator(ast.NodeVisitor):
    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionRejected(f"Unsupported expression node: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            raise ExpressionRejected(f"Name '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise ExpressionRejected("Only built-in helper calls are allowed")
        if node.keywords:
            raise ExpressionRejected("Keyword arguments are not allowed")
        self.generic_visit(node)


class _CheckedMultiply(ast.NodeTransformer):
    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        if not isinstance(node.op, ast.Mult):
            return node
        call = ast.Call(func=ast.Name(id=_MULTIPLY, ctx=ast.Load()), args=[node.left, node.right], keywords=[])
        return ast.copy_location(call, node)


class SafeExpression:
    def __init__(self, expression: str) -> None:
        if not expression or not expression.strip():
            raise ExpressionRejected("Expression must be a non-empty string")
        self.expression = expression.strip()
        try:
            tree = ast.parse(self.expression, mode="eval")
        except SyntaxError as exc:
            raise ExpressionRejected(f"Invalid expression: {exc.msg}") from exc
        _Validator().visit(tree)
        tree = ast.fix_missing_locations(_CheckedMultiply().visit(tree))
        self._code = compile(tree, "<criteria-expression>", "eval")

    def evaluate(self, snapshot: Mapping[str, Any]) -> bool:
        env: dict[str, Any] = dict(snapshot)
        env.update(SAFE_FUNCTIONS)
        env[_MULTIPLY] = numeric_product
        return bool(eval(self._code, {"__builtins__": {}}, env))  # noqa: S307


def main() -> int:
    request = json.loads(sys.stdin.read())
    try:
        outcome: dict[str, Any] = {"result": SafeExpression(request["expression"]).evaluate(request["snapshot"])}
    except Exception as exc:
        outcome = {"error": f"{type(exc).__name__}: {exc}"}
    json.dump(outcome, sys.stdout)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
