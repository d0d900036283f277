"""
Small declarative predicates for scenario tables, e.g.

    "air_quality <= 25 or core_temperature >= 39.0"
    "(core_temperature >= 39) + (heart_rate >= 190) + (air_quality <= 25) >= 2"

Parsed once with the `ast` module and walked directly; nothing is passed to eval().
"""
from __future__ import annotations

import ast
import operator
from typing import Any, Callable, Dict, Mapping

from realtime.errors import InvariantViolation

PREDICATE_NAMES = frozenset(
    {"heart_rate", "core_temperature", "air_quality", "acceleration", "elapsed_minutes", "progress"}
)

_COMPARE: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}

_BINOP: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}


class Predicate:
    def __init__(self, source: str):
        self.source = str(source).strip()
        if not self.source:
            raise InvariantViolation("empty predicate")
        try:
            tree = ast.parse(self.source, mode="eval")
        except SyntaxError as e:
            raise InvariantViolation(f"malformed predicate {self.source!r}: {e.msg}") from e
        _check(tree.body, self.source)
        self._tree = tree.body

    def __call__(self, values: Mapping[str, float]) -> bool:
        try:
            return bool(_eval(self._tree, values))
        except ZeroDivisionError:
            return False

    def __repr__(self) -> str:
        return f"Predicate({self.source!r})"


def _check(node: ast.AST, source: str) -> None:
    if isinstance(node, ast.BoolOp):
        for v in node.values:
            _check(v, source)
    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub)):
            raise InvariantViolation(f"operator not allowed in {source!r}")
        _check(node.operand, source)
    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if type(op) not in _COMPARE:
                raise InvariantViolation(f"comparison not allowed in {source!r}")
        _check(node.left, source)
        for c in node.comparators:
            _check(c, source)
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BINOP:
            raise InvariantViolation(f"operator not allowed in {source!r}")
        _check(node.left, source)
        _check(node.right, source)
    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, bool)):
            raise InvariantViolation(f"only numeric constants allowed in {source!r}")
    elif isinstance(node, ast.Name):
        if node.id not in PREDICATE_NAMES:
            raise InvariantViolation(f"unknown name {node.id!r} in {source!r}")
    else:
        raise InvariantViolation(f"unsupported syntax {type(node).__name__} in {source!r}")


def _eval(node: ast.AST, values: Mapping[str, float]) -> Any:
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(v, values) for v in node.values)
        return any(_eval(v, values) for v in node.values)
    if isinstance(node, ast.UnaryOp):
        v = _eval(node.operand, values)
        return (not v) if isinstance(node.op, ast.Not) else -v
    if isinstance(node, ast.Compare):
        left = _eval(node.left, values)
        for op, comp in zip(node.ops, node.comparators):
            right = _eval(comp, values)
            if not _COMPARE[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.BinOp):
        return _BINOP[type(node.op)](_eval(node.left, values), _eval(node.right, values))
    if isinstance(node, ast.Constant):
        return node.value
    return float(values[node.id])
