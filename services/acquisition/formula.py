"""
Custom Conversion Formulas

User formulas are Python expressions over the raw register value, e.g.

    registerValue * 0.1 - 40
    (raw - 65536) / 10 if raw > 32767 else raw / 10
    max(0, x * 0.0625)

The expression is parsed once and checked against a whitelist of node
types; evaluation walks the tree directly, so nothing reaches eval().

Allowed:
- numeric literals and the names registerValue, raw, x
- + - * / // % ** and unary +/-
- bitwise & | ^ << >> ~ on integers
- comparisons, and/or/not, conditional expressions
- abs(), min(), max(), round()

Integer results of **, * and << are capped at MAX_INT_BITS before they
are computed.
"""

import ast
import math
import operator
from typing import Any, Callable

from common.exceptions import ConversionFailure, FormulaError

# Names bound to the raw register value
INPUT_NAMES = frozenset(("registerValue", "raw", "x"))

MAX_SOURCE_LENGTH = 500
MAX_STEPS = 1000
MAX_EXPONENT = 64
MAX_SHIFT = 64
# Integer results wider than this are refused before they are computed
MAX_INT_BITS = 1024
MAX_ROUND_DIGITS = 15

_BINARY_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.BitAnd: operator.and_,
    ast.BitOr: operator.or_,
    ast.BitXor: operator.xor,
    ast.LShift: operator.lshift,
    ast.RShift: operator.rshift,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
    ast.Invert: operator.invert,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.And,
    ast.Or,
    *_BINARY_OPS,
    *_UNARY_OPS,
    *_COMPARE_OPS,
)


class CompiledFormula:
    """A validated formula ready for repeated evaluation."""

    def __init__(self, source: str, tree: ast.Expression):
        self.source = source
        self._tree = tree

    def evaluate(self, raw_value: int) -> float:
        """
        Evaluate the formula for one raw value.

        Raises:
            ConversionFailure: Arithmetic error, step budget exhausted,
                or a non-numeric/non-finite result
        """
        evaluator = _Evaluator(raw_value)
        try:
            result = evaluator.visit(self._tree.body)
        except ConversionFailure:
            raise
        except (ArithmeticError, TypeError, ValueError) as e:
            raise ConversionFailure(f"formula error: {e}", raw_value)

        if isinstance(result, bool) or not isinstance(result, (int, float)):
            raise ConversionFailure(
                f"formula returned non-numeric {type(result).__name__}", raw_value
            )
        try:
            result = float(result)
        except OverflowError:
            raise ConversionFailure("formula result is out of float range", raw_value)
        if not math.isfinite(result):
            raise ConversionFailure(f"formula returned {result}", raw_value)
        return result

    def __repr__(self) -> str:
        return f"CompiledFormula({self.source!r})"


class _Evaluator:
    """Tree walker with a per-evaluation step budget."""

    def __init__(self, raw_value: int):
        self.raw_value = raw_value
        self.steps = 0

    def visit(self, node: ast.AST) -> Any:
        self.steps += 1
        if self.steps > MAX_STEPS:
            raise ConversionFailure("formula step budget exhausted", self.raw_value)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self.raw_value

        if isinstance(node, ast.BinOp):
            left = self.visit(node.left)
            right = self.visit(node.right)
            self._check_operands(node.op, left, right)
            return _BINARY_OPS[type(node.op)](left, right)

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self.visit(node.operand))

        if isinstance(node, ast.BoolOp):
            # Short-circuit like Python
            if isinstance(node.op, ast.And):
                result = True
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

        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self.visit(node.test):
                return self.visit(node.body)
            return self.visit(node.orelse)

        if isinstance(node, ast.Call):
            args = [self.visit(arg) for arg in node.args]
            if node.func.id == "round" and len(args) > 1 and abs(args[1]) > MAX_ROUND_DIGITS:
                raise ConversionFailure(
                    f"round() digits {args[1]} exceeds {MAX_ROUND_DIGITS}", self.raw_value
                )
            return _FUNCTIONS[node.func.id](*args)

        raise ConversionFailure(f"unsupported node {type(node).__name__}", self.raw_value)

    def _check_operands(self, op: ast.operator, left: Any, right: Any) -> None:
        """Refuse operations whose cost grows with integer width."""
        if isinstance(op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ConversionFailure(f"exponent {right} exceeds {MAX_EXPONENT}", self.raw_value)
        if isinstance(op, (ast.LShift, ast.RShift)) and abs(right) > MAX_SHIFT:
            raise ConversionFailure(f"shift {right} exceeds {MAX_SHIFT}", self.raw_value)

        if not (isinstance(left, int) and isinstance(right, int)):
            # Float arithmetic overflows to inf or OverflowError instead
            return

        if isinstance(op, ast.Pow):
            bits = abs(left).bit_length() * abs(right)
        elif isinstance(op, ast.Mult):
            bits = abs(left).bit_length() + abs(right).bit_length()
        elif isinstance(op, ast.LShift):
            bits = abs(left).bit_length() + abs(right)
        else:
            return

        if bits > MAX_INT_BITS:
            raise ConversionFailure(
                f"integer result would exceed {MAX_INT_BITS} bits", self.raw_value
            )


def _check_node(node: ast.AST, source: str) -> None:
    if not isinstance(node, _ALLOWED_NODES):
        raise FormulaError(f"'{type(node).__name__}' is not allowed", source)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaError(f"only numeric literals are allowed, got {node.value!r}", source)

    elif isinstance(node, ast.Name):
        if node.id not in INPUT_NAMES:
            allowed = ", ".join(sorted(INPUT_NAMES))
            raise FormulaError(f"unknown name '{node.id}' (use one of {allowed})", source)

    elif isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise FormulaError("only abs(), min(), max() and round() may be called", source)
        if node.keywords:
            raise FormulaError("keyword arguments are not allowed", source)
        if not node.args:
            raise FormulaError(f"{node.func.id}() needs at least one argument", source)


def compile_formula(source: str) -> CompiledFormula:
    """
    Parse and validate a formula.

    Args:
        source: Expression text

    Returns:
        CompiledFormula

    Raises:
        FormulaError: Empty, too long, a syntax error, or a disallowed construct
    """
    if source is None or not source.strip():
        raise FormulaError("formula is empty", source)

    source = source.strip()
    if len(source) > MAX_SOURCE_LENGTH:
        raise FormulaError(
            f"formula is {len(source)} characters (limit {MAX_SOURCE_LENGTH})", source
        )

    try:
        tree = ast.parse(source, mode="eval")
    except (SyntaxError, RecursionError) as e:
        raise FormulaError(f"syntax error: {e}", source)

    # Function names are checked with their Call, not as input names
    callee_ids = {id(node.func) for node in ast.walk(tree) if isinstance(node, ast.Call)}
    for node in ast.walk(tree):
        if id(node) in callee_ids:
            continue
        _check_node(node, source)

    return CompiledFormula(source, tree)
