"""Restricted expression evaluator for per-register value transforms.

A mapping entry may carry a `transform` expression that reshapes the decoded
value before it is published, for example::

    transform: "'alarm' if value & 0x08 else 'ok'"
    transform: "{0: 'off', 1: 'low', 2: 'high'}[value]"
    transform: "round(value * 1.8 + 32, 1)"
    transform: "{'raw': raw[0], 'register': meta.address}"

Expressions use Python expression syntax but are never handed to eval().
They are parsed with `ast`, checked against a whitelist of node types and
interpreted by a small tree walker. Only the names `value`, `raw` and `meta`
are visible. Each evaluation is bounded by a step budget and a wall clock
ceiling; exceeding either aborts with TransformTimeout.

The budgets are only checked between nodes, so every single operation must
stay cheap: integers are limited to MAX_INT_BITS bits and containers to
MAX_SEQUENCE_LENGTH items in total (nested items included). Operations whose
result would exceed those limits are refused before they run.

Available functions:
    abs, min, max, round, int, float, str, bool, len, hex, sum, any, all

`sum`, `min` and `max` only accept numbers.
"""
from __future__ import annotations

import ast
import logging
import operator
import time
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIME_LIMIT = 0.05  # seconds
DEFAULT_MAX_STEPS = 10_000

MAX_EXPONENT = 1024
MAX_SHIFT = 1024
MAX_INT_BITS = 4096
MAX_SEQUENCE_LENGTH = 65536


class TransformError(Exception):
    """Error compiling or evaluating a transform expression."""
    pass


class TransformTimeout(TransformError):
    """Evaluation exceeded its step budget or time ceiling."""
    pass


def _check_size(value: Any) -> Any:
    """Refuse oversized integers and containers; returns `value` unchanged."""
    total = 0
    pending = [value]
    while pending:
        item = pending.pop()
        if isinstance(item, int):
            if item.bit_length() > MAX_INT_BITS:
                raise TransformError(f"Integer result exceeds {MAX_INT_BITS} bits")
            continue
        if isinstance(item, (str, bytes, bytearray)):
            total += len(item)
        elif isinstance(item, (list, tuple)):
            total += len(item)
            if total <= MAX_SEQUENCE_LENGTH:
                pending.extend(item)
        elif isinstance(item, dict):
            total += len(item)
            if total <= MAX_SEQUENCE_LENGTH:
                pending.extend(item.keys())
                pending.extend(item.values())
        if total > MAX_SEQUENCE_LENGTH:
            raise TransformError(f"Result exceeds {MAX_SEQUENCE_LENGTH} items")
    return value


def _numbers(name: str, values: Any) -> Any:
    if not isinstance(values, (list, tuple, bytes)):
        raise TransformError(f"{name}() expects a list of numbers")
    if len(values) > MAX_SEQUENCE_LENGTH:
        raise TransformError(f"{name}() argument too long")
    if not all(isinstance(v, (int, float)) for v in values):
        raise TransformError(f"{name}() only accepts numbers")
    return values


def _sum(values, start=0):
    if not isinstance(start, (int, float)):
        raise TransformError("sum() start must be a number")
    return sum(_numbers("sum", values), start)


def _min(*args, **kwargs):
    return min(_numbers("min", args[0] if len(args) == 1 else args), **kwargs)


def _max(*args, **kwargs):
    return max(_numbers("max", args[0] if len(args) == 1 else args), **kwargs)


def _round(number, ndigits=None):
    # int rounding computes 10 ** -ndigits
    if ndigits is not None and (not isinstance(ndigits, int) or abs(ndigits) > MAX_EXPONENT):
        raise TransformError(f"round() ndigits out of range: {ndigits!r}")
    return round(number, ndigits)


SAFE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": _min,
    "max": _max,
    "round": _round,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "len": len,
    "hex": hex,
    "sum": _sum,
    "any": any,
    "all": all,
}

CONSTANTS = {"True": True, "False": False, "None": None}

BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
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

UNARY_OPERATORS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
    ast.Invert: operator.invert,
}

COMPARE_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.Compare,
    ast.IfExp,
    ast.Subscript,
    ast.Slice,
    ast.Attribute,
    ast.Call,
    ast.List,
    ast.Tuple,
    ast.Dict,
) + tuple(BINARY_OPERATORS) + tuple(UNARY_OPERATORS) + tuple(COMPARE_OPERATORS)


def _validate(tree: ast.AST, bindings) -> None:
    """Reject any construct outside the expression whitelist."""
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise TransformError(f"Construct not allowed: {type(node).__name__}")
        if isinstance(node, ast.Name):
            if node.id not in bindings and node.id not in SAFE_FUNCTIONS and node.id not in CONSTANTS:
                raise TransformError(f"Unknown name: {node.id}")
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise TransformError(f"Attribute not allowed: {node.attr}")
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
                raise TransformError("Only calls to whitelisted functions are allowed")
            if any(kw.arg is None for kw in node.keywords):
                raise TransformError("Keyword unpacking not allowed")


@lru_cache(maxsize=256)
def compile_expression(expression: str) -> ast.Expression:
    """Parse and validate an expression; results are cached per string."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise TransformError(f"Transform syntax error: {e}") from e
    _validate(tree, TransformEvaluator.BINDINGS)
    return tree


class _Interpreter:
    """Walks one validated expression tree under a step and time budget."""

    def __init__(self, scope: Mapping[str, Any], max_steps: int, deadline: float):
        self.scope = scope
        self.max_steps = max_steps
        self.deadline = deadline
        self.steps = 0

    def run(self, node: ast.AST) -> Any:
        self.steps += 1
        if self.steps > self.max_steps:
            raise TransformTimeout(f"Step budget of {self.max_steps} exceeded")
        if time.monotonic() > self.deadline:
            raise TransformTimeout("Time limit exceeded")

        method = getattr(self, "_eval_" + type(node).__name__)
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.run(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id in self.scope:
            return self.scope[node.id]
        if node.id in CONSTANTS:
            return CONSTANTS[node.id]
        return SAFE_FUNCTIONS[node.id]

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.run(node.left)
        right = self.run(node.right)
        op_type = type(node.op)
        both_ints = isinstance(left, int) and isinstance(right, int)
        if op_type is ast.Pow:
            if isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
                raise TransformError(f"Exponent too large: {right}")
            if both_ints and right > 0 and left.bit_length() * right > MAX_INT_BITS:
                raise TransformError(f"Power result exceeds {MAX_INT_BITS} bits")
        if op_type is ast.LShift and both_ints:
            if right > MAX_SHIFT:
                raise TransformError(f"Shift too large: {right}")
            if right > 0 and left.bit_length() + right > MAX_INT_BITS:
                raise TransformError(f"Shift result exceeds {MAX_INT_BITS} bits")
        if op_type is ast.Mult:
            if both_ints and left.bit_length() + right.bit_length() > MAX_INT_BITS:
                raise TransformError(f"Product exceeds {MAX_INT_BITS} bits")
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, bytes, list, tuple)) and isinstance(count, int):
                    if len(seq) * count > MAX_SEQUENCE_LENGTH:
                        raise TransformError("Sequence repetition too large")
        return _check_size(BINARY_OPERATORS[op_type](left, right))

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return UNARY_OPERATORS[type(node.op)](self.run(node.operand))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        result = None
        for value_node in node.values:
            result = self.run(value_node)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def _eval_Compare(self, node: ast.Compare) -> Any:
        left = self.run(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.run(comparator)
            if not COMPARE_OPERATORS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        if self.run(node.test):
            return self.run(node.body)
        return self.run(node.orelse)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        container = self.run(node.value)
        return container[self.run(node.slice)]

    def _eval_Slice(self, node: ast.Slice) -> slice:
        lower = self.run(node.lower) if node.lower is not None else None
        upper = self.run(node.upper) if node.upper is not None else None
        step = self.run(node.step) if node.step is not None else None
        return slice(lower, upper, step)

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        # meta.address reads meta["address"]; no real attribute access
        target = self.run(node.value)
        if not isinstance(target, Mapping):
            raise TransformError(f"Attribute access only works on meta/dicts, not {type(target).__name__}")
        try:
            return target[node.attr]
        except KeyError:
            raise TransformError(f"No field named {node.attr!r}") from None

    def _eval_Call(self, node: ast.Call) -> Any:
        func = SAFE_FUNCTIONS[node.func.id]
        args = [self.run(a) for a in node.args]
        kwargs = {kw.arg: self.run(kw.value) for kw in node.keywords}
        return _check_size(func(*args, **kwargs))

    def _eval_List(self, node: ast.List) -> list:
        return _check_size([self.run(e) for e in node.elts])

    def _eval_Tuple(self, node: ast.Tuple) -> tuple:
        return _check_size(tuple(self.run(e) for e in node.elts))

    def _eval_Dict(self, node: ast.Dict) -> dict:
        if any(k is None for k in node.keys):
            raise TransformError("Dict unpacking not allowed")
        return _check_size({self.run(k): self.run(v) for k, v in zip(node.keys, node.values)})


class TransformEvaluator:
    """Evaluates transform expressions for mapping entries.

    `evaluate()` raises on failure; `apply()` is the pipeline entry point and
    falls back to the untransformed value.
    """

    BINDINGS = frozenset({"value", "raw", "meta"})

    def __init__(self, time_limit: float = DEFAULT_TIME_LIMIT, max_steps: int = DEFAULT_MAX_STEPS):
        self.time_limit = time_limit
        self.max_steps = max_steps
        self.failures = 0

    def evaluate(self, expression: str, value: Any, raw: bytes = b"", meta: Optional[Mapping[str, Any]] = None) -> Any:
        """Evaluate `expression` with only value/raw/meta in scope.

        Raises:
            TransformError: If the expression is invalid or fails
            TransformTimeout: If the step or time budget is exhausted
        """
        tree = compile_expression(expression)
        scope = {"value": value, "raw": bytes(raw), "meta": dict(meta or {})}
        interpreter = _Interpreter(scope, self.max_steps, time.monotonic() + self.time_limit)
        try:
            return interpreter.run(tree)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(f"{type(e).__name__}: {e}") from e

    def apply(self, entry, value: Any, raw: bytes = b"") -> Any:
        """Apply the entry's transform, returning `value` unchanged on failure."""
        expression = getattr(entry, "transform", None)
        if not expression:
            return value

        meta = {
            "address": entry.address,
            "register": entry.address,
            "datatype": entry.datatype,
            "offset": entry.offset,
            "topic": entry.topic,
        }
        try:
            return self.evaluate(expression, value, raw, meta)
        except TransformError as e:
            self.failures += 1
            logger.warning("Transform error for register %s (%r): %s", entry.address, expression, e)
            return value
