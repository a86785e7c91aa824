"""Tests for the restricted transform evaluator."""

import time
from types import SimpleNamespace

import pytest

from mbsniff.core import transform
from mbsniff.core.register_map import MappingSpec, expand
from mbsniff.core.transform import (
    TransformError,
    TransformEvaluator,
    TransformTimeout,
    compile_expression,
)


def make_entry(expr, register="40050", topic="status/alarm", datatype="uint16"):
    return expand(MappingSpec(register=register, datatype=datatype, topic=topic, transform=expr))[0]


@pytest.fixture
def evaluator():
    return TransformEvaluator()


def test_conditional_expression(evaluator):
    expr = "'alarm' if value & 0x08 else 'ok'"
    assert evaluator.evaluate(expr, 0x0C) == "alarm"
    assert evaluator.evaluate(expr, 0x04) == "ok"


def test_lookup_table(evaluator):
    expr = "{0: 'off', 1: 'away', 2: 'home'}[value]"
    assert evaluator.evaluate(expr, 2) == "home"


def test_arithmetic_and_functions(evaluator):
    assert evaluator.evaluate("round(value * 1.8 + 32, 1)", 21.5) == pytest.approx(70.7)
    assert evaluator.evaluate("max(value, 10)", 3) == 10
    assert evaluator.evaluate("round(value, ndigits=1)", 2.345) == 2.3
    assert evaluator.evaluate("hex(value)", 255) == "0xff"


def test_raw_and_meta(evaluator):
    meta = {"address": 40050, "topic": "status/alarm"}
    assert evaluator.evaluate("raw[0] << 8 | raw[1]", 0, b"\x12\x34") == 0x1234
    assert evaluator.evaluate("raw[1:]", 0, b"\x01\x02\x03") == b"\x02\x03"
    assert evaluator.evaluate("meta.address + 1", 0, meta=meta) == 40051
    assert evaluator.evaluate("meta['topic']", 0, meta=meta) == "status/alarm"


def test_boolean_logic(evaluator):
    assert evaluator.evaluate("value > 10 and value < 20", 15) is True
    assert evaluator.evaluate("1 < value < 3", 5) is False
    assert evaluator.evaluate("value or 'none'", 0) == "none"
    assert evaluator.evaluate("not value", 0) is True
    assert evaluator.evaluate("value in (1, 2, 3)", 2) is True


@pytest.mark.parametrize(
    "expr",
    [
        "__import__('os').system('true')",
        "open('/etc/passwd')",
        "value.__class__",
        "(lambda: 1)()",
        "[x for x in raw]",
        "globals()",
        "value.real",
        "exec('1')",
    ],
)
def test_rejects_unsafe_constructs(evaluator, expr):
    with pytest.raises(TransformError):
        evaluator.evaluate(expr, 1)


def test_syntax_error(evaluator):
    with pytest.raises(TransformError, match="syntax"):
        evaluator.evaluate("value +", 1)


def test_statements_are_not_expressions(evaluator):
    with pytest.raises(TransformError):
        evaluator.evaluate("x = 1", 1)


def test_resource_caps(evaluator):
    with pytest.raises(TransformError, match="Exponent"):
        evaluator.evaluate("10 ** 100000", 1)
    with pytest.raises(TransformError, match="Shift"):
        evaluator.evaluate("1 << 100000", 1)
    with pytest.raises(TransformError, match="repetition"):
        evaluator.evaluate("'a' * 10000000", 1)


@pytest.mark.parametrize(
    "expr",
    [
        "sum([[0] * 60000] * 3000, [])",
        "[[0] * 60000] * 3000",
        "((10 ** 1000) ** 1000) ** 3",
        "(1 << 1000) ** 5",
        "(1 << 1000) << 1000 << 1000 << 1000 << 1000",
        "(7 ** 1000) * (7 ** 1000)",
        "round(value, -1000000000)",
        "max([[0] * 60000])",
    ],
)
def test_expensive_expressions_are_refused_quickly(evaluator, expr):
    started = time.monotonic()
    with pytest.raises(TransformError):
        evaluator.evaluate(expr, 1)
    assert time.monotonic() - started < 0.5


def test_numeric_aggregates(evaluator):
    assert evaluator.evaluate("sum(raw)", 0, b"\x01\x02\x03") == 6
    assert evaluator.evaluate("sum([1.5, 2], 10)", 0) == 13.5
    assert evaluator.evaluate("min(raw)", 0, b"\x05\x02") == 2
    assert evaluator.evaluate("max(value, 3, 9)", 4) == 9
    with pytest.raises(TransformError, match="only accepts numbers"):
        evaluator.evaluate("max(['a', 'b'])", 0)
    with pytest.raises(TransformError, match="start"):
        evaluator.evaluate("sum([], [])", 0)


def test_step_budget():
    evaluator = TransformEvaluator(max_steps=5)
    with pytest.raises(TransformTimeout):
        evaluator.evaluate("value + value + value + value", 1)
    assert evaluator.evaluate("value", 1) == 1


def test_time_ceiling(monkeypatch):
    ticks = iter(range(100))
    monkeypatch.setattr(transform, "time", SimpleNamespace(monotonic=lambda: next(ticks)))
    with pytest.raises(TransformTimeout, match="Time limit"):
        TransformEvaluator(time_limit=0.05).evaluate("value + 1", 1)


def test_runtime_errors_are_wrapped(evaluator):
    with pytest.raises(TransformError, match="ZeroDivisionError"):
        evaluator.evaluate("value / 0", 1)
    with pytest.raises(TransformError, match="KeyError"):
        evaluator.evaluate("{0: 'a'}[value]", 7)


def test_compiled_expressions_are_cached():
    assert compile_expression("value * 2") is compile_expression("value * 2")


class TestApply:

    def test_without_transform_returns_value(self, evaluator):
        entry = make_entry(None)
        assert evaluator.apply(entry, 42, b"\x00\x2a") == 42

    def test_meta_is_populated(self, evaluator):
        entry = make_entry("[meta.address, meta.register, meta.offset, meta.datatype, meta.topic]")
        assert evaluator.apply(entry, 0) == [40050, 40050, 0, "uint16", "status/alarm"]

    def test_failure_falls_back_to_value(self, evaluator, caplog):
        entry = make_entry("value / 0")
        assert evaluator.apply(entry, 5) == 5
        assert evaluator.failures == 1
        assert "Transform error for register 40050" in caplog.text

    def test_expensive_expression_falls_back_within_budget(self, evaluator):
        entry = make_entry("sum([[0] * 60000] * 3000, [])")
        started = time.monotonic()
        assert evaluator.apply(entry, 7) == 7
        assert time.monotonic() - started < 0.5
        assert evaluator.failures == 1

    def test_timeout_falls_back_to_value(self):
        evaluator = TransformEvaluator(max_steps=2)
        entry = make_entry("value + value + value")
        assert evaluator.apply(entry, 3) == 3
        assert evaluator.failures == 1
