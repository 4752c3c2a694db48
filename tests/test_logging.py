"""Structured logging: JSON lines, bound context, exception fields, traces."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from apparel_engines.variance import VarianceCalculator
from apparel_kernel.exceptions import InsufficientStockError
from apparel_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _fresh_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


@pytest.fixture
def stream():
    out = StringIO()
    handler = logging.StreamHandler(out)
    configure_logging(level=logging.DEBUG, handler=handler)
    return out


def records(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestStructuredFormatter:

    def test_json_line_with_standard_keys(self, stream):
        get_logger("test").info("hello")

        (record,) = records(stream)
        assert record["message"] == "hello"
        assert record["level"] == "INFO"
        assert record["logger"] == "apparel_kernel.test"
        assert "ts" in record

    def test_extra_fields_serialized(self, stream):
        order_id = uuid4()
        get_logger("test").info("issued", extra={"qty": Decimal("2.5"), "order": order_id})

        (record,) = records(stream)
        assert record["qty"] == "2.5"
        assert record["order"] == str(order_id)

    def test_exception_fields(self, stream):
        try:
            raise InsufficientStockError("raw", "FABRIC-JERSEY", "MAIN", Decimal("1"), Decimal("2"))
        except InsufficientStockError:
            get_logger("test").exception("posting_failed")

        (record,) = records(stream)
        assert record["exc_type"] == "InsufficientStockError"
        assert record["exc_code"] == InsufficientStockError.code
        assert record["exc_item_key"] == "FABRIC-JERSEY"
        assert "traceback" in record

    def test_formatter_usable_standalone(self):
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "plain", (), None)
        assert json.loads(StructuredFormatter().format(record))["message"] == "plain"


class TestLogContext:

    def test_bound_fields_appear_and_are_restored(self, stream):
        logger = get_logger("test")
        with LogContext.bind(scope_id="acme-apparel", order_id="WO-1"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = records(stream)
        assert inside["scope_id"] == "acme-apparel"
        assert inside["order_id"] == "WO-1"
        assert "order_id" not in outside

    def test_nested_bind_restores_outer_value(self, stream):
        logger = get_logger("test")
        with LogContext.bind(order_id="WO-1"):
            with LogContext.bind(order_id="WO-2"):
                logger.info("inner")
            logger.info("outer")

        inner, outer = records(stream)
        assert inner["order_id"] == "WO-2"
        assert outer["order_id"] == "WO-1"


class TestConfiguration:

    def test_configure_is_idempotent(self, stream):
        configure_logging(level=logging.ERROR, stream=StringIO())
        get_logger("test").info("still captured")

        assert records(stream)[0]["message"] == "still captured"


class TestEngineTrace:

    def test_engine_calls_are_traced_with_fingerprint(self, stream):
        calc = VarianceCalculator()
        calc.unit_cost_variance(standard_unit_cost=Decimal("100"), actual_unit_cost=Decimal("110"))
        calc.unit_cost_variance(standard_unit_cost=Decimal("100.00"), actual_unit_cost=Decimal("110"))

        traces = [r for r in records(stream) if r["message"] == "ENGINE_TRACE"]
        assert len(traces) == 2
        assert traces[0]["engine_name"] == "variance"
        assert len(traces[0]["input_fingerprint"]) == 16
        assert traces[0]["input_fingerprint"] == traces[1]["input_fingerprint"]
