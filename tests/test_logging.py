"""
Structured logging: JSON shape, context binding, exception fields.
"""

import json
import logging
from decimal import Decimal
from uuid import uuid4

import pytest

from aid_kernel.exceptions import QuantityOvercommitError
from aid_kernel.logging_config import LogContext, StructuredFormatter, get_logger


def _format(record: logging.LogRecord) -> dict:
    return json.loads(StructuredFormatter().format(record))


def _record(msg="event", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord("aid_kernel.test", level, __file__, 1, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_loggers_live_under_the_kernel_namespace():
    assert get_logger("services.ledger").name == "aid_kernel.services.ledger"


def test_payload_has_core_fields_and_extras():
    rid = uuid4()

    payload = _format(_record(request_id=rid, quantity=Decimal("2.5")))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "aid_kernel.test"
    assert payload["message"] == "event"
    assert payload["request_id"] == str(rid)
    assert payload["quantity"] == "2.5"
    assert payload["ts"].endswith("+00:00")


def test_bound_context_is_included_and_restored():
    with LogContext.bind(operation="allocate", actor_id="admin-1"):
        with LogContext.bind(operation="assign_warehouse"):
            inner = _format(_record())
        outer = _format(_record())
    after = _format(_record())

    assert inner["operation"] == "assign_warehouse"
    assert inner["actor_id"] == "admin-1"
    assert outer["operation"] == "allocate"
    assert "operation" not in after
    assert "actor_id" not in after


def test_unset_context_fields_are_omitted():
    LogContext.set(correlation_id="c-1")

    assert LogContext.get_all() == {"correlation_id": "c-1"}


def test_kernel_errors_expose_structured_fields():
    exc = QuantityOvercommitError(str(uuid4()), requested=250, available=200)

    payload = _format(_record(level=logging.WARNING, exc_info=(type(exc), exc, None)))

    assert payload["exc_type"] == "QuantityOvercommitError"
    assert payload["exc_code"] == exc.code
    assert payload["exc_requested"] == 250
    assert payload["exc_available"] == 200


def test_kernel_logger_does_not_propagate():
    assert logging.getLogger("aid_kernel").propagate is False


def test_unknown_context_field_rejected():
    with pytest.raises(ValueError, match="Unknown log context field"):
        LogContext.set(tenant="acme")
