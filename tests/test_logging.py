import logging

import structlog

from bulkdispatch.logging import drop_sensitive_fields, logging_context, setup_logging


def test_setup_logging_sets_package_level() -> None:
    setup_logging(level=logging.DEBUG, colors=False)

    assert logging.getLogger("bulkdispatch").level == logging.DEBUG
    structlog.reset_defaults()
    logging.getLogger("bulkdispatch").setLevel(logging.NOTSET)


def test_logging_context_binds_and_restores() -> None:
    structlog.contextvars.clear_contextvars()

    with logging_context(batch_id="b-1"):
        assert structlog.contextvars.get_contextvars() == {"batch_id": "b-1"}

    assert structlog.contextvars.get_contextvars() == {}


def test_logging_context_keeps_outer_values() -> None:
    structlog.contextvars.clear_contextvars()

    with logging_context(batch_id="outer"):
        with logging_context(batch_id="inner", worker=2):
            assert structlog.contextvars.get_contextvars() == {"batch_id": "outer", "worker": 2}
        assert structlog.contextvars.get_contextvars() == {"batch_id": "outer"}


def test_drop_sensitive_fields_removes_payloads() -> None:
    event = {"event": "Sending", "headers": {"Authorization": "secret"}, "request_count": 2}

    assert drop_sensitive_fields(None, "info", event) == {"event": "Sending", "request_count": 2}
