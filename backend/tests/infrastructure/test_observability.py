"""Structured Logging: tests for the JSON formatter."""

import json
import sys
import logging
from uuid import uuid4

from timetravel.infrastructure.observability import JSONFormatter


def _record(msg="hello", **extra):
    record = logging.LogRecord("timetravel.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_base_fields_present():
    log = json.loads(JSONFormatter().format(_record()))
    assert log["level"] == "INFO"
    assert log["logger"] == "timetravel.test"
    assert log["message"] == "hello"
    assert "timestamp" in log


def test_ids_rendered_as_strings():
    timeline_id = uuid4()
    log = json.loads(JSONFormatter().format(_record(timeline_id=timeline_id, reward=0.25)))
    assert log["timeline_id"] == str(timeline_id)
    assert log["reward"] == 0.25


def test_unknown_and_missing_extras_omitted():
    log = json.loads(JSONFormatter().format(_record(password="x", node_id=None)))
    assert "password" not in log
    assert "node_id" not in log


def test_exception_included():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "timetravel.test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info(),
        )
    log = json.loads(JSONFormatter().format(record))
    assert "RuntimeError: boom" in log["exception"]
