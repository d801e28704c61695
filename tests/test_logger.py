"""Unit tests for structured logging."""
import sys
sys.path.insert(0, 'backend')

import json
import logging
from logger import JSONFormatter, setup_logging


def make_record(message, **attrs):
    record = logging.LogRecord(
        name="services.broadcast",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


def test_formats_record_as_json():
    output = json.loads(JSONFormatter().format(make_record("Broadcast finished")))

    assert output["message"] == "Broadcast finished"
    assert output["level"] == "INFO"
    assert output["logger"] == "services.broadcast"
    assert output["timestamp"].endswith("Z")


def test_merges_extra_context():
    record = make_record("Conversation failed", extra={"peer_id": "bob", "round": 2})

    output = json.loads(JSONFormatter().format(record))

    assert output["peer_id"] == "bob"
    assert output["round"] == 2


def test_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = make_record("failed", exc_info=sys.exc_info())

    output = json.loads(JSONFormatter().format(record))

    assert "RuntimeError: boom" in output["exception"]


def test_setup_logging_replaces_handlers():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        setup_logging("WARNING")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
