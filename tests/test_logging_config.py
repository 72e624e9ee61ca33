import json
import logging

from batch_cognito.logging_config import JsonFormatter, configure_logging, resolve_level


def test_json_line_carries_extras():
    record = logging.LogRecord("batch_cognito.executor", logging.WARNING, __file__, 1, "Throttled %s", ("a@x.com",), None)
    record.email = "a@x.com"
    record.attempts = 2

    entry = json.loads(JsonFormatter().format(record))

    assert entry["level"] == "WARNING"
    assert entry["message"] == "Throttled a@x.com"
    assert entry["email"] == "a@x.com"
    assert entry["attempts"] == 2
    assert "group" not in entry


def test_level_resolution():
    assert resolve_level(None) == logging.INFO
    assert resolve_level(None, verbose=1) == logging.DEBUG
    assert resolve_level("warning", verbose=2) == logging.WARNING


def test_configure_logging_replaces_handlers():
    configure_logging("error")
    configure_logging("debug")
    logger = logging.getLogger("batch_cognito")
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    assert not logger.propagate
