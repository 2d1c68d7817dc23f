import json
import logging

from toolgate.config import LoggingConfig
from toolgate.logging_utils import CorrelationIdFilter, JsonLogFormatter, correlation_id_var, setup_logging


def test_setup_logging_forces_noisy_third_party_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpcore.http11")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="INFO", json=False))

    assert logging.getLogger().level == logging.INFO
    assert noisy.level == logging.INFO
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_uses_json_formatter_when_enabled() -> None:
    setup_logging(LoggingConfig(level="DEBUG", json=True))

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, JsonLogFormatter)
    assert logging.getLogger().level == logging.DEBUG


def test_json_formatter_includes_active_correlation_id() -> None:
    record = logging.LogRecord("toolgate.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    token = correlation_id_var.set("abc123")
    try:
        CorrelationIdFilter().filter(record)
    finally:
        correlation_id_var.reset(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["message"] == "hello world"
    assert payload["correlation_id"] == "abc123"
    assert payload["level"] == "INFO"


def test_correlation_filter_defaults_to_dash_outside_requests() -> None:
    record = logging.LogRecord("toolgate.test", logging.INFO, __file__, 1, "x", (), None)
    CorrelationIdFilter().filter(record)
    assert record.correlation_id == "-"
