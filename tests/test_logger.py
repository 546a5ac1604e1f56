import json
import logging

import pytest

from tg_kafka_bridge.telemetry.logger import CorrelationFilter, JSONFormatter, MetricsLogger, setup_logging


def make_record(msg="hello", **extra):
    record = logging.LogRecord("bridge", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    formatter = JSONFormatter(service_name="bridge-test")

    entry = json.loads(formatter.format(make_record(component="pipeline", payload=b"raw", _private=1)))

    assert entry["service"] == "bridge-test"
    assert entry["message"] == "hello"
    assert entry["component"] == "pipeline"
    assert entry["payload"] == "raw"
    assert "_private" not in entry


def test_json_formatter_can_drop_extra():
    entry = json.loads(JSONFormatter(include_extra=False).format(make_record(component="pipeline")))

    assert "component" not in entry


def test_correlation_filter_keeps_existing_id():
    static = CorrelationFilter("abc")
    record = make_record()

    assert static.filter(record)
    assert record.correlation_id == "abc"

    tagged = make_record(correlation_id="upstream")
    CorrelationFilter().filter(tagged)
    assert tagged.correlation_id == "upstream"


def test_correlation_follows_envelope():
    correlation = CorrelationFilter("static")

    by_id = make_record(envelope_id="bot:7")
    by_position = make_record(source_id="bot", sequence=8)
    correlation.filter(by_id)
    correlation.filter(by_position)

    assert by_id.correlation_id == "bot:7"
    assert by_position.correlation_id == "bot:8"


@pytest.fixture
def restore_root_logger():
    handlers = list(logging.root.handlers)
    level = logging.root.level
    yield
    logging.root.handlers[:] = handlers
    logging.root.setLevel(level)


def test_setup_logging_installs_json_handler(restore_root_logger):
    setup_logging(level="debug")

    assert logging.root.level == logging.DEBUG
    assert isinstance(logging.root.handlers[0].formatter, JSONFormatter)
    assert logging.getLogger("aiokafka").level == logging.WARNING


def test_setup_logging_rejects_unknown_level(restore_root_logger):
    with pytest.raises(ValueError):
        setup_logging(level="chatty")


def test_metrics_logger_tags_metric_type(caplog):
    caplog.set_level(logging.INFO, logger="metrics")

    MetricsLogger().log_checkpoint_persisted(source_id="bot", sequence=3, token="4", duration_ms=1.234)

    record = caplog.records[-1]
    assert record.metric_type == "checkpoint_persisted"
    assert record.duration_ms == 1.23
