"""
Unit tests for structured logging
"""
import json

import pytest

from patient_sync.observability.logger import get_logger, log_operation, setup_logger


@pytest.fixture
def json_logger(capsys):
    logger = setup_logger("patient_sync_test_json", level="DEBUG", format_type="json")
    yield logger
    logger.handlers.clear()


def _records(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]


def test_json_record_carries_pipeline_context(json_logger, capsys):
    json_logger.info("Page stored", extra={"batch_id": "batch-1", "page": 3})

    (record,) = _records(capsys)
    assert record["message"] == "Page stored"
    assert record["batch_id"] == "batch-1"
    assert record["page"] == 3
    assert record["level"] == "INFO"
    assert record["thread"] == "MainThread"
    assert record["timestamp"].endswith("+00:00")


def test_level_filtering(capsys):
    logger = setup_logger("patient_sync_test_level", level="WARNING", format_type="json")
    try:
        logger.info("hidden")
        logger.warning("shown")
    finally:
        logger.handlers.clear()

    assert [r["message"] for r in _records(capsys)] == ["shown"]


def test_module_loggers_sit_under_package_logger():
    assert get_logger("patient_sync.batch.orchestrator").name == "patient_sync.batch.orchestrator"
    assert get_logger("scripts.adhoc").name == "patient_sync.scripts.adhoc"


def test_log_operation_success(json_logger, capsys):
    with log_operation("Rollup", logger=json_logger, source_system="ehr") as op:
        pass

    started, finished = _records(capsys)
    assert started["message"] == "Rollup started"
    assert finished["message"] == "Rollup finished"
    assert finished["source_system"] == "ehr"
    assert finished["duration_ms"] == op.duration_ms


def test_log_operation_reraises(json_logger, capsys):
    with pytest.raises(KeyError):
        with log_operation("Rollup", logger=json_logger):
            raise KeyError("period")

    records = _records(capsys)
    assert records[-1]["level"] == "ERROR"
    assert records[-1]["error_type"] == "KeyError"
