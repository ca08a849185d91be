"""Unit tests for structured logging helpers."""

from __future__ import annotations

import json
import logging

from comborank.core.logging import NOISY_LOGGERS, JSONExtrasFormatter, log_event, setup_logging


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def _record(**extras: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="comborank.services.rankings.orchestrator",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="request_completed",
        args=(),
        exc_info=None,
    )
    for key, value in extras.items():
        setattr(record, key, value)
    return record


def test_formatter_appends_sorted_json_extras() -> None:
    formatter = JSONExtrasFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    line = formatter.format(_record(cached=2, app_id="284882215", _private="hidden"))

    prefix, _, extras = line.partition("request_completed ")
    assert "| INFO     | comborank.services.rankings.orchestrator |" in prefix
    assert json.loads(extras) == {"app_id": "284882215", "cached": 2}


def test_formatter_omits_empty_extras() -> None:
    line = JSONExtrasFormatter().format(_record())

    assert line.endswith("request_completed")


def test_log_event_emits_event_name_and_fields() -> None:
    logger = logging.getLogger("comborank.tests.log_event")
    handler = _ListHandler()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        log_event(logger, "cache_check_failed", level=logging.WARNING, backend="redis")
    finally:
        logger.removeHandler(handler)

    [record] = handler.records
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "cache_check_failed"
    assert record.event == "cache_check_failed"  # type: ignore[attr-defined]
    assert record.backend == "redis"  # type: ignore[attr-defined]


def test_setup_logging_quiets_library_loggers_and_is_idempotent() -> None:
    logger = logging.getLogger("comborank")
    original_handlers = list(logger.handlers)
    original_propagate = logger.propagate
    original_levels = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    logger.handlers = []
    try:
        setup_logging()
        setup_logging()

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONExtrasFormatter)
        assert logger.propagate is False
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        logger.handlers = original_handlers
        logger.propagate = original_propagate
        for name, level in original_levels.items():
            logging.getLogger(name).setLevel(level)
