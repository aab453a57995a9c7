"""Tests for structured logging."""

import json
import logging
import threading

import pytest

from fleetstage.utils.logging import JSONFormatter, LogContext, get_logger, setup_logging


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class Capture(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def capture():
    logger = get_logger("fleetstage.tests.logging")
    logger.setLevel(logging.DEBUG)
    handler = Capture()
    logger.addHandler(handler)
    yield logger, handler
    logger.removeHandler(handler)


class TestLogContext:
    """Tests for per-thread structured fields."""

    def test_fields_attached(self, capture):
        logger, handler = capture

        with LogContext(logger, resource_key="sakura:server:web", stage="prod"):
            logger.info("creating")
        logger.info("outside")

        inside, outside = handler.records
        assert inside.resource_key == "sakura:server:web"
        assert inside.stage == "prod"
        assert not hasattr(outside, "resource_key")

    def test_nested_contexts(self, capture):
        logger, handler = capture

        with LogContext(logger, stage="prod"):
            with LogContext(logger, resource_key="sakura:server:web", provider=None):
                logger.info("inner")

        record = handler.records[0]
        assert record.stage == "prod"
        assert record.resource_key == "sakura:server:web"
        assert not hasattr(record, "provider")

    def test_threads_do_not_share_fields(self, capture):
        logger, handler = capture

        def worker():
            logger.info("from worker")

        with LogContext(logger, resource_key="sakura:server:web"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        assert not hasattr(handler.records[0], "resource_key")


class TestJSONFormatter:
    """Tests for the JSON log file format."""

    def test_structured_fields(self):
        record = logging.LogRecord("fleetstage.orchestrator", logging.INFO, __file__, 1,
                                   "created", None, None)
        record.resource_key = "sakura:server:web"
        record.duration = 1.5

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "created"
        assert data["level"] == "INFO"
        assert data["resource_key"] == "sakura:server:web"
        assert data["duration"] == 1.5


class TestSetupLogging:
    """Tests for handler installation."""

    def test_writes_json_file(self, tmp_path, restore_root):
        log_file = setup_logging("warning", log_dir=tmp_path / "logs")

        get_logger("fleetstage.tests").warning("lock reclaimed")
        for handler in restore_root.handlers:
            handler.flush()

        assert log_file.parent == tmp_path / "logs"
        assert restore_root.level == logging.WARNING
        assert len(restore_root.handlers) == 2
        lines = log_file.read_text().splitlines()
        assert json.loads(lines[-1])["message"] == "lock reclaimed"
