"""
Tests for logging configuration and the diagnostic sink.
"""

import logging
import time

import pytest
from fastapi.testclient import TestClient

from apishield.core.config import Settings
from apishield.domain.entities import DiagnosticRecord
from apishield.domain.errors import DuplicateKeyError
from apishield.main import create_app
from apishield.shared.errors.classifier import ErrorClassifier
from apishield.shared.logging import DiagnosticSink, configure_logging

SLOW_EMIT_SECONDS = 1.0


def _record(**overrides) -> DiagnosticRecord:
    values = {
        "message": "Token expired",
        "path": "/orders",
        "method": "GET",
        "client_addr": "10.0.0.1",
        "user_agent": "pytest",
        "redacted_body": None,
        "redacted_params": {},
        "redacted_query": {"page": "2"},
    }
    values.update(overrides)
    return DiagnosticRecord(**values)


class TestConfigureLogging:
    """Tests for root logging setup."""

    def test_level_applied(self) -> None:
        """The requested level is set on the root logger."""
        configure_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        configure_logging("INFO")

    def test_unknown_level_falls_back_to_info(self) -> None:
        """Unknown level names do not break configuration."""
        configure_logging("chatty")
        assert logging.getLogger().level == logging.INFO

    def test_uvicorn_loggers_quieted(self) -> None:
        """Server access logs are raised to WARNING."""
        configure_logging("DEBUG")
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        configure_logging("INFO")


class TestDiagnosticSink:
    """Tests for the queued diagnostic emitter."""

    def test_records_reach_handlers(self, diagnostic_sink: DiagnosticSink, collected) -> None:
        """Emitted records are delivered with their structured payload."""
        diagnostic_sink.emit(_record())
        diagnostic_sink.stop()
        assert len(collected.records) == 1
        logged = collected.records[0]
        assert logged.levelno == logging.ERROR
        assert logged.getMessage() == "Request failed: GET /orders: Token expired"
        assert logged.diagnostic["redacted_query"] == {"page": "2"}
        assert logged.diagnostic["subject_id"] == "anonymous"

    def test_start_is_idempotent(self, diagnostic_sink: DiagnosticSink, collected) -> None:
        """Starting twice does not duplicate delivery."""
        diagnostic_sink.start()
        diagnostic_sink.emit(_record())
        diagnostic_sink.stop()
        assert len(collected.records) == 1

    def test_stop_detaches(self, collected) -> None:
        """A stopped sink is no longer running."""
        sink = DiagnosticSink(handlers=[collected], logger_name="apishield.diagnostics.stop")
        sink.start()
        assert sink.running
        sink.stop()
        assert not sink.running


class SlowHandler(logging.Handler):
    """Handler standing in for a log destination that takes a second per record."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        time.sleep(SLOW_EMIT_SECONDS)
        self.records.append(record)


@pytest.fixture
def slow_sink():
    handler = SlowHandler()
    sink = DiagnosticSink(handlers=[handler], logger_name="apishield.diagnostics.slow")
    sink.start()
    yield sink, handler
    sink.stop()


class TestSlowSink:
    """A slow log destination never delays the caller."""

    def test_classify_returns_before_record_is_written(self, slow_sink) -> None:
        """Classification hands the record off and returns immediately."""
        sink, handler = slow_sink
        classifier = ErrorClassifier(emit=sink.emit)
        started = time.perf_counter()
        normalized, _record = classifier.classify(DuplicateKeyError("email"))
        assert time.perf_counter() - started < SLOW_EMIT_SECONDS / 2
        assert normalized.status_code == 400
        sink.stop()
        assert len(handler.records) == 1

    def test_failing_request_not_delayed(self, slow_sink) -> None:
        """The error response is sent while the record is still queued."""
        sink, handler = slow_sink
        client = TestClient(create_app(Settings(), diagnostic_sink=sink))
        started = time.perf_counter()
        response = client.get("/api/v1/nowhere")
        assert time.perf_counter() - started < SLOW_EMIT_SECONDS / 2
        assert response.status_code == 404
        sink.stop()
        assert len(handler.records) == 1
