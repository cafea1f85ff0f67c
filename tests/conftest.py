"""
Shared fixtures.
"""

import logging

import pytest

from apishield.shared.logging import DiagnosticSink


class CollectingHandler(logging.Handler):
    """Keeps every record it receives."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def collected() -> CollectingHandler:
    return CollectingHandler()


@pytest.fixture
def diagnostic_sink(collected: CollectingHandler):
    sink = DiagnosticSink(handlers=[collected], logger_name="apishield.diagnostics.test")
    sink.start()
    yield sink
    sink.stop()
