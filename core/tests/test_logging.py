"""Tests for execution-context logging."""

import asyncio
import json
import logging

import pytest

from branchflow.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from branchflow.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("branchflow.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_set_merges(self):
        set_trace_context(execution_id="exec-1")
        set_trace_context(node_id="a")

        assert get_trace_context() == {"execution_id": "exec-1", "node_id": "a"}

    def test_get_returns_a_copy(self):
        set_trace_context(execution_id="exec-1")
        get_trace_context()["execution_id"] = "other"

        assert get_trace_context()["execution_id"] == "exec-1"

    @pytest.mark.asyncio
    async def test_tasks_do_not_leak_context(self):
        set_trace_context(execution_id="exec-1")

        async def node_task():
            set_trace_context(node_id="b")
            return get_trace_context()

        inside = await asyncio.create_task(node_task())

        assert inside == {"execution_id": "exec-1", "node_id": "b"}
        assert get_trace_context() == {"execution_id": "exec-1"}


class TestFormatters:
    def test_structured_includes_context_and_extras(self):
        set_trace_context(execution_id="exec-1", workflow_id="wf")

        entry = json.loads(StructuredFormatter().format(make_record("\033[31mred\033[0m", event="node:start")))

        assert entry["message"] == "red"
        assert entry["level"] == "info"
        assert entry["execution_id"] == "exec-1"
        assert entry["workflow_id"] == "wf"
        assert entry["event"] == "node:start"

    def test_human_prefix(self):
        set_trace_context(execution_id="exec-12345678", node_id="a")

        line = HumanReadableFormatter().format(make_record())

        assert "[exec:12345678 | node:a]" in line
        assert line.endswith("hello")

    def test_strip_ansi(self):
        assert strip_ansi_codes("\033[32mok\033[0m") == "ok"


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging(level="debug", format="human")
        configure_logging(level="warning", format="human")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, HumanReadableFormatter)
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
