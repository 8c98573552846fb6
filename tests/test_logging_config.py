"""Tests for structured logging and operation tracing."""

import asyncio
import json
import logging
import sys

import pytest

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import (
    RequestContext,
    generate_request_id,
    get_context_dict,
    get_correlation_id,
    get_request_id,
    get_user_id,
)
from src.logging_config.performance import log_performance
from src.logging_config.setup import (
    ConsoleFormatter,
    StructuredFormatter,
    configure_logging,
    get_logger,
)


def _record(msg="hello %s", args=("world",), level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="src.workflow.engine",
        level=level,
        pathname=__file__,
        lineno=42,
        msg=msg,
        args=args,
        exc_info=None,
        func="execute_transition",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLoggingConfig:
    def test_default_config_values(self):
        config = LoggingConfig()
        assert config.level == LogLevel.INFO
        assert config.format == LogFormat.JSON
        assert config.include_caller is True
        assert config.slow_threshold_ms == 1000.0
        assert config.service_name == "content-workflow"
        assert config.env_prefix == "CONTENT_WORKFLOW_"

    def test_log_format_values(self):
        assert LogFormat.JSON.value == "json"
        assert LogFormat.CONSOLE.value == "console"


# ── Request context ──────────────────────────────────────────────────


class TestRequestContext:
    def test_generate_request_id_unique(self):
        assert generate_request_id() != generate_request_id()

    def test_context_binds_and_clears(self):
        with RequestContext(correlation_id="corr-1", user_id="alice") as ctx:
            assert get_correlation_id() == "corr-1"
            assert get_user_id() == "alice"
            assert get_request_id() == ctx.request_id
        assert get_correlation_id() == ""
        assert get_context_dict() == {}

    def test_correlation_defaults_to_request_id(self):
        with RequestContext(request_id="req-9") as ctx:
            assert ctx.correlation_id == "req-9"
            assert get_correlation_id() == "req-9"

    def test_nested_context_restores_outer(self):
        with RequestContext(correlation_id="outer", user_id="alice"):
            with RequestContext(user_id="system") as inner:
                # Inner inherits the outer correlation id
                assert inner.correlation_id == "outer"
                assert get_user_id() == "system"
            assert get_user_id() == "alice"
            assert get_correlation_id() == "outer"

    def test_bind_extra(self):
        with RequestContext(correlation_id="c") as ctx:
            ctx.bind(workflow_instance_id="wf-1")
            assert get_context_dict()["workflow_instance_id"] == "wf-1"
        assert "workflow_instance_id" not in get_context_dict()

    @pytest.mark.asyncio
    async def test_tasks_keep_their_own_context(self):
        seen = {}

        async def worker(name):
            with RequestContext(correlation_id=name):
                await asyncio.sleep(0.01)
                seen[name] = get_correlation_id()

        await asyncio.gather(worker("a"), worker("b"))
        assert seen == {"a": "a", "b": "b"}

    def test_elapsed_ms(self):
        ctx = RequestContext()
        assert ctx.elapsed_ms >= 0


# ── Formatters ───────────────────────────────────────────────────────


class TestStructuredFormatter:
    def test_base_fields(self):
        entry = json.loads(StructuredFormatter(service_name="svc").format(_record()))
        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "src.workflow.engine"
        assert entry["service"] == "svc"
        assert entry["function"] == "execute_transition"
        assert entry["line"] == 42

    def test_without_caller(self):
        entry = json.loads(StructuredFormatter(include_caller=False).format(_record()))
        assert "function" not in entry
        assert "line" not in entry

    def test_workflow_fields(self):
        record = _record(
            workflow_instance_id="wf-1",
            from_state="draft",
            to_state="review",
            action="submit_for_review",
            error_code="WF4001",
        )
        entry = json.loads(StructuredFormatter().format(record))
        assert entry["workflow_instance_id"] == "wf-1"
        assert entry["from_state"] == "draft"
        assert entry["to_state"] == "review"
        assert entry["action"] == "submit_for_review"
        assert entry["error_code"] == "WF4001"

    def test_includes_bound_context(self):
        with RequestContext(correlation_id="corr-7", user_id="bob"):
            entry = json.loads(StructuredFormatter().format(_record()))
        assert entry["correlation_id"] == "corr-7"
        assert entry["user_id"] == "bob"

    def test_exception_info(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        entry = json.loads(StructuredFormatter().format(record))
        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "boom"


class TestConsoleFormatter:
    def test_console_line(self):
        line = ConsoleFormatter().format(_record(workflow_instance_id="wf-1"))
        assert "INFO" in line
        assert "hello world" in line
        assert "workflow_instance_id=wf-1" in line


# ── configure_logging ────────────────────────────────────────────────


class TestConfigureLogging:
    def test_json_default(self, restore_root_logger, monkeypatch):
        monkeypatch.delenv("CONTENT_WORKFLOW_LOG_LEVEL", raising=False)
        monkeypatch.delenv("CONTENT_WORKFLOW_LOG_FORMAT", raising=False)
        config = configure_logging()
        assert config.format == LogFormat.JSON
        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)
        assert restore_root_logger.level == logging.INFO

    def test_env_overrides(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("CONTENT_WORKFLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("CONTENT_WORKFLOW_LOG_FORMAT", "console")
        config = configure_logging(LoggingConfig())
        assert config.level == LogLevel.DEBUG
        assert config.format == LogFormat.CONSOLE
        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, ConsoleFormatter)

    def test_invalid_env_ignored(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("CONTENT_WORKFLOW_LOG_LEVEL", "chatty")
        monkeypatch.delenv("CONTENT_WORKFLOW_LOG_FORMAT", raising=False)
        config = configure_logging(LoggingConfig(level=LogLevel.WARNING))
        assert config.level == LogLevel.WARNING

    def test_get_logger(self):
        assert get_logger("src.workflow").name == "src.workflow"


# ── log_performance ──────────────────────────────────────────────────


class TestLogPerformance:
    def test_sync_fast_logs_debug(self, caplog):
        @log_performance(threshold_ms=10_000, logger_name="perf.test")
        def add(a, b):
            return a + b

        with caplog.at_level(logging.DEBUG, logger="perf.test"):
            assert add(1, 2) == 3
        assert caplog.records[-1].levelno == logging.DEBUG
        assert hasattr(caplog.records[-1], "duration_ms")

    def test_slow_logs_warning(self, caplog):
        @log_performance(threshold_ms=0, logger_name="perf.test", include_args=True)
        def work(x):
            return x

        with caplog.at_level(logging.DEBUG, logger="perf.test"):
            work("payload")
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "'payload'" in record.extra_data

    @pytest.mark.asyncio
    async def test_async_failure_logged_and_reraised(self, caplog):
        @log_performance(logger_name="perf.test")
        async def explode():
            raise RuntimeError("nope")

        with caplog.at_level(logging.DEBUG, logger="perf.test"):
            with pytest.raises(RuntimeError):
                await explode()
        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert "RuntimeError" in record.getMessage()

    def test_preserves_metadata(self):
        @log_performance()
        def documented():
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."
