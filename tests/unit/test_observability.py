"""Unit tests for structured logging, audit logging, telemetry and metrics."""

import json
import logging
import sys
from unittest.mock import MagicMock

import pytest
from opentelemetry.sdk.trace import TracerProvider

from parley.lib import metrics as metrics_module
from parley.lib.logging_config import AuditLogger, StructuredFormatter
from parley.lib.metrics import MetricsCollector, NegotiationMetrics, initialize_metrics, get_metrics_collector
from parley.lib.observability import initialize_telemetry, shutdown_telemetry


def _record(message="hello", **extra):
    record = logging.LogRecord("parley.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test JSON log formatting."""

    def test_basic_fields(self):
        """Test core fields, extra fields and configured fields are emitted."""
        formatter = StructuredFormatter(extra_fields={"service": "parley"})

        entry = json.loads(formatter.format(_record(session_id="s1")))

        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "parley.test"
        assert entry["session_id"] == "s1"
        assert entry["service"] == "parley"
        assert "trace_id" not in entry

    def test_trace_correlation(self):
        """Test trace and span ids are added inside a recording span."""
        tracer = TracerProvider().get_tracer("test")
        formatter = StructuredFormatter()

        with tracer.start_as_current_span("turn") as span:
            entry = json.loads(formatter.format(_record()))
            context = span.get_span_context()

        assert entry["trace_id"] == format(context.trace_id, "032x")
        assert entry["span_id"] == format(context.span_id, "016x")

    def test_exception_info(self):
        """Test exceptions are serialized with type and message."""
        try:
            raise ValueError("bad value")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(StructuredFormatter(include_trace=False).format(record))

        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad value"


class TestAuditLogger:
    """Test audit event shapes."""

    def test_session_event(self):
        """Test session events carry the audit fields as extras."""
        audit = AuditLogger()
        audit.logger = MagicMock()

        audit.log_session_event("negotiation_started", "s1", action="plan", metadata={"rounds": 0})

        message, = audit.logger.info.call_args.args
        extra = audit.logger.info.call_args.kwargs["extra"]
        assert message == "Session event: negotiation_started"
        assert extra["audit_type"] == "session"
        assert extra["session_id"] == "s1"
        assert extra["metadata"] == {"rounds": 0}

    def test_agent_event(self):
        """Test agent events record party, model and action."""
        audit = AuditLogger()
        audit.logger = MagicMock()

        audit.log_agent_event("turn_sealed", "s1", "agent-a", "m1", "propose_plan", execution_time_ms=12)

        extra = audit.logger.info.call_args.kwargs["extra"]
        assert extra["party"] == "agent-a"
        assert extra["model"] == "m1"
        assert extra["execution_time_ms"] == 12


class TestTelemetry:
    """Test the global telemetry manager."""

    def test_disabled_telemetry_stays_uninitialized(self):
        """Test exporters are not installed when telemetry is disabled."""
        manager = initialize_telemetry({"enabled": False})

        assert not manager.initialized
        shutdown_telemetry()


class TestMetricsCollector:
    """Test metric recording against a mock meter."""

    @pytest.fixture
    def collector(self):
        meter = MagicMock()
        for factory in (meter.create_counter, meter.create_histogram, meter.create_up_down_counter):
            factory.side_effect = lambda *args, **kwargs: MagicMock()
        return MetricsCollector(meter=meter)

    def test_negotiation_lifecycle(self, collector):
        """Test start and finish update counters and the active gauge."""
        collector.record_negotiation_started("s1", resumed=False)
        collector.record_negotiation_finished(NegotiationMetrics("s1", "agreed", 2, 5, 40))

        collector.negotiations_started.add.assert_called_once_with(1, {"resumed": "False"})
        collector.negotiations_finished.add.assert_called_once_with(1, {"outcome": "agreed"})
        collector.negotiation_rounds.record.assert_called_once_with(2, {"outcome": "agreed"})
        assert [c.args[0] for c in collector.active_negotiations.add.call_args_list] == [1, -1]

    def test_provider_timing_records_failures(self, collector):
        """Test a failing provider call is recorded with its error type."""
        with pytest.raises(RuntimeError):
            with collector.time_provider_call("m1"):
                raise RuntimeError("down")

        collector.provider_errors.add.assert_called_once_with(1, {"model": "m1", "error_type": "RuntimeError"})
        attributes = collector.provider_duration.record.call_args.args[1]
        assert attributes == {"model": "m1", "success": "False"}

    def test_provider_timing_success(self, collector):
        """Test a successful call records duration only."""
        with collector.time_provider_call("m1"):
            pass

        collector.provider_errors.add.assert_not_called()
        assert collector.provider_duration.record.call_args.args[1]["success"] == "True"

    def test_global_collector(self, monkeypatch):
        """Test the global collector is None until initialized."""
        monkeypatch.setattr(metrics_module, "_metrics_collector", None)
        assert get_metrics_collector() is None

        collector = initialize_metrics(MagicMock())

        assert get_metrics_collector() is collector
