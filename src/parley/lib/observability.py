"""
OpenTelemetry configuration with OTLP exporters for Parley.

Sets up tracing and metrics export for negotiation runs. When telemetry is
not initialized, the OpenTelemetry API falls back to no-op tracers and
meters, so instrumented code runs unchanged.
"""

import logging
from typing import Dict, Any, Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource


logger = logging.getLogger(__name__)

TRACER_NAME = "parley"


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle for Parley."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._initialized = False
        self._tracer_provider: Optional[TracerProvider] = None
        self._meter_provider: Optional[MeterProvider] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Initialize OpenTelemetry with OTLP exporters."""
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return

        resource = Resource.create({
            "service.name": self.config.get("service_name", "parley"),
            "service.version": self.config.get("service_version", "0.1.0"),
            "deployment.environment": self.config.get("environment", "development"),
            **self.config.get("resource_attributes", {})
        })
        endpoint = self.config.get("otlp_endpoint", "http://localhost:4317")
        timeout = self.config.get("export_timeout", 30)

        # Tracing
        self._tracer_provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.config.get("trace_sampling_ratio", 1.0))
        )
        self._tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, timeout=timeout))
        )
        trace.set_tracer_provider(self._tracer_provider)

        # Metrics
        metric_reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=endpoint, timeout=timeout),
            export_interval_millis=10000  # 10 seconds
        )
        self._meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
        metrics.set_meter_provider(self._meter_provider)

        self._initialized = True
        logger.info(f"OpenTelemetry initialized, exporting to {endpoint}")

    def get_tracer(self) -> trace.Tracer:
        """Get a tracer from the active provider."""
        return trace.get_tracer(TRACER_NAME)

    def get_meter(self) -> metrics.Meter:
        """Get a meter from the active provider."""
        return metrics.get_meter(TRACER_NAME)

    def shutdown(self) -> None:
        """Gracefully shutdown telemetry and flush pending data."""
        if not self._initialized:
            return

        try:
            if self._tracer_provider is not None:
                self._tracer_provider.shutdown()
            if self._meter_provider is not None:
                self._meter_provider.shutdown()
            logger.info("OpenTelemetry shutdown completed")
        except Exception as e:
            # Exporter failures during shutdown must not mask the exit path
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


# Global telemetry manager instance
_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize the global telemetry manager.

    Exporters are only installed when ``enabled`` is set; otherwise the
    no-op API providers stay in place.
    """
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(config)
    if config.get("enabled", False):
        _telemetry_manager.initialize()
    else:
        logger.debug("Telemetry export disabled")
    return _telemetry_manager


def shutdown_telemetry() -> None:
    """Shutdown the global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


def get_tracer() -> trace.Tracer:
    """Get the Parley tracer (no-op until telemetry is initialized)."""
    return trace.get_tracer(TRACER_NAME)
