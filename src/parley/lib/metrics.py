"""
Metrics collection for Parley negotiations.

Wraps OpenTelemetry instruments for negotiation outcomes, agent turns and
provider latency.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import metrics


@dataclass
class NegotiationMetrics:
    """Summary of one finished turn-loop run."""
    session_id: str
    outcome: str
    rounds: int
    turn_count: int
    duration_ms: int


class MetricsCollector:
    """Collects and manages Parley metrics."""

    def __init__(self, meter: Optional[metrics.Meter] = None):
        self.meter = meter or metrics.get_meter("parley")
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry metric instruments."""
        self.negotiations_started = self.meter.create_counter(
            name="parley_negotiations_started_total",
            description="Turn-loop runs started",
            unit="1"
        )

        self.negotiations_finished = self.meter.create_counter(
            name="parley_negotiations_finished_total",
            description="Turn-loop runs finished, by outcome",
            unit="1"
        )

        self.negotiation_rounds = self.meter.create_histogram(
            name="parley_negotiation_rounds",
            description="Rounds completed when a run finished",
            unit="1"
        )

        self.negotiation_duration = self.meter.create_histogram(
            name="parley_negotiation_duration_ms",
            description="Duration of turn-loop runs",
            unit="ms"
        )

        self.agent_turns = self.meter.create_counter(
            name="parley_agent_turns_total",
            description="Sealed agent turns by party and action",
            unit="1"
        )

        self.provider_duration = self.meter.create_histogram(
            name="parley_provider_duration_ms",
            description="Completion provider streaming duration",
            unit="ms"
        )

        self.provider_errors = self.meter.create_counter(
            name="parley_provider_errors_total",
            description="Completion provider failures by type",
            unit="1"
        )

        self.active_negotiations = self.meter.create_up_down_counter(
            name="parley_active_negotiations",
            description="Turn loops currently running",
            unit="1"
        )

    def record_negotiation_started(self, session_id: str, resumed: bool) -> None:
        """Record a turn-loop run start."""
        self.negotiations_started.add(1, {"resumed": str(resumed)})
        self.active_negotiations.add(1)

    def record_negotiation_finished(self, summary: NegotiationMetrics) -> None:
        """Record a turn-loop run end."""
        attributes = {"outcome": summary.outcome}
        self.negotiations_finished.add(1, attributes)
        self.negotiation_rounds.record(summary.rounds, attributes)
        self.negotiation_duration.record(summary.duration_ms, attributes)
        self.active_negotiations.add(-1)

    def record_agent_turn(self, party: str, action: str) -> None:
        """Record a sealed agent turn."""
        self.agent_turns.add(1, {"party": party, "action": action})

    def record_provider_call(self, model: str, duration_ms: int, error_type: Optional[str] = None) -> None:
        """Record one streamed completion."""
        attributes = {"model": model, "success": str(error_type is None)}
        self.provider_duration.record(duration_ms, attributes)
        if error_type is not None:
            self.provider_errors.add(1, {"model": model, "error_type": error_type})

    @contextmanager
    def time_provider_call(self, model: str) -> Iterator[None]:
        """Time a provider call, recording failures by exception type."""
        start = time.monotonic()
        try:
            yield
        except BaseException as e:
            self.record_provider_call(model, int((time.monotonic() - start) * 1000), type(e).__name__)
            raise
        self.record_provider_call(model, int((time.monotonic() - start) * 1000))


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def initialize_metrics(meter: Optional[metrics.Meter] = None) -> MetricsCollector:
    """Initialize the global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector, or None before initialization."""
    return _metrics_collector
