"""
Metrics collection for orchestration and inference monitoring.

Wraps OpenTelemetry instruments for turns, routing, inference, the
embedding cache and the action gate.
"""

from typing import Optional

from opentelemetry import metrics

from .observability import get_meter


class MetricsCollector:
    """Collects and manages Tandem metrics."""

    def __init__(self, meter: Optional[metrics.Meter] = None):
        self.meter = meter or get_meter()
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry metric instruments."""
        # Conversation metrics
        self.turns_appended = self.meter.create_counter(
            name="tandem_turns_appended_total",
            description="Turns appended by author and kind",
            unit="1"
        )

        self.session_lock_conflicts = self.meter.create_counter(
            name="tandem_session_lock_conflicts_total",
            description="Appends rejected because the session was locked",
            unit="1"
        )

        self.active_sessions = self.meter.create_up_down_counter(
            name="tandem_active_sessions",
            description="Number of open sessions",
            unit="1"
        )

        # Routing and inference metrics
        self.routing_decisions = self.meter.create_counter(
            name="tandem_routing_decisions_total",
            description="Routing decisions by backend and tier",
            unit="1"
        )

        self.routing_failures = self.meter.create_counter(
            name="tandem_routing_failures_total",
            description="Requests no backend could serve",
            unit="1"
        )

        self.inference_duration = self.meter.create_histogram(
            name="tandem_inference_duration_ms",
            description="Inference wall time",
            unit="ms"
        )

        self.inference_outcomes = self.meter.create_counter(
            name="tandem_inference_outcomes_total",
            description="Inference outcomes by backend and status",
            unit="1"
        )

        self.inference_fallbacks = self.meter.create_counter(
            name="tandem_inference_fallbacks_total",
            description="Fallbacks from one backend to another",
            unit="1"
        )

        # Embedding cache metrics
        self.cache_lookups = self.meter.create_counter(
            name="tandem_embedding_cache_lookups_total",
            description="Embedding cache lookups by result",
            unit="1"
        )

        self.cache_evictions = self.meter.create_counter(
            name="tandem_embedding_cache_evictions_total",
            description="Entries evicted from the embedding cache",
            unit="1"
        )

        # Action gate metrics
        self.actions_proposed = self.meter.create_counter(
            name="tandem_actions_proposed_total",
            description="Proposed actions by kind and classification",
            unit="1"
        )

        self.action_decisions = self.meter.create_counter(
            name="tandem_action_decisions_total",
            description="Approval decisions by result",
            unit="1"
        )

    def record_turn(self, author: str, kind: str) -> None:
        self.turns_appended.add(1, {"author": author, "kind": kind})

    def record_lock_conflict(self, session_id: str) -> None:
        self.session_lock_conflicts.add(1, {"session_id": session_id})

    def record_session_opened(self) -> None:
        self.active_sessions.add(1)

    def record_session_archived(self) -> None:
        self.active_sessions.add(-1)

    def record_routing(self, backend_id: Optional[str], tier: Optional[str]) -> None:
        if backend_id is None:
            self.routing_failures.add(1)
            return
        self.routing_decisions.add(1, {"backend_id": backend_id, "tier": tier or "unknown"})

    def record_inference(self, backend_id: str, status: str, duration_ms: float) -> None:
        labels = {"backend_id": backend_id, "status": status}
        self.inference_duration.record(duration_ms, labels)
        self.inference_outcomes.add(1, labels)

    def record_fallback(self, from_backend: str, reason: str) -> None:
        self.inference_fallbacks.add(1, {"from_backend": from_backend, "reason": reason})

    def record_cache_lookup(self, hit: bool) -> None:
        self.cache_lookups.add(1, {"result": "hit" if hit else "miss"})

    def record_cache_eviction(self, count: int = 1) -> None:
        self.cache_evictions.add(count)

    def record_action_proposed(self, kind: str, classification: str) -> None:
        self.actions_proposed.add(1, {"kind": kind, "classification": classification})

    def record_action_decision(self, kind: str, result: str) -> None:
        self.action_decisions.add(1, {"kind": kind, "result": result})


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics() -> None:
    """Drop the global collector so the next call binds to the current meter provider."""
    global _metrics_collector
    _metrics_collector = None
