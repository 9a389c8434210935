"""
OpenTelemetry configuration with OTLP exporters for Tandem.

Sets up tracing and metrics export and provides span helpers for turns,
inference calls and approval decisions. Until telemetry is initialized the
helpers run against the global no-op providers, so instrumented code paths
work unchanged in tests and in embedded use.
"""

import logging
import os
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
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor


logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "tandem"


class TelemetrySettings:
    """Settings for OpenTelemetry setup."""

    def __init__(self, config: Dict[str, Any]):
        self.service_name = config.get("service_name", "tandem-orchestrator")
        self.service_version = config.get("service_version", "0.1.0")
        self.environment = config.get("environment", "development")

        self.otlp_endpoint = config.get("otlp_endpoint", os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317"))
        self.metrics_endpoint = config.get("metrics_endpoint", self.otlp_endpoint)
        self.traces_endpoint = config.get("traces_endpoint", self.otlp_endpoint)

        self.export_timeout = config.get("export_timeout", 30)
        self.batch_export_timeout = config.get("batch_export_timeout", 30)
        self.max_export_batch_size = config.get("max_export_batch_size", 512)
        self.metric_export_interval_ms = config.get("metric_export_interval_ms", 10000)

        self.trace_sampling_ratio = config.get("trace_sampling_ratio", 1.0)
        self.resource_attributes = config.get("resource_attributes", {})


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle."""

    def __init__(self, settings: TelemetrySettings):
        self.settings = settings
        self._initialized = False
        self._resource: Optional[Resource] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Initialize OpenTelemetry with OTLP exporters."""
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return

        self._setup_resource()
        self._setup_tracing()
        self._setup_metrics()
        self._setup_instrumentation()

        self._initialized = True
        logger.info(f"OpenTelemetry initialized for service: {self.settings.service_name}")

    def _setup_resource(self) -> None:
        resource_attrs = {
            "service.name": self.settings.service_name,
            "service.version": self.settings.service_version,
            "deployment.environment": self.settings.environment,
            **self.settings.resource_attributes
        }
        self._resource = Resource.create(resource_attrs)

    def _setup_tracing(self) -> None:
        trace_exporter = OTLPSpanExporter(
            endpoint=self.settings.traces_endpoint,
            timeout=self.settings.export_timeout
        )
        span_processor = BatchSpanProcessor(
            trace_exporter,
            max_export_batch_size=self.settings.max_export_batch_size,
            export_timeout_millis=self.settings.batch_export_timeout * 1000
        )
        tracer_provider = TracerProvider(
            resource=self._resource,
            sampler=TraceIdRatioBased(self.settings.trace_sampling_ratio)
        )
        tracer_provider.add_span_processor(span_processor)
        trace.set_tracer_provider(tracer_provider)

    def _setup_metrics(self) -> None:
        metric_exporter = OTLPMetricExporter(
            endpoint=self.settings.metrics_endpoint,
            timeout=self.settings.export_timeout
        )
        metric_reader = PeriodicExportingMetricReader(
            exporter=metric_exporter,
            export_interval_millis=self.settings.metric_export_interval_ms
        )
        meter_provider = MeterProvider(
            resource=self._resource,
            metric_readers=[metric_reader]
        )
        metrics.set_meter_provider(meter_provider)

    def _setup_instrumentation(self) -> None:
        AsyncioInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)
        logger.info("Automatic instrumentation configured")

    def shutdown(self) -> None:
        """Gracefully shutdown telemetry and flush pending data."""
        if not self._initialized:
            return

        try:
            tracer_provider = trace.get_tracer_provider()
            if hasattr(tracer_provider, 'shutdown'):
                tracer_provider.shutdown()

            meter_provider = metrics.get_meter_provider()
            if hasattr(meter_provider, 'shutdown'):
                meter_provider.shutdown()

            logger.info("OpenTelemetry shutdown completed")
        except Exception as e:
            # Exporter failures at shutdown must not mask the caller's own exit path
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


# Global telemetry manager instance
_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize global telemetry manager."""
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(TelemetrySettings(config))
    _telemetry_manager.initialize()
    return _telemetry_manager


def shutdown_telemetry() -> None:
    """Shutdown global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


def get_tracer() -> trace.Tracer:
    """Tracer from the active provider (no-op until telemetry is initialized)."""
    return trace.get_tracer(INSTRUMENTATION_NAME)


def get_meter() -> metrics.Meter:
    """Meter from the active provider (no-op until telemetry is initialized)."""
    return metrics.get_meter(INSTRUMENTATION_NAME)


def turn_span(session_id: str, author: str, operation: str = "submit"):
    """Context manager span around a turn submission."""
    return get_tracer().start_as_current_span(
        name=f"conversation.turn.{operation}",
        attributes={
            "conversation.session_id": session_id,
            "conversation.author": author,
        }
    )


def inference_span(backend_id: str, request_id: str, session_id: Optional[str] = None):
    """Context manager span around one inference attempt."""
    attributes = {
        "inference.backend_id": backend_id,
        "inference.request_id": request_id,
    }
    if session_id:
        attributes["conversation.session_id"] = session_id
    return get_tracer().start_as_current_span(name="inference.run", attributes=attributes)


def approval_span(action_id: str, kind: str, session_id: Optional[str] = None):
    """Context manager span around an approval decision."""
    attributes = {
        "approval.action_id": action_id,
        "approval.kind": kind,
    }
    if session_id:
        attributes["conversation.session_id"] = session_id
    return get_tracer().start_as_current_span(name="approval.decision", attributes=attributes)
