"""OpenTelemetry traces and metrics for ticks.

Each tick is traced as a ``tickgov.tick`` span with one child span per
phase. Metrics count ticks, verdicts, agent calls, verification runs,
rollbacks, tokens and cost. Export goes to an OTLP collector when
``OTLP_ENABLED=true``; otherwise SDK providers without exporters are
installed so spans and instruments still work.

The CLI runs one tick per process, so ``shutdown_telemetry()`` must be
called before exit to flush batched spans.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider

from tickgov import __version__
from tickgov.config import TickgovConfig

logger = logging.getLogger(__name__)

# gRPC exporter logs every failed export when the collector is down
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Set by create_metrics()
ticks_counter: metrics.Counter
verdicts_counter: metrics.Counter
agent_calls_counter: metrics.Counter
verify_runs_counter: metrics.Counter
rollbacks_counter: metrics.Counter
tokens_counter: metrics.Counter
cost_counter: metrics.Counter
tick_duration: metrics.Histogram

_providers: list[TracerProvider | MeterProvider] = []


def otlp_enabled() -> bool:
    return os.getenv("OTLP_ENABLED", "false").lower() == "true"


def setup_telemetry(config: TickgovConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Install tracer and meter providers for this process.

    Args:
        config: tickgov configuration (telemetry endpoint and service name)

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    settings = config.telemetry
    resource = Resource.create(
        {SERVICE_NAME: settings.service_name, "service.version": __version__}
    )
    trace_provider = TracerProvider(resource=resource)

    if otlp_enabled() and settings.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )
        reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=settings.otlp_endpoint))
        meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
        logger.debug("Exporting telemetry to %s", settings.otlp_endpoint)
    else:
        meter_provider = MeterProvider(resource=resource)

    trace.set_tracer_provider(trace_provider)
    metrics.set_meter_provider(meter_provider)
    _providers[:] = [trace_provider, meter_provider]

    return (
        trace.get_tracer("tickgov", __version__),
        metrics.get_meter("tickgov", __version__),
    )


def shutdown_telemetry() -> None:
    """Flush and shut down the providers installed by setup_telemetry()."""
    while _providers:
        provider = _providers.pop()
        try:
            provider.shutdown()
        except Exception as e:
            logger.warning("Telemetry shutdown failed: %s", e)


def create_metrics(meter: metrics.Meter) -> None:
    """Create the tick metric instruments."""
    global ticks_counter, verdicts_counter, agent_calls_counter, verify_runs_counter
    global rollbacks_counter, tokens_counter, cost_counter, tick_duration

    ticks_counter = meter.create_counter("tickgov_ticks_total", description="Ticks run")
    verdicts_counter = meter.create_counter(
        "tickgov_verdicts_total", description="Tick outcomes by verdict and code"
    )
    agent_calls_counter = meter.create_counter(
        "tickgov_agent_calls_total", description="Agent invocations by role"
    )
    verify_runs_counter = meter.create_counter(
        "tickgov_verify_runs_total", description="Verification commands executed"
    )
    rollbacks_counter = meter.create_counter(
        "tickgov_rollbacks_total", description="Rollbacks after policy violations"
    )
    tokens_counter = meter.create_counter(
        "tickgov_tokens_total", description="Agent tokens by kind (input, output, cache)"
    )
    cost_counter = meter.create_counter(
        "tickgov_cost_usd_total", description="Estimated agent cost in USD"
    )
    tick_duration = meter.create_histogram(
        "tickgov_tick_duration_seconds", description="Tick wall-clock duration", unit="s"
    )
