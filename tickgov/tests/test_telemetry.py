"""Tests for telemetry setup and tick metrics."""

import os
from unittest.mock import patch

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from tickgov import codes, telemetry
from tickgov.config import TickgovConfig
from tickgov.report import build_report
from tickgov.state import TokenUsage, create_initial_state
from tickgov.tick import _Findings, _record_metrics


class TestSetupTelemetry:
    """Tests for setup_telemetry() and shutdown_telemetry()."""

    def test_returns_tracer_and_meter(self):
        tracer, meter = telemetry.setup_telemetry(TickgovConfig())
        try:
            with tracer.start_as_current_span("tickgov.test"):
                pass
            assert meter is not None
        finally:
            telemetry.shutdown_telemetry()

        assert telemetry._providers == []

    def test_uses_otlp_endpoint_when_enabled(self):
        pytest.importorskip("opentelemetry.exporter.otlp.proto.grpc")
        config = TickgovConfig()
        config.telemetry.otlp_endpoint = "http://collector:4317"

        with patch.dict(os.environ, {"OTLP_ENABLED": "true"}):
            with patch(
                "opentelemetry.exporter.otlp.proto.grpc.trace_exporter.OTLPSpanExporter"
            ) as span_exporter:
                with patch(
                    "opentelemetry.exporter.otlp.proto.grpc.metric_exporter.OTLPMetricExporter"
                ) as metric_exporter:
                    telemetry.setup_telemetry(config)
                    telemetry.shutdown_telemetry()

        span_exporter.assert_called_with(endpoint="http://collector:4317")
        metric_exporter.assert_called_with(endpoint="http://collector:4317")

    def test_otlp_disabled_by_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert not telemetry.otlp_enabled()
        with patch.dict(os.environ, {"OTLP_ENABLED": "TRUE"}):
            assert telemetry.otlp_enabled()


class TestTickMetrics:
    """Tests for metrics recorded at the end of a tick."""

    def test_records_verdict_tokens_and_cost(self):
        reader = InMemoryMetricReader()
        meter = MeterProvider(metric_readers=[reader]).get_meter("test")
        telemetry.create_metrics(meter)
        state = create_initial_state()
        report = build_report(run_id=state.run_id, started_at=state.started_at, code=codes.STOP_DIFF_TOO_LARGE)
        findings = _Findings(orchestrator_calls=1, builder_calls=1, rollbacks=1)

        _record_metrics(report, findings, TokenUsage(input_tokens=120, output_tokens=30, cost_usd=0.25))

        points = {}
        for resource_metrics in reader.get_metrics_data().resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    points[metric.name] = list(metric.data.data_points)

        verdict = points["tickgov_verdicts_total"][0]
        assert verdict.attributes == {"verdict": "stop", "code": codes.STOP_DIFF_TOO_LARGE}
        tokens = {p.attributes["kind"]: p.value for p in points["tickgov_tokens_total"]}
        assert tokens == {"input": 120, "output": 30, "cache": 0}
        assert points["tickgov_cost_usd_total"][0].value == pytest.approx(0.25)
        assert points["tickgov_rollbacks_total"][0].value == 1
