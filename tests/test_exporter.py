"""Tests for the OTLP gRPC metrics exporter."""

from __future__ import annotations

import logging
import threading
from concurrent import futures

import grpc
import pytest
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
    ExportMetricsServiceResponse,
)
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2_grpc import (
    MetricsServiceServicer,
    add_MetricsServiceServicer_to_server,
)

from gpumon._exporter import (
    OTLPMetricExporter,
    _build_export_request,
    _make_attribute,
    _point_to_otlp,
)
from gpumon._types import MetricPoint, ValueType


def _make_point(**overrides: object) -> MetricPoint:
    """Create a MetricPoint with sensible defaults."""
    defaults: dict[str, object] = {
        "name": "gpu.memory_used_bytes",
        "value": 42 * 1024**3,
        "time_unix_nano": 1_000_000_000,
        "value_type": ValueType.INT,
        "unit": "By",
        "description": "GPU memory in use",
        "attributes": (("gpu_id", "GPU-0000"), ("gpu_name", "NVIDIA H100 80GB HBM3")),
    }
    defaults.update(overrides)
    return MetricPoint(**defaults)  # type: ignore[arg-type]


class TestMakeAttribute:
    def test_string(self) -> None:
        kv = _make_attribute("key", "value")
        assert kv.key == "key"
        assert kv.value.string_value == "value"

    def test_int(self) -> None:
        assert _make_attribute("key", 42).value.int_value == 42

    def test_float(self) -> None:
        assert _make_attribute("key", 3.14).value.double_value == pytest.approx(3.14)

    def test_bool_is_not_int(self) -> None:
        """bool is a subclass of int; it must still map to bool_value."""
        assert _make_attribute("key", True).value.HasField("bool_value")
        assert _make_attribute("key", 1).value.HasField("int_value")


class TestPointToOtlp:
    def test_int_point(self) -> None:
        dp = _point_to_otlp(_make_point(value=7))
        assert dp.WhichOneof("value") == "as_int"
        assert dp.as_int == 7
        assert dp.time_unix_nano == 1_000_000_000

    def test_float_point(self) -> None:
        dp = _point_to_otlp(_make_point(value=85.5, value_type=ValueType.FLOAT))
        assert dp.WhichOneof("value") == "as_double"
        assert dp.as_double == pytest.approx(85.5)

    def test_attributes(self) -> None:
        dp = _point_to_otlp(_make_point())
        attrs = {a.key: a.value.string_value for a in dp.attributes}
        assert attrs == {"gpu_id": "GPU-0000", "gpu_name": "NVIDIA H100 80GB HBM3"}


class TestBuildExportRequest:
    def test_resource_attributes(self) -> None:
        req = _build_export_request([_make_point()], "gpu-mon")
        assert len(req.resource_metrics) == 1
        resource = req.resource_metrics[0].resource
        attrs = {a.key: a.value.string_value for a in resource.attributes}
        assert attrs["service.name"] == "gpu-mon"
        assert attrs["telemetry.sdk.name"] == "gpumon"
        assert attrs["telemetry.sdk.version"] == "0.1.0"

    def test_scope_info(self) -> None:
        req = _build_export_request([_make_point()], "svc")
        scope = req.resource_metrics[0].scope_metrics[0].scope
        assert scope.name == "gpumon"
        assert scope.version == "0.1.0"

    def test_points_grouped_by_metric_name(self) -> None:
        points = [
            _make_point(attributes=(("gpu_id", "GPU-0000"),)),
            _make_point(attributes=(("gpu_id", "GPU-0001"),)),
            _make_point(
                name="gpu.utilization_percent", value=85, unit="%", description="util"
            ),
        ]
        req = _build_export_request(points, "svc")
        metrics = {m.name: m for m in req.resource_metrics[0].scope_metrics[0].metrics}
        assert set(metrics) == {"gpu.memory_used_bytes", "gpu.utilization_percent"}

        mem = metrics["gpu.memory_used_bytes"]
        assert mem.unit == "By"
        assert mem.WhichOneof("data") == "gauge"
        assert len(mem.gauge.data_points) == 2
        ids = {dp.attributes[0].value.string_value for dp in mem.gauge.data_points}
        assert ids == {"GPU-0000", "GPU-0001"}
        assert metrics["gpu.utilization_percent"].unit == "%"


class TestOTLPMetricExporter:
    def test_export_empty_batch(self) -> None:
        exporter = OTLPMetricExporter("localhost:4317", "svc", insecure=True)
        exporter.export([])  # Should not raise
        exporter.shutdown()

    def test_graceful_failure_bad_endpoint(self, caplog: pytest.LogCaptureFixture) -> None:
        exporter = OTLPMetricExporter("localhost:1", "svc", insecure=True, timeout_s=0.1)
        with caplog.at_level(logging.WARNING, logger="gpumon.exporter"):
            exporter.export([_make_point()])  # Must not raise
        exporter.shutdown()
        assert "Failed to export 1 metric points" in caplog.text

    def test_export_after_shutdown_is_noop(self) -> None:
        exporter = OTLPMetricExporter("localhost:1", "svc", insecure=True, timeout_s=0.1)
        exporter.shutdown()
        exporter.export([_make_point()])  # Should not raise

    def test_shutdown_idempotent(self) -> None:
        exporter = OTLPMetricExporter("localhost:4317", "svc")
        exporter.shutdown()
        exporter.shutdown()  # Should not raise


class _CollectorServicer(MetricsServiceServicer):
    """In-process gRPC servicer that records export requests and their metadata."""

    def __init__(self) -> None:
        self.requests: list[ExportMetricsServiceRequest] = []
        self.metadata: list[dict[str, str]] = []
        self._lock = threading.Lock()

    def Export(  # noqa: N802
        self,
        request: ExportMetricsServiceRequest,
        context: grpc.ServicerContext,
    ) -> ExportMetricsServiceResponse:
        with self._lock:
            self.requests.append(request)
            self.metadata.append(dict(context.invocation_metadata()))  # type: ignore[arg-type]
        return ExportMetricsServiceResponse()


class TestWithMockGrpcServer:
    """Integration test with an in-process gRPC server."""

    def test_export_received_by_server(self) -> None:
        servicer = _CollectorServicer()
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
        add_MetricsServiceServicer_to_server(servicer, server)
        port = server.add_insecure_port("localhost:0")
        server.start()

        try:
            exporter = OTLPMetricExporter(
                f"localhost:{port}",
                "test-gpu-mon",
                headers={"X-Honeycomb-Team": "secret"},
                insecure=True,
                timeout_s=5.0,
            )
            exporter.export([
                _make_point(attributes=(("gpu_id", "GPU-0000"),)),
                _make_point(attributes=(("gpu_id", "GPU-0001"),)),
            ])
            exporter.shutdown()

            assert len(servicer.requests) == 1
            req = servicer.requests[0]
            resource = req.resource_metrics[0].resource
            attrs = {a.key: a.value.string_value for a in resource.attributes}
            assert attrs["service.name"] == "test-gpu-mon"

            (metric,) = req.resource_metrics[0].scope_metrics[0].metrics
            assert metric.name == "gpu.memory_used_bytes"
            assert [dp.as_int for dp in metric.gauge.data_points] == [42 * 1024**3] * 2

            assert servicer.metadata[0]["x-honeycomb-team"] == "secret"
        finally:
            server.stop(grace=1)
