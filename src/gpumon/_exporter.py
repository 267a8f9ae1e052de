"""OTLP gRPC exporter: converts MetricPoint batches to protobuf and ships them."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import grpc
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
)
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2_grpc import (
    MetricsServiceStub,
)
from opentelemetry.proto.common.v1.common_pb2 import (
    AnyValue,
    InstrumentationScope,
    KeyValue,
)
from opentelemetry.proto.metrics.v1.metrics_pb2 import (
    Gauge,
    Metric,
    NumberDataPoint,
    ResourceMetrics,
    ScopeMetrics,
)
from opentelemetry.proto.resource.v1.resource_pb2 import Resource

from gpumon._types import AttributeValue, MetricPoint, ValueType

logger = logging.getLogger("gpumon.exporter")

SDK_NAME = "gpumon"
SDK_VERSION = "0.1.0"


def _make_attribute(key: str, value: AttributeValue) -> KeyValue:
    """Convert a Python key-value pair to an OTLP KeyValue protobuf."""
    if isinstance(value, bool):
        av = AnyValue(bool_value=value)
    elif isinstance(value, int):
        av = AnyValue(int_value=value)
    elif isinstance(value, float):
        av = AnyValue(double_value=value)
    else:
        av = AnyValue(string_value=str(value))
    return KeyValue(key=key, value=av)


def _point_to_otlp(point: MetricPoint) -> NumberDataPoint:
    """Convert a single MetricPoint to an OTLP NumberDataPoint."""
    attrs = [_make_attribute(k, v) for k, v in point.attributes]
    if point.value_type is ValueType.INT:
        return NumberDataPoint(
            attributes=attrs, time_unix_nano=point.time_unix_nano, as_int=int(point.value)
        )
    return NumberDataPoint(
        attributes=attrs, time_unix_nano=point.time_unix_nano, as_double=float(point.value)
    )


def _build_export_request(
    points: list[MetricPoint],
    service_name: str,
) -> ExportMetricsServiceRequest:
    """Build an ExportMetricsServiceRequest, one Gauge metric per metric name."""
    resource_attrs = [
        _make_attribute("service.name", service_name),
        _make_attribute("telemetry.sdk.name", SDK_NAME),
        _make_attribute("telemetry.sdk.version", SDK_VERSION),
    ]

    grouped: dict[str, list[MetricPoint]] = {}
    for point in points:
        grouped.setdefault(point.name, []).append(point)

    metrics = [
        Metric(
            name=name,
            unit=group[0].unit,
            description=group[0].description,
            gauge=Gauge(data_points=[_point_to_otlp(p) for p in group]),
        )
        for name, group in grouped.items()
    ]

    resource = Resource(attributes=resource_attrs)
    scope = InstrumentationScope(name=SDK_NAME, version=SDK_VERSION)
    scope_metrics = ScopeMetrics(scope=scope, metrics=metrics)
    resource_metrics = ResourceMetrics(resource=resource, scope_metrics=[scope_metrics])

    return ExportMetricsServiceRequest(resource_metrics=[resource_metrics])


class OTLPMetricExporter:
    """Exports MetricPoint batches over gRPC using the OTLP metrics protocol.

    Failures are logged but never raised; a backend outage shows up as a gap
    in the dashboard, not as a dead collector.
    """

    def __init__(
        self,
        endpoint: str,
        service_name: str,
        *,
        headers: Mapping[str, str] | None = None,
        insecure: bool = False,
        timeout_s: float = 10.0,
    ) -> None:
        self._endpoint = endpoint
        self._service_name = service_name
        self._timeout_s = timeout_s
        self._metadata: list[tuple[str, str]] | None = None
        if headers:
            # gRPC rejects metadata keys with upper-case characters.
            self._metadata = [(k.lower(), v) for k, v in headers.items()]

        if insecure:
            self._channel = grpc.insecure_channel(endpoint)
        else:
            self._channel = grpc.secure_channel(endpoint, grpc.ssl_channel_credentials())

        self._stub = MetricsServiceStub(self._channel)  # type: ignore[no-untyped-call]
        self._closed = False

    def export(self, points: list[MetricPoint]) -> None:
        """Export a batch of points. Logs and swallows all errors."""
        if not points or self._closed:
            return
        try:
            request = _build_export_request(points, self._service_name)
            self._stub.Export(request, timeout=self._timeout_s, metadata=self._metadata)
        except grpc.RpcError as exc:
            logger.warning(
                "Failed to export %d metric points to %s: %s", len(points), self._endpoint, exc
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to export %d metric points", len(points), exc_info=True)

    def shutdown(self) -> None:
        """Close the gRPC channel."""
        if self._closed:
            return
        self._closed = True
        try:
            self._channel.close()
        except Exception:  # noqa: BLE001
            logger.debug("Error closing gRPC channel", exc_info=True)
