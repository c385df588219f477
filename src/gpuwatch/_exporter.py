"""OTLP gRPC exporter — converts GPUSnapshot batches to metric gauges and ships them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

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

from gpuwatch._version import __version__

if TYPE_CHECKING:
    from gpuwatch._types import GPUSnapshot

logger = logging.getLogger("gpuwatch.exporter")

# (metric name, unit, accessor). Fields that are absent on a snapshot are skipped.
GAUGES: tuple[tuple[str, str, Callable[[GPUSnapshot], float | int | None]], ...] = (
    ("gpu.utilization", "%", lambda s: s.performance.utilization),
    ("gpu.memory.utilization", "%", lambda s: s.performance.memory_utilization),
    ("gpu.memory.used", "MiB", lambda s: s.memory.used_mib),
    ("gpu.memory.total", "MiB", lambda s: s.memory.total_mib),
    ("gpu.memory.free", "MiB", lambda s: s.memory.free_mib),
    ("gpu.memory.change_rate", "MiB/s", lambda s: s.derived.memory_change_rate_mib_s),
    ("gpu.temperature", "Cel", lambda s: s.power_thermal.temperature_c),
    ("gpu.power.draw", "W", lambda s: s.power_thermal.power_draw_w),
    ("gpu.power.limit", "W", lambda s: s.power_thermal.power_limit_w),
    ("gpu.fan.speed", "%", lambda s: s.power_thermal.fan_speed_pct),
    ("gpu.clock.graphics", "MHz", lambda s: s.clocks.graphics.current_mhz),
    ("gpu.clock.sm", "MHz", lambda s: s.clocks.sm.current_mhz),
    ("gpu.clock.memory", "MHz", lambda s: s.clocks.memory.current_mhz),
    ("gpu.tflops.achieved", "TFLOPS", lambda s: s.derived.achieved_tflops),
    ("gpu.tflops.peak", "TFLOPS", lambda s: s.derived.peak_tflops),
    ("gpu.mfu", "%", lambda s: s.derived.mfu_percent),
    ("gpu.processes.compute", "{process}", lambda s: s.compute_processes_count),
    ("gpu.processes.graphics", "{process}", lambda s: s.graphics_processes_count),
)


def _make_attribute(key: str, value: str | int | float | bool) -> KeyValue:
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


def _device_attributes(snapshot: GPUSnapshot) -> list[KeyValue]:
    attrs = [_make_attribute("gpu.id", snapshot.device_id)]
    if snapshot.identity.uuid:
        attrs.append(_make_attribute("gpu.uuid", snapshot.identity.uuid))
    if snapshot.identity.name:
        attrs.append(_make_attribute("gpu.name", snapshot.identity.name))
    return attrs


def _data_point(snapshot: GPUSnapshot, value: float | int) -> NumberDataPoint:
    point = NumberDataPoint(
        time_unix_nano=int(snapshot.captured_at * 1_000_000_000),
        attributes=_device_attributes(snapshot),
    )
    if isinstance(value, int) and not isinstance(value, bool):
        point.as_int = value
    else:
        point.as_double = float(value)
    return point


def _build_export_request(
    snapshots: Iterable[GPUSnapshot],
    service_name: str,
    host_name: str | None = None,
) -> ExportMetricsServiceRequest:
    """Build an ExportMetricsServiceRequest with one gauge per metric name."""
    snapshots = list(snapshots)
    resource_attrs = [
        _make_attribute("service.name", service_name),
        _make_attribute("telemetry.sdk.name", "gpuwatch"),
        _make_attribute("telemetry.sdk.version", __version__),
    ]
    if host_name:
        resource_attrs.append(_make_attribute("host.name", host_name))

    metrics: list[Metric] = []
    for name, unit, accessor in GAUGES:
        points = []
        for snap in snapshots:
            value = accessor(snap)
            if value is not None:
                points.append(_data_point(snap, value))
        if points:
            metrics.append(Metric(name=name, unit=unit, gauge=Gauge(data_points=points)))

    scope = InstrumentationScope(name="gpuwatch", version=__version__)
    scope_metrics = ScopeMetrics(scope=scope, metrics=metrics)
    resource_metrics = ResourceMetrics(
        resource=Resource(attributes=resource_attrs),
        scope_metrics=[scope_metrics],
    )
    return ExportMetricsServiceRequest(resource_metrics=[resource_metrics])


class OTLPMetricsExporter:
    """Exports snapshot batches over gRPC using the OTLP metrics protocol.

    Failures are logged but never raised; a broken collector must not stop
    the polling loop that feeds this exporter.
    """

    def __init__(
        self,
        endpoint: str,
        service_name: str = "gpuwatch",
        *,
        host_name: str | None = None,
        insecure: bool = True,
        timeout_s: float = 10.0,
        api_key: str | None = None,
    ) -> None:
        self._service_name = service_name
        self._host_name = host_name
        self._timeout_s = timeout_s
        self._metadata: list[tuple[str, str]] | None = None
        if api_key is not None:
            self._metadata = [("authorization", f"Bearer {api_key}")]

        if insecure:
            self._channel = grpc.insecure_channel(endpoint)
        else:
            self._channel = grpc.secure_channel(endpoint, grpc.ssl_channel_credentials())

        self._stub = MetricsServiceStub(self._channel)  # type: ignore[no-untyped-call]
        self._closed = False

    def export(self, snapshots: Iterable[GPUSnapshot]) -> None:
        """Export a batch of snapshots. Logs and swallows all errors."""
        snapshots = list(snapshots)
        if not snapshots or self._closed:
            return
        try:
            request = _build_export_request(snapshots, self._service_name, self._host_name)
            self._stub.Export(request, timeout=self._timeout_s, metadata=self._metadata)
        except Exception:  # noqa: BLE001
            logger.debug("Failed to export %d snapshots", len(snapshots), exc_info=True)

    def shutdown(self) -> None:
        """Close the gRPC channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._channel.close()
        except Exception:  # noqa: BLE001
            logger.debug("Failed to close exporter channel", exc_info=True)
