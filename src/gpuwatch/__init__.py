"""gpuwatch: GPU telemetry collection for NVIDIA devices."""

from __future__ import annotations

from gpuwatch._config import GPUWatchConfig
from gpuwatch._errors import BackendUnavailableError, GPUWatchError, UnknownDeviceError
from gpuwatch._exporter import OTLPMetricsExporter
from gpuwatch._monitor import GPUMonitor, initialize
from gpuwatch._types import (
    BackendKind,
    ClockMetrics,
    ClockReading,
    ConnectivityMetrics,
    DerivedMetrics,
    DeviceIdentity,
    GPUSnapshot,
    MemoryMetrics,
    PerformanceMetrics,
    PowerThermalMetrics,
    ProcessInfo,
    WorkloadType,
)
from gpuwatch._version import __version__

__all__ = [
    "BackendKind",
    "BackendUnavailableError",
    "ClockMetrics",
    "ClockReading",
    "ConnectivityMetrics",
    "DerivedMetrics",
    "DeviceIdentity",
    "GPUMonitor",
    "GPUSnapshot",
    "GPUWatchConfig",
    "GPUWatchError",
    "MemoryMetrics",
    "OTLPMetricsExporter",
    "PerformanceMetrics",
    "PowerThermalMetrics",
    "ProcessInfo",
    "UnknownDeviceError",
    "WorkloadType",
    "__version__",
    "initialize",
]
