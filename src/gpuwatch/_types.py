"""Core types: enums, per-group metric records and the normalized snapshot."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any


class BackendKind(enum.Enum):
    """Access path used to obtain raw device readings."""

    NVML = "nvml"
    SMI = "nvidia-smi"
    UNAVAILABLE = "unavailable"


class WorkloadType(enum.Enum):
    """Kind of GPU context a process holds."""

    COMPUTE = "compute"
    GRAPHICS = "graphics"


def _compact(value: Any) -> Any:
    """Recursively convert records to plain data, dropping absent fields."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, tuple):
        return [_compact(v) for v in value]
    if is_dataclass(value):
        out: dict[str, Any] = {}
        for f in fields(value):
            v = getattr(value, f.name)
            if v is None:
                continue
            out[f.name] = _compact(v)
        return out
    return value


@dataclass(frozen=True)
class DeviceIdentity:
    """Static-ish identification of a device. Every field is optional."""

    name: str | None = None
    uuid: str | None = None
    driver_version: str | None = None
    vbios_version: str | None = None
    brand: str | None = None
    architecture: str | None = None
    compute_capability: tuple[int, int] | None = None
    serial: str | None = None


@dataclass(frozen=True)
class PerformanceMetrics:
    utilization: float | None = None
    memory_utilization: float | None = None
    performance_state: str | None = None
    compute_mode: str | None = None


@dataclass(frozen=True)
class MemoryMetrics:
    """Framebuffer and BAR1 memory, in MiB."""

    used_mib: float | None = None
    total_mib: float | None = None
    free_mib: float | None = None
    bar1_used_mib: float | None = None
    bar1_total_mib: float | None = None


@dataclass(frozen=True)
class PowerThermalMetrics:
    temperature_c: float | None = None
    power_draw_w: float | None = None
    power_limit_w: float | None = None
    power_limit_min_w: float | None = None
    power_limit_max_w: float | None = None
    fan_speed_pct: float | None = None
    throttle_reasons: tuple[str, ...] | None = None


@dataclass(frozen=True)
class ClockReading:
    """One clock domain, in MHz."""

    current_mhz: float | None = None
    max_mhz: float | None = None
    application_mhz: float | None = None
    default_application_mhz: float | None = None


@dataclass(frozen=True)
class ClockMetrics:
    graphics: ClockReading = field(default_factory=ClockReading)
    sm: ClockReading = field(default_factory=ClockReading)
    memory: ClockReading = field(default_factory=ClockReading)
    video: ClockReading = field(default_factory=ClockReading)


@dataclass(frozen=True)
class ConnectivityMetrics:
    pcie_gen: int | None = None
    pcie_gen_max: int | None = None
    pcie_width: int | None = None
    pcie_width_max: int | None = None
    pci_bus_id: str | None = None


@dataclass(frozen=True)
class DerivedMetrics:
    """Point-in-time analytics computed from a snapshot and its predecessor.

    ``peak_tflops``, ``achieved_tflops`` and ``mfu_percent`` are all ``0.0``
    when the device model is not in the peak-throughput table: that means
    "unmeasurable", not "idle".
    """

    memory_change_rate_mib_s: float | None = None
    achieved_tflops: float | None = None
    peak_tflops: float | None = None
    mfu_percent: float | None = None


@dataclass(frozen=True)
class GPUSnapshot:
    """Immutable, normalized reading of one device for one poll cycle."""

    device_id: str
    timestamp: str
    captured_at: float
    identity: DeviceIdentity = field(default_factory=DeviceIdentity)
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    memory: MemoryMetrics = field(default_factory=MemoryMetrics)
    power_thermal: PowerThermalMetrics = field(default_factory=PowerThermalMetrics)
    clocks: ClockMetrics = field(default_factory=ClockMetrics)
    connectivity: ConnectivityMetrics = field(default_factory=ConnectivityMetrics)
    derived: DerivedMetrics = field(default_factory=DerivedMetrics)
    compute_processes_count: int | None = None
    graphics_processes_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Nested plain-data form with absent fields omitted."""
        data: dict[str, Any] = _compact(self)
        return data


@dataclass(frozen=True)
class ProcessInfo:
    """A process holding a context on one device."""

    pid: int
    name: str
    gpu_uuid: str
    gpu_id: str
    memory_mib: float
    workload: WorkloadType
    command: str | None = None
    cpu_percent: float | None = None
    gpu_percent: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = _compact(self)
        return data
