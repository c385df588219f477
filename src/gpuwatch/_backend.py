"""Device access backend protocol and the raw shapes backends hand to the builder."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from gpuwatch._types import BackendKind, WorkloadType


@dataclass(frozen=True)
class DeviceHandle:
    """A device enumerated by a backend during the current cycle."""

    device_id: str
    native: Any  # backend-specific: NVML handle, parsed CSV row, ...


@dataclass
class RawReading:
    """Partial readings for one device, grouped the way the builder consumes them.

    Each group maps a metric key to its value. A key is present only when the
    backend obtained that metric; absence is not an error.
    """

    device_id: str
    identity: dict[str, Any] = field(default_factory=dict)
    performance: dict[str, Any] = field(default_factory=dict)
    memory: dict[str, Any] = field(default_factory=dict)
    power_thermal: dict[str, Any] = field(default_factory=dict)
    clocks: dict[str, Any] = field(default_factory=dict)
    connectivity: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RawProcess:
    """One GPU-using process as reported by a backend, before correlation.

    ``device_id`` is set when the backend knows the owning device directly;
    otherwise the correlator resolves it from ``gpu_uuid``.
    """

    gpu_uuid: str
    pid: int
    memory_mib: float
    workload: WorkloadType
    name: str | None = None
    device_id: str | None = None
    gpu_percent: float | None = None


@runtime_checkable
class DeviceBackend(Protocol):
    """Structural protocol for device access paths."""

    kind: BackendKind

    def list_devices(self) -> list[DeviceHandle]: ...

    def read_raw(self, handle: DeviceHandle) -> RawReading: ...

    def list_processes(self) -> list[RawProcess]: ...

    def shutdown(self) -> None: ...
