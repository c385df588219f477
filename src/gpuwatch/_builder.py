"""Snapshot builder — turns a backend's RawReading into a normalized GPUSnapshot."""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from gpuwatch._backend import DeviceBackend, DeviceHandle, RawReading
from gpuwatch._derived import compute_derived
from gpuwatch._history import SampleHistory
from gpuwatch._reference import (
    brand_name,
    compute_mode_name,
    decode_throttle_reasons,
    detect_architecture,
)
from gpuwatch._types import (
    ClockMetrics,
    ClockReading,
    ConnectivityMetrics,
    DerivedMetrics,
    DeviceIdentity,
    GPUSnapshot,
    MemoryMetrics,
    PerformanceMetrics,
    PowerThermalMetrics,
)

logger = logging.getLogger("gpuwatch.builder")

T = TypeVar("T")


def _float(raw: dict[str, Any], key: str) -> float | None:
    value = raw.get(key)
    return None if value is None else float(value)


def _int(raw: dict[str, Any], key: str) -> int | None:
    value = raw.get(key)
    return None if value is None else int(value)


def rfc3339(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


def build_identity(raw: dict[str, Any]) -> DeviceIdentity:
    name = raw.get("name")
    brand = raw.get("brand")
    if "brand_code" in raw:
        brand = brand_name(raw["brand_code"])
    cc = raw.get("compute_capability")
    return DeviceIdentity(
        name=name,
        uuid=raw.get("uuid"),
        driver_version=raw.get("driver_version"),
        vbios_version=raw.get("vbios_version"),
        brand=brand,
        architecture=detect_architecture(name) if name else None,
        compute_capability=(int(cc[0]), int(cc[1])) if cc is not None else None,
        serial=raw.get("serial"),
    )


def build_performance(raw: dict[str, Any]) -> PerformanceMetrics:
    mode = raw.get("compute_mode")
    if "compute_mode_code" in raw:
        mode = compute_mode_name(raw["compute_mode_code"])
    return PerformanceMetrics(
        utilization=_float(raw, "utilization"),
        memory_utilization=_float(raw, "memory_utilization"),
        performance_state=raw.get("performance_state"),
        compute_mode=mode,
    )


def build_memory(raw: dict[str, Any]) -> MemoryMetrics:
    return MemoryMetrics(
        used_mib=_float(raw, "used_mib"),
        total_mib=_float(raw, "total_mib"),
        free_mib=_float(raw, "free_mib"),
        bar1_used_mib=_float(raw, "bar1_used_mib"),
        bar1_total_mib=_float(raw, "bar1_total_mib"),
    )


def build_power_thermal(raw: dict[str, Any]) -> PowerThermalMetrics:
    reasons = None
    if "throttle_mask" in raw:
        reasons = decode_throttle_reasons(raw["throttle_mask"])
    return PowerThermalMetrics(
        temperature_c=_float(raw, "temperature_c"),
        power_draw_w=_float(raw, "power_draw_w"),
        power_limit_w=_float(raw, "power_limit_w"),
        power_limit_min_w=_float(raw, "power_limit_min_w"),
        power_limit_max_w=_float(raw, "power_limit_max_w"),
        fan_speed_pct=_float(raw, "fan_speed_pct"),
        throttle_reasons=reasons,
    )


def _clock_reading(raw: dict[str, Any]) -> ClockReading:
    return ClockReading(
        current_mhz=_float(raw, "current_mhz"),
        max_mhz=_float(raw, "max_mhz"),
        application_mhz=_float(raw, "application_mhz"),
        default_application_mhz=_float(raw, "default_application_mhz"),
    )


def build_clocks(raw: dict[str, Any]) -> ClockMetrics:
    return ClockMetrics(
        graphics=_clock_reading(raw.get("graphics", {})),
        sm=_clock_reading(raw.get("sm", {})),
        memory=_clock_reading(raw.get("memory", {})),
        video=_clock_reading(raw.get("video", {})),
    )


def build_connectivity(raw: dict[str, Any]) -> ConnectivityMetrics:
    return ConnectivityMetrics(
        pcie_gen=_int(raw, "pcie_gen"),
        pcie_gen_max=_int(raw, "pcie_gen_max"),
        pcie_width=_int(raw, "pcie_width"),
        pcie_width_max=_int(raw, "pcie_width_max"),
        pci_bus_id=raw.get("pci_bus_id"),
    )


class SnapshotBuilder:
    """Assembles one snapshot per device per cycle.

    Reads the sample history for rate calculations but never writes it; the
    caller commits the finished snapshot.
    """

    def __init__(
        self,
        history: SampleHistory,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._history = history
        self._clock = clock

    def build(self, backend: DeviceBackend, handle: DeviceHandle) -> GPUSnapshot:
        captured_at = self._clock()
        try:
            raw = backend.read_raw(handle)
        except Exception:  # noqa: BLE001
            logger.warning("GPU %s: raw read failed", handle.device_id, exc_info=True)
            raw = RawReading(device_id=handle.device_id)
        return self.build_from_raw(raw, captured_at)

    def build_from_raw(self, raw: RawReading, captured_at: float) -> GPUSnapshot:
        device_id = raw.device_id
        snapshot = GPUSnapshot(
            device_id=device_id,
            timestamp=rfc3339(captured_at),
            captured_at=captured_at,
            identity=self._group(device_id, "identity", build_identity, raw.identity, DeviceIdentity),
            performance=self._group(
                device_id, "performance", build_performance, raw.performance, PerformanceMetrics
            ),
            memory=self._group(device_id, "memory", build_memory, raw.memory, MemoryMetrics),
            power_thermal=self._group(
                device_id, "power_thermal", build_power_thermal, raw.power_thermal,
                PowerThermalMetrics,
            ),
            clocks=self._group(device_id, "clocks", build_clocks, raw.clocks, ClockMetrics),
            connectivity=self._group(
                device_id, "connectivity", build_connectivity, raw.connectivity,
                ConnectivityMetrics,
            ),
        )

        try:
            derived = compute_derived(snapshot, self._history.get(device_id))
        except Exception:  # noqa: BLE001
            logger.warning("GPU %s: derived metrics failed", device_id, exc_info=True)
            derived = DerivedMetrics()
        return dataclasses.replace(snapshot, derived=derived)

    @staticmethod
    def _group(
        device_id: str,
        group: str,
        convert: Callable[[dict[str, Any]], T],
        raw: dict[str, Any],
        empty: Callable[[], T],
    ) -> T:
        """Convert one metric group; a failure leaves that group empty only."""
        try:
            return convert(raw)
        except Exception:  # noqa: BLE001
            logger.warning("GPU %s: %s group conversion failed", device_id, group, exc_info=True)
            return empty()
