"""NVIDIA native-library backend using pynvml."""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from typing import Any

from gpuwatch._backend import DeviceHandle, RawProcess, RawReading
from gpuwatch._errors import BackendUnavailableError
from gpuwatch._types import BackendKind, WorkloadType

logger = logging.getLogger("gpuwatch.backend.nvml")

# pynvml is optional; backend selection falls through when it is missing.
warnings.filterwarnings("ignore", category=FutureWarning, message=".*pynvml.*deprecated.*")
try:
    import pynvml

    _HAS_PYNVML = True
except ImportError:
    pynvml = None  # type: ignore[assignment,unused-ignore]
    _HAS_PYNVML = False

_MIB = 1024 * 1024


def _text(value: Any) -> str:
    """NVML strings arrive as bytes on older bindings."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").rstrip("\x00")
    return str(value)


class NvmlBackend:
    """Reads every metric group through NVML, one call per metric.

    Each call fails soft: an ``NVMLError`` leaves that metric out of the
    reading and the rest of the read carries on.
    """

    kind = BackendKind.NVML

    def __init__(self) -> None:
        if not _HAS_PYNVML:
            raise BackendUnavailableError("pynvml is not installed")
        assert pynvml is not None
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            raise BackendUnavailableError(f"NVML initialization failed: {exc}") from exc
        self._initialized = True
        driver = self._soft(pynvml.nvmlSystemGetDriverVersion)
        if driver is not None:
            logger.info("NVML initialized - driver %s", _text(driver))

    @staticmethod
    def _soft(fn: Callable[..., Any], *args: Any) -> Any:
        assert pynvml is not None
        try:
            return fn(*args)
        except pynvml.NVMLError as exc:
            logger.debug("%s unavailable: %s", getattr(fn, "__name__", fn), exc)
            return None

    def list_devices(self) -> list[DeviceHandle]:
        assert pynvml is not None
        if not self._initialized:
            return []
        try:
            count = pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as exc:
            logger.warning("Failed to get device count: %s", exc)
            return []

        handles: list[DeviceHandle] = []
        for i in range(count):
            try:
                native = pynvml.nvmlDeviceGetHandleByIndex(i)
            except pynvml.NVMLError as exc:
                logger.warning("GPU %d: failed to get handle: %s", i, exc)
                continue
            handles.append(DeviceHandle(device_id=str(i), native=native))
        return handles

    def read_raw(self, handle: DeviceHandle) -> RawReading:
        reading = RawReading(device_id=handle.device_id)
        h = handle.native
        self._read_identity(h, reading.identity)
        self._read_performance(h, reading.performance)
        self._read_memory(h, reading.memory)
        self._read_power_thermal(h, reading.power_thermal)
        self._read_clocks(h, reading.clocks)
        self._read_connectivity(h, reading.connectivity)
        return reading

    def _read_identity(self, h: Any, out: dict[str, Any]) -> None:
        assert pynvml is not None
        soft = self._soft
        name = soft(pynvml.nvmlDeviceGetName, h)
        if name is not None:
            out["name"] = _text(name)
        uuid = soft(pynvml.nvmlDeviceGetUUID, h)
        if uuid is not None:
            out["uuid"] = _text(uuid)
        driver = soft(pynvml.nvmlSystemGetDriverVersion)
        if driver is not None:
            out["driver_version"] = _text(driver)
        vbios = soft(pynvml.nvmlDeviceGetVbiosVersion, h)
        if vbios is not None:
            out["vbios_version"] = _text(vbios)
        brand = soft(pynvml.nvmlDeviceGetBrand, h)
        if brand is not None:
            out["brand_code"] = int(brand)
        cc = soft(pynvml.nvmlDeviceGetCudaComputeCapability, h)
        if cc is not None:
            major, minor = cc
            out["compute_capability"] = (int(major), int(minor))
        serial = soft(pynvml.nvmlDeviceGetSerial, h)
        if serial is not None:
            out["serial"] = _text(serial)

    def _read_performance(self, h: Any, out: dict[str, Any]) -> None:
        assert pynvml is not None
        soft = self._soft
        util = soft(pynvml.nvmlDeviceGetUtilizationRates, h)
        if util is not None:
            out["utilization"] = float(util.gpu)
            out["memory_utilization"] = float(util.memory)
        pstate = soft(pynvml.nvmlDeviceGetPerformanceState, h)
        if pstate is not None:
            out["performance_state"] = f"P{int(pstate)}"
        mode = soft(pynvml.nvmlDeviceGetComputeMode, h)
        if mode is not None:
            out["compute_mode_code"] = int(mode)

    def _read_memory(self, h: Any, out: dict[str, Any]) -> None:
        assert pynvml is not None
        soft = self._soft
        mem = soft(pynvml.nvmlDeviceGetMemoryInfo, h)
        if mem is not None:
            out["used_mib"] = mem.used / _MIB
            out["total_mib"] = mem.total / _MIB
            out["free_mib"] = mem.free / _MIB
        bar1 = soft(pynvml.nvmlDeviceGetBAR1MemoryInfo, h)
        if bar1 is not None:
            out["bar1_used_mib"] = bar1.bar1Used / _MIB
            out["bar1_total_mib"] = bar1.bar1Total / _MIB

    def _read_power_thermal(self, h: Any, out: dict[str, Any]) -> None:
        assert pynvml is not None
        soft = self._soft
        temp = soft(pynvml.nvmlDeviceGetTemperature, h, pynvml.NVML_TEMPERATURE_GPU)
        if temp is not None:
            out["temperature_c"] = float(temp)
        power = soft(pynvml.nvmlDeviceGetPowerUsage, h)
        if power is not None:
            out["power_draw_w"] = power / 1000.0  # mW → W
        limit = soft(pynvml.nvmlDeviceGetPowerManagementLimit, h)
        if limit is not None:
            out["power_limit_w"] = limit / 1000.0
        constraints = soft(pynvml.nvmlDeviceGetPowerManagementLimitConstraints, h)
        if constraints is not None:
            min_limit, max_limit = constraints
            out["power_limit_min_w"] = min_limit / 1000.0
            out["power_limit_max_w"] = max_limit / 1000.0
        fan = soft(pynvml.nvmlDeviceGetFanSpeed, h)
        if fan is not None:
            out["fan_speed_pct"] = float(fan)

        # Renamed to "clocks event reasons" in newer bindings.
        reasons_fn = getattr(pynvml, "nvmlDeviceGetCurrentClocksThrottleReasons", None) or getattr(
            pynvml, "nvmlDeviceGetCurrentClocksEventReasons", None
        )
        if reasons_fn is not None:
            mask = soft(reasons_fn, h)
            if mask is not None:
                out["throttle_mask"] = int(mask)

    def _read_clocks(self, h: Any, out: dict[str, Any]) -> None:
        assert pynvml is not None
        soft = self._soft
        domains = {
            "graphics": pynvml.NVML_CLOCK_GRAPHICS,
            "sm": pynvml.NVML_CLOCK_SM,
            "memory": pynvml.NVML_CLOCK_MEM,
            "video": pynvml.NVML_CLOCK_VIDEO,
        }
        for domain, clock_type in domains.items():
            values: dict[str, float] = {}
            clock = soft(pynvml.nvmlDeviceGetClockInfo, h, clock_type)
            if clock is not None:
                values["current_mhz"] = float(clock)
            max_clock = soft(pynvml.nvmlDeviceGetMaxClockInfo, h, clock_type)
            if max_clock is not None:
                values["max_mhz"] = float(max_clock)
            app = soft(pynvml.nvmlDeviceGetApplicationsClock, h, clock_type)
            if app is not None:
                values["application_mhz"] = float(app)
            default = soft(pynvml.nvmlDeviceGetDefaultApplicationsClock, h, clock_type)
            if default is not None:
                values["default_application_mhz"] = float(default)
            if values:
                out[domain] = values

    def _read_connectivity(self, h: Any, out: dict[str, Any]) -> None:
        assert pynvml is not None
        soft = self._soft
        gen = soft(pynvml.nvmlDeviceGetCurrPcieLinkGeneration, h)
        if gen is not None:
            out["pcie_gen"] = int(gen)
        gen_max = soft(pynvml.nvmlDeviceGetMaxPcieLinkGeneration, h)
        if gen_max is not None:
            out["pcie_gen_max"] = int(gen_max)
        width = soft(pynvml.nvmlDeviceGetCurrPcieLinkWidth, h)
        if width is not None:
            out["pcie_width"] = int(width)
        width_max = soft(pynvml.nvmlDeviceGetMaxPcieLinkWidth, h)
        if width_max is not None:
            out["pcie_width_max"] = int(width_max)
        pci = soft(pynvml.nvmlDeviceGetPciInfo, h)
        if pci is not None:
            out["pci_bus_id"] = _text(pci.busId)

    def list_processes(self) -> list[RawProcess]:
        assert pynvml is not None
        processes: list[RawProcess] = []
        for handle in self.list_devices():
            h = handle.native
            uuid = self._soft(pynvml.nvmlDeviceGetUUID, h)
            if uuid is None:
                continue
            uuid = _text(uuid)
            gpu_util = self._process_utilization(h)

            queries = (
                (WorkloadType.COMPUTE, pynvml.nvmlDeviceGetComputeRunningProcesses),
                (WorkloadType.GRAPHICS, pynvml.nvmlDeviceGetGraphicsRunningProcesses),
            )
            for workload, query in queries:
                procs = self._soft(query, h)
                if procs is None:
                    continue
                for proc in procs:
                    used = proc.usedGpuMemory
                    processes.append(RawProcess(
                        gpu_uuid=uuid,
                        pid=int(proc.pid),
                        # usedGpuMemory is None when the driver withholds it
                        memory_mib=used / _MIB if used is not None else 0.0,
                        workload=workload,
                        device_id=handle.device_id,
                        gpu_percent=gpu_util.get(int(proc.pid)),
                    ))
        return processes

    def _process_utilization(self, h: Any) -> dict[int, float]:
        assert pynvml is not None
        samples = self._soft(pynvml.nvmlDeviceGetProcessUtilization, h, 0)
        if not samples:
            return {}
        return {int(s.pid): float(s.smUtil) for s in samples}

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        try:
            assert pynvml is not None
            pynvml.nvmlShutdown()
            logger.info("NVML shutdown")
        except Exception:  # noqa: BLE001
            logger.debug("NVML shutdown failed", exc_info=True)
