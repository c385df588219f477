"""Tests for the NVML backend using an in-memory pynvml stand-in."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

import gpuwatch._backend_nvml as nvml_mod
from gpuwatch._backend_nvml import NvmlBackend
from gpuwatch._errors import BackendUnavailableError
from gpuwatch._types import BackendKind, WorkloadType

MIB = 1024 * 1024


class FakeNVMLError(Exception):
    pass


class FakeNvml:
    """Minimal pynvml surface: two GPUs, the second missing a few metrics."""

    NVMLError = FakeNVMLError
    NVML_TEMPERATURE_GPU = 0
    NVML_CLOCK_GRAPHICS = 0
    NVML_CLOCK_SM = 1
    NVML_CLOCK_MEM = 2
    NVML_CLOCK_VIDEO = 3

    def __init__(self) -> None:
        self.init_error = False
        self.shutdown_calls = 0
        self.processes: dict[int, dict[str, list[Any]]] = {
            0: {
                "compute": [SimpleNamespace(pid=100, usedGpuMemory=512 * MIB)],
                "graphics": [SimpleNamespace(pid=200, usedGpuMemory=None)],
            },
            1: {"compute": [], "graphics": []},
        }

    def _unsupported(self, handle: int) -> None:
        if handle == 1:
            raise FakeNVMLError("Not Supported")

    def nvmlInit(self) -> None:  # noqa: N802
        if self.init_error:
            raise FakeNVMLError("Driver Not Loaded")

    def nvmlShutdown(self) -> None:  # noqa: N802
        self.shutdown_calls += 1

    def nvmlSystemGetDriverVersion(self) -> bytes:  # noqa: N802
        return b"550.54.14"

    def nvmlDeviceGetCount(self) -> int:  # noqa: N802
        return 2

    def nvmlDeviceGetHandleByIndex(self, i: int) -> int:  # noqa: N802
        return i

    def nvmlDeviceGetName(self, h: int) -> str:  # noqa: N802
        return ["NVIDIA H100 80GB HBM3", "Tesla T4"][h]

    def nvmlDeviceGetUUID(self, h: int) -> str:  # noqa: N802
        return f"GPU-{h:04d}"

    def nvmlDeviceGetVbiosVersion(self, h: int) -> str:  # noqa: N802
        return "96.00.74.00.01"

    def nvmlDeviceGetBrand(self, h: int) -> int:  # noqa: N802
        return 2

    def nvmlDeviceGetCudaComputeCapability(self, h: int) -> tuple[int, int]:  # noqa: N802
        return (9, 0) if h == 0 else (7, 5)

    def nvmlDeviceGetSerial(self, h: int) -> str:  # noqa: N802
        self._unsupported(h)
        return "1650123456789"

    def nvmlDeviceGetUtilizationRates(self, h: int) -> SimpleNamespace:  # noqa: N802
        return SimpleNamespace(gpu=75, memory=30)

    def nvmlDeviceGetPerformanceState(self, h: int) -> int:  # noqa: N802
        return 0

    def nvmlDeviceGetComputeMode(self, h: int) -> int:  # noqa: N802
        return 3

    def nvmlDeviceGetMemoryInfo(self, h: int) -> SimpleNamespace:  # noqa: N802
        return SimpleNamespace(used=2048 * MIB, total=81920 * MIB, free=79872 * MIB)

    def nvmlDeviceGetBAR1MemoryInfo(self, h: int) -> SimpleNamespace:  # noqa: N802
        self._unsupported(h)
        return SimpleNamespace(bar1Used=8 * MIB, bar1Total=256 * MIB)

    def nvmlDeviceGetTemperature(self, h: int, sensor: int) -> int:  # noqa: N802
        return 58

    def nvmlDeviceGetPowerUsage(self, h: int) -> int:  # noqa: N802
        return 312_500

    def nvmlDeviceGetPowerManagementLimit(self, h: int) -> int:  # noqa: N802
        return 700_000

    def nvmlDeviceGetPowerManagementLimitConstraints(self, h: int) -> tuple[int, int]:  # noqa: N802
        return (200_000, 700_000)

    def nvmlDeviceGetFanSpeed(self, h: int) -> int:  # noqa: N802
        self._unsupported(h)
        return 40

    def nvmlDeviceGetCurrentClocksThrottleReasons(self, h: int) -> int:  # noqa: N802
        return 0x1 | 0x20

    def nvmlDeviceGetClockInfo(self, h: int, clock: int) -> int:  # noqa: N802
        return [1755, 1755, 2619, 1500][clock]

    def nvmlDeviceGetMaxClockInfo(self, h: int, clock: int) -> int:  # noqa: N802
        return [1980, 1980, 2619, 1710][clock]

    def nvmlDeviceGetApplicationsClock(self, h: int, clock: int) -> int:  # noqa: N802
        raise FakeNVMLError("Not Supported")

    def nvmlDeviceGetDefaultApplicationsClock(self, h: int, clock: int) -> int:  # noqa: N802
        raise FakeNVMLError("Not Supported")

    def nvmlDeviceGetCurrPcieLinkGeneration(self, h: int) -> int:  # noqa: N802
        return 5

    def nvmlDeviceGetMaxPcieLinkGeneration(self, h: int) -> int:  # noqa: N802
        return 5

    def nvmlDeviceGetCurrPcieLinkWidth(self, h: int) -> int:  # noqa: N802
        return 16

    def nvmlDeviceGetMaxPcieLinkWidth(self, h: int) -> int:  # noqa: N802
        return 16

    def nvmlDeviceGetPciInfo(self, h: int) -> SimpleNamespace:  # noqa: N802
        return SimpleNamespace(busId=b"00000000:1B:00.0")

    def nvmlDeviceGetComputeRunningProcesses(self, h: int) -> list[Any]:  # noqa: N802
        return self.processes[h]["compute"]

    def nvmlDeviceGetGraphicsRunningProcesses(self, h: int) -> list[Any]:  # noqa: N802
        return self.processes[h]["graphics"]

    def nvmlDeviceGetProcessUtilization(self, h: int, since: int) -> list[Any]:  # noqa: N802
        if h == 1:
            raise FakeNVMLError("Not Found")
        return [SimpleNamespace(pid=100, smUtil=64)]


@pytest.fixture
def fake_nvml(monkeypatch: pytest.MonkeyPatch) -> FakeNvml:
    fake = FakeNvml()
    monkeypatch.setattr(nvml_mod, "pynvml", fake)
    monkeypatch.setattr(nvml_mod, "_HAS_PYNVML", True)
    return fake


class TestInit:
    def test_missing_pynvml(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(nvml_mod, "_HAS_PYNVML", False)
        with pytest.raises(BackendUnavailableError, match="pynvml"):
            NvmlBackend()

    def test_init_failure(self, fake_nvml: FakeNvml) -> None:
        fake_nvml.init_error = True
        with pytest.raises(BackendUnavailableError, match="NVML initialization failed"):
            NvmlBackend()

    def test_kind(self, fake_nvml: FakeNvml) -> None:
        assert NvmlBackend().kind is BackendKind.NVML


class TestReadRaw:
    def test_devices_enumerated(self, fake_nvml: FakeNvml) -> None:
        backend = NvmlBackend()
        assert [h.device_id for h in backend.list_devices()] == ["0", "1"]

    def test_full_reading(self, fake_nvml: FakeNvml) -> None:
        backend = NvmlBackend()
        reading = backend.read_raw(backend.list_devices()[0])

        assert reading.identity["name"] == "NVIDIA H100 80GB HBM3"
        assert reading.identity["driver_version"] == "550.54.14"
        assert reading.identity["brand_code"] == 2
        assert reading.identity["compute_capability"] == (9, 0)
        assert reading.performance == {
            "utilization": 75.0,
            "memory_utilization": 30.0,
            "performance_state": "P0",
            "compute_mode_code": 3,
        }
        assert reading.memory["used_mib"] == 2048.0
        assert reading.memory["bar1_total_mib"] == 256.0
        assert reading.power_thermal["power_draw_w"] == pytest.approx(312.5)
        assert reading.power_thermal["power_limit_min_w"] == pytest.approx(200.0)
        assert reading.power_thermal["throttle_mask"] == 0x21
        assert reading.clocks["sm"] == {"current_mhz": 1755.0, "max_mhz": 1980.0}
        assert reading.connectivity["pci_bus_id"] == "00000000:1B:00.0"

    def test_unsupported_metrics_are_absent(self, fake_nvml: FakeNvml) -> None:
        backend = NvmlBackend()
        reading = backend.read_raw(backend.list_devices()[1])
        assert "serial" not in reading.identity
        assert "bar1_used_mib" not in reading.memory
        assert "fan_speed_pct" not in reading.power_thermal
        assert reading.identity["name"] == "Tesla T4"
        assert reading.memory["total_mib"] == 81920.0

    def test_clock_events_fallback(
        self, fake_nvml: FakeNvml, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            FakeNvml, "nvmlDeviceGetCurrentClocksThrottleReasons", None, raising=False
        )
        monkeypatch.setattr(
            FakeNvml,
            "nvmlDeviceGetCurrentClocksEventReasons",
            lambda self, h: 0x4,
            raising=False,
        )
        backend = NvmlBackend()
        reading = backend.read_raw(backend.list_devices()[0])
        assert reading.power_thermal["throttle_mask"] == 0x4


class TestListProcesses:
    def test_compute_and_graphics(self, fake_nvml: FakeNvml) -> None:
        procs = NvmlBackend().list_processes()
        assert len(procs) == 2
        compute, graphics = procs
        assert compute.pid == 100
        assert compute.workload is WorkloadType.COMPUTE
        assert compute.memory_mib == 512.0
        assert compute.device_id == "0"
        assert compute.gpu_uuid == "GPU-0000"
        assert compute.gpu_percent == 64.0
        assert graphics.workload is WorkloadType.GRAPHICS
        assert graphics.memory_mib == 0.0
        assert graphics.gpu_percent is None

    def test_no_processes(self, fake_nvml: FakeNvml) -> None:
        fake_nvml.processes[0] = {"compute": [], "graphics": []}
        assert NvmlBackend().list_processes() == []


class TestShutdown:
    def test_idempotent(self, fake_nvml: FakeNvml) -> None:
        backend = NvmlBackend()
        backend.shutdown()
        backend.shutdown()
        assert fake_nvml.shutdown_calls == 1
        assert backend.list_devices() == []
