"""Tests for _types module."""

from gpuwatch._types import (
    BackendKind,
    ClockMetrics,
    ClockReading,
    DerivedMetrics,
    DeviceIdentity,
    GPUSnapshot,
    MemoryMetrics,
    PowerThermalMetrics,
    ProcessInfo,
    WorkloadType,
)


def test_backend_kind_values() -> None:
    assert BackendKind.NVML.value == "nvml"
    assert BackendKind.SMI.value == "nvidia-smi"
    assert BackendKind.UNAVAILABLE.value == "unavailable"


def test_workload_type_values() -> None:
    assert WorkloadType.COMPUTE.value == "compute"
    assert WorkloadType.GRAPHICS.value == "graphics"


def test_snapshot_defaults_are_empty_groups() -> None:
    snap = GPUSnapshot(device_id="0", timestamp="t", captured_at=1.0)
    assert snap.identity == DeviceIdentity()
    assert snap.memory.used_mib is None
    assert snap.clocks.sm == ClockReading()
    assert snap.derived == DerivedMetrics()
    assert snap.compute_processes_count is None


def test_snapshot_is_frozen() -> None:
    snap = GPUSnapshot(device_id="0", timestamp="t", captured_at=1.0)
    try:
        snap.device_id = "1"  # type: ignore[misc]
        assert False, "Should have raised"
    except AttributeError:
        pass


def test_snapshot_to_dict_omits_absent_fields() -> None:
    snap = GPUSnapshot(
        device_id="0",
        timestamp="2024-01-01T00:00:00+00:00",
        captured_at=1.0,
        identity=DeviceIdentity(name="Tesla T4", compute_capability=(7, 5)),
        memory=MemoryMetrics(used_mib=512.0),
        power_thermal=PowerThermalMetrics(throttle_reasons=("GPU Idle",)),
        clocks=ClockMetrics(sm=ClockReading(current_mhz=1590.0)),
    )
    data = snap.to_dict()
    assert data["device_id"] == "0"
    assert data["identity"] == {"name": "Tesla T4", "compute_capability": [7, 5]}
    assert data["memory"] == {"used_mib": 512.0}
    assert data["power_thermal"] == {"throttle_reasons": ["GPU Idle"]}
    assert data["clocks"]["sm"] == {"current_mhz": 1590.0}
    assert data["clocks"]["graphics"] == {}
    assert data["derived"] == {}
    assert "compute_processes_count" not in data


def test_process_info_to_dict() -> None:
    proc = ProcessInfo(
        pid=42,
        name="train.py",
        gpu_uuid="GPU-abc",
        gpu_id="0",
        memory_mib=2048.0,
        workload=WorkloadType.GRAPHICS,
    )
    data = proc.to_dict()
    assert data == {
        "pid": 42,
        "name": "train.py",
        "gpu_uuid": "GPU-abc",
        "gpu_id": "0",
        "memory_mib": 2048.0,
        "workload": "graphics",
    }
