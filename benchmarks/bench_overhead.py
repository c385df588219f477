#!/usr/bin/env python3
"""Collection-path overhead benchmark.

Measures the CPU cost gpuwatch itself adds on top of the backend:
  1. SnapshotBuilder.build_from_raw (group conversion + derived metrics)
  2. GPUMonitor.collect_snapshots   (8 devices, in-memory backend)
  3. GPUMonitor.latest_snapshots    (reader side, under the read lock)

No GPU is required; device readings come from a static in-memory backend.

Usage:
    python benchmarks/bench_overhead.py
"""

from __future__ import annotations

import time

from gpuwatch._backend import DeviceHandle, RawProcess, RawReading
from gpuwatch._builder import SnapshotBuilder
from gpuwatch._config import GPUWatchConfig
from gpuwatch._history import SampleHistory
from gpuwatch._monitor import GPUMonitor
from gpuwatch._types import BackendKind


def _reading(device_id: str) -> RawReading:
    return RawReading(
        device_id=device_id,
        identity={"name": "NVIDIA H100 80GB HBM3", "uuid": f"GPU-{device_id}", "brand_code": 2},
        performance={"utilization": 87.0, "memory_utilization": 41.0, "compute_mode_code": 0},
        memory={"used_mib": 40960.0, "total_mib": 81920.0, "free_mib": 40960.0},
        power_thermal={"temperature_c": 63.0, "power_draw_w": 512.3, "throttle_mask": 0x1},
        clocks={"sm": {"current_mhz": 1755.0, "max_mhz": 1980.0}},
        connectivity={"pcie_gen": 5, "pcie_width": 16},
    )


class StaticBackend:
    kind = BackendKind.NVML

    def __init__(self, num_gpus: int) -> None:
        self._readings = {str(i): _reading(str(i)) for i in range(num_gpus)}

    def list_devices(self) -> list[DeviceHandle]:
        return [DeviceHandle(device_id=d, native=None) for d in self._readings]

    def read_raw(self, handle: DeviceHandle) -> RawReading:
        return self._readings[handle.device_id]

    def list_processes(self) -> list[RawProcess]:
        return []

    def shutdown(self) -> None:
        pass


def bench_build(iterations: int = 50_000) -> float:
    """Benchmark: one snapshot from a full raw reading."""
    builder = SnapshotBuilder(SampleHistory())
    raw = _reading("0")

    for _ in range(1000):
        builder.build_from_raw(raw, 1.0)

    start = time.perf_counter_ns()
    for i in range(iterations):
        builder.build_from_raw(raw, float(i))
    elapsed = time.perf_counter_ns() - start

    return elapsed / iterations


def bench_collect_cycle(iterations: int = 5_000) -> float:
    """Benchmark: full collect_snapshots cycle over 8 devices."""
    monitor = GPUMonitor(StaticBackend(num_gpus=8), GPUWatchConfig(enrich_processes=False))

    for _ in range(100):
        monitor.collect_snapshots()

    start = time.perf_counter_ns()
    for _ in range(iterations):
        monitor.collect_snapshots()
    elapsed = time.perf_counter_ns() - start

    monitor.shutdown()
    return elapsed / iterations


def bench_latest(iterations: int = 200_000) -> float:
    """Benchmark: reader-side map copy under the read lock."""
    monitor = GPUMonitor(StaticBackend(num_gpus=8), GPUWatchConfig(enrich_processes=False))
    monitor.collect_snapshots()

    for _ in range(5000):
        monitor.latest_snapshots()

    start = time.perf_counter_ns()
    for _ in range(iterations):
        monitor.latest_snapshots()
    elapsed = time.perf_counter_ns() - start

    monitor.shutdown()
    return elapsed / iterations


def main() -> None:
    print("=" * 60)
    print("gpuwatch Collection Overhead Benchmark")
    print("=" * 60)

    results: list[tuple[str, float, str]] = []

    ns = bench_build()
    status = "PASS" if ns < 50_000 else "WARN" if ns < 100_000 else "FAIL"
    results.append(("Snapshot build (1 device)", ns, f"{status} (target < 50μs)"))

    ns = bench_collect_cycle()
    status = "PASS" if ns < 500_000 else "WARN" if ns < 1_000_000 else "FAIL"
    results.append(("collect_snapshots (8 devices)", ns, f"{status} (target < 500μs)"))

    ns = bench_latest()
    status = "PASS" if ns < 5000 else "WARN" if ns < 10000 else "FAIL"
    results.append(("latest_snapshots (read lock)", ns, f"{status} (target < 5μs)"))

    print()
    for name, ns_val, note in results:
        if ns_val >= 1000:
            display = f"{ns_val / 1000:.2f}μs"
        else:
            display = f"{ns_val:.0f}ns"
        print(f"  {name:40s}  {display:>10s}   {note}")

    print()
    all_pass = all("PASS" in r[2] or "WARN" in r[2] for r in results)
    if all_pass:
        print("All benchmarks within acceptable range.")
    else:
        print("WARNING: Some benchmarks exceeded target. Review above.")


if __name__ == "__main__":
    main()
