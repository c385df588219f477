"""gpuwatch Quick Start — poll every GPU once a second and print a summary."""

import time

import gpuwatch

# 1. Pick a backend (NVML, then nvidia-smi, then "unavailable")
monitor = gpuwatch.initialize()
if not monitor.telemetry_available:
    print(f"No GPU telemetry: {monitor.unavailable_reason}")
    raise SystemExit(0)

print(f"Backend: {monitor.backend_kind.value}, devices: {monitor.device_ids()}")

# 2. Poll snapshots and processes
with monitor:
    for _ in range(5):
        for device_id, snap in monitor.collect_snapshots().items():
            rate = snap.derived.memory_change_rate_mib_s
            print(
                f"GPU {device_id} {snap.identity.name} ({snap.identity.architecture}): "
                f"util={snap.performance.utilization}% "
                f"mem={snap.memory.used_mib}/{snap.memory.total_mib} MiB "
                f"rate={'-' if rate is None else f'{rate:+.1f} MiB/s'} "
                f"mfu={snap.derived.mfu_percent}"
            )
        for proc in monitor.collect_all_processes():
            print(f"  pid={proc.pid} {proc.name} on GPU {proc.gpu_id}: {proc.memory_mib:.0f} MiB")
        time.sleep(1.0)
# 3. Leaving the block shuts the backend down
