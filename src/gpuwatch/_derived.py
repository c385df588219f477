"""Derived analytics: memory change rate and a model-FLOPs-utilization estimate."""

from __future__ import annotations

from dataclasses import dataclass

from gpuwatch._history import HistoryEntry
from gpuwatch._reference import lookup_peak_tflops
from gpuwatch._types import DerivedMetrics, GPUSnapshot


@dataclass(frozen=True)
class MFUEstimate:
    achieved_tflops: float | None
    peak_tflops: float
    mfu_percent: float | None


def memory_change_rate(
    used_mib: float | None,
    captured_at: float,
    previous: HistoryEntry | None,
) -> float | None:
    """MiB/s since the previous sample, or None without a usable baseline.

    Non-positive elapsed time (clock steps, back-to-back calls inside timer
    resolution) yields None rather than a division blow-up.
    """
    if used_mib is None or previous is None:
        return None
    elapsed = captured_at - previous.captured_at
    if elapsed <= 0:
        return None
    return (used_mib - previous.memory_used_mib) / elapsed


def estimate_mfu(
    name: str | None,
    sm_clock_mhz: float | None,
    sm_max_clock_mhz: float | None,
    utilization: float | None,
) -> MFUEstimate:
    """Heuristic MFU from clocks and utilization against a reference peak.

    This is an approximation, not a FLOP count. Unknown models report 0.0 for
    every figure. Without both SM clocks the clock ratio is assumed to be 1.
    """
    peak = lookup_peak_tflops(name) if name else 0.0
    if peak <= 0:
        return MFUEstimate(achieved_tflops=0.0, peak_tflops=0.0, mfu_percent=0.0)
    if utilization is None:
        return MFUEstimate(achieved_tflops=None, peak_tflops=peak, mfu_percent=None)

    util_ratio = utilization / 100.0
    if sm_clock_mhz and sm_max_clock_mhz and sm_clock_mhz > 0 and sm_max_clock_mhz > 0:
        clock_ratio = sm_clock_mhz / sm_max_clock_mhz
    else:
        clock_ratio = 1.0
    achieved = clock_ratio * util_ratio * peak
    return MFUEstimate(
        achieved_tflops=achieved,
        peak_tflops=peak,
        mfu_percent=achieved / peak * 100.0,
    )


def compute_derived(snapshot: GPUSnapshot, previous: HistoryEntry | None) -> DerivedMetrics:
    """Derive rate and MFU figures for a fully populated snapshot."""
    rate = memory_change_rate(snapshot.memory.used_mib, snapshot.captured_at, previous)
    mfu = estimate_mfu(
        snapshot.identity.name,
        snapshot.clocks.sm.current_mhz,
        snapshot.clocks.sm.max_mhz,
        snapshot.performance.utilization,
    )
    return DerivedMetrics(
        memory_change_rate_mib_s=rate,
        achieved_tflops=mfu.achieved_tflops,
        peak_tflops=mfu.peak_tflops,
        mfu_percent=mfu.mfu_percent,
    )
