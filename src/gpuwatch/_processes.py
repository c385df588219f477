"""Process correlator — attaches GPU processes to known devices and enriches them."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable

import psutil

from gpuwatch._backend import RawProcess
from gpuwatch._history import SnapshotStore
from gpuwatch._types import ProcessInfo, WorkloadType

logger = logging.getLogger("gpuwatch.processes")

# Launchers whose own name says nothing about the workload.
_WRAPPER_NAMES = frozenset({"python", "python3", "sh", "bash"})
_INTERPRETERS = frozenset({"python", "python3", "node", "java"})


def name_from_cmdline(cmdline: Iterable[str]) -> str | None:
    """First argument that is neither a flag nor an interpreter, as a basename."""
    for arg in cmdline:
        if not arg or arg.startswith("-"):
            continue
        base = os.path.basename(arg)
        if base in _INTERPRETERS:
            continue
        return base or None
    return None


def process_display_name(pid: int) -> str:
    """Human-readable name for ``pid``; ``PID:<pid>`` when nothing better is known."""
    try:
        proc = psutil.Process(pid)
        name = proc.name()
    except psutil.Error:
        return f"PID:{pid}"
    if name and name not in _WRAPPER_NAMES:
        return name
    try:
        derived = name_from_cmdline(proc.cmdline())
    except psutil.Error:
        derived = None
    return derived or name or f"PID:{pid}"


def _lifetime_cpu_percent(proc: psutil.Process, now: float) -> float | None:
    """Average CPU percent since the process started."""
    times = proc.cpu_times()
    elapsed = now - proc.create_time()
    if elapsed <= 0:
        return None
    return (times.user + times.system) / elapsed * 100.0


class ProcessCorrelator:
    """Turns backend process records into ProcessInfo and per-device counts.

    Records whose device cannot be matched to a known device are dropped.
    Counts for every device, including ones with no processes, are written
    back to the store in one step after all records are handled.

    ``psutil.Process`` objects are kept between calls for the pids still on
    a GPU. The first sighting of a pid reports its lifetime CPU average;
    later ones report usage since the previous call.
    """

    def __init__(
        self,
        store: SnapshotStore,
        *,
        enrich: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._enrich = enrich
        self._clock = clock
        self._procs: dict[int, psutil.Process] = {}

    def _tracked(self, pid: int) -> tuple[psutil.Process, bool]:
        proc = self._procs.get(pid)
        if proc is not None and proc.is_running():
            return proc, False
        proc = psutil.Process(pid)
        self._procs[pid] = proc
        return proc, True

    def _host_details(self, pid: int) -> tuple[str | None, float | None]:
        """Command line and CPU percent; each is None if the host will not say."""
        try:
            proc, first = self._tracked(pid)
        except psutil.Error:
            logger.debug("Process %d not visible to psutil", pid)
            return None, None

        command: str | None
        try:
            cmdline = proc.cmdline()
            command = " ".join(cmdline) if cmdline else None
        except psutil.Error:
            command = None
        cpu: float | None
        try:
            if first:
                # Primes the interval counter for the next call.
                proc.cpu_percent(interval=None)
                cpu = _lifetime_cpu_percent(proc, self._clock())
            else:
                cpu = proc.cpu_percent(interval=None)
        except psutil.Error:
            cpu = None
        return command, cpu

    def correlate(
        self,
        records: Iterable[RawProcess],
        known_ids: Iterable[str] = (),
    ) -> list[ProcessInfo]:
        """Resolve, enrich and count ``records``.

        ``known_ids`` extends the devices a record may name directly by id;
        UUID resolution always goes through the published snapshots.
        """
        snapshots = self._store.all()
        by_uuid = self._store.uuid_index()
        known = set(snapshots) | set(known_ids)
        counts: dict[str, list[int]] = {device_id: [0, 0] for device_id in known}
        processes: list[ProcessInfo] = []
        seen: set[int] = set()

        for rec in records:
            device_id = rec.device_id if rec.device_id in known else by_uuid.get(rec.gpu_uuid)
            if device_id is None:
                logger.debug("Dropping pid %d on unmatched GPU %s", rec.pid, rec.gpu_uuid)
                continue

            uuid = rec.gpu_uuid
            if not uuid and device_id in snapshots:
                uuid = snapshots[device_id].identity.uuid or ""
            name = rec.name or process_display_name(rec.pid)
            command, cpu = (None, None)
            if self._enrich:
                seen.add(rec.pid)
                command, cpu = self._host_details(rec.pid)
            processes.append(ProcessInfo(
                pid=rec.pid,
                name=name,
                gpu_uuid=uuid,
                gpu_id=device_id,
                memory_mib=rec.memory_mib,
                workload=rec.workload,
                command=command,
                cpu_percent=cpu,
                gpu_percent=rec.gpu_percent,
            ))
            slot = 0 if rec.workload is WorkloadType.COMPUTE else 1
            counts[device_id][slot] += 1

        for pid in self._procs.keys() - seen:
            del self._procs[pid]
        self._store.apply_process_counts({k: (v[0], v[1]) for k, v in counts.items()})
        return processes
