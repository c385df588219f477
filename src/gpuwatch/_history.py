"""Per-device single-slot sample history and the live snapshot map."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass

from gpuwatch._rwlock import ReadWriteLock
from gpuwatch._types import GPUSnapshot


@dataclass(frozen=True)
class HistoryEntry:
    """The part of a finished snapshot that survives into the next cycle."""

    memory_used_mib: float
    captured_at: float


class SampleHistory:
    """Holds at most one previous sample per device id.

    Entries are overwritten, never appended. Owned by a monitor instance, so
    separate monitors never share history.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._entries: dict[str, HistoryEntry] = {}

    def get(self, device_id: str) -> HistoryEntry | None:
        with self._lock.read_locked():
            return self._entries.get(device_id)

    def commit(self, snapshot: GPUSnapshot) -> bool:
        """Record a finalized snapshot.

        A snapshot with no used-memory reading drops the device's entry, so the
        next rate is never computed across the gap. Returns False in that case.
        """
        used = snapshot.memory.used_mib
        with self._lock.write_locked():
            if used is None:
                self._entries.pop(snapshot.device_id, None)
                return False
            self._entries[snapshot.device_id] = HistoryEntry(
                memory_used_mib=used, captured_at=snapshot.captured_at
            )
        return True

    def clear(self) -> None:
        with self._lock.write_locked():
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)


class SnapshotStore:
    """Latest published snapshot per device, shared between poller and readers.

    Snapshots are immutable; writers replace whole entries (or the whole map)
    under the write lock, so a reader never sees a mix of two cycles.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._snapshots: dict[str, GPUSnapshot] = {}

    def get(self, device_id: str) -> GPUSnapshot | None:
        with self._lock.read_locked():
            return self._snapshots.get(device_id)

    def all(self) -> dict[str, GPUSnapshot]:
        with self._lock.read_locked():
            return dict(self._snapshots)

    def uuid_index(self) -> dict[str, str]:
        """Map device UUID to device id for every snapshot that carries one."""
        with self._lock.read_locked():
            return {
                snap.identity.uuid: device_id
                for device_id, snap in self._snapshots.items()
                if snap.identity.uuid
            }

    def put(self, snapshot: GPUSnapshot) -> None:
        with self._lock.write_locked():
            self._snapshots[snapshot.device_id] = snapshot

    def swap(self, snapshots: Mapping[str, GPUSnapshot]) -> None:
        new_map = dict(snapshots)
        with self._lock.write_locked():
            self._snapshots = new_map

    def apply_process_counts(self, counts: Mapping[str, tuple[int, int]]) -> None:
        """Write (compute, graphics) counts into every stored snapshot in one step.

        Devices missing from ``counts`` get zero of each.
        """
        with self._lock.write_locked():
            self._snapshots = {
                device_id: dataclasses.replace(
                    snap,
                    compute_processes_count=counts.get(device_id, (0, 0))[0],
                    graphics_processes_count=counts.get(device_id, (0, 0))[1],
                )
                for device_id, snap in self._snapshots.items()
            }

    def clear(self) -> None:
        with self._lock.write_locked():
            self._snapshots = {}
