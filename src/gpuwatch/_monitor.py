"""Monitor facade — backend selection and the collect/shutdown lifecycle."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from types import TracebackType

from gpuwatch._backend import DeviceBackend, DeviceHandle
from gpuwatch._backend_none import UnavailableBackend
from gpuwatch._backend_nvml import NvmlBackend
from gpuwatch._backend_smi import SmiBackend
from gpuwatch._builder import SnapshotBuilder, rfc3339
from gpuwatch._config import GPUWatchConfig
from gpuwatch._errors import BackendUnavailableError, UnknownDeviceError
from gpuwatch._history import SampleHistory, SnapshotStore
from gpuwatch._processes import ProcessCorrelator
from gpuwatch._types import BackendKind, GPUSnapshot, ProcessInfo

logger = logging.getLogger("gpuwatch.monitor")


def select_backend(config: GPUWatchConfig) -> DeviceBackend:
    """Pick the device access path once, per ``config.backend``.

    In ``auto`` mode the probe order is NVML, then nvidia-smi, then the
    unavailable backend. A forced backend that cannot start raises
    ``BackendUnavailableError``.
    """
    if config.backend == "none":
        return UnavailableBackend("disabled by configuration")
    if config.backend == "nvml":
        return NvmlBackend()
    if config.backend == "nvidia-smi":
        return SmiBackend(smi_path=config.smi_path, timeout_s=config.smi_timeout_s)

    reasons: list[str] = []
    try:
        return NvmlBackend()
    except BackendUnavailableError as exc:
        logger.debug("NVML backend unavailable: %s", exc)
        reasons.append(str(exc))
    try:
        return SmiBackend(smi_path=config.smi_path, timeout_s=config.smi_timeout_s)
    except BackendUnavailableError as exc:
        logger.debug("nvidia-smi backend unavailable: %s", exc)
        reasons.append(str(exc))
    return UnavailableBackend("; ".join(reasons))


class GPUMonitor:
    """Owns one backend plus the history and snapshot store for its devices.

    Collection calls are serialized against each other; ``latest_snapshot``
    readers only take the store's read lock and never wait on a backend.
    """

    def __init__(
        self,
        backend: DeviceBackend,
        config: GPUWatchConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or GPUWatchConfig()
        self._backend = backend
        self._clock = clock
        self._history = SampleHistory()
        self._store = SnapshotStore()
        self._builder = SnapshotBuilder(self._history, clock=clock)
        self._correlator = ProcessCorrelator(self._store, enrich=self.config.enrich_processes)
        self._cycle_lock = threading.Lock()
        self._closed = False

        probed = getattr(backend, "known_ids", None)
        if probed is None:
            probed = [h.device_id for h in backend.list_devices()]
        self._known_ids: list[str] = []
        self._remember(probed)

    @property
    def backend_kind(self) -> BackendKind:
        return self._backend.kind

    @property
    def telemetry_available(self) -> bool:
        return self._backend.kind is not BackendKind.UNAVAILABLE

    @property
    def unavailable_reason(self) -> str | None:
        """Why telemetry is off, or None when a real backend is active."""
        if isinstance(self._backend, UnavailableBackend):
            return self._backend.reason
        return None

    def device_ids(self) -> list[str]:
        return list(self._known_ids)

    def _remember(self, ids: list[str]) -> None:
        for device_id in ids:
            if device_id not in self._known_ids:
                self._known_ids.append(device_id)

    def _empty_snapshot(self, device_id: str) -> GPUSnapshot:
        now = self._clock()
        return GPUSnapshot(device_id=device_id, timestamp=rfc3339(now), captured_at=now)

    def _build(self, handle: DeviceHandle) -> GPUSnapshot:
        snapshot = self._builder.build(self._backend, handle)
        self._history.commit(snapshot)
        return snapshot

    def collect_snapshot(self, device_id: str) -> GPUSnapshot:
        """Collect one device.

        Raises ``UnknownDeviceError`` only for ids never reported by the
        backend. A known device that cannot be read this cycle yields a
        snapshot with every metric group empty.
        """
        with self._cycle_lock:
            handles = [] if self._closed else self._backend.list_devices()
            self._remember([h.device_id for h in handles])
            if device_id not in self._known_ids:
                raise UnknownDeviceError(device_id)

            handle = next((h for h in handles if h.device_id == device_id), None)
            if handle is None:
                logger.debug("GPU %s known but not readable this cycle", device_id)
                return self._empty_snapshot(device_id)
            snapshot = self._build(handle)
            self._store.put(snapshot)
            return snapshot

    def collect_snapshots(self) -> dict[str, GPUSnapshot]:
        """Collect every device in one cycle and publish the result atomically.

        A cycle that reads nothing leaves the previously published snapshots
        in place.
        """
        with self._cycle_lock:
            if self._closed:
                return {}
            handles = self._backend.list_devices()
            self._remember([h.device_id for h in handles])
            snapshots = {h.device_id: self._build(h) for h in handles}
            if snapshots:
                self._store.swap(snapshots)
            return snapshots

    def collect_all_processes(self) -> list[ProcessInfo]:
        """GPU processes across all known devices; empty when there are none."""
        with self._cycle_lock:
            if self._closed:
                return []
            records = self._backend.list_processes()
            return self._correlator.correlate(records, self._known_ids)

    def latest_snapshot(self, device_id: str) -> GPUSnapshot | None:
        return self._store.get(device_id)

    def latest_snapshots(self) -> dict[str, GPUSnapshot]:
        return self._store.all()

    def shutdown(self) -> None:
        """Release the backend. Safe to call more than once."""
        with self._cycle_lock:
            if self._closed:
                return
            self._closed = True
            self._backend.shutdown()
            self._history.clear()
        logger.debug("GPU monitor shut down")

    def __enter__(self) -> GPUMonitor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.shutdown()


def initialize(config: GPUWatchConfig | None = None) -> GPUMonitor:
    """Select a backend and return a ready monitor.

    Hosts without GPU telemetry get a monitor whose ``telemetry_available``
    is False rather than an exception, unless a backend was forced.
    """
    config = config or GPUWatchConfig()
    backend = select_backend(config)
    monitor = GPUMonitor(backend, config)
    if monitor.telemetry_available:
        logger.info(
            "GPU monitor ready: backend=%s devices=%d",
            backend.kind.value, len(monitor.device_ids()),
        )
    return monitor
