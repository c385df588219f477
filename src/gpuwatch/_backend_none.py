"""Backend for hosts with no GPU management capability."""

from __future__ import annotations

import logging

from gpuwatch._backend import DeviceHandle, RawProcess, RawReading
from gpuwatch._types import BackendKind

logger = logging.getLogger("gpuwatch.backend.none")


class UnavailableBackend:
    """Structurally disabled telemetry: every call returns empty, cheaply."""

    kind = BackendKind.UNAVAILABLE

    def __init__(self, reason: str = "GPU telemetry is not available on this host") -> None:
        self.reason = reason
        logger.info("GPU monitoring is disabled: %s", reason)

    def list_devices(self) -> list[DeviceHandle]:
        return []

    def read_raw(self, handle: DeviceHandle) -> RawReading:
        return RawReading(device_id=handle.device_id)

    def list_processes(self) -> list[RawProcess]:
        return []

    def shutdown(self) -> None:
        pass
