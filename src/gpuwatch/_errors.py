"""Exception hierarchy."""

from __future__ import annotations


class GPUWatchError(Exception):
    """Base exception for all gpuwatch errors."""


class BackendUnavailableError(GPUWatchError):
    """A specifically requested device access path could not be started."""


class UnknownDeviceError(GPUWatchError, KeyError):
    """The requested device id was never reported by the backend."""

    def __init__(self, device_id: str) -> None:
        super().__init__(device_id)
        self.device_id = device_id

    def __str__(self) -> str:
        return f"unknown device id: {self.device_id!r}"
