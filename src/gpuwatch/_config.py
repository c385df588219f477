"""Monitor configuration."""

from __future__ import annotations

from dataclasses import dataclass

BACKEND_CHOICES = ("auto", "nvml", "nvidia-smi", "none")


@dataclass(frozen=True)
class GPUWatchConfig:
    """Immutable monitor configuration."""

    backend: str = "auto"
    smi_path: str = "nvidia-smi"
    smi_timeout_s: float = 10.0
    enrich_processes: bool = True

    def __post_init__(self) -> None:
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(
                f"backend must be one of {', '.join(BACKEND_CHOICES)}; got {self.backend!r}"
            )
        if self.smi_timeout_s <= 0:
            raise ValueError("smi_timeout_s must be positive")
