"""nvidia-smi subprocess backend — CSV queries with no native library."""

from __future__ import annotations

import csv
import io
import logging
import re
import subprocess
from collections.abc import Callable
from typing import Any

from gpuwatch._backend import DeviceHandle, RawProcess, RawReading
from gpuwatch._errors import BackendUnavailableError
from gpuwatch._types import BackendKind, WorkloadType

logger = logging.getLogger("gpuwatch.backend.smi")

# Text nvidia-smi prints in place of a value it cannot supply.
NOT_APPLICABLE = frozenset({"[N/A]", "N/A", "[Not Supported]", "Not Supported", ""})

_LIST_GPUS_RE = re.compile(r"^GPU\s+(\d+):")


def parse_float(text: str) -> float:
    """Parse a numeric CSV field; sentinels and malformed text become 0.0."""
    s = text.strip()
    if s in NOT_APPLICABLE:
        return 0.0
    try:
        return float(s)
    except ValueError:
        logger.debug("Unparseable numeric field %r, using 0", s)
        return 0.0


def parse_int(text: str) -> int:
    return int(parse_float(text))


def parse_str(text: str) -> str | None:
    s = text.strip()
    return None if s in NOT_APPLICABLE else s


def _parse_compute_mode(text: str) -> str | None:
    s = parse_str(text)
    return s.replace("_", " ") if s else None


# (nvidia-smi field, reading group, key, parser). A dotted key nests one level.
QUERY_FIELDS: tuple[tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("index", "", "", parse_str),
    ("name", "identity", "name", parse_str),
    ("uuid", "identity", "uuid", parse_str),
    ("driver_version", "identity", "driver_version", parse_str),
    ("vbios_version", "identity", "vbios_version", parse_str),
    ("serial", "identity", "serial", parse_str),
    ("utilization.gpu", "performance", "utilization", parse_float),
    ("utilization.memory", "performance", "memory_utilization", parse_float),
    ("pstate", "performance", "performance_state", parse_str),
    ("compute_mode", "performance", "compute_mode", _parse_compute_mode),
    ("memory.total", "memory", "total_mib", parse_float),
    ("memory.used", "memory", "used_mib", parse_float),
    ("memory.free", "memory", "free_mib", parse_float),
    ("temperature.gpu", "power_thermal", "temperature_c", parse_float),
    ("power.draw", "power_thermal", "power_draw_w", parse_float),
    ("power.limit", "power_thermal", "power_limit_w", parse_float),
    ("power.min_limit", "power_thermal", "power_limit_min_w", parse_float),
    ("power.max_limit", "power_thermal", "power_limit_max_w", parse_float),
    ("fan.speed", "power_thermal", "fan_speed_pct", parse_float),
    ("clocks.current.graphics", "clocks", "graphics.current_mhz", parse_float),
    ("clocks.current.sm", "clocks", "sm.current_mhz", parse_float),
    ("clocks.current.memory", "clocks", "memory.current_mhz", parse_float),
    ("clocks.current.video", "clocks", "video.current_mhz", parse_float),
    ("clocks.max.graphics", "clocks", "graphics.max_mhz", parse_float),
    ("clocks.max.sm", "clocks", "sm.max_mhz", parse_float),
    ("clocks.max.memory", "clocks", "memory.max_mhz", parse_float),
    ("pcie.link.gen.current", "connectivity", "pcie_gen", parse_int),
    ("pcie.link.gen.max", "connectivity", "pcie_gen_max", parse_int),
    ("pcie.link.width.current", "connectivity", "pcie_width", parse_int),
    ("pcie.link.width.max", "connectivity", "pcie_width_max", parse_int),
    ("pci.bus_id", "connectivity", "pci_bus_id", parse_str),
)

PROCESS_FIELDS = ("gpu_uuid", "pid", "used_memory", "name")


def _read_csv(text: str) -> list[list[str]]:
    reader = csv.reader(io.StringIO(text), skipinitialspace=True)
    return [row for row in reader if row]


def row_to_reading(device_id: str, row: dict[str, str]) -> RawReading:
    """Convert one parsed ``--query-gpu`` record into a RawReading."""
    reading = RawReading(device_id=device_id)
    for smi_field, group, key, parser in QUERY_FIELDS:
        if not group or smi_field not in row:
            continue
        value = parser(row[smi_field])
        if value is None:
            continue
        target: dict[str, Any] = getattr(reading, group)
        if "." in key:
            outer, inner = key.split(".", 1)
            target.setdefault(outer, {})[inner] = value
        else:
            target[key] = value
    return reading


class SmiBackend:
    """Shells out to ``nvidia-smi`` once per poll for all devices.

    Every invocation is bounded by ``timeout_s`` and never retried; a failed
    call yields an empty result for that cycle only.
    """

    kind = BackendKind.SMI

    def __init__(self, *, smi_path: str = "nvidia-smi", timeout_s: float = 10.0) -> None:
        self._smi_path = smi_path
        self._timeout_s = timeout_s
        self._closed = False

        # Failure here surfaces as BackendUnavailableError, not a warning.
        output = self._run(["--list-gpus"], failure_level=logging.DEBUG)
        if output is None:
            raise BackendUnavailableError(f"{smi_path} not found or no NVIDIA GPU detected")
        self.known_ids: list[str] = self._parse_list_gpus(output)
        logger.info("GPU monitoring initialized using %s", smi_path)
        logger.info("Detected %d GPU(s)", len(self.known_ids))

    @staticmethod
    def _parse_list_gpus(output: str) -> list[str]:
        ids: list[str] = []
        lines = [ln.strip() for ln in output.strip().splitlines() if ln.strip()]
        for pos, line in enumerate(lines):
            match = _LIST_GPUS_RE.match(line)
            ids.append(match.group(1) if match else str(pos))
            logger.debug("   %s", line)
        return ids

    def _run(
        self,
        args: list[str],
        *,
        failure_level: int = logging.WARNING,
        exit_level: int | None = None,
    ) -> str | None:
        """Run nvidia-smi and return stdout, or None on any invocation failure.

        A missing binary and a non-zero exit are logged at ``failure_level``;
        ``exit_level`` overrides the latter for calls where a non-zero exit is
        an ordinary answer. Timeouts and other OS errors always warn.
        """
        try:
            result = subprocess.run(
                [self._smi_path, *args],  # noqa: S603
                capture_output=True,
                text=True,
                timeout=self._timeout_s,
            )
        except FileNotFoundError:
            logger.log(failure_level, "%s not found", self._smi_path)
            return None
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %.1fs", self._smi_path, self._timeout_s)
            return None
        except OSError as exc:
            logger.warning("Failed to run %s: %s", self._smi_path, exc)
            return None
        if result.returncode != 0:
            level = failure_level if exit_level is None else exit_level
            logger.log(level, "%s %s exited with %d: %s", self._smi_path, " ".join(args),
                       result.returncode, result.stderr.strip())
            return None
        return result.stdout

    def list_devices(self) -> list[DeviceHandle]:
        if self._closed:
            return []
        fields = [f for f, _, _, _ in QUERY_FIELDS]
        output = self._run([f"--query-gpu={','.join(fields)}", "--format=csv,noheader,nounits"])
        if output is None:
            return []

        handles: list[DeviceHandle] = []
        for record in _read_csv(output):
            if len(record) < len(fields):
                logger.debug("Skipping short nvidia-smi record: %r", record)
                continue
            row = dict(zip(fields, record))
            device_id = parse_str(row["index"])
            if device_id is None:
                continue
            handles.append(DeviceHandle(device_id=device_id, native=row))
            if device_id not in self.known_ids:
                self.known_ids.append(device_id)
        return handles

    def read_raw(self, handle: DeviceHandle) -> RawReading:
        row: dict[str, str] = handle.native or {}
        return row_to_reading(handle.device_id, row)

    def list_processes(self) -> list[RawProcess]:
        """Compute processes only; nvidia-smi reports no per-process GPU utilization."""
        if self._closed:
            return []
        # Some drivers exit non-zero when no compute processes are running.
        output = self._run(
            [f"--query-compute-apps={','.join(PROCESS_FIELDS)}", "--format=csv,noheader,nounits"],
            exit_level=logging.DEBUG,
        )
        if output is None:
            return []

        processes: list[RawProcess] = []
        for record in _read_csv(output):
            if len(record) < len(PROCESS_FIELDS):
                continue
            uuid, pid_text, mem_text, name = (v.strip() for v in record[:4])
            try:
                pid = int(pid_text)
            except ValueError:
                logger.debug("Skipping process record with bad pid: %r", record)
                continue
            processes.append(RawProcess(
                gpu_uuid=uuid,
                pid=pid,
                memory_mib=parse_float(mem_text),
                workload=WorkloadType.COMPUTE,
                name=parse_str(name),
                gpu_percent=0.0,
            ))
        return processes

    def shutdown(self) -> None:
        if not self._closed:
            self._closed = True
            logger.info("GPU monitor (%s) shutdown", self._smi_path)
