"""Tests for process correlation and enrichment, mostly against a fake psutil."""

from __future__ import annotations

import inspect
import os
import time
from types import SimpleNamespace

import psutil
import pytest

import gpuwatch._processes as proc_mod
from gpuwatch._backend import RawProcess
from gpuwatch._history import SnapshotStore
from gpuwatch._processes import ProcessCorrelator, name_from_cmdline, process_display_name
from gpuwatch._types import DeviceIdentity, GPUSnapshot, WorkloadType


class FakeProcess:
    """psutil.Process stand-in keyed by pid."""

    table: dict[int, dict[str, object]] = {}

    def __init__(self, pid: int) -> None:
        if pid not in self.table:
            raise psutil.NoSuchProcess(pid)
        self.pid = pid
        self._info = self.table[pid]

    def _get(self, key: str) -> object:
        value = self._info[key]
        if isinstance(value, Exception):
            raise value
        return value

    def name(self) -> object:
        return self._get("name")

    def cmdline(self) -> object:
        return self._get("cmdline")

    def cpu_percent(self, interval: float | None = None) -> object:
        assert interval is None
        return self._get("cpu")

    def cpu_times(self) -> object:
        user, system = self._get("cpu_times")  # type: ignore[misc]
        return SimpleNamespace(user=user, system=system)

    def create_time(self) -> float:
        return 1000.0

    def is_running(self) -> bool:
        return self.pid in self.table


@pytest.fixture
def fake_psutil(monkeypatch: pytest.MonkeyPatch) -> type[FakeProcess]:
    FakeProcess.table = {
        100: {
            "name": "python3",
            "cmdline": ["python3", "-u", "train.py", "--lr", "3e-4"],
            "cpu": 42.0,
            "cpu_times": (60.0, 39.5),
        },
        200: {
            "name": "Xorg",
            "cmdline": ["/usr/lib/xorg/Xorg", ":0"],
            "cpu": 1.0,
            "cpu_times": (0.5, 0.5),
        },
        300: {
            "name": "ollama",
            "cmdline": psutil.AccessDenied(300),
            "cpu": psutil.AccessDenied(300),
            "cpu_times": psutil.AccessDenied(300),
        },
    }
    monkeypatch.setattr(proc_mod.psutil, "Process", FakeProcess)
    return FakeProcess


def _store(*devices: tuple[str, str]) -> SnapshotStore:
    store = SnapshotStore()
    for device_id, uuid in devices:
        store.put(GPUSnapshot(
            device_id=device_id,
            timestamp="t",
            captured_at=1.0,
            identity=DeviceIdentity(uuid=uuid),
        ))
    return store


def _raw(pid: int, uuid: str = "GPU-a", **kwargs: object) -> RawProcess:
    defaults: dict[str, object] = {"memory_mib": 1024.0, "workload": WorkloadType.COMPUTE}
    defaults.update(kwargs)
    return RawProcess(gpu_uuid=uuid, pid=pid, **defaults)  # type: ignore[arg-type]


class TestNameFromCmdline:
    def test_skips_flags_and_interpreters(self) -> None:
        assert name_from_cmdline(["/usr/bin/python3", "-m", "serve.py"]) == "serve.py"

    def test_basename(self) -> None:
        assert name_from_cmdline(["node", "/srv/app/index.js"]) == "index.js"

    def test_nothing_usable(self) -> None:
        assert name_from_cmdline(["java", "-jar"]) is None


class TestProcessDisplayName:
    def test_plain_executable(self, fake_psutil: type[FakeProcess]) -> None:
        assert process_display_name(200) == "Xorg"

    def test_interpreter_uses_script(self, fake_psutil: type[FakeProcess]) -> None:
        assert process_display_name(100) == "train.py"

    def test_vanished_process(self, fake_psutil: type[FakeProcess]) -> None:
        assert process_display_name(999) == "PID:999"


class TestCorrelate:
    def test_uuid_resolution(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"), ("1", "GPU-b"))
        procs = ProcessCorrelator(store).correlate([_raw(100, "GPU-b")])
        assert len(procs) == 1
        assert procs[0].gpu_id == "1"
        assert procs[0].gpu_uuid == "GPU-b"

    def test_unmatched_uuid_dropped(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"))
        procs = ProcessCorrelator(store).correlate([_raw(100, "GPU-zzz"), _raw(200)])
        assert [p.pid for p in procs] == [200]

    def test_direct_device_id(self, fake_psutil: type[FakeProcess]) -> None:
        store = SnapshotStore()
        procs = ProcessCorrelator(store).correlate(
            [_raw(200, "GPU-a", device_id="0")], known_ids=["0"]
        )
        assert procs[0].gpu_id == "0"

    def test_enrichment(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"))
        correlator = ProcessCorrelator(store, clock=lambda: 1100.0)
        proc = correlator.correlate([_raw(100, gpu_percent=12.0)])[0]
        assert proc.name == "train.py"
        assert proc.command == "python3 -u train.py --lr 3e-4"
        assert proc.cpu_percent == pytest.approx(99.5)
        assert proc.gpu_percent == 12.0
        assert proc.memory_mib == 1024.0

    def test_backend_name_wins(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"))
        proc = ProcessCorrelator(store).correlate([_raw(100, name="vllm")])[0]
        assert proc.name == "vllm"

    def test_enrichment_failure_keeps_record(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"))
        procs = ProcessCorrelator(store).correlate([_raw(300), _raw(999)])
        assert [p.pid for p in procs] == [300, 999]
        assert procs[0].name == "ollama"
        assert procs[0].command is None
        assert procs[0].cpu_percent is None
        assert procs[1].name == "PID:999"

    def test_enrichment_disabled(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"))
        proc = ProcessCorrelator(store, enrich=False).correlate([_raw(100)])[0]
        assert proc.command is None
        assert proc.cpu_percent is None

    def test_counts_written_back(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"), ("1", "GPU-b"))
        ProcessCorrelator(store).correlate([
            _raw(100),
            _raw(300),
            _raw(200, workload=WorkloadType.GRAPHICS),
        ])
        gpu0, gpu1 = store.get("0"), store.get("1")
        assert gpu0 is not None and gpu1 is not None
        assert (gpu0.compute_processes_count, gpu0.graphics_processes_count) == (2, 1)
        assert (gpu1.compute_processes_count, gpu1.graphics_processes_count) == (0, 0)

    def test_no_processes_is_not_an_error(self, fake_psutil: type[FakeProcess]) -> None:
        store = _store(("0", "GPU-a"))
        assert ProcessCorrelator(store).correlate([]) == []
        assert store.get("0").compute_processes_count == 0  # type: ignore[union-attr]


def test_correlator_docstring_wrapped() -> None:
    doc = inspect.getdoc(ProcessCorrelator) or ""
    assert doc
    assert max(len(line) for line in doc.splitlines()) <= 80


def _burn_cpu(seconds: float) -> None:
    deadline = time.perf_counter() + seconds
    total = 0
    while time.perf_counter() < deadline:
        total += 1


class TestCpuPercent:
    def test_first_sighting_is_lifetime_average(self, fake_psutil: type[FakeProcess]) -> None:
        correlator = ProcessCorrelator(_store(("0", "GPU-a")), clock=lambda: 1100.0)
        proc = correlator.correlate([_raw(100)])[0]
        assert proc.cpu_percent == pytest.approx(99.5)

    def test_later_sightings_use_interval(self, fake_psutil: type[FakeProcess]) -> None:
        correlator = ProcessCorrelator(_store(("0", "GPU-a")), clock=lambda: 1100.0)
        correlator.correlate([_raw(100)])
        assert correlator.correlate([_raw(100)])[0].cpu_percent == 42.0

    def test_departed_pids_are_forgotten(self, fake_psutil: type[FakeProcess]) -> None:
        correlator = ProcessCorrelator(_store(("0", "GPU-a")), clock=lambda: 1100.0)
        correlator.correlate([_raw(100), _raw(200)])
        correlator.correlate([_raw(200)])
        proc = correlator.correlate([_raw(100)])[0]
        assert proc.cpu_percent == pytest.approx(99.5)

    def test_busy_process_is_nonzero(self) -> None:
        correlator = ProcessCorrelator(_store(("0", "GPU-a")))
        pid = os.getpid()
        _burn_cpu(0.3)
        first = correlator.correlate([_raw(pid)])[0]
        _burn_cpu(0.3)
        second = correlator.correlate([_raw(pid)])[0]
        assert first.cpu_percent is not None and first.cpu_percent > 0
        assert second.cpu_percent is not None and second.cpu_percent > 0
