"""Read per-container resource statistics from cgroup v1 and v2 filesystems."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

CGROUPFS_MEMORY = "cgroupfs_memory_usage_bytes"
CGROUPFS_KERNEL_MEMORY = "cgroupfs_kernel_memory_usage_bytes"
CGROUPFS_TCP_MEMORY = "cgroupfs_tcp_memory_usage_bytes"
CGROUPFS_CPU = "cgroupfs_cpu_usage_us"
CGROUPFS_SYSTEM_CPU = "cgroupfs_system_cpu_usage_us"
CGROUPFS_USER_CPU = "cgroupfs_user_cpu_usage_us"
CGROUPFS_READ_IO = "cgroupfs_ioread_bytes"
CGROUPFS_WRITE_IO = "cgroupfs_iowrite_bytes"
BLOCK_DEVICES_IO = "block_devices_used"

DEFAULT_PROC_ROOT = "/proc"
DEFAULT_CGROUP_ROOT = "/sys/fs/cgroup"

_NS_PER_SECOND = 1_000_000_000
# cpuacct.stat reports USER_HZ ticks, which Linux fixes at 100 per second.
_CLOCK_TICKS = 100


class CgroupStatError(Exception):
    """Cgroup statistics could not be read."""


class _StatCollection(Protocol):
    def set_aggr_stat(self, key: str, value: int) -> None: ...

    def add_delta_stat(self, key: str, value: int) -> None: ...


@dataclass
class CgroupStat:
    """A snapshot of one cgroup. CPU times are in nanoseconds.

    ``memory_usage`` and ``cpu_total_ns`` are ``None`` when the controller
    is absent.
    """

    memory_usage: int | None = None
    kernel_memory_usage: int = 0
    tcp_memory_usage: int = 0
    cpu_total_ns: int | None = None
    cpu_system_ns: int = 0
    cpu_user_ns: int = 0
    io_service_bytes: list[tuple[str, int]] = field(default_factory=list)


def _read_int(path: Path) -> int:
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return 0
    except OSError as exc:
        raise CgroupStatError(f"failed to read {path}: {exc}") from exc
    if not text:
        return 0
    try:
        return int(text)
    except ValueError as exc:
        raise CgroupStatError(f"unexpected content in {path}: {text!r}") from exc


def _read_lines(path: Path) -> list[str]:
    try:
        return path.read_text().splitlines()
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise CgroupStatError(f"failed to read {path}: {exc}") from exc


def _read_keyed(path: Path) -> dict[str, int]:
    values: dict[str, int] = {}
    for line in _read_lines(path):
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            values[parts[0]] = int(parts[1])
        except ValueError as exc:
            raise CgroupStatError(f"unexpected content in {path}: {line!r}") from exc
    return values


def _apply_io(container_id: str, entries: list[tuple[str, int]], stat_map: Mapping[str, _StatCollection]) -> None:
    for op, value in entries:
        if op == "Read":
            stat_map[CGROUPFS_READ_IO].add_delta_stat(container_id, value)
            stat_map[BLOCK_DEVICES_IO].add_delta_stat(container_id, 1)
        if op == "Write":
            stat_map[CGROUPFS_WRITE_IO].add_delta_stat(container_id, value)


def _apply_cpu(container_id: str, stat: CgroupStat, stat_map: Mapping[str, _StatCollection]) -> None:
    stat_map[CGROUPFS_CPU].set_aggr_stat(container_id, (stat.cpu_total_ns or 0) // 1000)
    stat_map[CGROUPFS_SYSTEM_CPU].set_aggr_stat(container_id, stat.cpu_system_ns // 1000)
    stat_map[CGROUPFS_USER_CPU].set_aggr_stat(container_id, stat.cpu_user_ns // 1000)


class CgroupV1StatReader:
    """Statistics of a cgroup in a v1 (per-controller) hierarchy."""

    def __init__(self, root: str | Path, path: str):
        self.root = Path(root)
        self.path = path

    def _subsystem(self, name: str) -> Path:
        return self.root / name / self.path.lstrip("/")

    def read(self) -> CgroupStat:
        stat = CgroupStat()
        memory = self._subsystem("memory")
        if memory.is_dir():
            stat.memory_usage = _read_int(memory / "memory.usage_in_bytes")
            stat.kernel_memory_usage = _read_int(memory / "memory.kmem.usage_in_bytes")
            stat.tcp_memory_usage = _read_int(memory / "memory.kmem.tcp.usage_in_bytes")
        cpuacct = self._subsystem("cpuacct")
        if cpuacct.is_dir():
            stat.cpu_total_ns = _read_int(cpuacct / "cpuacct.usage")
            ticks = _read_keyed(cpuacct / "cpuacct.stat")
            stat.cpu_user_ns = ticks.get("user", 0) * _NS_PER_SECOND // _CLOCK_TICKS
            stat.cpu_system_ns = ticks.get("system", 0) * _NS_PER_SECOND // _CLOCK_TICKS
        blkio = self._subsystem("blkio")
        if blkio.is_dir():
            stat.io_service_bytes = self._read_blkio(blkio)
        return stat

    @staticmethod
    def _read_blkio(blkio: Path) -> list[tuple[str, int]]:
        for name in ("blkio.io_service_bytes_recursive", "blkio.throttle.io_service_bytes_recursive"):
            entries = []
            for line in _read_lines(blkio / name):
                parts = line.split()
                if len(parts) != 3:
                    continue  # the closing "Total <n>" line
                try:
                    entries.append((parts[1], int(parts[2])))
                except ValueError as exc:
                    raise CgroupStatError(f"unexpected blkio entry: {line!r}") from exc
            if entries:
                return entries
        return []

    def set_cgroup_stat(self, container_id: str, stat_map: Mapping[str, _StatCollection]) -> None:
        """Store the cgroup's current statistics under ``container_id``."""
        stat = self.read()
        if stat.memory_usage is None:
            raise CgroupStatError("cgroup metrics does not exist, the cgroup might be deleted")
        stat_map[CGROUPFS_MEMORY].set_aggr_stat(container_id, stat.memory_usage)
        stat_map[CGROUPFS_KERNEL_MEMORY].set_aggr_stat(container_id, stat.kernel_memory_usage)
        stat_map[CGROUPFS_TCP_MEMORY].set_aggr_stat(container_id, stat.tcp_memory_usage)
        if stat.cpu_total_ns is not None:
            _apply_cpu(container_id, stat, stat_map)
        _apply_io(container_id, stat.io_service_bytes, stat_map)


class CgroupV2StatReader:
    """Statistics of a cgroup in the v2 unified hierarchy."""

    def __init__(self, root: str | Path, path: str):
        self.root = Path(root)
        self.path = path

    @property
    def directory(self) -> Path:
        return self.root / self.path.lstrip("/")

    def read(self) -> CgroupStat:
        directory = self.directory
        if not directory.is_dir():
            raise CgroupStatError(f"cgroup directory {directory} does not exist")
        cpu = _read_keyed(directory / "cpu.stat")
        stat = CgroupStat(
            memory_usage=_read_int(directory / "memory.current"),
            cpu_total_ns=cpu.get("usage_usec", 0) * 1000,
            cpu_system_ns=cpu.get("system_usec", 0) * 1000,
            cpu_user_ns=cpu.get("user_usec", 0) * 1000,
        )
        for line in _read_lines(directory / "io.stat"):
            for item in line.split()[1:]:
                key, _, value = item.partition("=")
                op = {"rbytes": "Read", "wbytes": "Write"}.get(key)
                if op is None:
                    continue
                try:
                    stat.io_service_bytes.append((op, int(value)))
                except ValueError as exc:
                    raise CgroupStatError(f"unexpected io.stat entry: {line!r}") from exc
        return stat

    def set_cgroup_stat(self, container_id: str, stat_map: Mapping[str, _StatCollection]) -> None:
        """Store the cgroup's current statistics under ``container_id``."""
        stat = self.read()
        # kernel and TCP memory are not available for v2 cgroups
        stat_map[CGROUPFS_MEMORY].set_aggr_stat(container_id, stat.memory_usage or 0)
        _apply_cpu(container_id, stat, stat_map)
        _apply_io(container_id, stat.io_service_bytes, stat_map)


def parse_cgroup_file(path: str | Path) -> tuple[dict[str, str], str]:
    """Parse a ``/proc/<pid>/cgroup`` file.

    Returns the path of each v1 controller and the unified (v2) path.
    """
    try:
        lines = Path(path).read_text().splitlines()
    except OSError as exc:
        raise CgroupStatError(f"failed to read {path}: {exc}") from exc
    controllers: dict[str, str] = {}
    unified = ""
    for line in lines:
        if not line:
            continue
        parts = line.split(":", 2)
        if len(parts) < 3:
            raise CgroupStatError(f"invalid cgroup entry: {line!r}")
        hierarchy, names, cgroup_path = parts
        for name in names.split(","):
            if name:
                controllers[name] = cgroup_path
        if hierarchy == "0":
            unified = cgroup_path
    return controllers, unified


def new_cgroup_stat_manager(
    pid: int,
    cgroup_version: int | None = None,
    proc_root: str | Path = DEFAULT_PROC_ROOT,
    cgroup_root: str | Path = DEFAULT_CGROUP_ROOT,
) -> CgroupV1StatReader | CgroupV2StatReader | None:
    """Return a statistics reader for the cgroup of ``pid``.

    Returns ``None`` when not running on Linux.
    """
    if not sys.platform.startswith("linux"):
        return None
    controllers, path = parse_cgroup_file(Path(proc_root, str(pid), "cgroup"))
    if not path:
        # without a unified entry, use the path of the pids controller
        path = controllers.get("pids", "")
    if cgroup_version is None:
        # the unified hierarchy exposes cgroup.controllers at its root
        cgroup_version = 2 if Path(cgroup_root, "cgroup.controllers").exists() else 1
    if cgroup_version == 1:
        return CgroupV1StatReader(cgroup_root, path)
    return CgroupV2StatReader(cgroup_root, path)