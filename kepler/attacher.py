"""Collect per-process eBPF metrics through the available attachment backend."""

from __future__ import annotations

import logging
import struct
import sys
from dataclasses import dataclass
from typing import Iterable

log = logging.getLogger(__name__)

CPU_CYCLE_LABEL = "cpu_cycles"
CPU_REF_CYCLE_LABEL = "cpu_ref_cycles"
CPU_INSTRUCTION_LABEL = "cpu_instructions"
CACHE_MISS_LABEL = "cache_miss"
TASK_CLOCK_LABEL = "task_clock"

CPU_TIME_LABEL = "bpf_cpu_time_ms"
PAGE_CACHE_HIT_LABEL = "bpf_page_cache_hit"
IRQ_NET_TX_LABEL = "bpf_net_tx_irq"
IRQ_NET_RX_LABEL = "bpf_net_rx_irq"
IRQ_BLOCK_LABEL = "bpf_block_irq"
SOFT_IRQ_EVENTS = (IRQ_NET_TX_LABEL, IRQ_NET_RX_LABEL, IRQ_BLOCK_LABEL)

# softirq vector numbers, per irq/softirq_entry/format
IRQ_NET_TX = 2
IRQ_NET_RX = 3
IRQ_BLOCK = 4
MAX_IRQ = 10

TABLE_PROCESS_NAME = "processes"
TABLE_CPU_FREQ_NAME = "cpu_freq_array"
MAP_SIZE = 10240
CPU_NUM_SIZE = 128
BPF_PERF_ARRAY_PREFIX = "_event_reader"

LIBBPF_BUILT = False
BCC_BUILT = False

_BYTE_ORDER_PREFIX = {"little": "<", "big": ">"}
_PROCESS_FIELDS = f"9Q{MAX_IRQ}H16s"


class AttachError(Exception):
    """The eBPF program could not be attached."""


@dataclass
class PerfCounter:
    ev_type: int
    ev_config: int
    enabled: bool = True


@dataclass(frozen=True)
class ProcessBPFMetrics:
    """One entry of the kernel's process table; layout matches the eBPF program."""

    cgroup_id: int = 0
    thread_pid: int = 0
    pid: int = 0
    process_run_time: int = 0
    task_clock_time: int = 0
    cpu_cycles: int = 0
    cpu_instr: int = 0
    cache_misses: int = 0
    page_cache_hit: int = 0
    vec_nr: tuple[int, ...] = (0,) * MAX_IRQ
    command: bytes = b"\x00" * 16

    @staticmethod
    def _struct(byteorder: str) -> struct.Struct:
        try:
            return struct.Struct(_BYTE_ORDER_PREFIX[byteorder] + _PROCESS_FIELDS)
        except KeyError:
            raise ValueError(f"unknown byte order: {byteorder!r}") from None

    @classmethod
    def from_bytes(cls, data: bytes, byteorder: str = sys.byteorder) -> ProcessBPFMetrics:
        layout = cls._struct(byteorder)
        if len(data) < layout.size:
            raise ValueError(f"process entry needs {layout.size} bytes, got {len(data)}")
        values = layout.unpack_from(data)
        return cls(*values[:9], vec_nr=tuple(values[9 : 9 + MAX_IRQ]), command=values[-1])

    def to_bytes(self, byteorder: str = sys.byteorder) -> bytes:
        return self._struct(byteorder).pack(
            self.cgroup_id,
            self.thread_pid,
            self.pid,
            self.process_run_time,
            self.task_clock_time,
            self.cpu_cycles,
            self.cpu_instr,
            self.cache_misses,
            self.page_cache_hit,
            *self.vec_nr,
            self.command,
        )

    def command_name(self) -> str:
        """The process command, up to the first NUL byte."""
        return self.command.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def decode_process_table(values: Iterable[bytes], byteorder: str = sys.byteorder) -> list[ProcessBPFMetrics]:
    """Decode raw process table values, skipping entries that do not decode."""
    decoded = []
    for value in values:
        try:
            decoded.append(ProcessBPFMetrics.from_bytes(value, byteorder))
        except ValueError as exc:
            log.debug("failed to decode received data: %s", exc)
    return decoded


def decode_cpu_freq_table(entries: Iterable[tuple[bytes, bytes]]) -> dict[int, int]:
    """Decode (cpu, frequency) pairs of little-endian 32-bit values."""
    return {
        int.from_bytes(key[:4], "little", signed=True): int.from_bytes(value[:4], "little")
        for key, value in entries
    }


@dataclass
class AttacherConfig:
    use_libbpf_attacher: bool = False
    expose_hardware_counter_metrics: bool = True
    expose_irq_counter_metrics: bool = True


class Attacher:
    """Attaches the eBPF program and reads the metrics it gathers."""

    def __init__(self, config: AttacherConfig | None = None):
        self.config = config if config is not None else AttacherConfig()
        self.hardware_counters_enabled = True
        self.perf_events: dict[str, list[int]] = {}
        # batch map operations are used until the kernel turns them down
        self.batch_get = True
        self.batch_get_and_delete = self.batch_get
        self._libbpf_counters: dict[str, PerfCounter] = {}
        self._bcc_counters: dict[str, PerfCounter] = {}
        self._counters: dict[str, PerfCounter] = {}

    def counters(self) -> dict[str, PerfCounter]:
        """The perf counters of the backend selected by the configuration."""
        if self.config.use_libbpf_attacher:
            return self._libbpf_counters
        return self._bcc_counters

    def enabled_hw_counters(self) -> list[str]:
        self._counters = self.counters()
        if not self.config.expose_hardware_counter_metrics:
            log.debug("hardware counter metrics not enabled")
            return []
        return [name for name, counter in self._counters.items() if counter.enabled]

    def enabled_sw_counters(self) -> list[str]:
        metrics = [CPU_TIME_LABEL, PAGE_CACHE_HIT_LABEL]
        if not self.config.expose_irq_counter_metrics:
            log.debug("irq counter metrics not enabled")
            return metrics
        metrics.extend(SOFT_IRQ_EVENTS)
        return metrics

    def _detach_libbpf(self) -> None:
        self.perf_events.clear()

    def _detach_bcc(self) -> None:
        self.perf_events.clear()

    def attach(self) -> object:
        """Attach the program, falling back from libbpf to bcc.

        Neither backend is built into this package, so attaching always
        fails with :class:`AttachError`.
        """
        if self.config.use_libbpf_attacher and not LIBBPF_BUILT:
            log.debug("libbpf attachment requested but not built, using bcc")
        if not BCC_BUILT:
            raise AttachError("no bcc build tag")
        raise AttachError("bcc attachment is not available")

    def detach(self) -> None:
        if self.config.use_libbpf_attacher:
            self._detach_libbpf()
        self._detach_bcc()

    def collect_processes(self) -> list[ProcessBPFMetrics]:
        """Per-process metrics gathered since the last collection."""
        return []

    def collect_cpu_freq(self) -> dict[int, int]:
        """Average frequency of each CPU."""
        return {}