import pytest

from kepler.attacher import (
    CPU_TIME_LABEL,
    IRQ_BLOCK_LABEL,
    IRQ_NET_RX_LABEL,
    IRQ_NET_TX_LABEL,
    PAGE_CACHE_HIT_LABEL,
    AttachError,
    Attacher,
    AttacherConfig,
    ProcessBPFMetrics,
    decode_cpu_freq_table,
    decode_process_table,
)


def _sample():
    return ProcessBPFMetrics(
        cgroup_id=11,
        thread_pid=22,
        pid=21,
        process_run_time=5,
        task_clock_time=6,
        cpu_cycles=1000,
        cpu_instr=2000,
        cache_misses=30,
        page_cache_hit=4,
        vec_nr=(0, 0, 1, 2, 3, 0, 0, 0, 0, 0),
        command=b"bash".ljust(16, b"\x00"),
    )


@pytest.mark.parametrize("byteorder", ["little", "big"])
def test_process_metrics_round_trip(byteorder):
    metrics = _sample()
    assert ProcessBPFMetrics.from_bytes(metrics.to_bytes(byteorder), byteorder) == metrics


def test_process_metrics_layout_starts_with_cgroup_id():
    data = _sample().to_bytes("little")
    assert data[:8] == (11).to_bytes(8, "little")
    assert data[-16:] == b"bash".ljust(16, b"\x00")
    assert len(data) == 108


def test_from_bytes_ignores_trailing_padding():
    data = _sample().to_bytes("little") + b"\x00" * 4
    assert ProcessBPFMetrics.from_bytes(data, "little") == _sample()


def test_from_bytes_rejects_short_data():
    with pytest.raises(ValueError):
        ProcessBPFMetrics.from_bytes(b"\x00" * 10, "little")


def test_unknown_byte_order():
    with pytest.raises(ValueError):
        _sample().to_bytes("middle")


def test_command_name():
    assert _sample().command_name() == "bash"


def test_decode_process_table_skips_bad_entries():
    good = _sample().to_bytes("little")
    decoded = decode_process_table([good, b"\x01\x02", good], "little")
    assert decoded == [_sample(), _sample()]


def test_decode_cpu_freq_table():
    entries = [
        ((0).to_bytes(4, "little"), (2500).to_bytes(4, "little")),
        (b"\xff\xff\xff\xff", (1200).to_bytes(4, "little")),
    ]
    assert decode_cpu_freq_table(entries) == {0: 2500, -1: 1200}


def test_sw_counters_with_irq():
    attacher = Attacher(AttacherConfig(expose_irq_counter_metrics=True))
    assert attacher.enabled_sw_counters() == [
        CPU_TIME_LABEL, PAGE_CACHE_HIT_LABEL, IRQ_NET_TX_LABEL, IRQ_NET_RX_LABEL, IRQ_BLOCK_LABEL,
    ]


def test_sw_counters_without_irq():
    attacher = Attacher(AttacherConfig(expose_irq_counter_metrics=False))
    assert attacher.enabled_sw_counters() == [CPU_TIME_LABEL, PAGE_CACHE_HIT_LABEL]


@pytest.mark.parametrize("use_libbpf", [True, False])
def test_hw_counters_without_native_backend(use_libbpf):
    attacher = Attacher(AttacherConfig(use_libbpf_attacher=use_libbpf))
    assert attacher.counters() == {}
    assert attacher.enabled_hw_counters() == []


def test_hw_counters_disabled():
    attacher = Attacher(AttacherConfig(expose_hardware_counter_metrics=False))
    assert attacher.enabled_hw_counters() == []


@pytest.mark.parametrize("use_libbpf", [True, False])
def test_attach_without_backend_fails(use_libbpf):
    attacher = Attacher(AttacherConfig(use_libbpf_attacher=use_libbpf))
    with pytest.raises(AttachError, match="no bcc build tag"):
        attacher.attach()


def test_collect_after_failed_attach_is_empty():
    attacher = Attacher()
    with pytest.raises(AttachError):
        attacher.attach()
    attacher.detach()
    assert attacher.collect_processes() == []
    assert attacher.collect_cpu_freq() == {}
    assert attacher.perf_events == {}