import subprocess
from unittest import mock

import pytest

from kepler.validator import (
    NodeComponentsEnergy,
    NodeComponentsPower,
    PlatformFeatures,
    append_power_csv,
    calculate_node_components_power,
    ensure_power_csv,
    format_env,
    get_x86_architecture,
    mean_power,
    parse_uarch,
    write_env_file,
)

MAXIMA = NodeComponentsEnergy(pkg=1000, core=1000, uncore=1000, dram=1000)


def test_power_from_simple_delta():
    pre = {0: NodeComponentsEnergy(pkg=0, core=0, uncore=0, dram=0)}
    cur = {0: NodeComponentsEnergy(pkg=2000, core=1000, uncore=0, dram=500)}
    power = calculate_node_components_power(pre, cur, MAXIMA, 1)
    assert power == NodeComponentsPower(pkg=2.0, core=1.0, uncore=0.0, dram=0.5)


def test_wrapped_counter_equals_unwrapped_delta():
    wrapped = calculate_node_components_power(
        {0: NodeComponentsEnergy(pkg=900, core=900, uncore=900, dram=900)},
        {0: NodeComponentsEnergy(pkg=100, core=100, uncore=100, dram=100)},
        MAXIMA,
        5,
    )
    plain = calculate_node_components_power(
        {0: NodeComponentsEnergy()},
        {0: NodeComponentsEnergy(pkg=200, core=200, uncore=200, dram=200)},
        MAXIMA,
        5,
    )
    assert wrapped == plain


def test_doubling_duration_halves_power():
    pre = {0: NodeComponentsEnergy(pkg=10, core=20, uncore=30, dram=40)}
    cur = {0: NodeComponentsEnergy(pkg=7010, core=5020, uncore=3030, dram=1040)}
    short = calculate_node_components_power(pre, cur, MAXIMA, 3)
    long = calculate_node_components_power(pre, cur, MAXIMA, 6)
    assert long.pkg * 2 == pytest.approx(short.pkg)
    assert long.dram * 2 == pytest.approx(short.dram)


def test_packages_are_summed():
    one = calculate_node_components_power(
        {0: NodeComponentsEnergy()}, {0: NodeComponentsEnergy(pkg=3000)}, MAXIMA, 1
    )
    two = calculate_node_components_power(
        {0: NodeComponentsEnergy(), 1: NodeComponentsEnergy()},
        {0: NodeComponentsEnergy(pkg=3000), 1: NodeComponentsEnergy(pkg=3000)},
        MAXIMA,
        1,
    )
    assert two.pkg == pytest.approx(2 * one.pkg)


def test_non_positive_duration_rejected():
    with pytest.raises(ValueError):
        calculate_node_components_power({}, {}, MAXIMA, 0)


def test_mean_of_identical_samples():
    sample = NodeComponentsPower(pkg=1.5, core=2.5, uncore=0.25, dram=4.0)
    assert mean_power([sample, sample, sample]) == sample


def test_mean_lies_between_extremes():
    low = NodeComponentsPower(pkg=1.0, core=1.0, uncore=1.0, dram=1.0)
    high = NodeComponentsPower(pkg=3.0, core=5.0, uncore=7.0, dram=9.0)
    result = mean_power([low, high])
    for name in ("pkg", "core", "uncore", "dram"):
        assert getattr(low, name) <= getattr(result, name) <= getattr(high, name)


def test_mean_of_nothing_fails():
    with pytest.raises(ValueError):
        mean_power([])


@pytest.mark.parametrize(
    "line, expected",
    [
        ("(uarch synth) = Intel Sapphire Rapids {Golden Cove}, Intel 7", "Sapphire Rapids"),
        ("(uarch synth) = AMD Zen 2, 7nm", "Zen 2"),
    ],
)
def test_parse_uarch(line, expected):
    assert parse_uarch(line + "\n") == expected


def test_parse_uarch_rejects_unexpected_output():
    with pytest.raises(ValueError, match="unexpected"):
        parse_uarch("no separator here")


def test_get_x86_architecture_filters_cpuid_output():
    output = (
        "CPU:\n"
        "   vendor_id = \"GenuineIntel\"\n"
        "   (uarch synth) = Intel Sapphire Rapids {Golden Cove}, Intel 7\n"
    )
    completed = subprocess.CompletedProcess(["cpuid", "-1"], 0, stdout=output, stderr="")
    with mock.patch("kepler.validator.subprocess.run", return_value=completed) as run:
        assert get_x86_architecture() == "Sapphire Rapids"
    assert run.call_args.args[0] == ["cpuid", "-1"]


def test_get_x86_architecture_without_uarch_line():
    completed = subprocess.CompletedProcess(["cpuid", "-1"], 0, stdout="CPU:\n", stderr="")
    with mock.patch("kepler.validator.subprocess.run", return_value=completed):
        with pytest.raises(ValueError):
            get_x86_architecture()


def test_format_env_lines():
    text = format_env("Zen 2", PlatformFeatures(rapl=True, rapl_pkg=True, acpi=True))
    lines = text.splitlines()
    assert lines[0] == "CPU_ARCH=Zen 2"
    assert "RAPL_ENABLED=true" in lines
    assert "RAPL_DRAM_ENABLED=false" in lines
    assert "ACPI_ENABLED=true" in lines
    assert "HMC_ENABLED=false" in lines
    assert len(lines) == 9
    assert text.endswith("\n")


def test_write_env_file(tmp_path):
    path = tmp_path / "platform-validation.env"
    features = PlatformFeatures(redfish=True)
    write_env_file(path, "Zen 2", features)
    assert path.read_text() == format_env("Zen 2", features)


def test_ensure_power_csv_writes_header_once(tmp_path):
    path = tmp_path / "power.csv"
    ensure_power_csv(path)
    assert path.read_text() == "Pkg,Core,Uncore,Dram\n"
    append_power_csv(path, NodeComponentsPower(pkg=1.5, core=2.0, uncore=0.0, dram=3.25))
    ensure_power_csv(path)
    assert path.read_text().splitlines() == [
        "Pkg,Core,Uncore,Dram",
        "1.500,2.000,0.000,3.250",
    ]


def test_append_power_csv_accumulates_rows(tmp_path):
    path = tmp_path / "power.csv"
    ensure_power_csv(path)
    for _ in range(3):
        append_power_csv(path, NodeComponentsPower())
    assert len(path.read_text().splitlines()) == 4


def test_append_power_csv_requires_existing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        append_power_csv(tmp_path / "missing.csv", NodeComponentsPower())