"""Sample node component power and describe the platform for validation runs."""

from __future__ import annotations

import csv
import os
import subprocess
from dataclasses import dataclass, fields
from typing import Iterable, Mapping

UJ_TO_MJ = 1000
POWER_CSV_HEADER = ("Pkg", "Core", "Uncore", "Dram")


@dataclass(frozen=True)
class NodeComponentsEnergy:
    """Cumulative energy counters of one CPU package, in microjoules."""

    pkg: int = 0
    core: int = 0
    uncore: int = 0
    dram: int = 0


@dataclass
class NodeComponentsPower:
    """Mean power of the node's components over a sampling interval."""

    pkg: float = 0.0
    core: float = 0.0
    uncore: float = 0.0
    dram: float = 0.0


@dataclass(frozen=True)
class PlatformFeatures:
    """Which power sources the platform offers."""

    rapl: bool = False
    rapl_pkg: bool = False
    rapl_core: bool = False
    rapl_uncore: bool = False
    rapl_dram: bool = False
    hmc: bool = False
    redfish: bool = False
    acpi: bool = False


_COMPONENTS = tuple(f.name for f in fields(NodeComponentsEnergy))
_ZERO_ENERGY = NodeComponentsEnergy()


def calculate_node_components_power(
    pre: Mapping[int, NodeComponentsEnergy],
    cur: Mapping[int, NodeComponentsEnergy],
    maxima: NodeComponentsEnergy,
    duration: float,
) -> NodeComponentsPower:
    """Power of each component between two readings taken ``duration`` seconds apart.

    A counter that went backwards is taken to have wrapped around at its maximum.
    """
    if duration <= 0:
        raise ValueError(f"sampling duration must be positive, got {duration}")
    pre_totals = dict.fromkeys(_COMPONENTS, 0)
    cur_totals = dict.fromkeys(_COMPONENTS, 0)
    for package in set(pre) | set(cur):
        before = pre.get(package, _ZERO_ENERGY)
        after = cur.get(package, _ZERO_ENERGY)
        for name in _COMPONENTS:
            old, new = getattr(before, name), getattr(after, name)
            pre_totals[name] += old
            cur_totals[name] += new + getattr(maxima, name) if old > new else new
    return NodeComponentsPower(
        **{
            name: (cur_totals[name] - pre_totals[name]) / UJ_TO_MJ / duration
            for name in _COMPONENTS
        }
    )


def mean_power(samples: Iterable[NodeComponentsPower]) -> NodeComponentsPower:
    """Component-wise mean of power samples."""
    samples = list(samples)
    if not samples:
        raise ValueError("no power samples to average")
    count = len(samples)
    return NodeComponentsPower(
        **{name: sum(getattr(s, name) for s in samples) / count for name in _COMPONENTS}
    )


def parse_uarch(output: str) -> str:
    """Extract the microarchitecture from cpuid's ``(uarch synth)`` line.

    ``"(uarch synth) = Intel Sapphire Rapids {Golden Cove}, Intel 7"`` gives
    ``"Sapphire Rapids"``.
    """
    sections = output.split("=")
    if len(sections) != 2:
        raise ValueError("cpuid grep output is unexpected")
    vendor_uarch_family = sections[1].strip().split(",")[0]
    if "{" in vendor_uarch_family:
        vendor_uarch = vendor_uarch_family.split("{")[0].strip()
    else:
        vendor_uarch = vendor_uarch_family
    return vendor_uarch[vendor_uarch.find(" ") + 1 :]


def get_x86_architecture() -> str:
    """Ask ``cpuid`` for the CPU microarchitecture."""
    result = subprocess.run(["cpuid", "-1"], capture_output=True, text=True, check=True)
    matching = "".join(
        line + "\n" for line in result.stdout.splitlines() if "uarch" in line
    )
    return parse_uarch(matching)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def format_env(cpu_arch: str, features: PlatformFeatures) -> str:
    """Render the platform description as an env file."""
    entries = [
        ("CPU_ARCH", cpu_arch),
        ("RAPL_ENABLED", _flag(features.rapl)),
        ("RAPL_PKG_ENABLED", _flag(features.rapl_pkg)),
        ("RAPL_CORE_ENABLED", _flag(features.rapl_core)),
        ("RAPL_UNCORE_ENABLED", _flag(features.rapl_uncore)),
        ("RAPL_DRAM_ENABLED", _flag(features.rapl_dram)),
        ("HMC_ENABLED", _flag(features.hmc)),
        ("REDFISH_ENABLED", _flag(features.redfish)),
        ("ACPI_ENABLED", _flag(features.acpi)),
    ]
    return "".join(f"{key}={value}\n" for key, value in entries)


def write_env_file(path: str | os.PathLike, cpu_arch: str, features: PlatformFeatures) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(format_env(cpu_arch, features))


def ensure_power_csv(path: str | os.PathLike) -> None:
    """Create the power CSV with its header unless it already exists."""
    if os.path.exists(path):
        return
    with open(path, "w", newline="", encoding="utf-8") as handle:
        csv.writer(handle, lineterminator="\n").writerow(POWER_CSV_HEADER)


def append_power_csv(path: str | os.PathLike, power: NodeComponentsPower) -> None:
    """Append one row of mean power to an existing power CSV."""
    row = [f"{getattr(power, name):.3f}" for name in _COMPONENTS]
    with open(path, "r+", newline="", encoding="utf-8") as handle:
        handle.seek(0, os.SEEK_END)
        csv.writer(handle, lineterminator="\n").writerow(row)