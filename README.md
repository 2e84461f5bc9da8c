# kepler

Building blocks for measuring the energy use of processes and containers on a
Linux node:

- **`kepler.resolve`** maps process IDs and cgroup IDs to container IDs and to
  pod information, with caching.
- **`kepler.cgroup_stats`** reads memory, CPU and block-I/O usage of a cgroup
  (v1 or v2) and records it in per-container statistics.
- **`kepler.attacher`** lists the hardware and software counters that BPF
  probes collect and decodes the per-process metrics and CPU-frequency tables
  they produce.
- **`kepler.validator`** turns RAPL energy samples into mean component power,
  detects the CPU micro-architecture and writes the platform-validation
  environment and power CSV files.

The package uses only the Python standard library.

## Resolving containers

The container ID is taken from the last element of a cgroup path. Paths from
CRI-O, Docker and containerd are recognised, as are the plain `kubepods`
layouts:

```python
from kepler.resolve import extract_container_id_from_path

path = (
    "0::/kubepods.slice/kubepods-burstable.slice/"
    "kubepods-burstable-pod2c9f8a79_5391_454b_88cb_86190881cb96.slice/"
    "crio-a09343ca97901516c25036e2b954421254f8c68b384b536064e8999f0c4ed18d.scope"
)
print(extract_container_id_from_path(path, 2))
# a09343ca97901516c25036e2b954421254f8c68b384b536064e8999f0c4ed18d
```

An ID that is not purely alphanumeric is replaced by `"system_processes"`
(see `valid_container_id`). `ContainerIDError` is raised for the path
`"unknown"`, and, on cgroup v2, for `-conmon-` and `.service` scopes, which are
not in a pod. `parse_container_id_from_pod_status` strips the runtime prefix
such as `containerd://` from a pod status ID, and `path_from_cgroup_file`
returns the pod-related line of a `/proc/<pid>/cgroup` file, or `"unknown"`.

`ContainerResolver(cgroup_version, proc_path, cgroup_root)` keeps the caches a
long-running collector needs. It reads a process's cgroup file
(`container_id_from_pid`), walks the cgroup filesystem to map cgroup IDs (inode
numbers) to paths (`path_from_cgroup_id`, `container_id_from_cgroup_id`), and
remembers `ContainerInfo` records (`get_container_info`, `get_container_id`).
A cgroup ID of 1 looked up by cgroup ID is reported as `"kernel_processes"`.
`alive_containers(pods)` takes `Pod` objects with their `ContainerStatus`
entries, returns the set of their container IDs and records each container's
name, pod and namespace.

## Reading cgroup statistics

`new_cgroup_stat_manager(pid, cgroup_version, proc_root, cgroup_root)` reads
`<proc_root>/<pid>/cgroup` through `parse_cgroup_file` and returns a
`CgroupV1StatReader` or `CgroupV2StatReader` for the process's cgroup; off
Linux it returns `None`. When `cgroup_version` is not given it is detected from
`cgroup.controllers` at the cgroup root.

A reader's `read()` returns a `CgroupStat` snapshot. Its
`set_cgroup_stat(container_id, stat_map)` stores memory usage, CPU time in
microseconds and read/write bytes under the container ID. `stat_map` maps the
metric names (such as `CGROUPFS_MEMORY`, `CGROUPFS_CPU`, `CGROUPFS_READ_IO`)
to objects with `set_aggr_stat(key, value)` and `add_delta_stat(key, value)`
methods. A v1 cgroup without memory statistics, or a missing v2 cgroup
directory, raises `CgroupStatError`.

## BPF counters

`Attacher` is built from an `AttacherConfig`. `enabled_sw_counters()` returns
the CPU-time and page-cache-hit metrics, plus the soft-IRQ metrics when
`expose_irq_counter_metrics` is set; `enabled_hw_counters()` returns the
enabled hardware counters of the selected back end.

`ProcessBPFMetrics.from_bytes` and `to_bytes` convert the fixed binary layout
of a process table entry, and `command_name()` gives its command up to the
first NUL byte. `decode_process_table` decodes a list of entries, skipping
those that are too short, and `decode_cpu_freq_table` decodes (cpu, frequency)
pairs.

## Platform validation

```python
from kepler.validator import parse_uarch

print(parse_uarch("(uarch synth) = Intel Sapphire Rapids {Golden Cove}, Intel 7"))
# Sapphire Rapids
```

`get_x86_architecture()` runs `cpuid -1` and parses its `uarch` line.
`calculate_node_components_power(pre, cur, maxima, duration)` converts two
per-package energy readings, taken `duration` seconds apart, into power per
component; a counter that went backwards is corrected with its maximum range.
`mean_power(samples)` averages the results. `format_env` and `write_env_file`
produce the `platform-validation.env` contents from a `PlatformFeatures`
record. `ensure_power_csv` creates the power CSV with its
`Pkg,Core,Uncore,Dram` header, and `append_power_csv` adds one row with three
decimal places per component.

## What the package does not do

- It does not load or attach eBPF programs: no BPF back end is included, so
  `Attacher.attach()` always raises `AttachError` and `collect_processes()` and
  `collect_cpu_freq()` return empty results.
- It reads no RAPL, HMC, Redfish or ACPI power sources itself; energy readings
  and `PlatformFeatures` are supplied by the caller.
- It has no metrics server and no command-line program; it is a library.