"""Energy monitoring building blocks: container resolution, cgroup statistics, BPF metric decoding and platform validation."""

__version__ = "0.1.0"

__all__ = ["attacher", "cgroup_stats", "resolve", "validator"]