[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kepler"
version = "0.1.0"
description = "Container resolution, cgroup statistics, BPF process metrics and platform power validation for node energy monitoring"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "energy",
    "power",
    "cgroup",
    "containers",
    "kubernetes",
    "ebpf",
    "rapl",
    "monitoring",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kepler"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
