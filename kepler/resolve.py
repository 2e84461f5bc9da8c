"""Resolve the container that a process or cgroup belongs to."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

UNKNOWN_PATH = "unknown"
DEFAULT_PROC_PATH = "/proc/{pid}/cgroup"
DEFAULT_CGROUP_ROOT = "/sys/fs/cgroup"

SYSTEM_PROCESS_NAME = "system_processes"
SYSTEM_PROCESS_NAMESPACE = "system"
KERNEL_PROCESS_NAME = "kernel_processes"
KERNEL_PROCESS_NAMESPACE = "kernel"

_FIND_SCOPE_ID = re.compile(r".*-(.*?)\.scope")
_STRIP_PATH_PREFIX = re.compile(r".*-")
_FIND_TRAILING_ID = re.compile(r"[^:]*$")
_STRIP_PATH_SUFFIX = re.compile(r"\..*")
_STRIP_RUNTIME_PREFIX = re.compile(r".*//")
_VALID_ID = re.compile(r"^[a-zA-Z0-9]+$")


class ContainerIDError(Exception):
    """The container of a process or cgroup could not be determined.

    ``container_id`` holds the fallback identifier the lookup settled on.
    """

    def __init__(self, message: str, container_id: str = SYSTEM_PROCESS_NAME):
        super().__init__(message)
        self.container_id = container_id


@dataclass
class ContainerInfo:
    container_id: str
    container_name: str
    pod_name: str
    namespace: str


@dataclass
class ContainerStatus:
    container_id: str
    name: str = ""


@dataclass
class Pod:
    name: str = ""
    namespace: str = ""
    init_container_statuses: list[ContainerStatus] = field(default_factory=list)
    container_statuses: list[ContainerStatus] = field(default_factory=list)
    ephemeral_container_statuses: list[ContainerStatus] = field(default_factory=list)


def parse_container_id_from_pod_status(container_id: str) -> str:
    """Strip the runtime prefix (e.g. ``containerd://``) from a status id."""
    return _STRIP_RUNTIME_PREFIX.sub("", container_id)


def valid_container_id(container_id: str) -> str:
    """Return the id if it is alphanumeric, else the system process name."""
    if _VALID_ID.match(container_id):
        return container_id
    return SYSTEM_PROCESS_NAME


def extract_container_id_from_path(path: str, cgroup_version: int) -> str:
    """Extract a container id from a cgroup path."""
    if path == UNKNOWN_PATH:
        raise ContainerIDError("failed to find pod's container id")
    # The id sits at the end of the path; earlier parts only confuse the patterns.
    path = path.split("/")[-1]

    for match in _FIND_SCOPE_ID.finditer(path):
        element = match.group(0)
        if cgroup_version == 2 and ("-conmon-" in element or ".service" in element):
            raise ContainerIDError("process is not in a kubernetes pod", container_id="")
        if "crio" in element or "docker" in element or "containerd" in element:
            container_id = _STRIP_PATH_PREFIX.sub("", element)
            container_id = _STRIP_PATH_SUFFIX.sub("", container_id)
            return valid_container_id(container_id)

    trailing = _FIND_TRAILING_ID.search(path)
    if trailing is not None:
        return valid_container_id(trailing.group(0))

    if "kubepods" in path:
        return valid_container_id(path.split("/")[-1])

    raise ContainerIDError("failed to find pod's container id")


def path_from_cgroup_file(path: str | os.PathLike) -> str:
    """Return the pod-related line of a ``/proc/<pid>/cgroup`` file.

    Returns ``"unknown"`` when no line refers to a pod or container runtime.
    """
    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            for raw in handle:
                line = raw.rstrip("\n")
                if "pod" in line or "containerd" in line or "crio" in line:
                    if ".scope" in line:
                        line = line.split(".scope")[0] + ".scope"
                    return line
    except OSError as exc:
        raise ContainerIDError(f"failed to open cgroup description file {path}: {exc}") from exc
    return UNKNOWN_PATH


def _iter_directories(root: str) -> Iterator[str]:
    """Yield ``root`` and every directory below it in lexical order.

    Errors from reading a directory propagate, stopping the walk.
    """
    yield root
    with os.scandir(root) as entries:
        subdirs = sorted(entry.path for entry in entries if entry.is_dir(follow_symlinks=False))
    for subdir in subdirs:
        yield from _iter_directories(subdir)


class ContainerResolver:
    """Maps pids and cgroup ids to containers, caching every lookup."""

    def __init__(
        self,
        cgroup_version: int | None = None,
        proc_path: str = DEFAULT_PROC_PATH,
        cgroup_root: str = DEFAULT_CGROUP_ROOT,
    ):
        self.cgroup_root = cgroup_root
        if cgroup_version is None:
            # the unified hierarchy exposes cgroup.controllers at its root
            cgroup_version = 2 if Path(cgroup_root, "cgroup.controllers").exists() else 1
        self.cgroup_version = cgroup_version
        self.proc_path = proc_path
        self._container_ids: dict[int, str] = {}
        self._infos: dict[str, ContainerInfo] = {}
        self._cgroup_paths: dict[int, str] = {}

    def add_container_id_to_cache(self, key: int, container_id: str) -> None:
        self._container_ids[key] = container_id

    def _resolve_and_cache(self, key: int, path: str) -> str:
        try:
            container_id = extract_container_id_from_path(path, self.cgroup_version)
        except ContainerIDError as exc:
            self.add_container_id_to_cache(key, exc.container_id)
            raise
        self.add_container_id_to_cache(key, container_id)
        return container_id

    def container_id_from_pid(self, pid: int) -> str:
        """Find the container id of a process from its cgroup file."""
        if pid in self._container_ids:
            return self._container_ids[pid]
        path = path_from_cgroup_file(self.proc_path.format(pid=pid))
        return self._resolve_and_cache(pid, path)

    def container_id_from_cgroup_id(self, cgroup_id: int) -> str:
        """Find the container id of a cgroup from its id."""
        if cgroup_id in self._container_ids:
            return self._container_ids[cgroup_id]
        path = self.path_from_cgroup_id(cgroup_id)
        return self._resolve_and_cache(cgroup_id, path)

    def path_from_cgroup_id(self, cgroup_id: int) -> str:
        """Find the cgroup directory whose id (inode number) is ``cgroup_id``."""
        if cgroup_id in self._cgroup_paths:
            return self._cgroup_paths[cgroup_id]

        try:
            for dirpath in _iter_directories(self.cgroup_root):
                self._cgroup_paths[os.stat(dirpath).st_ino] = dirpath
        except OSError as exc:
            raise ContainerIDError(f"failed to find cgroup id: {exc}") from exc

        return self._cgroup_paths.setdefault(cgroup_id, UNKNOWN_PATH)

    def _container_id_from_path(self, cgroup_id: int, pid: int, with_cgroup_id: bool) -> str:
        if cgroup_id == 1 and with_cgroup_id:
            return KERNEL_PROCESS_NAME
        if with_cgroup_id:
            return self.container_id_from_cgroup_id(cgroup_id)
        return self.container_id_from_pid(pid)

    def get_container_info(self, cgroup_id: int, pid: int, with_cgroup_id: bool) -> ContainerInfo:
        """Return the container information of a process."""
        name, namespace = SYSTEM_PROCESS_NAME, SYSTEM_PROCESS_NAMESPACE
        if cgroup_id == 1 and with_cgroup_id:
            # some kernel processes have cgroup id 1
            name, namespace = KERNEL_PROCESS_NAME, KERNEL_PROCESS_NAMESPACE
        info = ContainerInfo(name, name, name, namespace)

        try:
            container_id = self._container_id_from_path(cgroup_id, pid, with_cgroup_id)
        except ContainerIDError as exc:
            raise ContainerIDError(str(exc), container_id=info.container_id) from exc

        if container_id in self._infos:
            return self._infos[container_id]
        info.container_id = container_id
        self._infos[container_id] = info
        return info

    def get_container_id(self, cgroup_id: int, pid: int, with_cgroup_id: bool) -> str:
        return self.get_container_info(cgroup_id, pid, with_cgroup_id).container_id

    def alive_containers(self, pods: Iterable[Pod]) -> set[str]:
        """Record the containers of the given pods and return their ids."""
        alive: set[str] = set()
        for pod in pods:
            for statuses in (
                pod.init_container_statuses,
                pod.container_statuses,
                pod.ephemeral_container_statuses,
            ):
                for status in statuses:
                    container_id = parse_container_id_from_pod_status(status.container_id)
                    alive.add(container_id)
                    self._infos[container_id] = ContainerInfo(
                        container_id=container_id,
                        container_name=status.name,
                        pod_name=pod.name,
                        namespace=pod.namespace,
                    )
        return alive