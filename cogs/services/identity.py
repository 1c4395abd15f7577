"""Attribute processes and network peers to an accountable owner.

Ownership is derived from container labels: a process is mapped to its
container through its cgroup membership, the container is looked up in the
runtime, and the first configured label holding an email address names the
owner. Lookups are cached for a bounded time since listing containers is
expensive and happens while the state store's write lock is held.
"""

from __future__ import annotations

import logging
import pwd
import re
import time
from collections.abc import Sequence
from email.utils import parseaddr
from pathlib import Path
from typing import Protocol

import psutil

from ..config.const import DEFAULT_IDENTITY_CACHE_TTL, DEFAULT_OWNER_LABELS
from ..errors import NotFound
from ..state.cache import TTLCache
from ..state.models import ProcessInfo
from ..transport.docker import ContainerSummary

logger = logging.getLogger("cogs.identity")

PROC_ROOT = Path("/proc")

# cgroup v1 "/docker/<id>" and systemd/cgroup v2 ".../docker-<id>.scope".
_CONTAINER_CGROUP_RE = re.compile(r"/docker[/-]([0-9a-f]{12,64})(?:\.scope)?$")
_CGROUP_HIERARCHIES = frozenset({"cpuset", ""})


class ContainerLister(Protocol):
    async def list_containers(self) -> list[ContainerSummary]: ...


def parse_cgroup(text: str) -> str | None:
    """Return the container id named by a ``/proc/<pid>/cgroup`` listing."""
    for line in text.splitlines():
        tokens = line.strip().split(":", 2)
        if len(tokens) != 3:
            continue
        _, controllers, path = tokens
        if controllers not in _CGROUP_HIERARCHIES:
            continue
        match = _CONTAINER_CGROUP_RE.search(path)
        if match:
            return match.group(1)
    return None


def parse_owner(value: str) -> str | None:
    """Extract a bare address from ``value`` if it is email-like."""
    _, address = parseaddr(value)
    if not address or any(ch.isspace() for ch in address):
        return None
    local, sep, domain = address.partition("@")
    if not sep or not local or not domain or "@" in domain:
        return None
    return address


def pid_to_container(pid: int, *, proc_root: Path = PROC_ROOT) -> str:
    try:
        text = (proc_root / str(pid) / "cgroup").read_text()
    except OSError as exc:
        raise NotFound("process does not exist") from exc
    container = parse_cgroup(text)
    if container is None:
        raise NotFound("process does not belong to a container")
    return container


def pid_to_command(pid: int, *, proc_root: Path = PROC_ROOT) -> str:
    try:
        data = (proc_root / str(pid) / "cmdline").read_bytes()
    except OSError as exc:
        raise NotFound("process does not exist") from exc
    return data.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()


class IdentityResolver:
    """Resolve pids and peer addresses to owners through container labels."""

    def __init__(
        self,
        runtime: ContainerLister,
        *,
        labels: Sequence[str] = DEFAULT_OWNER_LABELS,
        ttl: float = DEFAULT_IDENTITY_CACHE_TTL,
        proc_root: Path = PROC_ROOT,
        clock=time.monotonic,
    ) -> None:
        self._runtime = runtime
        self._labels = tuple(labels)
        self._proc_root = proc_root
        self._owners: TTLCache[str, str] = TTLCache(ttl, clock=clock)
        self._networks: TTLCache[str, str] = TTLCache(ttl, clock=clock)

    def process_alive(self, pid: int) -> bool:
        return psutil.pid_exists(pid)

    async def find_owner(self, container_id: str) -> str:
        """Owner of ``container_id``; raises NotFound or InfrastructureFault."""
        cached = self._owners.get(container_id)
        if cached is not None:
            return cached

        for container in await self._runtime.list_containers():
            if not _same_container(container.id, container_id):
                continue
            for label in self._labels:
                value = container.labels.get(label)
                if not value:
                    continue
                owner = parse_owner(value)
                if owner is not None:
                    self._owners.set(container_id, owner)
                    return owner
                logger.debug("Label %s=%r on %s is not an address", label, value, container_id[:12])
        raise NotFound(f"no owner label on container {container_id[:12]}")

    async def find_container(self, address: str) -> str:
        cached = self._networks.get(address)
        if cached is not None:
            return cached
        for container in await self._runtime.list_containers():
            if address in container.addresses:
                self._networks.set(address, container.id)
                return container.id
        raise NotFound(f"no container attached at {address}")

    async def identify_address(self, address: str) -> str:
        container = await self.find_container(address)
        return await self.find_owner(container)

    async def identify_process(self, pid: int) -> ProcessInfo:
        """Describe ``pid``; host processes are attributed to their user."""
        try:
            process = psutil.Process(pid)
            started = process.create_time()
        except psutil.NoSuchProcess as exc:
            raise NotFound("process does not exist") from exc
        except psutil.Error as exc:
            raise NotFound(f"process {pid} is not accessible: {exc}") from exc

        command = pid_to_command(pid, proc_root=self._proc_root)
        duration = max(0, int(time.time() - started))

        try:
            container = pid_to_container(pid, proc_root=self._proc_root)
        except NotFound:
            return ProcessInfo(pid=pid, command=command, owner=_host_user(process), context="", duration=duration)

        try:
            owner = await self.find_owner(container)
        except NotFound as exc:
            logger.debug("Process %d: %s", pid, exc)
            owner = ""
        return ProcessInfo(pid=pid, command=command, owner=owner, context=container, duration=duration)

    async def identify_requester(
        self,
        *,
        pid: int | None = None,
        uid: int | None = None,
        address: str | None = None,
    ) -> str:
        """Identity recorded on claims made by a connected client."""
        if pid:
            try:
                info = await self.identify_process(pid)
            except NotFound:
                info = None
            if info is not None and info.owner:
                return info.owner
        if uid is not None:
            try:
                return pwd.getpwuid(uid).pw_name
            except KeyError:
                return f"uid:{uid}"
        if address:
            try:
                return await self.identify_address(address)
            except NotFound:
                return address
        return "anonymous"


def _same_container(full_id: str, wanted: str) -> bool:
    return full_id == wanted or (len(wanted) >= 12 and full_id.startswith(wanted))


def _host_user(process: psutil.Process) -> str:
    try:
        return process.username()
    except (psutil.Error, KeyError):
        return ""
