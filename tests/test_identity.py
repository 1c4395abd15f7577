"""Tests for process and peer attribution."""

from __future__ import annotations

import time
from pathlib import Path

import psutil
import pytest

from cogs.errors import InfrastructureFault, NotFound
from cogs.services import identity as identity_module
from cogs.services.identity import IdentityResolver, parse_cgroup, parse_owner, pid_to_container

from tests.mocks import Clock, FakeRuntime, container

CONTAINER_ID = "3f4e5d6c7b8a" + "0" * 52

CGROUP_V1 = f"""12:pids:/docker/{CONTAINER_ID}
11:cpuset:/docker/{CONTAINER_ID}
1:name=systemd:/docker/{CONTAINER_ID}
"""
CGROUP_V2 = f"0::/system.slice/docker-{CONTAINER_ID}.scope\n"
CGROUP_HOST = "0::/user.slice/user-1000.slice/session-2.scope\n"


class _FakeProcess:
    def __init__(self, pid: int, *, user: str = "carol", age: float = 42.0) -> None:
        self.pid = pid
        self._user = user
        self._started = time.time() - age

    def create_time(self) -> float:
        return self._started

    def username(self) -> str:
        return self._user


def _write_proc(root: Path, pid: int, cgroup: str, cmdline: bytes = b"python\x00train.py\x00") -> None:
    directory = root / str(pid)
    directory.mkdir(parents=True)
    (directory / "cgroup").write_text(cgroup)
    (directory / "cmdline").write_bytes(cmdline)


@pytest.fixture()
def fake_processes(monkeypatch: pytest.MonkeyPatch) -> dict[int, _FakeProcess]:
    table: dict[int, _FakeProcess] = {}

    def _process(pid: int) -> _FakeProcess:
        if pid not in table:
            raise psutil.NoSuchProcess(pid)
        return table[pid]

    monkeypatch.setattr(identity_module.psutil, "Process", _process)
    return table


def test_parse_cgroup_v1_and_v2() -> None:
    assert parse_cgroup(CGROUP_V1) == CONTAINER_ID
    assert parse_cgroup(CGROUP_V2) == CONTAINER_ID
    assert parse_cgroup(CGROUP_HOST) is None
    assert parse_cgroup("garbage\n") is None


def test_parse_owner() -> None:
    assert parse_owner("alice@example.com") == "alice@example.com"
    assert parse_owner("Alice Liddell <alice@example.com>") == "alice@example.com"
    assert parse_owner("alice") is None
    assert parse_owner("") is None
    assert parse_owner("@example.com") is None


def test_pid_to_container(tmp_path: Path) -> None:
    _write_proc(tmp_path, 10, CGROUP_V1)
    _write_proc(tmp_path, 11, CGROUP_HOST)

    assert pid_to_container(10, proc_root=tmp_path) == CONTAINER_ID
    with pytest.raises(NotFound):
        pid_to_container(11, proc_root=tmp_path)
    with pytest.raises(NotFound):
        pid_to_container(12, proc_root=tmp_path)


@pytest.mark.asyncio
async def test_owner_label_priority() -> None:
    runtime = FakeRuntime(
        containers=[
            container(
                CONTAINER_ID,
                {
                    "maintainer": "ops@example.com",
                    "user.email": "not an address",
                    "ccc-user.email": "alice@example.com",
                },
            ),
            container("b" * 64, {"maintainer": "ops@example.com", "email": "bob@example.com"}),
            container("c" * 64, {"maintainer": "not an address"}),
        ]
    )
    resolver = IdentityResolver(runtime)

    assert await resolver.find_owner(CONTAINER_ID) == "alice@example.com"
    assert await resolver.find_owner("b" * 12) == "bob@example.com"
    with pytest.raises(NotFound):
        await resolver.find_owner("c" * 64)
    with pytest.raises(NotFound):
        await resolver.find_owner("d" * 64)


@pytest.mark.asyncio
async def test_owner_lookups_are_cached_until_expiry() -> None:
    clock = Clock()
    runtime = FakeRuntime(containers=[container(CONTAINER_ID, {"email": "alice@example.com"})])
    resolver = IdentityResolver(runtime, ttl=60.0, clock=clock)

    assert await resolver.find_owner(CONTAINER_ID) == "alice@example.com"
    assert await resolver.find_owner(CONTAINER_ID) == "alice@example.com"
    assert runtime.calls == 1

    runtime.containers = [container(CONTAINER_ID, {"email": "bob@example.com"})]
    clock.advance(61)
    assert await resolver.find_owner(CONTAINER_ID) == "bob@example.com"
    assert runtime.calls == 2


@pytest.mark.asyncio
async def test_runtime_outage_is_an_infrastructure_fault() -> None:
    resolver = IdentityResolver(FakeRuntime(failing=True))

    with pytest.raises(InfrastructureFault):
        await resolver.find_owner(CONTAINER_ID)


@pytest.mark.asyncio
async def test_find_container_by_address() -> None:
    runtime = FakeRuntime(
        containers=[container(CONTAINER_ID, {"email": "alice@example.com"}, "172.17.0.2", "10.0.5.7")]
    )
    resolver = IdentityResolver(runtime)

    assert await resolver.find_container("10.0.5.7") == CONTAINER_ID
    assert await resolver.identify_address("172.17.0.2") == "alice@example.com"
    with pytest.raises(NotFound):
        await resolver.find_container("192.168.1.1")


@pytest.mark.asyncio
async def test_identify_containerised_process(tmp_path: Path, fake_processes: dict[int, _FakeProcess]) -> None:
    _write_proc(tmp_path, 4242, CGROUP_V2)
    fake_processes[4242] = _FakeProcess(4242, age=42.0)
    runtime = FakeRuntime(containers=[container(CONTAINER_ID, {"user.email": "alice@example.com"})])
    resolver = IdentityResolver(runtime, proc_root=tmp_path)

    info = await resolver.identify_process(4242)

    assert info.pid == 4242
    assert info.owner == "alice@example.com"
    assert info.context == CONTAINER_ID
    assert info.command == "python train.py"
    assert 41 <= info.duration <= 44


@pytest.mark.asyncio
async def test_identify_host_process(tmp_path: Path, fake_processes: dict[int, _FakeProcess]) -> None:
    _write_proc(tmp_path, 77, CGROUP_HOST, b"/usr/bin/xorg\x00")
    fake_processes[77] = _FakeProcess(77, user="carol")
    runtime = FakeRuntime()
    resolver = IdentityResolver(runtime, proc_root=tmp_path)

    info = await resolver.identify_process(77)

    assert info.owner == "carol"
    assert info.context == ""
    assert info.command == "/usr/bin/xorg"
    assert runtime.calls == 0


@pytest.mark.asyncio
async def test_identify_unlabelled_container_process(
    tmp_path: Path, fake_processes: dict[int, _FakeProcess]
) -> None:
    _write_proc(tmp_path, 8, CGROUP_V1)
    fake_processes[8] = _FakeProcess(8)
    resolver = IdentityResolver(FakeRuntime(containers=[container(CONTAINER_ID, {})]), proc_root=tmp_path)

    info = await resolver.identify_process(8)

    assert info.owner == ""
    assert info.context == CONTAINER_ID


@pytest.mark.asyncio
async def test_identify_vanished_process(tmp_path: Path, fake_processes: dict[int, _FakeProcess]) -> None:
    resolver = IdentityResolver(FakeRuntime(), proc_root=tmp_path)

    with pytest.raises(NotFound):
        await resolver.identify_process(31337)


@pytest.mark.asyncio
async def test_identify_process_propagates_runtime_outage(
    tmp_path: Path, fake_processes: dict[int, _FakeProcess]
) -> None:
    _write_proc(tmp_path, 9, CGROUP_V2)
    fake_processes[9] = _FakeProcess(9)
    resolver = IdentityResolver(FakeRuntime(failing=True), proc_root=tmp_path)

    with pytest.raises(InfrastructureFault):
        await resolver.identify_process(9)


@pytest.mark.asyncio
async def test_identify_requester_fallbacks(tmp_path: Path, fake_processes: dict[int, _FakeProcess]) -> None:
    _write_proc(tmp_path, 4242, CGROUP_V2)
    fake_processes[4242] = _FakeProcess(4242)
    runtime = FakeRuntime(
        containers=[container(CONTAINER_ID, {"email": "alice@example.com"}, "172.17.0.2")]
    )
    resolver = IdentityResolver(runtime, proc_root=tmp_path)

    assert await resolver.identify_requester(pid=4242, uid=0) == "alice@example.com"
    assert await resolver.identify_requester(pid=999, uid=0) == "root"
    assert await resolver.identify_requester(address="172.17.0.2") == "alice@example.com"
    assert await resolver.identify_requester(address="10.9.9.9") == "10.9.9.9"
    assert await resolver.identify_requester() == "anonymous"
