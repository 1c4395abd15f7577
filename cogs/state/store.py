"""Authoritative device, claim and process state for one host."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

import msgspec

from ..errors import InfrastructureFault, NotFound, PermissionDenied
from .locks import ReadWriteLock
from .models import Claim, ClaimInfo, Device, DeviceStatus, NodeStatus, ProcessInfo

logger = logging.getLogger("cogs.state")


class ProcessIdentifier(Protocol):
    """Surface of the identity resolver the store depends on."""

    async def identify_process(self, pid: int) -> ProcessInfo: ...

    def process_alive(self, pid: int) -> bool: ...


@dataclass(slots=True)
class _ClaimRecord:
    granted_at: float
    # Set once the claimant shows up in the process feed for this device.
    active: bool = False


class StateStore:
    """NodeStatus guarded by a single reader/writer lock.

    Every mutation holds the write lock for its whole duration, including the
    identity lookup made while attributing a process. Reads take the read lock
    and return copies that stay valid after the lock is released.
    """

    def __init__(
        self,
        resolver: ProcessIdentifier,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolver = resolver
        self._clock = clock
        self._lock = ReadWriteLock()
        self._devices: dict[str, DeviceStatus] = {}
        self._numbers: dict[int, str] = {}
        self._claims: dict[str, _ClaimRecord] = {}

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @property
    def device_count(self) -> int:
        # Devices are only ever added, so the count needs no lock.
        return len(self._devices)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def snapshot(self) -> NodeStatus:
        async with self._lock.read():
            return NodeStatus(devices={uuid: self._copy_status(uuid, status) for uuid, status in self._devices.items()})

    async def devices(self) -> list[Device]:
        async with self._lock.read():
            return [msgspec.structs.replace(status.info) for status in self._sorted_statuses()]

    async def find_by_number(self, number: int) -> Device | None:
        async with self._lock.read():
            status = self._find(number)
            return None if status is None else msgspec.structs.replace(status.info)

    async def free_numbers(self) -> list[int]:
        async with self._lock.read():
            return [status.info.number for status in self._sorted_statuses() if not status.claim.user]

    # ------------------------------------------------------------------
    # Telemetry mutations
    # ------------------------------------------------------------------

    async def apply_device_update(self, device: Device) -> None:
        async with self._lock.write():
            status = self._devices.get(device.uuid)
            if status is None:
                logger.info("New device %s (%d)", device.uuid, device.number)
                self._devices[device.uuid] = DeviceStatus(info=msgspec.structs.replace(device))
                self._numbers[device.number] = device.uuid
                return
            status.info = status.info.with_metrics(
                memory=device.memory,
                utilization=device.utilization,
                temperature=device.temperature,
            )

    async def apply_claim_observation(self, claim: Claim) -> None:
        async with self._lock.write():
            status = self._find(claim.device_number)
            if status is None:
                logger.debug("Ignoring observation for unknown device %d", claim.device_number)
                return

            if claim.pid == 0:
                if status.processes:
                    logger.debug("Device %d: no processes", claim.device_number)
                status.processes = []
                return

            try:
                info = await self._resolver.identify_process(claim.pid)
            except NotFound as exc:
                logger.debug(
                    "Process %d on device %d vanished: %s",
                    claim.pid,
                    claim.device_number,
                    exc,
                    extra={"device": claim.device_number, "pid": claim.pid},
                )
                return
            except InfrastructureFault as exc:
                logger.warning(
                    "Unable to determine owner of process %d: %s",
                    claim.pid,
                    exc,
                    extra={"device": claim.device_number, "pid": claim.pid},
                )
                info = ProcessInfo(pid=claim.pid)

            self._upsert_process(status, info)
            logger.debug(
                "Device %d: %s (PID: %d)",
                claim.device_number,
                info.owner or "?",
                claim.pid,
                extra={"device": claim.device_number, "pid": claim.pid, "identity": info.owner},
            )

    # ------------------------------------------------------------------
    # Claim mutations (broker only)
    # ------------------------------------------------------------------

    async def set_claim(self, number: int, user: str) -> None:
        async with self._lock.write():
            status = self._require(number)
            self._assign(status, user)

    async def reserve(self, count: int, user: str) -> list[Device] | None:
        """Claim the ``count`` lowest-numbered free devices, or nothing."""
        async with self._lock.write():
            free = [status for status in self._sorted_statuses() if not status.claim.user]
            if len(free) < count:
                return None
            granted = free[:count]
            for status in granted:
                self._assign(status, user)
            return [msgspec.structs.replace(status.info) for status in granted]

    async def release(self, numbers: Iterable[int], user: str | None = None) -> list[int]:
        """Clear the claims on ``numbers``; with ``user`` only that holder's."""
        async with self._lock.write():
            statuses = [self._require(number) for number in numbers]
            if user is not None:
                for status in statuses:
                    if status.claim.user and status.claim.user != user:
                        raise PermissionDenied(f"device {status.info.number} is claimed by {status.claim.user}")
            released: list[int] = []
            for status in statuses:
                if status.claim.user:
                    self._assign(status, "")
                    released.append(status.info.number)
            return released

    async def reconcile_claim(self, claim: Claim) -> str | None:
        """Track claimant activity; release when its processes are gone.

        Only processes owned by the claim holder count as activity. Returns
        the released holder when this observation freed the device.
        """
        async with self._lock.write():
            status = self._find(claim.device_number)
            if status is None or not status.claim.user:
                return None
            record = self._claims.get(status.info.uuid)
            if record is None:
                return None
            if claim.pid != 0:
                if any(
                    process.pid == claim.pid and process.owner == status.claim.user for process in status.processes
                ):
                    record.active = True
                return None
            if not record.active:
                return None
            holder = status.claim.user
            self._assign(status, "")
            return holder

    async def expire_unused(self, lease: float) -> list[int]:
        """Release grants that never showed a process within ``lease`` seconds."""
        now = self._clock()
        async with self._lock.write():
            expired: list[int] = []
            for status in self._sorted_statuses():
                record = self._claims.get(status.info.uuid)
                if record is None or record.active:
                    continue
                if now - record.granted_at >= lease:
                    self._assign(status, "")
                    expired.append(status.info.number)
            return expired

    # ------------------------------------------------------------------
    # Helpers; callers hold the lock
    # ------------------------------------------------------------------

    def _find(self, number: int) -> DeviceStatus | None:
        uuid = self._numbers.get(number)
        return None if uuid is None else self._devices.get(uuid)

    def _require(self, number: int) -> DeviceStatus:
        status = self._find(number)
        if status is None:
            raise NotFound(f"device {number} does not exist")
        return status

    def _sorted_statuses(self) -> list[DeviceStatus]:
        return sorted(self._devices.values(), key=lambda status: status.info.number)

    def _assign(self, status: DeviceStatus, user: str) -> None:
        uuid = status.info.uuid
        if user:
            status.claim = ClaimInfo(user=user)
            self._claims[uuid] = _ClaimRecord(granted_at=self._clock())
        else:
            status.claim = ClaimInfo()
            self._claims.pop(uuid, None)

    def _upsert_process(self, status: DeviceStatus, info: ProcessInfo) -> None:
        processes: list[ProcessInfo] = []
        replaced = False
        for existing in status.processes:
            if existing.pid == info.pid:
                processes.append(info)
                replaced = True
            elif self._resolver.process_alive(existing.pid):
                processes.append(existing)
        if not replaced:
            processes.append(info)
        status.processes = processes

    def _copy_status(self, uuid: str, status: DeviceStatus) -> DeviceStatus:
        claim = ClaimInfo()
        record = self._claims.get(uuid)
        if status.claim.user and record is not None:
            claim = ClaimInfo(user=status.claim.user, duration=int(self._clock() - record.granted_at))
        return DeviceStatus(
            info=msgspec.structs.replace(status.info),
            claim=claim,
            processes=[msgspec.structs.replace(process) for process in status.processes],
        )
