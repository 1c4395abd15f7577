"""Typed records for devices, claims and observed processes."""

from __future__ import annotations

import msgspec


class Device(msgspec.Struct):
    """An accelerator and its latest metrics."""

    uuid: str
    number: int
    name: str = ""
    brand: str = ""
    group: str = ""
    memory: int = 0
    utilization: int = 0
    temperature: int = 0

    def with_metrics(self, *, memory: int, utilization: int, temperature: int) -> Device:
        return msgspec.structs.replace(
            self,
            memory=memory,
            utilization=utilization,
            temperature=temperature,
        )


class ClaimInfo(msgspec.Struct):
    """Current owner of a device; an empty user means the device is free."""

    user: str = ""
    duration: int = 0


class ProcessInfo(msgspec.Struct):
    """A process the telemetry feed reported on a device."""

    pid: int
    command: str = ""
    owner: str = ""
    context: str = ""
    duration: int = 0


class DeviceStatus(msgspec.Struct):
    info: Device
    claim: ClaimInfo = msgspec.field(default_factory=ClaimInfo)
    processes: list[ProcessInfo] = msgspec.field(default_factory=list)


class NodeStatus(msgspec.Struct):
    devices: dict[str, DeviceStatus] = msgspec.field(default_factory=dict)


class Claim(msgspec.Struct, frozen=True):
    """Process observation for a device; pid 0 means no process is running."""

    device_number: int
    pid: int


class ClaimStatus(msgspec.Struct):
    """Devices granted by a successful reservation."""

    devices: list[Device] = msgspec.field(default_factory=list)


__all__ = [
    "Claim",
    "ClaimInfo",
    "ClaimStatus",
    "Device",
    "DeviceStatus",
    "NodeStatus",
    "ProcessInfo",
]
