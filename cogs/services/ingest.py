"""Telemetry ingest from the vendor monitoring tool.

Two long-running feeds are read line by line: ``dmon`` reports per-device
metrics and ``pmon`` reports the processes running on each device. Parsed
lines become events on the bus; the ingest side never touches the state
store directly.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from collections.abc import Awaitable, Callable, Iterable

import msgspec

from ..config.const import (
    DEFAULT_SMI_EXECUTABLE,
    DMON_FIELD_COUNT,
    DMON_INDEX_DEVICE,
    DMON_INDEX_MEMORY,
    DMON_INDEX_TEMPERATURE,
    DMON_INDEX_UTILIZATION,
    PMON_FIELD_COUNT,
    PMON_INDEX_DEVICE,
    PMON_INDEX_PID,
    TELEMETRY_COMMENT_PREFIX,
    TELEMETRY_PLACEHOLDER,
)
from ..errors import InfrastructureFault, NotFound, ParseFault
from ..state.context import RuntimeState
from ..state.models import Claim, Device
from .bus import EventBus, Topic

logger = logging.getLogger("cogs.ingest")

_FEED_STOP_TIMEOUT = 5.0


class MetricsSample(msgspec.Struct, frozen=True):
    number: int
    temperature: int
    utilization: int
    memory: int


def parse_value(token: str) -> int:
    """Integer value of a telemetry column; the placeholder reads as zero."""
    if token == TELEMETRY_PLACEHOLDER:
        return 0
    try:
        return int(token)
    except ValueError as exc:
        raise ParseFault(f"non-numeric token {token!r}") from exc


def tokenize(line: str, expected: int) -> list[str] | None:
    """Split a feed line; None for headers and blanks."""
    stripped = line.strip()
    if not stripped or stripped.startswith(TELEMETRY_COMMENT_PREFIX):
        return None
    tokens = stripped.split()
    if len(tokens) != expected:
        raise ParseFault(f"expected {expected} fields, got {len(tokens)}")
    return tokens


def parse_metrics_line(line: str) -> MetricsSample | None:
    tokens = tokenize(line, DMON_FIELD_COUNT)
    if tokens is None:
        return None
    values = [parse_value(token) for token in tokens]
    return MetricsSample(
        number=values[DMON_INDEX_DEVICE],
        temperature=values[DMON_INDEX_TEMPERATURE],
        utilization=values[DMON_INDEX_UTILIZATION],
        memory=values[DMON_INDEX_MEMORY],
    )


def parse_process_line(line: str) -> Claim | None:
    tokens = tokenize(line, PMON_FIELD_COUNT)
    if tokens is None:
        return None
    return Claim(
        device_number=parse_value(tokens[PMON_INDEX_DEVICE]),
        pid=parse_value(tokens[PMON_INDEX_PID]),
    )


def parse_device_inventory(document: bytes | str, *, group: str = "") -> list[Device]:
    """Devices listed by ``nvidia-smi -q -x``."""
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise InfrastructureFault(f"unreadable device inventory: {exc}") from exc

    devices: list[Device] = []
    for gpu in root.iter("gpu"):
        uuid = (gpu.findtext("uuid") or "").strip()
        number_text = (gpu.findtext("minor_number") or "").strip()
        if not uuid or not number_text.isdigit():
            logger.warning("Skipping inventory entry without uuid/minor number: %r", uuid)
            continue
        devices.append(
            Device(
                uuid=uuid,
                number=int(number_text),
                name=(gpu.findtext("product_name") or "").strip(),
                brand=(gpu.findtext("product_brand") or "").strip(),
                group=group,
            )
        )
    numbers = [device.number for device in devices]
    if len(numbers) != len(set(numbers)):
        raise InfrastructureFault(f"duplicate device numbers in inventory: {sorted(numbers)}")
    return devices


async def enumerate_devices(smi_executable: str = DEFAULT_SMI_EXECUTABLE, *, group: str = "") -> list[Device]:
    try:
        process = await asyncio.create_subprocess_exec(
            smi_executable,
            "-q",
            "-x",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise InfrastructureFault(f"cannot run {smi_executable}: {exc}") from exc
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise InfrastructureFault(
            f"{smi_executable} -q -x exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    return parse_device_inventory(stdout, group=group)


class TelemetryIngest:
    """Turns feed lines into ``device-updated`` and ``claim-observed`` events.

    Owns its own copy of the device table so metrics can be merged without
    consulting the state store.
    """

    def __init__(
        self,
        bus: EventBus,
        devices: Iterable[Device],
        *,
        smi_executable: str = DEFAULT_SMI_EXECUTABLE,
        state: RuntimeState | None = None,
    ) -> None:
        self._bus = bus
        self._smi = smi_executable
        self._state = state
        self._devices: dict[int, Device] = {device.number: device for device in devices}

    def find(self, number: int) -> Device:
        device = self._devices.get(number)
        if device is None:
            raise NotFound(f"device {number} does not exist")
        return device

    async def handle_metrics_line(self, line: str) -> bool:
        try:
            sample = parse_metrics_line(line)
            if sample is None:
                return False
            device = self.find(sample.number)
        except ParseFault as exc:
            self._record_parse_error("dmon", line, exc)
            return False
        except NotFound:
            logger.debug("Metrics for unknown device: %r", line)
            return False

        device = device.with_metrics(
            memory=sample.memory,
            utilization=sample.utilization,
            temperature=sample.temperature,
        )
        self._devices[device.number] = device
        if self._state is not None:
            self._state.counters.device_updates += 1
        await self._bus.publish(Topic.DEVICE_UPDATED, msgspec.structs.replace(device))
        return True

    async def handle_process_line(self, line: str) -> bool:
        try:
            claim = parse_process_line(line)
            if claim is None:
                return False
            self.find(claim.device_number)
        except ParseFault as exc:
            self._record_parse_error("pmon", line, exc)
            return False
        except NotFound:
            return False

        if self._state is not None:
            self._state.counters.claim_observations += 1
        await self._bus.publish(Topic.CLAIM_OBSERVED, claim)
        return True

    async def run_metrics_feed(self) -> None:
        await self._run_feed("dmon", self.handle_metrics_line)

    async def run_process_feed(self) -> None:
        await self._run_feed("pmon", self.handle_process_line)

    async def _run_feed(self, mode: str, handler: Callable[[str], Awaitable[bool]]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self._smi,
                mode,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise InfrastructureFault(f"cannot start {self._smi} {mode}: {exc}") from exc

        logger.info("Starting %s feed (pid %d)", mode, process.pid)
        self._mark_running(mode, True)
        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                await handler(raw.decode("utf-8", errors="replace"))
        finally:
            self._mark_running(mode, False)
            await _stop_process(process)

        logger.warning("Stopping %s feed (exit code %s)", mode, process.returncode)
        if process.returncode != 0:
            raise InfrastructureFault(f"{self._smi} {mode} exited with {process.returncode}")

    def _mark_running(self, mode: str, running: bool) -> None:
        if self._state is not None:
            self._state.feeds_running[mode] = running

    def _record_parse_error(self, mode: str, line: str, exc: ParseFault) -> None:
        if self._state is not None:
            self._state.counters.parse_errors += 1
        logger.debug(
            "Dropping malformed %s line %r: %s", mode, line.rstrip(), exc, extra={"feed": mode, "line": line.rstrip()}
        )


async def _stop_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        pass
    try:
        async with asyncio.timeout(_FEED_STOP_TIMEOUT):
            await process.wait()
    except TimeoutError:
        logger.warning("Feed process %d ignored SIGTERM; killing", process.pid)
        process.kill()
        await process.wait()
