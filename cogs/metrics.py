"""Prometheus exporter for broker counters and per-device state."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator
from typing import Any, cast

import msgspec
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily, InfoMetricFamily
from prometheus_client.registry import Collector

from .state.context import RuntimeState
from .state.models import NodeStatus
from .state.store import StateStore

logger = logging.getLogger("cogs.metrics")


_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_]")
_INFO_METRIC = "cogs_info"
_GAUGE_DOC = "COGS broker runtime metric"
_INFO_DOC = "COGS broker informational metric"
_DEVICE_LABELS = ("number", "uuid", "name")


class _RuntimeStateCollector(Collector):
    """Projects RuntimeState snapshots as flat gauges."""

    def __init__(self, state: RuntimeState) -> None:
        self._state = state

    def collect(self) -> Iterator[Any]:
        snapshot = self._state.build_metrics_snapshot()

        info_values: list[tuple[str, str]] = []
        for metric_type, name, value in self._flatten("cogs", snapshot):
            if metric_type == "gauge":
                metric = GaugeMetricFamily(_sanitize_metric_name(name), _GAUGE_DOC)
                metric.add_metric((), value)
                yield metric
            else:
                info_values.append((name, value))
        if info_values:
            info_metric = InfoMetricFamily(_INFO_METRIC, _INFO_DOC, labels=("key",))
            for key, value in info_values:
                info_metric.add_metric((key,), {"value": value})
            yield info_metric

    def _flatten(self, prefix: str, value: Any) -> Iterator[tuple[str, str, Any]]:
        if isinstance(value, msgspec.Struct):
            yield from self._flatten(prefix, msgspec.structs.asdict(value))
            return
        if isinstance(value, dict):
            typed_dict = cast(dict[Any, Any], value)
            for raw_key, sub_value in typed_dict.items():
                key = raw_key if isinstance(raw_key, str) else str(raw_key)
                yield from self._flatten(f"{prefix}_{key}" if prefix else key, sub_value)
            return
        if isinstance(value, bool):
            yield ("gauge", prefix, 1.0 if value else 0.0)
            return
        if isinstance(value, (int, float)):
            yield ("gauge", prefix, float(value))
            return
        if value is None:
            yield ("info", prefix, "null")
            return
        yield ("info", prefix, str(value))


class _DeviceCollector(Collector):
    """Per-device gauges from the most recent store snapshot."""

    def __init__(self) -> None:
        self.node: NodeStatus | None = None

    def collect(self) -> Iterator[Any]:
        if self.node is None:
            return
        families = {
            "utilization": GaugeMetricFamily(
                "cogs_device_utilization_percent", "Device utilization", labels=_DEVICE_LABELS
            ),
            "memory": GaugeMetricFamily("cogs_device_memory_used", "Device memory in use", labels=_DEVICE_LABELS),
            "temperature": GaugeMetricFamily(
                "cogs_device_temperature_celsius", "Device temperature", labels=_DEVICE_LABELS
            ),
            "claimed": GaugeMetricFamily("cogs_device_claimed", "1 when the device is claimed", labels=_DEVICE_LABELS),
            "claim_age": GaugeMetricFamily(
                "cogs_device_claim_age_seconds", "Seconds since the current claim was granted", labels=_DEVICE_LABELS
            ),
            "processes": GaugeMetricFamily(
                "cogs_device_processes", "Processes observed on the device", labels=_DEVICE_LABELS
            ),
        }
        for status in sorted(self.node.devices.values(), key=lambda item: item.info.number):
            info = status.info
            labels = (str(info.number), info.uuid, info.name)
            families["utilization"].add_metric(labels, info.utilization)
            families["memory"].add_metric(labels, info.memory)
            families["temperature"].add_metric(labels, info.temperature)
            families["claimed"].add_metric(labels, 1.0 if status.claim.user else 0.0)
            families["claim_age"].add_metric(labels, status.claim.duration)
            families["processes"].add_metric(labels, len(status.processes))
        yield from families.values()


class PrometheusExporter:
    """Expose broker state via the Prometheus text format."""

    def __init__(self, state: RuntimeState, store: StateStore, host: str, port: int) -> None:
        self._state = state
        self._store = store
        self._host = host
        self._port = port
        self._server: asyncio.AbstractServer | None = None
        self._resolved_port: int | None = None
        self._registry = CollectorRegistry()
        self._devices = _DeviceCollector()
        self._registry.register(_RuntimeStateCollector(state))
        self._registry.register(self._devices)

    @property
    def port(self) -> int:
        return self._resolved_port or self._port

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self._handle_client, host=self._host, port=self._port)
        sockets = self._server.sockets or []
        if sockets:
            sockname = sockets[0].getsockname()
            if isinstance(sockname, tuple) and len(sockname) >= 2 and isinstance(sockname[1], int):
                self._resolved_port = sockname[1]
        logger.info("Prometheus exporter listening on %s:%d", self._host, self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Prometheus exporter stopped")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def render(self) -> bytes:
        self._devices.node = await self._store.snapshot()
        return generate_latest(self._registry)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            request_line = await reader.readline()
            if not request_line:
                return
            parts = request_line.decode("ascii", errors="ignore").split()
            if len(parts) < 2:
                await self._write_response(writer, 400, b"")
                return
            method, path = parts[0], parts[1]
            while True:
                line = await reader.readline()
                if not line or line in {b"\r\n", b"\n"}:
                    break
            if method != "GET" or path not in {"/metrics", "/"}:
                await self._write_response(writer, 404, b"")
                return
            payload = await self.render()
            await self._write_response(writer, 200, payload, content_type=CONTENT_TYPE_LATEST)
        except asyncio.CancelledError:
            raise
        except (OSError, ValueError) as e:
            logger.warning("Prometheus client request error: %s", e)
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (OSError, RuntimeError):
                logger.debug("Error closing metrics client connection", exc_info=True)

    async def _write_response(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        body: bytes,
        *,
        content_type: str = "text/plain; charset=utf-8",
    ) -> None:
        phrases = {200: "OK", 400: "Bad Request", 404: "Not Found"}
        status_line = f"HTTP/1.1 {status} {phrases.get(status, 'Error')}\r\n"
        headers = f"Content-Type: {content_type}\r\nContent-Length: {len(body)}\r\nConnection: close\r\n\r\n"
        writer.write(status_line.encode("ascii") + headers.encode("ascii") + body)
        await writer.drain()


def _sanitize_metric_name(name: str) -> str:
    cleaned = _SANITIZE_RE.sub("_", name.lower())
    cleaned = cleaned.strip("_") or "cogs_metric"
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned
