"""Minimal Docker Engine API client for container metadata lookups."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
import msgspec

from ..errors import InfrastructureFault

logger = logging.getLogger("cogs.docker")

_API_BASE = "http://docker"


class ContainerSummary(msgspec.Struct):
    """Subset of ``GET /containers/json`` the identity resolver needs."""

    id: str
    labels: dict[str, str]
    addresses: tuple[str, ...]


def _parse_container(entry: dict[str, Any]) -> ContainerSummary:
    networks = ((entry.get("NetworkSettings") or {}).get("Networks") or {}).values()
    addresses = tuple(
        address
        for address in (network.get("IPAddress", "") for network in networks if isinstance(network, dict))
        if address
    )
    return ContainerSummary(
        id=str(entry.get("Id", "")),
        labels={str(k): str(v) for k, v in (entry.get("Labels") or {}).items()},
        addresses=addresses,
    )


class DockerClient:
    """Lists running containers over the daemon's Unix socket."""

    def __init__(self, socket_path: str, *, timeout: float = 5.0) -> None:
        self.socket_path = socket_path
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.UnixConnector(path=self.socket_path),
                timeout=self._timeout,
            )
        return self._session

    async def list_containers(self) -> list[ContainerSummary]:
        try:
            session = await self._get_session()
            async with session.get(f"{_API_BASE}/containers/json") as response:
                if response.status != 200:
                    body = await response.text()
                    raise InfrastructureFault(f"container list failed with HTTP {response.status}: {body.strip()}")
                payload = msgspec.json.decode(await response.read())
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise InfrastructureFault(f"container runtime unreachable at {self.socket_path}: {exc}") from exc
        except msgspec.DecodeError as exc:
            raise InfrastructureFault(f"container runtime returned invalid JSON: {exc}") from exc

        if not isinstance(payload, list):
            raise InfrastructureFault("container runtime returned an unexpected payload")
        return [_parse_container(entry) for entry in payload if isinstance(entry, dict)]

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
