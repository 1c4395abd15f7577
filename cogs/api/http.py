"""HTTP surface served identically on the Unix socket and the TCP listener.

Requests are parsed by hand: one request per connection, ``Connection:
close`` on every response. ``CONNECT /api`` hands the raw stream over to the
RPC session for the lifetime of the connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import stat
import struct
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import msgspec

from ..config.const import (
    DEFAULT_WAIT_TIMEOUT,
    HTTP_MAX_HEADER_LINES,
    HTTP_READ_TIMEOUT,
    RPC_MAX_LINE_BYTES,
)
from ..errors import ClaimTimeout, InfrastructureFault, InsufficientDevices, ProtocolFault
from ..services.broker import ClaimBroker
from ..services.identity import IdentityResolver
from ..state.models import ClaimStatus
from ..state.store import StateStore
from .rpc import RpcSession

logger = logging.getLogger("cogs.api")

_PHRASES = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    409: "Conflict",
    500: "Internal Server Error",
    503: "Service Unavailable",
}
_PEERCRED = struct.Struct("3i")


@dataclass(slots=True)
class Request:
    method: str
    path: str
    query: dict[str, list[str]]
    version: str
    headers: dict[str, str]


@dataclass(slots=True)
class Peer:
    """Who is on the other end of a connection."""

    pid: int | None = None
    uid: int | None = None
    address: str | None = None

    def describe(self) -> str:
        if self.address:
            return self.address
        if self.pid:
            return f"pid {self.pid}"
        return "unknown peer"


async def read_request(reader: asyncio.StreamReader) -> Request | None:
    """Parse a request line and headers; None if the peer closed first."""
    request_line = await reader.readline()
    if not request_line:
        return None
    parts = request_line.decode("latin-1").split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ProtocolFault("malformed request line")
    method, target, version = parts

    headers: dict[str, str] = {}
    for _ in range(HTTP_MAX_HEADER_LINES):
        line = await reader.readline()
        if not line or line in {b"\r\n", b"\n"}:
            break
        name, sep, value = line.decode("latin-1").partition(":")
        if not sep:
            raise ProtocolFault("malformed header line")
        headers[name.strip().lower()] = value.strip()
    else:
        raise ProtocolFault("too many header lines")

    split = urlsplit(target)
    return Request(
        method=method.upper(),
        path=split.path or "/",
        query=parse_qs(split.query, keep_blank_values=True),
        version=version,
        headers=headers,
    )


def peer_of(writer: asyncio.StreamWriter) -> Peer:
    sock = writer.get_extra_info("socket")
    if sock is not None and sock.family == socket.AF_UNIX and hasattr(socket, "SO_PEERCRED"):
        try:
            raw = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _PEERCRED.size)
        except OSError as exc:
            logger.debug("SO_PEERCRED unavailable: %s", exc)
            return Peer()
        pid, uid, _gid = _PEERCRED.unpack(raw)
        return Peer(pid=pid, uid=uid)
    peername = writer.get_extra_info("peername")
    if isinstance(peername, tuple) and peername:
        return Peer(address=str(peername[0]))
    return Peer()


def parse_wait_arguments(request: Request, default_timeout: float) -> tuple[int, float]:
    try:
        count = int(request.query["gpu"][0])
    except (KeyError, IndexError, ValueError) as exc:
        raise ProtocolFault("gpu must be a positive integer") from exc
    if count <= 0:
        raise ProtocolFault("gpu must be a positive integer")

    timeout = default_timeout
    if "timeout" in request.query:
        try:
            timeout = float(request.query["timeout"][0])
        except (IndexError, ValueError) as exc:
            raise ProtocolFault("timeout must be a number of seconds") from exc
    return count, timeout


class ApiServer:
    """Routes ``/``, ``/wait`` and ``/api`` to the store and broker."""

    def __init__(
        self,
        store: StateStore,
        broker: ClaimBroker,
        resolver: IdentityResolver,
        *,
        default_timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> None:
        self._store = store
        self._broker = broker
        self._resolver = resolver
        self._default_timeout = default_timeout
        self._servers: list[asyncio.AbstractServer] = []
        self._unix_paths: list[Path] = []
        self._connections: set[asyncio.Task[None]] = set()

    @property
    def servers(self) -> list[asyncio.AbstractServer]:
        return list(self._servers)

    async def start_unix_server(self, path: str) -> asyncio.AbstractServer:
        socket_path = Path(path)
        with contextlib.suppress(FileNotFoundError):
            if stat.S_ISSOCK(socket_path.stat().st_mode):
                logger.info("Removing stale socket %s", socket_path)
                socket_path.unlink()
        server = await asyncio.start_unix_server(self.handle_client, path=path, limit=RPC_MAX_LINE_BYTES)
        # Any local user may ask for devices; identity comes from SO_PEERCRED.
        os.chmod(path, 0o666)
        self._servers.append(server)
        self._unix_paths.append(socket_path)
        logger.info("Listening on unix:%s", path)
        return server

    async def start_tcp_server(self, host: str | None, port: int) -> asyncio.AbstractServer:
        server = await asyncio.start_server(self.handle_client, host=host, port=port, limit=RPC_MAX_LINE_BYTES)
        self._servers.append(server)
        logger.info("Listening on tcp:%s:%d", host or "*", port)
        return server

    async def serve_forever(self) -> None:
        if not self._servers:
            raise RuntimeError("no listeners started")
        try:
            async with asyncio.TaskGroup() as tg:
                for server in self._servers:
                    tg.create_task(server.serve_forever())
        finally:
            await self.close()

    async def close(self) -> None:
        servers, self._servers = self._servers, []
        for server in servers:
            server.close()
        # Pending waits and tunnels would otherwise keep wait_closed() blocked.
        for task in tuple(self._connections):
            task.cancel()
        for server in servers:
            await server.wait_closed()
        paths, self._unix_paths = self._unix_paths, []
        for path in paths:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = peer_of(writer)
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            try:
                async with asyncio.timeout(HTTP_READ_TIMEOUT):
                    request = await read_request(reader)
            except ProtocolFault as exc:
                await self._respond_text(writer, exc.status, str(exc))
                return
            except (TimeoutError, ValueError):
                logger.debug("Dropping slow or oversized request from %s", peer.describe())
                return
            if request is None:
                return

            logger.debug("%s %s from %s", request.method, request.path, peer.describe())
            if request.path == "/":
                await self._handle_status(request, writer)
            elif request.path == "/wait":
                await self._handle_wait(request, reader, writer, peer)
            elif request.path == "/api":
                await self._handle_tunnel(request, reader, writer, peer)
            else:
                await self._respond_text(writer, 404, "not found")
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as exc:
            logger.debug("Connection from %s lost: %s", peer.describe(), exc)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(OSError, RuntimeError):
                await writer.wait_closed()

    async def _handle_status(self, request: Request, writer: asyncio.StreamWriter) -> None:
        if request.method != "GET":
            await self._respond_text(writer, 405, "read only")
            return
        snapshot = await self._store.snapshot()
        await self._respond(writer, 200, msgspec.json.encode(snapshot), content_type="application/json")

    async def _handle_wait(
        self,
        request: Request,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: Peer,
    ) -> None:
        if request.method != "GET":
            await self._respond_text(writer, 405, "method must be get")
            return
        try:
            count, timeout = parse_wait_arguments(request, self._default_timeout)
        except ProtocolFault as exc:
            await self._respond_text(writer, exc.status, str(exc))
            return

        try:
            identity = await self._resolver.identify_requester(pid=peer.pid, uid=peer.uid, address=peer.address)
        except InfrastructureFault as exc:
            logger.warning("Cannot identify %s: %s", peer.describe(), exc)
            await self._respond_text(writer, 503, "identity lookup failed")
            return

        claim = asyncio.create_task(self._broker.reserve(count, identity, timeout))
        hangup = asyncio.create_task(_watch_hangup(reader))
        try:
            await asyncio.wait({claim, hangup}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            hangup.cancel()
            if not claim.done():
                claim.cancel()
            await asyncio.gather(claim, hangup, return_exceptions=True)
        disconnected = hangup.done() and not hangup.cancelled()

        if claim.cancelled():
            logger.info(
                "Client %s (%s) went away while waiting",
                peer.describe(),
                identity,
                extra={"peer": peer.describe(), "identity": identity},
            )
            return
        exc = claim.exception()
        if isinstance(exc, ClaimTimeout):
            await self._respond_text(writer, 408, str(exc))
            return
        if isinstance(exc, InsufficientDevices):
            await self._respond_text(writer, 409, str(exc))
            return
        if isinstance(exc, ValueError):
            await self._respond_text(writer, 400, str(exc))
            return
        if exc is not None:
            raise exc

        granted = claim.result()
        if disconnected:
            released = await self._broker.release([device.number for device in granted], identity)
            logger.info(
                "Client %s went away before receiving devices %s",
                peer.describe(),
                released,
                extra={"peer": peer.describe(), "identity": identity, "devices": released},
            )
            return
        await self._respond(writer, 200, msgspec.json.encode(ClaimStatus(devices=granted)), content_type="application/json")

    async def _handle_tunnel(
        self,
        request: Request,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: Peer,
    ) -> None:
        if request.method != "CONNECT":
            await self._respond_text(writer, 405, "method must be connect")
            return
        writer.write(b"HTTP/1.0 200 Connected\r\n\r\n")
        await writer.drain()
        session = RpcSession(
            reader,
            writer,
            store=self._store,
            broker=self._broker,
            resolver=self._resolver,
            peer=peer,
            default_timeout=self._default_timeout,
        )
        await session.serve()

    async def _respond_text(self, writer: asyncio.StreamWriter, status: int, message: str) -> None:
        await self._respond(writer, status, f"{message}\n".encode("utf-8"))

    async def _respond(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        body: bytes,
        *,
        content_type: str = "text/plain; charset=utf-8",
    ) -> None:
        status_line = f"HTTP/1.1 {status} {_PHRASES.get(status, 'Error')}\r\n"
        headers = f"Content-Type: {content_type}\r\nContent-Length: {len(body)}\r\nConnection: close\r\n\r\n"
        writer.write(status_line.encode("ascii") + headers.encode("ascii") + body)
        await writer.drain()


async def _watch_hangup(reader: asyncio.StreamReader) -> None:
    """Return once the peer closes its side of the connection."""
    with contextlib.suppress(ConnectionError, OSError):
        while await reader.read(1024):
            pass
