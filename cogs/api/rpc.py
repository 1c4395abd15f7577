"""JSON-RPC 1.0 style session served over a ``CONNECT /api`` tunnel.

Each line is one ``{"method", "params", "id"}`` call answered by one
``{"id", "result", "error"}`` line. Calls run concurrently so a blocked
claim does not hold up status queries on the same connection; responses may
therefore arrive out of order and are matched by id.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import msgspec

from ..config.const import DEFAULT_WAIT_TIMEOUT
from ..errors import CogsError, ProtocolFault
from ..services.broker import ClaimBroker
from ..services.identity import IdentityResolver
from ..state.models import ClaimStatus, NodeStatus
from ..state.store import StateStore

if TYPE_CHECKING:
    from .http import Peer

logger = logging.getLogger("cogs.rpc")


class RpcRequest(msgspec.Struct):
    method: str
    params: Any = None
    id: Any = None


class RpcResponse(msgspec.Struct):
    id: Any
    result: Any = None
    error: str | None = None


class ClaimParams(msgspec.Struct):
    count: int
    timeout: float | None = None


class ReleaseParams(msgspec.Struct):
    devices: list[int]


class ReleaseResult(msgspec.Struct):
    released: list[int]


def _unwrap_params(params: Any) -> Any:
    # Go-style clients wrap the argument object in a one-element list.
    if isinstance(params, list):
        if len(params) != 1:
            raise ProtocolFault("params must be an object or a one-element list")
        return params[0]
    return params


class RpcSession:
    """Serves one tunnelled connection until the peer hangs up."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        store: StateStore,
        broker: ClaimBroker,
        resolver: IdentityResolver,
        peer: Peer,
        default_timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._store = store
        self._broker = broker
        self._resolver = resolver
        self._peer = peer
        self._default_timeout = default_timeout
        self._write_lock = asyncio.Lock()
        self._calls: set[asyncio.Task[None]] = set()
        self._identity: str | None = None
        self._methods: dict[str, Callable[[Any], Awaitable[Any]]] = {
            "Broker.Status": self._status,
            "Broker.Claim": self._claim,
            "Broker.Release": self._release,
        }

    async def serve(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError:
                    await self._send(RpcResponse(id=None, error="request line too long"))
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    request = msgspec.json.decode(line, type=RpcRequest)
                except msgspec.ValidationError as exc:
                    await self._send(RpcResponse(id=None, error=f"invalid request: {exc}"))
                    continue
                except msgspec.DecodeError:
                    await self._send(RpcResponse(id=None, error="invalid JSON"))
                    continue
                task = asyncio.create_task(self._dispatch(request))
                self._calls.add(task)
                task.add_done_callback(self._calls.discard)
        finally:
            pending = tuple(self._calls)
            for task in pending:
                task.cancel()
            if pending:
                logger.debug("Tunnel closed with %d pending call(s)", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

    async def _dispatch(self, request: RpcRequest) -> None:
        handler = self._methods.get(request.method)
        if handler is None:
            await self._send(RpcResponse(id=request.id, error=f"rpc: can't find method {request.method}"))
            return
        try:
            result = await handler(_unwrap_params(request.params))
        except (CogsError, ValueError) as exc:
            await self._send(RpcResponse(id=request.id, error=str(exc) or exc.__class__.__name__))
            return
        try:
            await self._send(RpcResponse(id=request.id, result=result))
        except asyncio.CancelledError:
            await self._return_undelivered(result)
            raise
        except ConnectionError as exc:
            logger.debug("Tunnel from %s lost: %s", self._peer.describe(), exc)
            await self._return_undelivered(result)

    async def _return_undelivered(self, result: Any) -> None:
        # Grants the client never received are handed back.
        if not isinstance(result, ClaimStatus) or not result.devices or self._identity is None:
            return
        released = await self._broker.release([device.number for device in result.devices], self._identity)
        logger.info(
            "Tunnel from %s closed before receiving devices %s",
            self._peer.describe(),
            released,
            extra={"peer": self._peer.describe(), "identity": self._identity, "devices": released},
        )

    async def _send(self, response: RpcResponse) -> None:
        payload = msgspec.json.encode(response) + b"\n"
        async with self._write_lock:
            if self._writer.is_closing():
                raise ConnectionResetError("tunnel closed")
            self._writer.write(payload)
            await self._writer.drain()

    async def _requester(self) -> str:
        # Resolved once per tunnel; InfrastructureFault is reported to the call.
        if self._identity is None:
            self._identity = await self._resolver.identify_requester(
                pid=self._peer.pid,
                uid=self._peer.uid,
                address=self._peer.address,
            )
        return self._identity

    async def _status(self, params: Any) -> NodeStatus:
        return await self._store.snapshot()

    async def _claim(self, params: Any) -> ClaimStatus:
        try:
            args = msgspec.convert(params, ClaimParams)
        except msgspec.ValidationError as exc:
            raise ProtocolFault(f"invalid claim arguments: {exc}") from exc
        timeout = self._default_timeout if args.timeout is None else args.timeout
        identity = await self._requester()
        return ClaimStatus(devices=await self._broker.reserve(args.count, identity, timeout))

    async def _release(self, params: Any) -> ReleaseResult:
        try:
            args = msgspec.convert(params, ReleaseParams)
        except msgspec.ValidationError as exc:
            raise ProtocolFault(f"invalid release arguments: {exc}") from exc
        identity = await self._requester()
        return ReleaseResult(released=await self._broker.release(args.devices, identity))
