"""``cogs`` command: claim devices from the local broker and run a command.

With ``-n`` the client waits for that many devices, then either prints the
comma-joined device numbers or execs the given command with
``CUDA_VISIBLE_DEVICES`` set. Without ``-n`` or a command it prints the
broker's status document.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from collections.abc import Sequence
from urllib.parse import urlsplit

import aiohttp
import msgspec

from .config.const import DEFAULT_UDS_SOCKET
from .errors import ClaimTimeout, CogsError, InfrastructureFault, InsufficientDevices, ProtocolFault
from .state.models import ClaimStatus, NodeStatus

DEFAULT_SERVER = f"unix://{DEFAULT_UDS_SOCKET}"
DEVICES_ENV = "CUDA_VISIBLE_DEVICES"

# Extra time granted to the HTTP exchange on top of the admission timeout.
_TIMEOUT_MARGIN = 5.0


def _open(server: str, timeout: float | None) -> tuple[aiohttp.ClientSession, str]:
    """Session and base URL for ``unix:///path`` or ``http://host:port`` servers."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    parts = urlsplit(server)
    if parts.scheme == "unix":
        connector = aiohttp.UnixConnector(path=parts.path)
        return aiohttp.ClientSession(connector=connector, timeout=client_timeout), "http://cogs"
    if parts.scheme in {"http", ""}:
        base = server if parts.scheme else f"http://{server}"
        return aiohttp.ClientSession(timeout=client_timeout), base.rstrip("/")
    raise ValueError(f"unsupported server address {server!r}")


async def _get(server: str, path: str, timeout: float | None) -> tuple[int, bytes]:
    session, base = _open(server, timeout)
    try:
        async with session:
            async with session.get(f"{base}{path}") as response:
                return response.status, await response.read()
    except asyncio.TimeoutError as exc:
        raise ClaimTimeout("no response from the broker in time") from exc
    except (aiohttp.ClientError, OSError) as exc:
        raise InfrastructureFault(f"cannot reach broker at {server}: {exc}") from exc


async def request_devices(server: str, count: int, timeout: float) -> list[int]:
    path = f"/wait?gpu={count}&timeout={timeout:g}"
    status, body = await _get(server, path, timeout + _TIMEOUT_MARGIN if timeout >= 0 else None)
    message = body.decode("utf-8", errors="replace").strip()
    if status == 408:
        raise ClaimTimeout(message)
    if status == 409:
        raise InsufficientDevices(message)
    if status != 200:
        raise ProtocolFault(message or f"HTTP {status}", status)
    result = msgspec.json.decode(body, type=ClaimStatus)
    return [device.number for device in result.devices]


async def fetch_status(server: str) -> NodeStatus:
    status, body = await _get(server, "/", None)
    if status != 200:
        raise ProtocolFault(body.decode("utf-8", errors="replace").strip(), status)
    return msgspec.json.decode(body, type=NodeStatus)


def format_devices(numbers: Sequence[int]) -> str:
    return ",".join(str(number) for number in numbers)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cogs", description="Claim GPUs from the local COGS broker.")
    parser.add_argument("-n", dest="count", type=int, default=0, help="How many GPUs to claim")
    parser.add_argument("-s", dest="server", default=DEFAULT_SERVER, help="Broker address")
    parser.add_argument(
        "-t",
        dest="timeout",
        type=float,
        default=1.0,
        help="Seconds to wait for GPUs (negative waits indefinitely)",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run with the claimed GPUs")
    return parser


def main(argv: Sequence[str] | None = None) -> int:  # pragma: no cover (entry point wrapper)
    args = build_arg_parser().parse_args(argv)
    try:
        if args.count <= 0 and not args.command:
            status = asyncio.run(fetch_status(args.server))
            print(msgspec.json.format(msgspec.json.encode(status), indent=2).decode())
            return 0
        numbers = asyncio.run(request_devices(args.server, max(args.count, 1), args.timeout))
    except (CogsError, ValueError) as exc:
        print(f"cogs: {exc}", file=sys.stderr)
        return 1

    devices = format_devices(numbers)
    if not args.command:
        print(devices)
        return 0
    env = dict(os.environ)
    env[DEVICES_ENV] = devices
    os.execvpe(args.command[0], args.command, env)


if __name__ == "__main__":
    sys.exit(main())
