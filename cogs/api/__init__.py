"""Network surface of the COGS broker."""

from .http import ApiServer, Peer, Request, read_request
from .rpc import RpcSession

__all__ = ["ApiServer", "Peer", "Request", "RpcSession", "read_request"]
