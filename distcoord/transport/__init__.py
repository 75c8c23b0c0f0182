"""gRPC transport for peer-to-peer coordination traffic."""

from distcoord.transport.client import PeerClient, PeerConnectionPool
from distcoord.transport.server import PeerServer

__all__ = ["PeerClient", "PeerConnectionPool", "PeerServer"]
